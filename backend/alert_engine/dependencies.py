from fastapi import HTTPException, Request

from alert_engine.services import EngineServices, resolve_services


def get_services(request: Request) -> EngineServices:
    services = resolve_services(request.app)
    if services is None:
        raise HTTPException(status_code=503, detail="Engine services not initialised")
    return services
