import argparse
import asyncio
import logging
from collections.abc import Awaitable, Callable

from alert_engine.domain.orchestrator.service import AlertNotificationOrchestrator
from alert_engine.infra.db import dispose_engine
from alert_engine.infra.logging import clear_log_context, configure_logging
from alert_engine.infra.metrics import configure_metrics, metrics
from alert_engine.services import EngineServices, build_engine_services
from alert_engine.settings import settings

logger = logging.getLogger(__name__)

JOB_NAMES = ("escalation-recovery",)


async def _run_job(name: str, runner: Callable[[], Awaitable[dict[str, int]]]) -> None:
    try:
        result = await runner()
        logger.info("job_complete", extra={"extra": {"job": name, **result}})
    finally:
        clear_log_context()


def _job_runner(name: str, orchestrator: AlertNotificationOrchestrator, *, once: bool) -> Callable:
    if name == "escalation-recovery":

        async def _recover() -> dict[str, int]:
            resumed = await orchestrator.run_recovery_scan(execute_due=once)
            return {"resumed": resumed}

        return _recover
    raise ValueError(f"unknown_job:{name}")


async def main(argv: list[str] | None = None, *, services: EngineServices | None = None) -> None:
    parser = argparse.ArgumentParser(description="Run alert engine jobs")
    parser.add_argument("--job", action="append", dest="jobs", choices=JOB_NAMES, help="Job name to run")
    parser.add_argument(
        "--interval",
        type=float,
        default=settings.escalation_recovery_interval_seconds,
        help="Seconds between loops when not using --once",
    )
    parser.add_argument("--once", action="store_true", help="Run jobs once and exit")
    args = parser.parse_args(argv)

    configure_logging()
    configure_metrics(settings.metrics_enabled)
    services = services or build_engine_services(settings)
    orchestrator = services.orchestrator

    job_names = args.jobs or list(JOB_NAMES)
    runners = [_job_runner(name, orchestrator, once=args.once) for name in job_names]

    try:
        while True:
            for name, runner in zip(job_names, runners):
                try:
                    await _run_job(name, runner)
                except Exception as exc:  # noqa: BLE001
                    metrics.record_recovery_scan("job_error")
                    logger.warning("job_failed", extra={"extra": {"job": name, "reason": type(exc).__name__}})
            if args.once:
                break
            await asyncio.sleep(max(args.interval, 1))
    finally:
        await orchestrator.stop()
        await dispose_engine()


if __name__ == "__main__":
    asyncio.run(main())
