from datetime import timedelta

import anyio
import pytest

from alert_engine.jobs import run
from tests.conftest import WEDNESDAY_10AM, make_alert


async def _main(services, argv):
    await run.main(argv, services=services)


def test_recovery_job_once_executes_due_levels(services):
    async def _run():
        alert = await services.alerts.save_alert(
            make_alert(escalation_level=1, next_escalation_at=WEDNESDAY_10AM - timedelta(minutes=3))
        )

        await run.main(["--once", "--job", "escalation-recovery"], services=services)

        stored = await services.alerts.get_alert(alert.id)
        assert stored.escalation_level == 2
        assert stored.next_escalation_at == WEDNESDAY_10AM + timedelta(minutes=5)
        assert services.escalations.get_active_escalations() == {}

    anyio.run(_run)


def test_failing_job_is_logged_and_loop_exits(services, monkeypatch, caplog):
    async def broken_scan(*, execute_due=False):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(run, "configure_logging", lambda: None)
    monkeypatch.setattr(services.orchestrator, "run_recovery_scan", broken_scan)

    anyio.run(_main, services, ["--once"])

    assert any(record.getMessage() == "job_failed" for record in caplog.records)


def test_unknown_job_name_is_rejected(services):
    with pytest.raises(SystemExit):
        anyio.run(_main, services, ["--job", "nightly-cleanup", "--once"])
