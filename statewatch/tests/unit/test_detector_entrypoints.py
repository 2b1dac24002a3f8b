from __future__ import annotations

from datetime import datetime, timezone

from scripts import detector_run as detector_run_script
from statewatch.services.detector import DetectorSummary
from statewatch.workers import detector_worker


def test_cli_parser_accepts_tenant_and_since() -> None:
    args = detector_run_script._build_parser().parse_args(
        ["--tenant", "t1", "--since", "2026-03-01T10:00:00+00:00"]
    )
    assert args.tenant == "t1"
    assert args.since == datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc)
    defaults = detector_run_script._build_parser().parse_args([])
    assert defaults.tenant is None
    assert defaults.since is None


def test_worker_registers_job_and_daily_cron() -> None:
    settings = detector_worker.WorkerSettings
    assert detector_worker.run_detector_job in settings.functions
    assert settings.queue_name == "detector"
    (cron_job,) = settings.cron_jobs
    assert cron_job.coroutine is detector_worker.run_scheduled_detector
    assert cron_job.hour == {7}
    assert cron_job.minute == {0}


async def test_worker_job_parses_since_and_returns_summary(monkeypatch) -> None:
    calls: list[dict] = []

    async def _fake_run_detector(**kwargs) -> DetectorSummary:
        calls.append(kwargs)
        return DetectorSummary(invocation_id="inv-1")

    monkeypatch.setattr(detector_worker, "run_detector", _fake_run_detector)
    result = await detector_worker.run_detector_job(
        {"job_id": "job-1"}, tenant_id="t1", since="2026-03-01T10:00:00+00:00"
    )
    assert calls == [
        {"tenant_id": "t1", "since": datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc)}
    ]
    assert result["invocation_id"] == "inv-1"
    assert result["notifications_created"] == 0
