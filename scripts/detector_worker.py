from __future__ import annotations

from arq.worker import run_worker

from statewatch.core.logging import configure_logging
from statewatch.workers.detector_worker import WorkerSettings


def main() -> None:
    # Boot the arq worker that owns the daily detector cron and on-demand jobs.
    configure_logging()
    run_worker(WorkerSettings)


if __name__ == "__main__":
    main()
