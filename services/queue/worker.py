"""Entry point for the reconciliation worker.

    python -m services.queue.worker

``arq services.queue.tasks.WorkerSettings`` also works, but skips the
queue limits from APP_QUEUE_MAX_JOBS / APP_QUEUE_JOB_TIMEOUT.
"""

import logging

from arq import run_worker

from services.queue.tasks import WorkerSettings
from services.shared.config import Settings, get_settings

logger = logging.getLogger(__name__)


def configure_worker(settings: Settings) -> type[WorkerSettings]:
    """Apply queue limits and the Redis DSN to the worker class."""
    WorkerSettings.redis_settings = WorkerSettings.get_redis_settings()
    WorkerSettings.max_jobs = settings.queue_max_jobs
    WorkerSettings.job_timeout = settings.queue_job_timeout
    return WorkerSettings


def main() -> None:
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    worker_settings = configure_worker(settings)
    logger.info(
        f"Reconciliation worker on {settings.redis_url}: "
        f"max_jobs={worker_settings.max_jobs}, timeout={worker_settings.job_timeout}s, "
        f"merge retries={settings.merge_conflict_retries}"
    )
    run_worker(worker_settings)  # type: ignore[arg-type]


if __name__ == "__main__":
    main()
