"""
Worker pool for processing README regeneration jobs.

A fixed number of threads poll the generation_jobs table, each claiming one
job at a time and running the pipeline on it. The pool size bounds how hard
the service leans on GitHub and the LLM providers. Failed jobs are retried
by the queue with exponential backoff; a job whose worker dies is
redelivered once its lease expires.

The main loop also closes audit entries left "ongoing" by crashed workers.

Usage:
    python -m autoreadme.worker
"""

import logging
import signal
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Optional

import requests

from .core.config import settings as default_settings, Settings, ConfigurationError
from .core.logging_config import setup_logging, job_id_var
from .database import SessionLocal, init_db
from .exceptions import ReadmeBotError
from .services import audit_service
from .services.generation_gateway import FailoverPolicy, GenerationGateway, build_credentials
from .services.github_client import GitHubClient
from .services.job_queue import ClaimedJob, JobQueue
from .services.pipeline import PipelineOrchestrator
from .services.token_cipher import load_key

logger = logging.getLogger("autoreadme.worker")

# Seconds between stale audit sweeps
MAINTENANCE_INTERVAL = 300


class WorkerPool:
    """
    Bounded pool of polling loops.

    Args:
        queue: Source of claimed jobs.
        handler: Runs one job. Returning normally acks the job; raising
            fails it (retryable according to the exception).
        concurrency: Number of polling threads.
        poll_interval: Seconds a loop sleeps after finding the queue empty.
        maintenance: Called from the supervising loop every
            ``maintenance_interval`` seconds.
    """

    def __init__(
        self,
        queue: JobQueue,
        handler: Callable[[ClaimedJob], Any],
        concurrency: int = 2,
        poll_interval: float = 5.0,
        maintenance: Optional[Callable[[], Any]] = None,
        maintenance_interval: float = MAINTENANCE_INTERVAL,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.queue = queue
        self.handler = handler
        self.concurrency = concurrency
        self.poll_interval = poll_interval
        self.maintenance = maintenance
        self.maintenance_interval = maintenance_interval
        self._stop = threading.Event()
        self._last_maintenance = 0.0

    def process_one(self) -> bool:
        """Claim and run a single job. Returns False if the queue was empty."""
        claimed = self.queue.dequeue()
        if claimed is None:
            return False

        token = job_id_var.set(claimed.id)
        try:
            self.handler(claimed)
        except ReadmeBotError as e:
            status = self.queue.fail(claimed.id, e, retryable=e.retryable)
            logger.warning(f"Job {claimed.id} failed ({e.error_code.value}), now {status}")
        except Exception as e:
            logger.exception(f"Job {claimed.id} raised an unexpected error")
            self.queue.fail(claimed.id, e, retryable=True)
        else:
            self.queue.ack(claimed.id)
        finally:
            job_id_var.reset(token)
        return True

    def _loop(self, index: int) -> None:
        logger.info(f"Worker thread {index} started")
        while not self._stop.is_set():
            try:
                worked = self.process_one()
            except Exception as e:
                # Queue or database unavailable: back off and keep polling.
                logger.error(f"Worker error: {e}")
                worked = False
            if not worked:
                self._stop.wait(self.poll_interval)
        logger.info(f"Worker thread {index} stopped")

    def run_maintenance_if_due(self, now: Optional[float] = None) -> bool:
        if self.maintenance is None:
            return False
        now = time.monotonic() if now is None else now
        if self._last_maintenance and now - self._last_maintenance < self.maintenance_interval:
            return False
        self._last_maintenance = now
        try:
            self.maintenance()
        except Exception as e:
            logger.error(f"Maintenance task failed: {e}")
        return True

    def run_forever(self) -> None:
        """Run the polling threads until ``stop()`` or Ctrl-C."""
        logger.info(f"Worker pool started: {self.concurrency} thread(s), polling every {self.poll_interval}s")
        with ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix="readme-worker") as pool:
            futures = [pool.submit(self._loop, i) for i in range(self.concurrency)]
            try:
                while not self._stop.is_set():
                    self.run_maintenance_if_due()
                    self._stop.wait(min(self.poll_interval, self.maintenance_interval))
            except KeyboardInterrupt:
                logger.info("Worker shutting down")
                self.stop()
            for future in futures:
                future.result()
        logger.info("Worker pool stopped")

    def stop(self) -> None:
        self._stop.set()


# ---------------------------------------------------------------------------
# Composition root
# ---------------------------------------------------------------------------

def build_job_queue(config: Settings, session_factory=SessionLocal) -> JobQueue:
    return JobQueue(
        session_factory,
        max_attempts=config.job_max_attempts,
        backoff_base_seconds=config.job_backoff_base_seconds,
        backoff_max_seconds=config.job_backoff_max_seconds,
        lease_seconds=config.job_lease_seconds,
    )


def build_gateway(config: Settings, completion_fn=None) -> GenerationGateway:
    """Primary keys with the generation model first, then the fallback model's keys."""
    credentials = build_credentials(
        config.generation_model, config.get_generation_api_keys(), config.generation_api_base
    ) + build_credentials(config.fallback_model, config.get_fallback_api_keys())

    selection = []
    if config.selection_model:
        selection = build_credentials(config.selection_model, config.get_selection_api_keys())

    if not credentials:
        logger.warning("No generation credentials configured; every job will fail at the generating stage")

    return GenerationGateway(
        credentials,
        policy=FailoverPolicy(),
        selection_credentials=selection,
        max_output_tokens=config.generation_max_output_tokens,
        timeout=config.generation_timeout_seconds,
        completion_fn=completion_fn,
    )


def build_orchestrator(config: Settings, session_factory=SessionLocal, gateway: Optional[GenerationGateway] = None) -> PipelineOrchestrator:
    http = requests.Session()

    def source_factory(access_token: str, owner: str, repo: str) -> GitHubClient:
        return GitHubClient(
            access_token,
            owner,
            repo,
            api_base=config.github_api_base,
            timeout=config.source_timeout_seconds,
            max_retries=config.source_max_retries,
            session=http,
        )

    token_key = None
    if config.token_encryption_key:
        token_key = load_key(config.token_encryption_key)
    else:
        logger.warning("TOKEN_ENCRYPTION_KEY is empty; jobs will fail with auth_failed")

    return PipelineOrchestrator(
        session_factory,
        gateway or build_gateway(config),
        source_factory,
        token_key,
        budget_tokens=config.context_budget_tokens,
        readme_path=config.readme_path,
        bot_commit_message=config.bot_commit_message,
        selection_max_files=config.selection_max_files,
    )


def sweep_stale_audit_entries(config: Settings, session_factory=SessionLocal) -> int:
    db = session_factory()
    try:
        return audit_service.sweep_stale_started(db, older_than_minutes=config.audit_stale_minutes)
    finally:
        db.close()


def main(config: Optional[Settings] = None) -> None:
    """Build every component from settings and poll until interrupted."""
    config = config or default_settings
    setup_logging(log_level=config.log_level, log_format=config.log_format)

    try:
        config.validate_production_config()
    except ConfigurationError as e:
        logger.critical(f"STARTUP BLOCKED: {e}")
        raise SystemExit(1) from e

    try:
        init_db()
        orchestrator = build_orchestrator(config)
    except ValueError as e:
        logger.critical(f"STARTUP BLOCKED: {e}")
        raise SystemExit(1) from e

    queue = build_job_queue(config)
    pool = WorkerPool(
        queue,
        orchestrator.run,
        concurrency=config.worker_concurrency,
        poll_interval=config.worker_poll_interval,
        maintenance=lambda: sweep_stale_audit_entries(config),
    )

    signal.signal(signal.SIGTERM, lambda signum, frame: pool.stop())
    logger.info(f"Queue depth at startup: {queue.count_by_status()}")
    pool.run_forever()


if __name__ == "__main__":
    main()
