"""Durable job queue backed by the generation_jobs table.

Jobs are created by the webhook (inside the same transaction that advances
the repository watermark), claimed by workers, and tracked through
queued -> running -> completed | queued (retry) | dead transitions.

Delivery is at-least-once: a claim holds a lease, and a job whose worker
died is claimable again once the lease expires. Idempotency per sha is the
pipeline's job, not the queue's.
"""

import uuid
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional, Union

import sqlalchemy.exc
from sqlalchemy import and_, func, or_, update
from sqlalchemy.orm import Session

from ..exceptions import PayloadValidationError
from ..models.generation_job import GenerationJob
from ..schemas.job import RegenerationJob

logger = logging.getLogger(__name__)

# Stored error messages are capped; most tracebacks and provider errors fit.
MAX_ERROR_CHARS = 2000

# Compare-and-set claims lost to another worker before giving up this poll.
_CLAIM_CONTENTION_LIMIT = 5


@dataclass(frozen=True)
class ClaimedJob:
    """A job handed to a worker: the queue row id plus the validated payload."""

    id: str
    job: RegenerationJob
    attempts: int


class JobQueue:
    """
    Explicitly constructed queue client.

    The composition root owns the instance and passes in the session factory
    and retry policy; nothing here reads global configuration.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        max_attempts: int = 3,
        backoff_base_seconds: float = 30,
        backoff_max_seconds: float = 1800,
        lease_seconds: float = 900,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._session_factory = session_factory
        self.max_attempts = max_attempts
        self.backoff_base_seconds = backoff_base_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self.lease_seconds = lease_seconds

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    def enqueue(self, job: RegenerationJob, session: Optional[Session] = None) -> GenerationJob:
        """
        Create a queue row for ``job``, deduplicating on (repository id, sha).

        When ``session`` is given the row joins the caller's transaction and
        is only flushed; the caller commits. Otherwise the queue opens and
        commits its own session.

        Returns:
            The created or existing GenerationJob
        """
        if session is not None:
            return self._enqueue_in(session, job)

        db = self._session_factory()
        try:
            row = self._enqueue_in(db, job)
            db.commit()
            db.refresh(row)
            return row
        except sqlalchemy.exc.IntegrityError:
            # Lost an insert race against another delivery of the same push.
            db.rollback()
            return self._find(db, job.github_repo_id, job.commit_sha)
        finally:
            db.close()

    def _enqueue_in(self, db: Session, job: RegenerationJob) -> GenerationJob:
        existing = self._find(db, job.github_repo_id, job.commit_sha)
        if existing:
            logger.info(
                "Job already exists for %s at %s: %s",
                job.repo_full_name, job.commit_sha[:8], existing.id,
            )
            return existing

        row = GenerationJob(
            id=str(uuid.uuid4()),
            job_kind=job.kind,
            github_repo_id=job.github_repo_id,
            commit_sha=job.commit_sha,
            payload=job.to_json(),
            status="queued",
            attempts=0,
        )
        db.add(row)
        db.flush()

        logger.info(f"Enqueued job {row.id} for {job.repo_full_name} (commit: {job.commit_sha[:8]})")
        return row

    def has_job(self, db: Session, github_repo_id: int, commit_sha: str) -> bool:
        """True if ``commit_sha`` was ever enqueued for the repository, in any state."""
        return self._find(db, github_repo_id, commit_sha) is not None

    @staticmethod
    def _find(db: Session, github_repo_id: int, commit_sha: str) -> Optional[GenerationJob]:
        return (
            db.query(GenerationJob)
            .filter(
                GenerationJob.github_repo_id == github_repo_id,
                GenerationJob.commit_sha == commit_sha,
            )
            .first()
        )

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------

    def dequeue(self, now: Optional[datetime] = None) -> Optional[ClaimedJob]:
        """
        Claim the oldest eligible job.

        Eligible means queued and due, or running with an expired lease
        (the previous worker crashed). The claim is a compare-and-set UPDATE
        on (id, status, attempts), so two workers never both win the same
        delivery. Malformed payloads are moved to dead without being handed
        out.

        Returns:
            The claimed job, or None if nothing is eligible
        """
        now = now or datetime.now(timezone.utc)
        lease_until = now + timedelta(seconds=self.lease_seconds)

        db = self._session_factory()
        try:
            for _ in range(_CLAIM_CONTENTION_LIMIT):
                candidate = (
                    db.query(GenerationJob)
                    .filter(
                        or_(
                            and_(GenerationJob.status == "queued", GenerationJob.available_at <= now),
                            and_(GenerationJob.status == "running", GenerationJob.lease_expires_at < now),
                        )
                    )
                    .order_by(GenerationJob.available_at.asc(), GenerationJob.created_at.asc())
                    .first()
                )
                if not candidate:
                    return None

                job_id = candidate.id
                previous_status = candidate.status
                previous_attempts = candidate.attempts
                payload = candidate.payload

                if previous_status == "running" and previous_attempts >= self.max_attempts:
                    # Crashed on its final attempt: nothing left to redeliver.
                    if self._transition(
                        db, job_id, previous_status, previous_attempts,
                        status="dead",
                        error_message="Lease expired on final attempt (worker crashed)",
                        lease_expires_at=None,
                        completed_at=now,
                    ):
                        logger.warning(f"Job {job_id} abandoned after {previous_attempts} attempt(s)")
                    continue

                claimed = self._transition(
                    db, job_id, previous_status, previous_attempts,
                    status="running",
                    attempts=previous_attempts + 1,
                    started_at=now,
                    lease_expires_at=lease_until,
                )
                if not claimed:
                    continue

                if previous_status == "running":
                    logger.warning(f"Redelivering job {job_id} after lease expiry")

                try:
                    job = RegenerationJob.from_json(payload)
                except PayloadValidationError as e:
                    self._transition(
                        db, job_id, "running", previous_attempts + 1,
                        status="dead",
                        error_message=e.message,
                        lease_expires_at=None,
                        completed_at=now,
                    )
                    logger.error(f"Job {job_id} has a malformed payload, moved to dead", extra={"details": e.details})
                    continue

                logger.info(f"Claimed job {job_id} for {job.repo_full_name} (attempt {previous_attempts + 1})")
                return ClaimedJob(id=job_id, job=job, attempts=previous_attempts + 1)

            logger.debug("Gave up claiming after repeated contention")
            return None
        finally:
            db.close()

    def _transition(self, db: Session, job_id: str, expected_status: str, expected_attempts: int, **values) -> bool:
        """Compare-and-set update. Returns True if this caller won."""
        result = db.execute(
            update(GenerationJob)
            .where(
                GenerationJob.id == job_id,
                GenerationJob.status == expected_status,
                GenerationJob.attempts == expected_attempts,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        db.commit()
        return result.rowcount == 1

    def ack(self, job_id: str, now: Optional[datetime] = None) -> None:
        """Mark a job as successfully completed."""
        now = now or datetime.now(timezone.utc)
        db = self._session_factory()
        try:
            job = self._get_or_raise(db, job_id)
            job.status = "completed"
            job.completed_at = now
            job.lease_expires_at = None
            db.commit()
            logger.info(f"Job {job_id} completed successfully")
        finally:
            db.close()

    def fail(
        self,
        job_id: str,
        error: Union[BaseException, str],
        retryable: bool = True,
        now: Optional[datetime] = None,
    ) -> str:
        """
        Record a failed delivery.

        Re-queues the job after an exponential backoff, or moves it to dead
        when the error is not retryable or attempts are exhausted.

        Args:
            job_id: The job to mark as failed
            error: The exception (or a description of what went wrong)
            retryable: False sends the job straight to dead
            now: Current time (injectable for testing)

        Returns:
            The job's new status ("queued" or "dead")
        """
        now = now or datetime.now(timezone.utc)
        error_message = str(error)[-MAX_ERROR_CHARS:] or type(error).__name__

        db = self._session_factory()
        try:
            job = self._get_or_raise(db, job_id)
            job.lease_expires_at = None

            if retryable and job.attempts < self.max_attempts:
                delay = self.backoff_delay(job.attempts)
                retry_after = getattr(error, "retry_after", None)
                if retry_after:
                    delay = max(delay, float(retry_after))
                job.status = "queued"
                job.available_at = now + timedelta(seconds=delay)
                job.error_message = f"Retry after: {error_message}"
                logger.info(f"Job {job_id} failed, re-queuing in {delay:.0f}s (attempt {job.attempts}/{self.max_attempts})")
            else:
                job.status = "dead"
                job.error_message = error_message
                job.completed_at = now
                logger.warning(f"Job {job_id} failed permanently: {error_message[:200]}")

            status = job.status
            db.commit()
            return status
        finally:
            db.close()

    def backoff_delay(self, attempts: int) -> float:
        """Seconds before redelivery after ``attempts`` failed deliveries."""
        exponent = max(attempts - 1, 0)
        return float(min(self.backoff_base_seconds * (2 ** exponent), self.backoff_max_seconds))

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get(self, job_id: str) -> Optional[GenerationJob]:
        """Get a specific job by ID (detached snapshot)."""
        db = self._session_factory()
        try:
            job = db.get(GenerationJob, job_id)
            if job is not None:
                db.expunge(job)
            return job
        finally:
            db.close()

    def count_by_status(self) -> Dict[str, int]:
        db = self._session_factory()
        try:
            rows = (
                db.query(GenerationJob.status, func.count(GenerationJob.id))
                .group_by(GenerationJob.status)
                .all()
            )
            return {status: count for status, count in rows}
        finally:
            db.close()

    @staticmethod
    def _get_or_raise(db: Session, job_id: str) -> GenerationJob:
        job = db.get(GenerationJob, job_id)
        if not job:
            raise ValueError(f"Job not found: {job_id}")
        return job
