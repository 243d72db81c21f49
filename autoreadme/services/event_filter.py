"""Decide whether a verified push event becomes a regeneration job.

Rules, in order:
    1. not a push event                          -> ignored-event-type
    2. head commit message carries a loop marker -> self-authored
    3. no active watch for the repository        -> not-watched
    4. no head commit (branch deletion)          -> empty-push
    5. ref is not the default branch             -> ignored-branch
    6. head sha equals the watermark             -> duplicate-delivery

``admit`` advances the watermark and enqueues the job in the same database
transaction, so a crash can neither drop a push nor enqueue it twice.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Sequence

import sqlalchemy.exc
from sqlalchemy.orm import Session

from ..repositories import WatchedRepoRepository
from ..schemas.job import RegenerationJob
from ..schemas.webhook import PushEvent
from .job_queue import JobQueue

logger = logging.getLogger(__name__)

IGNORED_EVENT_TYPE = "ignored-event-type"
SELF_AUTHORED = "self-authored"
NOT_WATCHED = "not-watched"
EMPTY_PUSH = "empty-push"
IGNORED_BRANCH = "ignored-branch"
DUPLICATE_DELIVERY = "duplicate-delivery"


@dataclass(frozen=True)
class FilterDecision:
    enqueue: bool
    reason: Optional[str] = None
    job: Optional[RegenerationJob] = None


def contains_loop_marker(message: str, markers: Sequence[str]) -> bool:
    """Case-insensitive substring match of any marker in ``message``."""
    lowered = (message or "").lower()
    return any(marker.lower() in lowered for marker in markers if marker)


class EventFilter:
    """Applies the admission rules against the watched-repository table."""

    def __init__(self, queue: JobQueue, loop_markers: Sequence[str]):
        self.queue = queue
        self.loop_markers = list(loop_markers)

    def should_enqueue(self, db: Session, event_type: str, event: PushEvent) -> FilterDecision:
        """Evaluate the rules without side effects."""
        if event_type != "push":
            return FilterDecision(False, IGNORED_EVENT_TYPE)

        if contains_loop_marker(event.head_message, self.loop_markers):
            return FilterDecision(False, SELF_AUTHORED)

        watch = WatchedRepoRepository(db).get_active_for_github_repo(event.repository.id)
        if watch is None:
            return FilterDecision(False, NOT_WATCHED)

        head_sha = event.head_sha
        if not head_sha:
            return FilterDecision(False, EMPTY_PUSH)

        default_branch = watch.default_branch or event.repository.default_branch
        if default_branch and event.branch != default_branch:
            return FilterDecision(False, IGNORED_BRANCH)

        head_sha = head_sha.lower()
        if watch.last_processed_commit and watch.last_processed_commit.lower() == head_sha:
            return FilterDecision(False, DUPLICATE_DELIVERY)
        # An older push redelivered after a newer one must not move the watermark back.
        if self.queue.has_job(db, watch.github_repo_id, head_sha):
            return FilterDecision(False, DUPLICATE_DELIVERY)

        job = RegenerationJob(
            user_id=watch.user_id,
            github_repo_id=watch.github_repo_id,
            repo_name=watch.repo_name,
            repo_owner=watch.repo_owner,
            default_branch=default_branch or "main",
            commit_sha=head_sha,
        )
        return FilterDecision(True, None, job)

    def admit(self, db: Session, event_type: str, event: PushEvent) -> FilterDecision:
        """
        Run the rules and, on a pass, advance the watermark and enqueue.

        Both writes commit together. A concurrent delivery of the same push
        that wins the insert race surfaces here as an IntegrityError and is
        reported as a duplicate.
        """
        decision = self.should_enqueue(db, event_type, event)
        if not decision.enqueue:
            logger.info(
                "Push ignored",
                extra={"reason": decision.reason, "repo_id": event.repository.id, "event_type": event_type},
            )
            return decision

        job = decision.job
        repo = WatchedRepoRepository(db)
        watch = repo.get_active_for_github_repo(job.github_repo_id)
        try:
            repo.advance_watermark(watch, job.commit_sha)
            row = self.queue.enqueue(job, session=db)
            db.commit()
        except sqlalchemy.exc.IntegrityError:
            db.rollback()
            logger.info(f"Concurrent delivery for {job.repo_full_name} at {job.commit_sha[:8]}")
            return FilterDecision(False, DUPLICATE_DELIVERY)
        except Exception:
            db.rollback()
            raise

        logger.info(
            f"Push admitted for {job.repo_full_name} at {job.commit_sha[:8]}",
            extra={"job_id": row.id, "user_id": job.user_id},
        )
        return decision
