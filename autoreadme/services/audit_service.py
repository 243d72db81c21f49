"""Audit logging service: the user-visible record of pipeline activity.

Entries are immutable. The pipeline writes a started entry and exactly one
terminal entry per delivery; the dashboard (an external collaborator) reads
them back per user.

Usage in the pipeline:
    audit_service.log(db, user_id="abc", action=AuditAction.GENERATION_STARTED,
                      status=AuditStatus.ONGOING, repo_name="api", repo_owner="octo",
                      commit_id=sha, job_id=job.id)
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Union

import sqlalchemy.exc
from sqlalchemy import and_, exists
from sqlalchemy.orm import Session, aliased

from ..models.audit_log import AuditLog, AuditAction, AuditStatus

logger = logging.getLogger(__name__)

_TERMINAL_ACTIONS = (AuditAction.GENERATION_SUCCEEDED.value, AuditAction.GENERATION_FAILED.value)

# Messages are shown in the dashboard; long provider errors are cut.
MAX_MESSAGE_CHARS = 1000


def _value(enum_or_str: Union[AuditAction, AuditStatus, str]) -> str:
    return enum_or_str.value if hasattr(enum_or_str, "value") else str(enum_or_str)


def log(
    db: Session,
    user_id: str,
    action: Union[AuditAction, str],
    status: Union[AuditStatus, str],
    repo_name: str,
    repo_owner: Optional[str] = None,
    commit_id: Optional[str] = None,
    job_id: Optional[str] = None,
    message: Optional[str] = None,
) -> Optional[AuditLog]:
    """Write an audit log entry. Never raises; audit failures are logged and rolled back."""
    try:
        entry = AuditLog(
            user_id=user_id,
            action=_value(action),
            status=_value(status),
            repo_name=repo_name,
            repo_owner=repo_owner,
            commit_id=commit_id,
            job_id=job_id,
            message=message[:MAX_MESSAGE_CHARS] if message else None,
        )
        db.add(entry)
        db.commit()
        return entry
    except sqlalchemy.exc.SQLAlchemyError as e:
        logger.warning("Failed to write audit log: %s", e)
        db.rollback()
        return None


def get_by_user(db: Session, user_id: str, limit: int = 100) -> list[AuditLog]:
    """Get audit log entries for a specific user, newest first."""
    return (
        db.query(AuditLog)
        .filter(AuditLog.user_id == user_id)
        .order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
        .limit(limit)
        .all()
    )


def get_by_job(db: Session, job_id: str) -> list[AuditLog]:
    """Get every entry written for one job, in write order."""
    return (
        db.query(AuditLog)
        .filter(AuditLog.job_id == job_id)
        .order_by(AuditLog.id.asc())
        .all()
    )


def sweep_stale_started(db: Session, older_than_minutes: int = 60, now: Optional[datetime] = None) -> int:
    """Close started entries that never got a terminal successor.

    A worker that dies mid-pipeline leaves its started entry "ongoing".
    After ``older_than_minutes`` a generation_failed entry is appended for
    it; the started entry itself is never modified. A started entry counts
    as closed once any terminal entry for the same job follows it, and a
    job with several stale started entries gets a single closing entry.

    Returns the number of entries appended. Never raises.
    """
    if older_than_minutes <= 0:
        return 0

    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(minutes=older_than_minutes)
    terminal = aliased(AuditLog)

    try:
        stale = (
            db.query(AuditLog)
            .filter(
                AuditLog.action == AuditAction.GENERATION_STARTED.value,
                AuditLog.job_id.isnot(None),
                AuditLog.created_at < cutoff,
                ~exists().where(
                    and_(
                        terminal.job_id == AuditLog.job_id,
                        terminal.action.in_(_TERMINAL_ACTIONS),
                        terminal.id > AuditLog.id,
                    )
                ),
            )
            .order_by(AuditLog.id.asc())
            .all()
        )

        closed_jobs = set()
        for entry in stale:
            if entry.job_id in closed_jobs:
                continue
            closed_jobs.add(entry.job_id)
            db.add(AuditLog(
                user_id=entry.user_id,
                repo_name=entry.repo_name,
                repo_owner=entry.repo_owner,
                commit_id=entry.commit_id,
                job_id=entry.job_id,
                action=AuditAction.GENERATION_FAILED.value,
                status=AuditStatus.FAILED.value,
                message=f"abandoned: no outcome recorded within {older_than_minutes} minutes (worker likely stopped)",
            ))
        db.commit()

        if closed_jobs:
            logger.info(f"Closed {len(closed_jobs)} abandoned generation(s)")
        return len(closed_jobs)
    except sqlalchemy.exc.SQLAlchemyError as e:
        logger.warning("Failed to sweep stale audit entries: %s", e)
        db.rollback()
        return 0


def purge_old_entries(db: Session, days: int = 365) -> int:
    """Delete audit log entries older than `days`. Returns count of deleted rows.

    Skipped when days <= 0 (keep forever). Never raises; logs failures.
    """
    if days <= 0:
        return 0

    cutoff = datetime.now(timezone.utc) - timedelta(days=days)
    try:
        count = db.query(AuditLog).filter(AuditLog.created_at < cutoff).delete(synchronize_session=False)
        db.commit()
        return count
    except sqlalchemy.exc.SQLAlchemyError as e:
        logger.warning("Failed to purge audit log: %s", e)
        db.rollback()
        return 0
