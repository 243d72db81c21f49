"""Audit log model: the user-visible record of pipeline activity."""

from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import Column, String, Integer, Text, DateTime
from ..database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuditAction(str, Enum):
    GENERATION_STARTED = "generation_started"
    GENERATION_SUCCEEDED = "generation_succeeded"
    GENERATION_FAILED = "generation_failed"
    REPO_CONNECTED = "repo_connected"
    AUTH_FAILED = "auth_failed"
    COMMIT_PUSHED = "commit_pushed"


class AuditStatus(str, Enum):
    ONGOING = "ongoing"
    SUCCESS = "success"
    FAILED = "failed"


class AuditLog(Base):
    """Immutable record of pipeline activity, keyed by user.

    Written by the service layer, never modified. ``job_id`` links a
    generation_started entry to its terminal successor.
    """

    __tablename__ = "audit_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(50), nullable=False, index=True)
    repo_name = Column(String(255), nullable=False)
    repo_owner = Column(String(255), nullable=True)
    commit_id = Column(String(40), nullable=True)
    job_id = Column(String(50), nullable=True, index=True)
    action = Column(String(50), nullable=False)
    status = Column(String(20), nullable=False, default=AuditStatus.ONGOING.value)
    message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
