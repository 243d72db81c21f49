"""Generation job model: the durable row behind each queued RegenerationJob."""

from datetime import datetime, timezone

from sqlalchemy import Column, String, Text, Integer, BigInteger, DateTime, UniqueConstraint
from ..database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class GenerationJob(Base):
    """
    Queue record for one README regeneration.

    Status transitions: queued -> running -> completed | queued (retry) | dead
    A running job whose lease expired is claimable again (crash redelivery).
    """

    __tablename__ = "generation_jobs"

    # Primary key (UUID format)
    id = Column(String(50), primary_key=True)

    # Tag of the payload schema stored in ``payload``
    job_kind = Column(String(50), nullable=False)

    # Job identity: (repository id, commit sha)
    github_repo_id = Column(BigInteger, nullable=False)
    commit_sha = Column(String(40), nullable=False)

    # JSON-encoded RegenerationJob
    payload = Column(Text, nullable=False)

    # Job lifecycle
    # Allowed values: queued, running, completed, dead
    status = Column(String(20), nullable=False, default="queued", index=True)
    attempts = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)

    # Scheduling
    available_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    lease_expires_at = Column(DateTime(timezone=True), nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("github_repo_id", "commit_sha", name="uq_generation_jobs_repo_commit"),
    )
