"""Watched repository model: one row per (user, repository) activation."""

from datetime import datetime, timezone

from sqlalchemy import Column, String, Integer, BigInteger, Boolean, DateTime, ForeignKey, Index, text
from ..database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WatchedRepository(Base):
    """
    A repository whose pushes trigger README regeneration.

    Invariants (enforced by WatchedRepoRepository):
      - at most one active row per (user_id, github_repo_id), backed by a
        partial unique index
      - webhook_id is set iff active is true
      - last_processed_commit (the watermark) only moves forward per admitted
        push and is reset only on reactivation
    """

    __tablename__ = "watched_repositories"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(50), ForeignKey("users.user_id", ondelete="CASCADE"), nullable=False, index=True)

    # Host-assigned identity (immutable) and display fields
    github_repo_id = Column(BigInteger, nullable=False, index=True)
    repo_name = Column(String(255), nullable=False)
    repo_full_name = Column(String(512), nullable=False)
    repo_owner = Column(String(255), nullable=False)
    default_branch = Column(String(255), nullable=False, default="main")

    # Assigned by GitHub when the webhook is registered
    webhook_id = Column(BigInteger, nullable=True)
    active = Column(Boolean, nullable=False, default=True)

    # Watermark: sha of the most recently admitted push
    last_processed_commit = Column(String(40), nullable=True)
    # Commit the pipeline itself produced on its last successful run
    last_generated_commit = Column(String(40), nullable=True)
    # Push sha that the last successful generation was built from
    last_source_commit = Column(String(40), nullable=True)

    generation_count = Column(Integer, nullable=False, default=0)
    last_generated_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index(
            "uq_watched_repositories_active",
            "user_id",
            "github_repo_id",
            unique=True,
            postgresql_where=text("active"),
            sqlite_where=text("active = 1"),
        ),
    )
