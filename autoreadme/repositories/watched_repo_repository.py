"""Watched repository persistence.

Activation and deactivation are driven by an external collaborator (the
dashboard's repository toggle); this module is where the row invariants
are enforced for it and for the pipeline.
"""

from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import update

from ..models import WatchedRepository
from ..exceptions import WatchNotFoundError
from .base import BaseRepository


class WatchedRepoRepository(BaseRepository[WatchedRepository]):
    """Repository for WatchedRepository rows."""

    model_class = WatchedRepository
    not_found_error = WatchNotFoundError

    def get_active_for_github_repo(self, github_repo_id: int) -> Optional[WatchedRepository]:
        """Active watch for a repository id, newest activation first.

        Several users may watch the same repository; the most recently
        activated one owns regeneration.
        """
        return (
            self.db.query(WatchedRepository)
            .filter(
                WatchedRepository.github_repo_id == github_repo_id,
                WatchedRepository.active.is_(True),
            )
            .order_by(WatchedRepository.created_at.desc(), WatchedRepository.id.desc())
            .first()
        )

    def get_active(self, user_id: str, github_repo_id: int) -> Optional[WatchedRepository]:
        return (
            self.db.query(WatchedRepository)
            .filter(
                WatchedRepository.user_id == user_id,
                WatchedRepository.github_repo_id == github_repo_id,
                WatchedRepository.active.is_(True),
            )
            .first()
        )

    def list_for_user(self, user_id: str) -> List[WatchedRepository]:
        return (
            self.db.query(WatchedRepository)
            .filter(WatchedRepository.user_id == user_id)
            .order_by(WatchedRepository.created_at.desc())
            .all()
        )

    def activate(
        self,
        user_id: str,
        github_repo_id: int,
        repo_name: str,
        repo_full_name: str,
        repo_owner: str,
        default_branch: str,
        webhook_id: int,
    ) -> WatchedRepository:
        """Create or reactivate a watch after its webhook was registered.

        Reactivation resets the watermark so the next push is admitted even
        if it repeats the sha seen before deactivation.
        """
        if webhook_id is None:
            raise ValueError("webhook_id is required to activate a repository")

        watch = self.get_active(user_id, github_repo_id)
        if watch is None:
            watch = (
                self.db.query(WatchedRepository)
                .filter(
                    WatchedRepository.user_id == user_id,
                    WatchedRepository.github_repo_id == github_repo_id,
                )
                .order_by(WatchedRepository.id.desc())
                .first()
            )
            if watch is None:
                watch = WatchedRepository(user_id=user_id, github_repo_id=github_repo_id)
                self.db.add(watch)
            watch.last_processed_commit = None

        watch.repo_name = repo_name
        watch.repo_full_name = repo_full_name
        watch.repo_owner = repo_owner
        watch.default_branch = default_branch
        watch.webhook_id = webhook_id
        watch.active = True
        self.db.flush()
        return watch

    def deactivate(self, watch_id: int) -> Optional[int]:
        """Deactivate a watch. Returns the webhook id the caller should deregister."""
        watch = self.get_by_id(watch_id)
        webhook_id = watch.webhook_id
        watch.active = False
        watch.webhook_id = None
        self.db.flush()
        return webhook_id

    def advance_watermark(self, watch: WatchedRepository, commit_sha: str) -> None:
        """Record ``commit_sha`` as the most recently admitted push."""
        watch.last_processed_commit = commit_sha
        self.db.flush()

    def record_generation(
        self,
        watch_id: int,
        source_commit: str,
        generated_commit: str,
        now: Optional[datetime] = None,
    ) -> None:
        """Store the outcome of a successful run.

        The counter is incremented in SQL so two concurrent runs for the same
        repository cannot lose an increment.
        """
        now = now or datetime.now(timezone.utc)
        self.db.execute(
            update(WatchedRepository)
            .where(WatchedRepository.id == watch_id)
            .values(
                last_source_commit=source_commit,
                last_generated_commit=generated_commit,
                generation_count=WatchedRepository.generation_count + 1,
                last_generated_at=now,
                updated_at=now,
            )
        )
        self.db.flush()
