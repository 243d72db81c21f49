"""Data access layer."""

from .base import BaseRepository
from .watched_repo_repository import WatchedRepoRepository

__all__ = ["BaseRepository", "WatchedRepoRepository"]
