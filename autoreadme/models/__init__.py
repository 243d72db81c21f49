"""Database models."""

from .user import User
from .watched_repository import WatchedRepository
from .generation_job import GenerationJob
from .audit_log import AuditLog, AuditAction, AuditStatus

__all__ = [
    "User", "WatchedRepository", "GenerationJob",
    "AuditLog", "AuditAction", "AuditStatus",
]
