"""GitHub webhook payload and response schemas.

Only the fields the pipeline reads are modelled; everything else in the
envelope is ignored.
"""

from pydantic import BaseModel, Field
from typing import Literal, Optional

# Full or abbreviated hex object id, either case.
COMMIT_SHA_PATTERN = r"^[0-9a-fA-F]{7,40}$"


class RepositoryOwner(BaseModel):
    login: Optional[str] = None
    # Push payloads carry ``name`` instead of ``login`` for the owner.
    name: Optional[str] = None


class PushRepository(BaseModel):
    id: int
    name: str
    full_name: str
    owner: RepositoryOwner = Field(default_factory=RepositoryOwner)
    default_branch: Optional[str] = None


class PushCommit(BaseModel):
    id: str = Field(pattern=COMMIT_SHA_PATTERN)
    message: str = ""


class PushEvent(BaseModel):
    """Subset of the GitHub ``push`` event envelope."""

    ref: str = ""
    after: Optional[str] = Field(default=None, pattern=COMMIT_SHA_PATTERN)
    deleted: bool = False
    repository: PushRepository
    head_commit: Optional[PushCommit] = None

    @property
    def head_sha(self) -> Optional[str]:
        if self.head_commit:
            return self.head_commit.id
        if self.after and not self.deleted and set(self.after) != {"0"}:
            return self.after
        return None

    @property
    def head_message(self) -> str:
        return self.head_commit.message if self.head_commit else ""

    @property
    def branch(self) -> str:
        prefix = "refs/heads/"
        return self.ref[len(prefix):] if self.ref.startswith(prefix) else self.ref


class WebhookResponse(BaseModel):
    """Response after receiving a webhook.

    Deliberately carries no filter reason: GitHub (and anyone replaying
    deliveries) only learns whether the event was accepted.
    """
    status: Literal["accepted", "ignored"]
