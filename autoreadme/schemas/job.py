"""Queue payload schema.

The payload is validated on both sides of the queue: when it is enqueued
and again when a worker claims it, so a malformed row never reaches the
pipeline.
"""

import json
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..exceptions import PayloadValidationError

JOB_KIND = "regenerate-readme"


class RegenerationJob(BaseModel):
    """Unit of work enqueued per qualifying push."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    kind: Literal["regenerate-readme"] = JOB_KIND
    user_id: str = Field(min_length=1)
    github_repo_id: int = Field(gt=0)
    repo_name: str = Field(min_length=1)
    repo_owner: str = Field(min_length=1)
    default_branch: str = Field(min_length=1)
    commit_sha: str = Field(pattern=r"^[0-9a-f]{7,40}$")

    @property
    def repo_full_name(self) -> str:
        return f"{self.repo_owner}/{self.repo_name}"

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, raw: str) -> "RegenerationJob":
        """Parse a stored payload. Raises PayloadValidationError when malformed."""
        try:
            return cls.model_validate(json.loads(raw))
        except (json.JSONDecodeError, TypeError, ValidationError) as e:
            raise PayloadValidationError(
                "Malformed regeneration job payload",
                details={"error": str(e)[:500]},
            ) from e
