"""GitHub REST client used by the pipeline (the source gateway).

Deep module: callers get typed results back; retries, auth headers and
error classification are handled internally. Every failure leaves this
module as one of the ReadmeBotError types:

    401, 403 (no permission)     -> AuthenticationError
    429, 403 with quota at zero  -> RateLimitError
    409 / 422 on write           -> PreconditionFailedError
    413                          -> PayloadTooLargeError
    anything else, timeouts      -> SourceGatewayError

Only idempotent reads are retried; writes are attempted once and left to
the job queue's retry policy.
"""

import base64
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence
from urllib.parse import quote

import requests

from ..exceptions import (
    AuthenticationError,
    PayloadTooLargeError,
    PreconditionFailedError,
    RateLimitError,
    ReadmeBotError,
    SourceGatewayError,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CommitFile:
    filename: str
    status: str
    additions: int = 0
    deletions: int = 0
    previous_filename: Optional[str] = None


@dataclass(frozen=True)
class CommitInfo:
    sha: str
    message: str
    files: List[CommitFile] = field(default_factory=list)
    additions: int = 0
    deletions: int = 0


@dataclass(frozen=True)
class TreeEntry:
    path: str
    type: str  # "blob" or "tree"
    size: Optional[int] = None
    sha: Optional[str] = None


@dataclass(frozen=True)
class RepoTree:
    sha: Optional[str]
    entries: List[TreeEntry] = field(default_factory=list)
    truncated: bool = False


@dataclass(frozen=True)
class FileContent:
    path: str
    sha: str
    content: str
    size: int = 0


@dataclass(frozen=True)
class WriteResult:
    commit_sha: str
    content_sha: Optional[str] = None


class GitHubClient:
    """Client for one repository, acting with one user's access token.

    Args:
        access_token: OAuth token of the repository owner.
        owner: Repository owner login.
        repo: Repository name.
        api_base: REST API base URL.
        timeout: Seconds per HTTP call.
        max_retries: Attempts for reads (5xx and network errors only).
        session: Shared ``requests.Session``; a new one is created if omitted.
        sleep: Injectable for tests.
    """

    def __init__(
        self,
        access_token: str,
        owner: str,
        repo: str,
        api_base: str = "https://api.github.com",
        timeout: float = 30,
        max_retries: int = 3,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if not access_token:
            raise AuthenticationError("No GitHub access token stored for this user")
        self.owner = owner
        self.repo = repo
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.session = session or requests.Session()
        self._sleep = sleep
        self._headers = {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
            "User-Agent": "autoreadme",
        }

    @property
    def _repo_url(self) -> str:
        return f"{self.api_base}/repos/{quote(self.owner, safe='')}/{quote(self.repo, safe='')}"

    # ----- read operations -------------------------------------------------

    def get_commit(self, sha: str) -> CommitInfo:
        """Fetch a commit with its changed files and line stats."""
        data = self._request("GET", f"{self._repo_url}/commits/{quote(sha, safe='')}", retry=True).json()

        files = [
            CommitFile(
                filename=f.get("filename", ""),
                status=f.get("status", "modified"),
                additions=f.get("additions", 0) or 0,
                deletions=f.get("deletions", 0) or 0,
                previous_filename=f.get("previous_filename"),
            )
            for f in data.get("files") or []
        ]
        stats = data.get("stats") or {}
        return CommitInfo(
            sha=data.get("sha", sha),
            message=(data.get("commit") or {}).get("message", ""),
            files=files,
            additions=stats.get("additions", 0) or 0,
            deletions=stats.get("deletions", 0) or 0,
        )

    def get_tree(self, branch: str) -> RepoTree:
        """Fetch the full recursive tree of ``branch``."""
        url = f"{self._repo_url}/git/trees/{quote(branch, safe='')}"
        data = self._request("GET", url, params={"recursive": "1"}, retry=True).json()

        entries = [
            TreeEntry(path=item["path"], type=item.get("type", "blob"), size=item.get("size"), sha=item.get("sha"))
            for item in data.get("tree") or []
            if item.get("path")
        ]
        truncated = bool(data.get("truncated", False))
        if truncated:
            logger.warning(f"Tree for {self.owner}/{self.repo}@{branch} was truncated by GitHub")
        return RepoTree(sha=data.get("sha"), entries=entries, truncated=truncated)

    def get_file_content(self, path: str, ref: str) -> Optional[FileContent]:
        """Fetch a file's decoded text and blob sha. Returns None if absent."""
        url = f"{self._repo_url}/contents/{quote(path, safe='/')}"
        response = self._request("GET", url, params={"ref": ref}, retry=True, allow_404=True)
        if response.status_code == 404:
            return None

        data = response.json()
        if isinstance(data, list) or data.get("type") not in (None, "file"):
            # Directory or submodule at this path.
            return None

        raw = data.get("content") or ""
        if data.get("encoding", "base64") == "base64":
            text = base64.b64decode(raw).decode("utf-8", errors="replace")
        else:
            text = raw
        return FileContent(path=data.get("path", path), sha=data["sha"], content=text, size=data.get("size", len(text)))

    # ----- write operations ------------------------------------------------

    def write_file(
        self,
        path: str,
        content: str,
        message: str,
        branch: str,
        previous_sha: Optional[str] = None,
    ) -> WriteResult:
        """Create or update a file as a single commit.

        ``previous_sha`` is the blob sha observed at read time (None for a new
        file). GitHub rejects the write with 409/422 if the file changed
        since; that surfaces as PreconditionFailedError, never as a forced
        overwrite.
        """
        payload = {
            "message": message,
            "content": base64.b64encode(content.encode("utf-8")).decode("ascii"),
            "branch": branch,
        }
        if previous_sha:
            payload["sha"] = previous_sha

        url = f"{self._repo_url}/contents/{quote(path, safe='/')}"
        try:
            data = self._request("PUT", url, json=payload, retry=False).json()
        except SourceGatewayError as exc:
            if exc.upstream_status in (409, 422):
                raise PreconditionFailedError(path, previous_sha) from exc
            raise

        commit_sha = (data.get("commit") or {}).get("sha")
        if not commit_sha:
            raise SourceGatewayError(f"GitHub returned no commit for write of {path}")
        return WriteResult(commit_sha=commit_sha, content_sha=(data.get("content") or {}).get("sha"))

    def create_webhook(self, callback_url: str, secret: str, events: Sequence[str] = ("push",)) -> int:
        """Register a JSON webhook. Returns the id GitHub assigned."""
        payload = {
            "name": "web",
            "active": True,
            "events": list(events),
            "config": {
                "url": callback_url,
                "content_type": "json",
                "secret": secret,
                "insecure_ssl": "0",
            },
        }
        data = self._request("POST", f"{self._repo_url}/hooks", json=payload, retry=False).json()
        logger.info(f"Registered webhook {data['id']} on {self.owner}/{self.repo}")
        return int(data["id"])

    def delete_webhook(self, webhook_id: int) -> bool:
        """Deregister a webhook. Returns False if it was already gone."""
        response = self._request(
            "DELETE", f"{self._repo_url}/hooks/{int(webhook_id)}", retry=False, allow_404=True
        )
        if response.status_code == 404:
            logger.info(f"Webhook {webhook_id} on {self.owner}/{self.repo} was already removed")
            return False
        return True

    # ----- transport -------------------------------------------------------

    def _request(self, method: str, url: str, retry: bool, allow_404: bool = False, **kwargs) -> requests.Response:
        attempts = self.max_retries if retry else 1

        for attempt in range(attempts):
            try:
                response = self.session.request(
                    method, url, headers=self._headers, timeout=self.timeout, **kwargs
                )
            except requests.exceptions.RequestException as exc:
                logger.warning("GitHub %s %s failed: %s: %s", method, url, type(exc).__name__, exc)
                if attempt < attempts - 1:
                    self._sleep(2 ** attempt)
                    continue
                raise SourceGatewayError(f"GitHub {method} failed: {type(exc).__name__}") from exc

            if response.status_code < 400 or (allow_404 and response.status_code == 404):
                return response

            if response.status_code >= 500 and attempt < attempts - 1:
                logger.warning("GitHub %s %s returned %d, retrying", method, url, response.status_code)
                self._sleep(2 ** attempt)
                continue

            raise self._classify(response)

        # Unreachable: the loop either returns or raises.
        raise SourceGatewayError(f"GitHub {method} failed")

    @staticmethod
    def _classify(response: requests.Response) -> ReadmeBotError:
        status = response.status_code
        try:
            detail = (response.json() or {}).get("message", "")
        except ValueError:
            detail = response.text[:200]

        if status == 401:
            return AuthenticationError(f"GitHub rejected the access token: {detail}")

        remaining = response.headers.get("X-RateLimit-Remaining")
        if status == 429 or (status == 403 and remaining == "0"):
            return RateLimitError(f"GitHub rate limit exceeded: {detail}", retry_after=_retry_after(response))

        if status == 403:
            return AuthenticationError(f"GitHub token lacks permission: {detail}")

        if status == 413:
            return PayloadTooLargeError(f"GitHub rejected the request body as too large: {detail}")

        return SourceGatewayError(f"GitHub returned {status}: {detail}", upstream_status=status)


def _retry_after(response: requests.Response) -> Optional[float]:
    """Seconds until the rate limit resets, from Retry-After or X-RateLimit-Reset."""
    retry_after = response.headers.get("Retry-After")
    if retry_after and retry_after.isdigit():
        return float(retry_after)
    reset = response.headers.get("X-RateLimit-Reset")
    if reset and reset.isdigit():
        return max(float(reset) - time.time(), 0.0)
    return None
