"""README regeneration pipeline: one claimed job in, one README commit out.

Stages run in a fixed order:

    STARTED -> FETCHING_COMMIT -> FETCHING_TREE -> FETCHING_README
            -> SELECTING_CONTEXT -> GENERATING -> COMMITTING -> SUCCEEDED

Progress between stages lives in memory only. The durable checkpoints are
the generation_started audit entry and the terminal entry. On failure the
terminal entry records the cause and the exception is re-raised so the job
queue's retry policy decides about redelivery.

Before starting, a delivery is skipped when it can no longer produce a
useful commit: the watch is gone, the sha was already applied, or a newer
push moved the watermark past it.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from sqlalchemy.orm import Session

from ..exceptions import AuthenticationError, PipelineError, ProviderExhaustedError, ReadmeBotError
from ..models import AuditAction, AuditStatus, User, WatchedRepository
from ..repositories import WatchedRepoRepository
from ..schemas.job import RegenerationJob
from . import audit_service
from .context_builder import ContextBuilder, GenerationContext, estimate_tokens
from .generation_gateway import GenerationGateway, status_of
from .github_client import GitHubClient, RepoTree
from .job_queue import ClaimedJob
from .quality_assessor import QualityAssessment, assess
from .token_cipher import decrypt_token

logger = logging.getLogger(__name__)

# Builds the source gateway for one job: (access_token, owner, repo) -> client.
SourceFactory = Callable[[str, str, str], GitHubClient]


class Stage(str, Enum):
    STARTED = "started"
    FETCHING_COMMIT = "fetching_commit"
    FETCHING_TREE = "fetching_tree"
    FETCHING_README = "fetching_readme"
    SELECTING_CONTEXT = "selecting_context"
    GENERATING = "generating"
    COMMITTING = "committing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


SKIP_WATCH_GONE = "watch-gone"
SKIP_ALREADY_APPLIED = "already-applied"
SKIP_SUPERSEDED = "superseded"


@dataclass(frozen=True)
class PipelineResult:
    job_id: str
    stage: Stage
    skipped_reason: Optional[str] = None
    strategy: Optional[str] = None
    commit_sha: Optional[str] = None
    context_tokens: int = 0

    @property
    def skipped(self) -> bool:
        return self.skipped_reason is not None


def find_readme_path(tree: RepoTree, default: str = "README.md") -> str:
    """Path of the root README in ``tree``, matched case-insensitively."""
    root_blobs = [e.path for e in tree.entries if e.type == "blob" and "/" not in e.path]
    for path in root_blobs:
        if path.lower() == default.lower():
            return path
    for path in root_blobs:
        if path.lower().startswith("readme."):
            return path
    return default


def resolve_access_token(db: Session, user_id: str, key: Optional[bytes]) -> str:
    """Decrypt the stored GitHub token of ``user_id``.

    Raises:
        AuthenticationError: no user, no stored token, or no usable key.
    """
    user = db.get(User, user_id)
    if user is None or not user.github_access_token:
        raise AuthenticationError(f"No GitHub token stored for user {user_id}")
    if not key:
        raise AuthenticationError("TOKEN_ENCRYPTION_KEY is not configured; stored tokens cannot be read")
    return decrypt_token(user.github_access_token, key, user_id)


class PipelineOrchestrator:
    """
    Runs the regeneration pipeline for claimed jobs.

    Args:
        session_factory: Opens a database session per run.
        gateway: LLM gateway for selection and synthesis.
        source_factory: Builds the GitHub client for a job.
        token_key: AES key for stored tokens.
        budget_tokens: Context budget.
        readme_path: Default README path when the tree has none.
        bot_commit_message: Commit message; must carry a loop marker.
        selection_max_files: Files kept by the selection pass.
        max_payload_retries: Re-truncations after a provider rejects the
            request as too large.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        gateway: GenerationGateway,
        source_factory: SourceFactory,
        token_key: Optional[bytes],
        budget_tokens: int = 8000,
        readme_path: str = "README.md",
        bot_commit_message: str = "docs: regenerate README [autoreadme] [skip ci]",
        selection_max_files: int = 12,
        max_payload_retries: int = 2,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.source_factory = source_factory
        self.token_key = token_key
        self.budget_tokens = budget_tokens
        self.readme_path = readme_path
        self.bot_commit_message = bot_commit_message
        self.selection_max_files = selection_max_files
        self.max_payload_retries = max_payload_retries

    def run(self, claimed: ClaimedJob) -> PipelineResult:
        """Process one delivery.

        Returns:
            PipelineResult for a success or a skip.

        Raises:
            ReadmeBotError: any stage failure, after the failed entry is written.
        """
        job = claimed.job
        db = self.session_factory()
        try:
            watch = WatchedRepoRepository(db).get_active(job.user_id, job.github_repo_id)
            skip = self._skip_reason(watch, job)
            if skip:
                logger.info(f"Skipping job {claimed.id} for {job.repo_full_name}@{job.commit_sha[:8]}: {skip}")
                return PipelineResult(job_id=claimed.id, stage=Stage.STARTED, skipped_reason=skip)

            self._audit(db, claimed, AuditAction.GENERATION_STARTED, AuditStatus.ONGOING,
                        message=f"Regenerating README for {job.commit_sha[:8]} (attempt {claimed.attempts})")
            return self._execute(db, claimed, watch)
        finally:
            db.close()

    @staticmethod
    def _skip_reason(watch: Optional[WatchedRepository], job: RegenerationJob) -> Optional[str]:
        if watch is None:
            return SKIP_WATCH_GONE
        if watch.last_source_commit == job.commit_sha:
            return SKIP_ALREADY_APPLIED
        if watch.last_processed_commit != job.commit_sha:
            return SKIP_SUPERSEDED
        return None

    def _execute(self, db: Session, claimed: ClaimedJob, watch: WatchedRepository) -> PipelineResult:
        job = claimed.job
        stage = Stage.STARTED
        try:
            token = resolve_access_token(db, job.user_id, self.token_key)
            source = self.source_factory(token, job.repo_owner, job.repo_name)

            stage = Stage.FETCHING_COMMIT
            commit = source.get_commit(job.commit_sha)

            stage = Stage.FETCHING_TREE
            tree = source.get_tree(job.default_branch)

            stage = Stage.FETCHING_README
            readme_path = find_readme_path(tree, self.readme_path)
            readme = source.get_file_content(readme_path, job.default_branch)
            assessment = assess(readme.content if readme else None)
            logger.info(
                f"README assessed as {assessment.strategy.value}",
                extra={"score": assessment.score, "reason": assessment.reason, "readme_path": readme_path},
            )

            stage = Stage.SELECTING_CONTEXT

            def fetch(path: str) -> Optional[str]:
                found = source.get_file_content(path, job.commit_sha)
                return found.content if found else None

            builder = ContextBuilder(fetch, self.budget_tokens, readme_path=readme_path)
            selected = None
            if assessment.needs_full_codebase and self.gateway.selection_enabled:
                candidates = builder.rank_candidates(assessment.strategy, tree, commit)
                selected = self.gateway.select_files(candidates, self.selection_max_files)
            context = builder.build(
                assessment.strategy,
                job.repo_name,
                job.repo_owner,
                tree,
                commit,
                readme.content if readme else None,
                selected_paths=selected,
            )

            stage = Stage.GENERATING
            markdown, context = self._generate(builder, context, assessment)

            stage = Stage.COMMITTING
            written = source.write_file(
                readme_path,
                markdown,
                self.bot_commit_message,
                job.default_branch,
                previous_sha=readme.sha if readme else None,
            )

            WatchedRepoRepository(db).record_generation(watch.id, job.commit_sha, written.commit_sha)
            db.commit()
        except Exception as exc:
            db.rollback()
            self._record_failure(db, claimed, stage, exc)
            if isinstance(exc, ReadmeBotError):
                raise
            raise PipelineError(stage.value, f"{type(exc).__name__}: {exc}") from exc

        self._audit(db, claimed, AuditAction.COMMIT_PUSHED, AuditStatus.SUCCESS,
                    commit_id=written.commit_sha, message=f"Committed {readme_path}")
        self._audit(db, claimed, AuditAction.GENERATION_SUCCEEDED, AuditStatus.SUCCESS,
                    commit_id=written.commit_sha,
                    message=f"README regenerated ({assessment.strategy.value}, score {assessment.score})")
        logger.info(
            f"README regenerated for {job.repo_full_name}",
            extra={"strategy": assessment.strategy.value, "commit": written.commit_sha, "files": len(context.files)},
        )
        return PipelineResult(
            job_id=claimed.id,
            stage=Stage.SUCCEEDED,
            strategy=assessment.strategy.value,
            commit_sha=written.commit_sha,
            context_tokens=estimate_tokens(context),
        )

    def _generate(self, builder: ContextBuilder, context: GenerationContext, assessment: QualityAssessment):
        """Synthesize, halving the budget when every provider says the request is too large."""
        budget = self.budget_tokens
        retries = 0
        while True:
            try:
                return self.gateway.generate(context, assessment), context
            except ProviderExhaustedError as exc:
                if status_of(exc.last_cause) != 413 or retries >= self.max_payload_retries:
                    raise
                retries += 1
                budget = max(1, budget // 2)
                context = builder.fit_to_budget(context, budget)
                logger.warning(f"Providers rejected the payload as too large, retrying with a {budget}-token budget")

    def _record_failure(self, db: Session, claimed: ClaimedJob, stage: Stage, exc: Exception) -> None:
        message = exc.message if isinstance(exc, ReadmeBotError) else f"{type(exc).__name__}: {exc}"
        if isinstance(exc, AuthenticationError):
            self._audit(db, claimed, AuditAction.AUTH_FAILED, AuditStatus.FAILED, message=message)
        self._audit(db, claimed, AuditAction.GENERATION_FAILED, AuditStatus.FAILED,
                    message=f"{stage.value}: {message}")
        logger.warning(
            f"Pipeline failed at {stage.value}: {message}",
            extra={"stage": stage.value, "error_type": type(exc).__name__},
        )

    @staticmethod
    def _audit(db: Session, claimed: ClaimedJob, action: AuditAction, status: AuditStatus,
               commit_id: Optional[str] = None, message: Optional[str] = None) -> None:
        job = claimed.job
        audit_service.log(
            db,
            user_id=job.user_id,
            action=action,
            status=status,
            repo_name=job.repo_name,
            repo_owner=job.repo_owner,
            commit_id=commit_id or job.commit_sha,
            job_id=claimed.id,
            message=message,
        )
