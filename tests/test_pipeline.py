"""End-to-end pipeline tests against a fake GitHub and a scripted model."""

import hashlib
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from autoreadme.database import SessionLocal
from autoreadme.exceptions import (
    AuthenticationError,
    PipelineError,
    PreconditionFailedError,
    ProviderExhaustedError,
)
from autoreadme.models import WatchedRepository
from autoreadme.repositories import WatchedRepoRepository
from autoreadme.schemas import PushEvent
from autoreadme.services import audit_service
from autoreadme.services.event_filter import EventFilter
from autoreadme.services.generation_gateway import GenerationGateway, build_credentials
from autoreadme.services.github_client import (
    CommitFile,
    CommitInfo,
    FileContent,
    RepoTree,
    TreeEntry,
    WriteResult,
)
from autoreadme.services.pipeline import (
    SKIP_ALREADY_APPLIED,
    SKIP_SUPERSEDED,
    SKIP_WATCH_GONE,
    PipelineOrchestrator,
    Stage,
    find_readme_path,
)

from conftest import GITHUB_TOKEN, SHA_1, SHA_2, TEST_TOKEN_KEY, activate_watch, create_user, push_payload

COMPREHENSIVE_README = "\n".join([
    "# hello",
    "## Installation",
    "```bash",
    "npm install",
    "```",
    "## Usage",
    "See the example below.",
    "## Architecture",
    "Two components.",
    "## API",
    "One endpoint.",
] + ["detail"] * 520)


def _blob_sha(content):
    return hashlib.sha1(content.encode("utf-8")).hexdigest()


class FakeGitHub:
    """In-memory repository with GitHub's write precondition semantics."""

    def __init__(self, files, commits=None):
        self.files = dict(files)
        self.commits = dict(commits or {})
        self.reads = []
        self.writes = []
        self.tokens = []
        self.pending_external_edit = None
        self.fail_on = {}

    def factory(self, access_token, owner, repo):
        self.tokens.append(access_token)
        return self

    def get_commit(self, sha):
        self._maybe_fail("get_commit")
        return self.commits.get(sha) or CommitInfo(sha=sha, message="feat: change")

    def get_tree(self, branch):
        self._maybe_fail("get_tree")
        entries = []
        for path, content in sorted(self.files.items()):
            parts = path.split("/")
            for depth in range(1, len(parts)):
                directory = TreeEntry(path="/".join(parts[:depth]), type="tree")
                if directory not in entries:
                    entries.append(directory)
            entries.append(TreeEntry(path=path, type="blob", size=len(content), sha=_blob_sha(content)))
        return RepoTree(sha="tree", entries=entries)

    def get_file_content(self, path, ref):
        self.reads.append((path, ref))
        content = self.files.get(path)
        if content is None:
            return None
        return FileContent(path=path, sha=_blob_sha(content), content=content, size=len(content))

    def write_file(self, path, content, message, branch, previous_sha=None):
        if self.pending_external_edit is not None:
            self.files[path] = self.pending_external_edit
            self.pending_external_edit = None

        current = self.files.get(path)
        current_sha = _blob_sha(current) if current is not None else None
        if previous_sha != current_sha:
            raise PreconditionFailedError(path, previous_sha)

        self.files[path] = content
        self.writes.append(SimpleNamespace(path=path, content=content, message=message, branch=branch, previous_sha=previous_sha))
        return WriteResult(commit_sha=f"{len(self.writes):040x}", content_sha=_blob_sha(content))

    def _maybe_fail(self, operation):
        if operation in self.fail_on:
            raise self.fail_on[operation]

    def source_reads_at(self, ref):
        return [path for path, read_ref in self.reads if read_ref == ref]


class FakeProviderError(Exception):
    def __init__(self, status_code):
        super().__init__(f"provider returned {status_code}")
        self.status_code = status_code


class ScriptedModel:
    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.prompts = []

    def __call__(self, **kwargs):
        self.prompts.append(kwargs["messages"][1]["content"])
        outcome = self.outcomes.pop(0) if self.outcomes else "# hello\n\nGenerated README."
        if isinstance(outcome, BaseException):
            raise outcome
        return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=outcome))])


@pytest.fixture()
def t0():
    return datetime.now(timezone.utc) + timedelta(minutes=1)


@pytest.fixture()
def admit(db, queue):
    event_filter = EventFilter(queue, ["[skip ci]", "[autoreadme]"])

    def _admit(sha, message="feat: add feature"):
        decision = event_filter.admit(db, "push", PushEvent.model_validate(push_payload(sha=sha, message=message)))
        assert decision.enqueue, decision.reason

    return _admit


def _orchestrator(github, model, selection=False, **kwargs):
    gateway = GenerationGateway(
        build_credentials("openrouter/big", ["k1"]),
        selection_credentials=build_credentials("openrouter/small", ["s1"]) if selection else None,
        completion_fn=model,
    )
    return PipelineOrchestrator(SessionLocal, gateway, github.factory, TEST_TOKEN_KEY, **kwargs)


def _actions(db, job_id):
    return [entry.action for entry in audit_service.get_by_job(db, job_id)]


def _watch(db, watch_id):
    db.expire_all()
    return db.get(WatchedRepository, watch_id)


class TestScenarios:
    def test_new_repository_gets_full_readme(self, db, queue, watched_repo, admit, t0):
        github = FakeGitHub(
            {"src/index.js": "console.log('hi')\n", "package.json": '{"name": "hello"}\n'},
            commits={SHA_1: CommitInfo(SHA_1, "feat: init", [
                CommitFile("src/index.js", "added", additions=1),
                CommitFile("package.json", "added", additions=1),
            ], additions=2)},
        )
        model = ScriptedModel("# hello\n\nA tiny project.")
        admit(SHA_1)
        claimed = queue.dequeue(now=t0)

        result = _orchestrator(github, model).run(claimed)

        assert result.stage == Stage.SUCCEEDED
        assert result.strategy == "full"
        assert github.tokens == [GITHUB_TOKEN]
        prompt = model.prompts[0]
        assert "**Strategy**: FULL" in prompt
        assert prompt.index("### File: `package.json`") < prompt.index("### File: `src/index.js`")
        assert sorted(github.source_reads_at(SHA_1)) == ["package.json", "src/index.js"]

        write = github.writes[0]
        assert write.path == "README.md"
        assert write.previous_sha is None
        assert write.content == "# hello\n\nA tiny project.\n"
        assert "[skip ci]" in write.message

        watch = _watch(db, watched_repo.id)
        assert watch.last_generated_commit == result.commit_sha
        assert watch.last_source_commit == SHA_1
        assert watch.generation_count == 1
        assert _actions(db, claimed.id) == ["generation_started", "commit_pushed", "generation_succeeded"]

    def test_comprehensive_readme_gets_incremental_update(self, db, queue, watched_repo, admit, t0):
        github = FakeGitHub(
            {"src/index.js": "console.log('v2')\n", "package.json": "{}\n", "README.md": COMPREHENSIVE_README},
            commits={SHA_2: CommitInfo(SHA_2, "fix: tweak", [CommitFile("src/index.js", "modified", 1, 1)], 1, 1)},
        )
        model = ScriptedModel("# hello\n\nUpdated.")
        admit(SHA_2)
        claimed = queue.dequeue(now=t0)

        result = _orchestrator(github, model).run(claimed)

        assert result.strategy == "incremental"
        assert github.source_reads_at(SHA_2) == ["src/index.js"]
        assert "## MODIFIED FILES (Current Content)" in model.prompts[0]
        assert "## EXISTING README" in model.prompts[0]
        assert github.writes[0].previous_sha == _blob_sha(COMPREHENSIVE_README)

    def test_out_of_band_edit_fails_then_succeeds_on_redelivery(self, db, queue, watched_repo, admit, t0):
        github = FakeGitHub({"main.py": "print('hi')\n", "README.md": "# hello\n"})
        orchestrator = _orchestrator(github, ScriptedModel())
        admit(SHA_1)
        github.pending_external_edit = "# hello\n\nEdited by hand.\n"
        claimed = queue.dequeue(now=t0)

        with pytest.raises(PreconditionFailedError) as exc_info:
            orchestrator.run(claimed)

        assert queue.fail(claimed.id, exc_info.value, retryable=exc_info.value.retryable, now=t0) == "queued"
        assert _actions(db, claimed.id) == ["generation_started", "generation_failed"]
        assert "Edited by hand" in github.files["README.md"]

        retried = queue.dequeue(now=t0 + timedelta(seconds=31))
        assert retried.id == claimed.id
        assert retried.attempts == 2

        result = orchestrator.run(retried)
        queue.ack(retried.id, now=t0 + timedelta(seconds=31))

        assert result.stage == Stage.SUCCEEDED
        assert github.writes[0].previous_sha == _blob_sha("# hello\n\nEdited by hand.\n")
        assert queue.get(claimed.id).status == "completed"
        assert _watch(db, watched_repo.id).generation_count == 1


class TestSkips:
    def test_superseded_push_is_skipped(self, db, queue, watched_repo, admit, t0):
        github = FakeGitHub({"main.py": "x\n"})
        admit(SHA_1)
        admit(SHA_2)
        claimed = queue.dequeue(now=t0)
        assert claimed.job.commit_sha == SHA_1

        result = _orchestrator(github, ScriptedModel()).run(claimed)

        assert result.skipped_reason == SKIP_SUPERSEDED
        assert github.writes == []
        assert _actions(db, claimed.id) == []

    def test_late_redelivery_does_not_strand_the_newest_push(self, db, queue, watched_repo, admit, t0):
        github = FakeGitHub({"main.py": "x\n"})
        orchestrator = _orchestrator(github, ScriptedModel())
        admit(SHA_1)
        admit(SHA_2)
        late = EventFilter(queue, ["[skip ci]"]).admit(db, "push", PushEvent.model_validate(push_payload(sha=SHA_1)))
        assert late.enqueue is False

        first = queue.dequeue(now=t0)
        second = queue.dequeue(now=t0)

        assert orchestrator.run(first).skipped_reason == SKIP_SUPERSEDED
        result = orchestrator.run(second)
        assert second.job.commit_sha == SHA_2
        assert result.stage == Stage.SUCCEEDED
        assert len(github.writes) == 1

    def test_deactivated_watch_is_skipped(self, db, queue, watched_repo, admit, t0):
        admit(SHA_1)
        WatchedRepoRepository(db).deactivate(watched_repo.id)
        db.commit()
        claimed = queue.dequeue(now=t0)

        result = _orchestrator(FakeGitHub({}), ScriptedModel()).run(claimed)

        assert result.skipped is True
        assert result.skipped_reason == SKIP_WATCH_GONE

    def test_redelivery_after_success_is_skipped(self, db, queue, watched_repo, admit, t0):
        github = FakeGitHub({"main.py": "x\n"})
        orchestrator = _orchestrator(github, ScriptedModel())
        admit(SHA_1)
        claimed = queue.dequeue(now=t0)
        orchestrator.run(claimed)

        again = orchestrator.run(claimed)

        assert again.skipped_reason == SKIP_ALREADY_APPLIED
        assert len(github.writes) == 1


class TestFailures:
    def test_missing_token_is_an_auth_failure(self, db, queue, admit, t0):
        create_user(db, token=None)
        watch = activate_watch(db)
        admit(SHA_1)
        claimed = queue.dequeue(now=t0)

        with pytest.raises(AuthenticationError) as exc_info:
            _orchestrator(FakeGitHub({}), ScriptedModel()).run(claimed)

        assert exc_info.value.retryable is False
        entries = audit_service.get_by_job(db, claimed.id)
        assert [e.action for e in entries] == ["generation_started", "auth_failed", "generation_failed"]
        assert entries[-1].message.startswith("started: ")
        assert _watch(db, watch.id).generation_count == 0

    def test_unexpected_error_is_wrapped_with_stage(self, db, queue, watched_repo, admit, t0):
        github = FakeGitHub({"main.py": "x\n"})
        github.fail_on["get_tree"] = RuntimeError("socket closed")
        admit(SHA_1)
        claimed = queue.dequeue(now=t0)

        with pytest.raises(PipelineError) as exc_info:
            _orchestrator(github, ScriptedModel()).run(claimed)

        assert exc_info.value.stage == "fetching_tree"
        assert exc_info.value.retryable is True
        failed = audit_service.get_by_job(db, claimed.id)[-1]
        assert failed.status == "failed"
        assert failed.message == "fetching_tree: RuntimeError: socket closed"

    def test_oversized_payload_is_retried_with_smaller_context(self, db, queue, watched_repo, admit, t0):
        github = FakeGitHub({"main.py": "x = 1\n" * 100})
        model = ScriptedModel(FakeProviderError(413), "# hello")
        admit(SHA_1)
        claimed = queue.dequeue(now=t0)

        result = _orchestrator(github, model).run(claimed)

        assert result.stage == Stage.SUCCEEDED
        assert len(model.prompts) == 2

    def test_oversized_payload_gives_up_after_retries(self, db, queue, watched_repo, admit, t0):
        github = FakeGitHub({"main.py": "x\n"})
        model = ScriptedModel(*[FakeProviderError(413) for _ in range(3)])
        admit(SHA_1)
        claimed = queue.dequeue(now=t0)

        with pytest.raises(ProviderExhaustedError) as exc_info:
            _orchestrator(github, model, max_payload_retries=2).run(claimed)

        assert exc_info.value.retryable is True

        assert len(model.prompts) == 3
        assert github.writes == []
        assert audit_service.get_by_job(db, claimed.id)[-1].message.startswith("generating: ")


class TestSelectionPass:
    def test_selection_prunes_full_scan(self, db, queue, watched_repo, admit, t0):
        github = FakeGitHub({"package.json": "{}\n", "src/index.js": "run()\n", "src/lib.js": "lib()\n"})
        model = ScriptedModel('["src/index.js"]', "# hello")
        admit(SHA_1)
        claimed = queue.dequeue(now=t0)

        _orchestrator(github, model, selection=True, selection_max_files=1).run(claimed)

        assert len(model.prompts) == 2
        assert "approx_tokens" in model.prompts[0]
        assert "### File: `src/index.js`" in model.prompts[1]
        assert "### File: `package.json`" not in model.prompts[1]


class TestFindReadmePath:
    def _tree(self, *paths):
        return RepoTree(sha=None, entries=[TreeEntry(path=p, type="blob") for p in paths])

    def test_exact_match_is_case_insensitive(self):
        assert find_readme_path(self._tree("readme.md", "src/README.md")) == "readme.md"

    def test_other_readme_extension(self):
        assert find_readme_path(self._tree("README.rst")) == "README.rst"

    def test_nested_readme_is_ignored(self):
        assert find_readme_path(self._tree("docs/README.md")) == "README.md"
