"""Tests for push admission rules and the watermark/enqueue transaction."""

import pytest

from autoreadme.models import AuditLog, GenerationJob, WatchedRepository
from autoreadme.schemas import PushEvent
from autoreadme.services.event_filter import (
    DUPLICATE_DELIVERY,
    EMPTY_PUSH,
    IGNORED_BRANCH,
    IGNORED_EVENT_TYPE,
    NOT_WATCHED,
    SELF_AUTHORED,
    EventFilter,
    contains_loop_marker,
)

from conftest import REPO_ID, SHA_1, SHA_2, USER_ID, activate_watch, create_user, push_payload

MARKERS = ["[skip ci]", "[autoreadme]"]


@pytest.fixture()
def event_filter(queue):
    return EventFilter(queue, MARKERS)


def _event(**kwargs) -> PushEvent:
    return PushEvent.model_validate(push_payload(**kwargs))


class TestShouldEnqueue:
    def test_non_push_event_is_ignored(self, db, event_filter, watched_repo):
        decision = event_filter.should_enqueue(db, "pull_request", _event())
        assert decision.enqueue is False
        assert decision.reason == IGNORED_EVENT_TYPE

    @pytest.mark.parametrize("message", [
        "docs: regenerate README [autoreadme] [skip ci]",
        "chore: bump [SKIP CI]",
        "fix [AutoReadme]",
    ])
    def test_bot_commit_is_never_enqueued(self, db, event_filter, watched_repo, message):
        decision = event_filter.should_enqueue(db, "push", _event(message=message))
        assert decision.enqueue is False
        assert decision.reason == SELF_AUTHORED

    def test_unwatched_repository(self, db, event_filter):
        decision = event_filter.should_enqueue(db, "push", _event(repo_id=999))
        assert decision.enqueue is False
        assert decision.reason == NOT_WATCHED

    def test_deactivated_watch_counts_as_unwatched(self, db, event_filter, watched_repo):
        from autoreadme.repositories import WatchedRepoRepository
        WatchedRepoRepository(db).deactivate(watched_repo.id)
        db.commit()

        decision = event_filter.should_enqueue(db, "push", _event())
        assert decision.reason == NOT_WATCHED

    def test_branch_deletion_is_an_empty_push(self, db, event_filter, watched_repo):
        payload = push_payload()
        payload["head_commit"] = None
        payload["deleted"] = True
        payload["after"] = "0" * 40

        decision = event_filter.should_enqueue(db, "push", PushEvent.model_validate(payload))
        assert decision.reason == EMPTY_PUSH

    def test_push_to_other_branch_is_ignored(self, db, event_filter, watched_repo):
        decision = event_filter.should_enqueue(db, "push", _event(ref="refs/heads/feature-x"))
        assert decision.reason == IGNORED_BRANCH

    def test_qualifying_push_builds_a_job(self, db, event_filter, watched_repo):
        decision = event_filter.should_enqueue(db, "push", _event(sha=SHA_1))

        assert decision.enqueue is True
        assert decision.reason is None
        assert decision.job.user_id == USER_ID
        assert decision.job.github_repo_id == REPO_ID
        assert decision.job.commit_sha == SHA_1
        assert decision.job.default_branch == "main"

    def test_should_enqueue_has_no_side_effects(self, db, event_filter, watched_repo):
        event_filter.should_enqueue(db, "push", _event())
        db.expire_all()
        assert db.query(GenerationJob).count() == 0
        assert db.get(WatchedRepository, watched_repo.id).last_processed_commit is None


class TestAdmit:
    def test_admit_advances_watermark_and_enqueues_together(self, db, event_filter, watched_repo):
        decision = event_filter.admit(db, "push", _event(sha=SHA_1))

        assert decision.enqueue is True
        db.expire_all()
        assert db.get(WatchedRepository, watched_repo.id).last_processed_commit == SHA_1
        jobs = db.query(GenerationJob).all()
        assert len(jobs) == 1
        assert jobs[0].commit_sha == SHA_1
        assert jobs[0].status == "queued"

    def test_redelivery_of_the_same_push_never_produces_a_second_job(self, db, event_filter, watched_repo):
        first = event_filter.admit(db, "push", _event(sha=SHA_1))
        second = event_filter.admit(db, "push", _event(sha=SHA_1))

        assert first.enqueue is True
        assert second.enqueue is False
        assert second.reason == DUPLICATE_DELIVERY
        assert db.query(GenerationJob).count() == 1

    def test_next_push_is_admitted(self, db, event_filter, watched_repo):
        event_filter.admit(db, "push", _event(sha=SHA_1))
        decision = event_filter.admit(db, "push", _event(sha=SHA_2))

        assert decision.enqueue is True
        db.expire_all()
        assert db.get(WatchedRepository, watched_repo.id).last_processed_commit == SHA_2
        assert db.query(GenerationJob).count() == 2

    def test_out_of_order_redelivery_keeps_the_newer_watermark(self, db, event_filter, watched_repo):
        event_filter.admit(db, "push", _event(sha=SHA_1))
        event_filter.admit(db, "push", _event(sha=SHA_2))

        late = event_filter.admit(db, "push", _event(sha=SHA_1))

        assert late.enqueue is False
        assert late.reason == DUPLICATE_DELIVERY
        db.expire_all()
        assert db.get(WatchedRepository, watched_repo.id).last_processed_commit == SHA_2
        assert db.query(GenerationJob).count() == 2

    def test_ignored_push_writes_nothing(self, db, event_filter):
        decision = event_filter.admit(db, "push", _event(repo_id=999))

        assert decision.reason == NOT_WATCHED
        assert db.query(GenerationJob).count() == 0
        assert db.query(AuditLog).count() == 0

    def test_most_recent_activation_owns_a_shared_repository(self, db, event_filter):
        create_user(db, "user-a")
        create_user(db, "user-b")
        activate_watch(db, user_id="user-a", webhook_id=1)
        activate_watch(db, user_id="user-b", webhook_id=2)

        decision = event_filter.admit(db, "push", _event(sha=SHA_1))

        assert decision.enqueue is True
        assert decision.job.user_id == "user-b"


class TestLoopMarker:
    def test_match_is_case_insensitive_substring(self):
        assert contains_loop_marker("Docs [Skip CI] please", MARKERS) is True

    def test_no_marker(self):
        assert contains_loop_marker("feat: skip ci later", MARKERS) is False

    def test_empty_message(self):
        assert contains_loop_marker("", MARKERS) is False
