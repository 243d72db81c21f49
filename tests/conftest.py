"""Shared test fixtures for the autoreadme test suite.

Tests run against a throwaway SQLite file created once per session. Each
test starts from empty tables (rows deleted before the test, not after, so
a failing test leaves its data behind for debugging).
"""

import base64
import os
import tempfile

# Configure the app before any of its modules are imported.
_TEST_DIR = tempfile.mkdtemp(prefix="autoreadme-tests-")
TEST_TOKEN_KEY = bytes(range(32))
WEBHOOK_SECRET = "test-webhook-secret"

os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TEST_DIR, 'test.db')}"
os.environ["ENVIRONMENT"] = "development"
os.environ["LOG_FORMAT"] = "text"
os.environ["GITHUB_WEBHOOK_SECRET"] = WEBHOOK_SECRET
os.environ["TOKEN_ENCRYPTION_KEY"] = base64.b64encode(TEST_TOKEN_KEY).decode("ascii")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import text

from autoreadme.database import SessionLocal, get_db, init_db
from autoreadme.main import app
from autoreadme.models import User
from autoreadme.repositories import WatchedRepoRepository
from autoreadme.services.job_queue import JobQueue
from autoreadme.services.token_cipher import encrypt_token

init_db()

# Child tables first (foreign keys are enforced on SQLite).
_CLEAN_TABLES = ["audit_log", "generation_jobs", "watched_repositories", "users"]

USER_ID = "user-1"
GITHUB_TOKEN = "gho_" + "t" * 36
REPO_ID = 4242

SHA_1 = "1" * 40
SHA_2 = "2" * 40
SHA_3 = "3" * 40


@pytest.fixture(autouse=True)
def _clean_tables():
    db = SessionLocal()
    try:
        for table in _CLEAN_TABLES:
            db.execute(text(f"DELETE FROM {table}"))
        db.commit()
    finally:
        db.close()
    yield


@pytest.fixture()
def db():
    """Per-test database session."""
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture()
def queue():
    return JobQueue(
        SessionLocal,
        max_attempts=3,
        backoff_base_seconds=30,
        backoff_max_seconds=1800,
        lease_seconds=900,
    )


@pytest.fixture()
def client(db):
    """FastAPI TestClient with the DB dependency overridden to use the test session."""

    def _override_get_db():
        yield db

    app.dependency_overrides[get_db] = _override_get_db
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


def create_user(db, user_id=USER_ID, token=GITHUB_TOKEN):
    user = User(
        user_id=user_id,
        github_login=f"{user_id}-login",
        github_access_token=encrypt_token(token, TEST_TOKEN_KEY, user_id) if token else None,
    )
    db.add(user)
    db.commit()
    return user


def activate_watch(db, user_id=USER_ID, github_repo_id=REPO_ID, name="hello", owner="octocat", branch="main", webhook_id=99):
    watch = WatchedRepoRepository(db).activate(
        user_id=user_id,
        github_repo_id=github_repo_id,
        repo_name=name,
        repo_full_name=f"{owner}/{name}",
        repo_owner=owner,
        default_branch=branch,
        webhook_id=webhook_id,
    )
    db.commit()
    db.refresh(watch)
    return watch


@pytest.fixture()
def watched_repo(db):
    """A user with a stored token and one active watch on octocat/hello."""
    create_user(db)
    return activate_watch(db)


def push_payload(sha=SHA_1, message="feat: add feature", repo_id=REPO_ID, ref="refs/heads/main", name="hello", owner="octocat"):
    """Minimal GitHub push envelope."""
    return {
        "ref": ref,
        "after": sha,
        "deleted": False,
        "repository": {
            "id": repo_id,
            "name": name,
            "full_name": f"{owner}/{name}",
            "owner": {"name": owner, "login": owner},
            "default_branch": "main",
        },
        "head_commit": {"id": sha, "message": message},
    }
