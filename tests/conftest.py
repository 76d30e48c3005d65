"""
Pytest configuration and fixtures for the bucket-auth tests.
"""

import os
import tempfile

import pytest

# Set test environment variables before importing modules
os.environ.setdefault("STORE_DSN", tempfile.mkdtemp(prefix="bucket-auth-test-"))
os.environ.setdefault("AUTH_JWT_SECRET", "test-secret")
os.environ.setdefault("AUTH_TOKEN_EXPIRE_MINUTES", "60")
os.environ.setdefault("PASSWORD_HASH_ROUNDS", "1000")
os.environ.pop("AUTH_BOOTSTRAP_ADMIN_PASSWORD", None)
os.environ.pop("COS_ENDPOINT", None)

from bucket_auth.auth.tokens import TOKEN_CACHE  # noqa: E402
from bucket_auth.directory.service import DirectoryService  # noqa: E402
from bucket_auth.storage import LocalObjectStore  # noqa: E402

TEST_HASH_ROUNDS = 1000
TEST_SECRET = "test-secret"


@pytest.fixture(autouse=True)
def _clear_token_cache():
    TOKEN_CACHE.clear()
    yield
    TOKEN_CACHE.clear()


@pytest.fixture
def store(tmp_path) -> LocalObjectStore:
    """Return an empty local object store rooted in a temp directory."""
    s = LocalObjectStore(tmp_path / "api-users")
    s.ensure_container()
    return s


@pytest.fixture
def directory(store) -> DirectoryService:
    """Return a directory service with cheap password hashing."""
    return DirectoryService(store, hash_rounds=TEST_HASH_ROUNDS)


@pytest.fixture
def conditional_directory(store) -> DirectoryService:
    """Return a directory service that uses ETag-conditional index saves."""
    return DirectoryService(store, conditional_writes=True, max_index_retries=3, hash_rounds=TEST_HASH_ROUNDS)


@pytest.fixture
def alice(directory):
    """Register and return the canonical test user."""
    return directory.register("alice", "alice@x.com", "password1")


@pytest.fixture
def api_client(tmp_path):
    """Return a TestClient whose app uses a fresh directory."""
    from fastapi.testclient import TestClient

    from bucket_auth.api.server import app

    with TestClient(app) as client:
        app.state.directory = DirectoryService(
            LocalObjectStore(tmp_path / "api-store"),
            hash_rounds=TEST_HASH_ROUNDS,
        )
        app.state.directory.ensure_storage()
        yield client


@pytest.fixture
def api_directory(api_client) -> DirectoryService:
    return api_client.app.state.directory


@pytest.fixture
def login(api_client):
    """Return a helper that logs in and returns the bearer token."""

    def _login(username: str, password: str) -> str:
        resp = api_client.post("/api/auth/login", json={"username": username, "password": password})
        assert resp.status_code == 200, resp.text
        return resp.json()["token"]

    return _login


@pytest.fixture
def admin_token(api_directory, login) -> str:
    api_directory.register("root", "root@x.com", "rootpass1", role="admin")
    return login("root", "rootpass1")
