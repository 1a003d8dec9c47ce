"""Pytest configuration and shared fixtures for campusfeed tests."""

import os
import sys
import tempfile

os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("DATA_DIR", tempfile.mkdtemp(prefix="campusfeed-tests-"))

from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

import httpx
import pytest
import pytest_asyncio
from loguru import logger

from campusfeed.api import AsyncCampusClient
from campusfeed.cache import EntityCache
from campusfeed.config import MutationPolicy
from campusfeed.models import Post, User
from campusfeed.mutations import MutationCoordinator
from campusfeed.session import SessionStore

BASE_URL = "http://campus.test"
VIEWER_ID = "u-viewer"


# =============================================================================
# Test Configuration
# =============================================================================


@pytest.fixture(scope="session", autouse=True)
def configure_logging():
    """Configure loguru for tests to avoid I/O errors."""
    logger.remove()
    logger.add(
        sys.stderr,
        level="ERROR",
        format="{time} {level} {message}",
        catch=True,
        enqueue=True,
    )
    yield
    logger.remove()


@pytest.fixture(scope="function", autouse=True)
def reset_loguru():
    """Reset loguru handlers before each test to prevent I/O errors."""
    logger.remove()
    logger.add(
        sys.stderr,
        level="ERROR",
        format="{time} {level} {message}",
        catch=True,
        enqueue=True,
    )
    yield
    logger.remove()


# =============================================================================
# Mock Data Fixtures
# =============================================================================


@pytest.fixture
def user_record() -> Callable[..., dict[str, Any]]:
    """Factory for ``/users`` records with a nested profile."""

    def _make(
        user_id: str = "u1",
        username: str = "ada",
        full_name: str | None = "Ada Lovelace",
        **profile: Any,
    ) -> dict[str, Any]:
        return {
            "id": user_id,
            "username": username,
            "email": f"{username}@uni.edu",
            "profile": {
                "full_name": full_name,
                "profile_picture": profile.pop("profile_picture", None),
                "university": profile.pop("university", "Tech University"),
                **profile,
            },
        }

    return _make


@pytest.fixture
def post_record(user_record) -> Callable[..., dict[str, Any]]:
    """Factory for ``/posts`` records."""

    def _make(
        post_id: int | str = 1,
        likes: int = 0,
        liked_by: list[str] | None = None,
        author: dict[str, Any] | None = None,
        caption: str = "Hello campus",
        **extra: Any,
    ) -> dict[str, Any]:
        return {
            "id": post_id,
            "caption": caption,
            "image": None,
            "likes_count": likes,
            "likes": [{"id": uid} for uid in liked_by or []],
            "comments": [],
            "created_at": "2024-03-01T10:00:00",
            "user": author or user_record(),
            **extra,
        }

    return _make


@pytest.fixture
def comment_record(user_record) -> Callable[..., dict[str, Any]]:
    def _make(comment_id: int | str, content: str, post_id: int | str = 1) -> dict[str, Any]:
        return {
            "id": comment_id,
            "content": content,
            "post_id": post_id,
            "created_at": "2024-03-01T11:00:00",
            "user": user_record(VIEWER_ID, "viewer", "Vera Viewer"),
        }

    return _make


@pytest.fixture
def story_record(user_record) -> Callable[..., dict[str, Any]]:
    def _make(
        story_id: int | str,
        author_id: str = "u1",
        username: str = "ada",
        liked_by: list[str] | None = None,
    ) -> dict[str, Any]:
        return {
            "id": story_id,
            "content": f"story {story_id}",
            "image_url": None,
            "created_at": "2024-03-01T09:07:00",
            "likes": [{"id": uid} for uid in liked_by or []],
            "views": [],
            "user": user_record(author_id, username),
        }

    return _make


@pytest.fixture
def viewer(user_record) -> User:
    return User.from_record(user_record(VIEWER_ID, "viewer", "Vera Viewer"), base_url=BASE_URL)


@pytest.fixture
def make_post(post_record) -> Callable[..., Post]:
    def _make(post_id: int | str = 1, **kwargs: Any) -> Post:
        return Post.from_record(
            post_record(post_id, **kwargs), base_url=BASE_URL, viewer_id=VIEWER_ID
        )

    return _make


# =============================================================================
# Fake backend
# =============================================================================


Handler = Callable[[httpx.Request], httpx.Response | Awaitable[httpx.Response]]


class FakeBackend:
    """Route table served through ``httpx.MockTransport``.

    Unregistered routes answer 404 like the real backend.
    """

    def __init__(self) -> None:
        self.routes: dict[tuple[str, str], Handler] = {}
        self.calls: list[httpx.Request] = []

    def on(
        self,
        method: str,
        path: str,
        json: Any = None,
        status: int = 200,
        handler: Handler | None = None,
    ) -> None:
        if handler is None:

            def handler(request: httpx.Request) -> httpx.Response:
                return httpx.Response(status, json=json)

        self.routes[(method, path)] = handler

    def count(self, method: str, path: str) -> int:
        return sum(1 for r in self.calls if r.method == method and r.url.path == path)

    def last(self, method: str, path: str) -> httpx.Request:
        return [r for r in self.calls if r.method == method and r.url.path == path][-1]

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        handler = self.routes.get((request.method, request.url.path))
        if handler is None:
            return httpx.Response(404, json={"detail": "Not Found"})
        response = handler(request)
        if not isinstance(response, httpx.Response):
            response = await response
        return response

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest_asyncio.fixture
async def client(backend: FakeBackend):
    """Authenticated client wired to the fake backend, without retry delays."""
    api = AsyncCampusClient(
        base_url=BASE_URL,
        token="test-token-123456",
        viewer_id=VIEWER_ID,
        transport=backend.transport,
        max_retries=3,
        retry_wait=0,
    )
    yield api
    await api.close()


@pytest.fixture
def cache() -> EntityCache:
    return EntityCache()


@pytest.fixture
def coordinator(cache: EntityCache) -> MutationCoordinator:
    return MutationCoordinator(cache, policy=MutationPolicy.QUEUE, timeout=2.0)


@pytest.fixture
def session_store(tmp_path: Path) -> SessionStore:
    return SessionStore(tmp_path / "session.json")
