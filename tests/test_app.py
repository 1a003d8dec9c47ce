"""Integration tests for CampusApp against a fake backend.

These exercise the full path: gateway client -> cache -> coordinator, with
HTTP served by ``httpx.MockTransport``.
"""

import asyncio
import json

import httpx
import pytest
import pytest_asyncio

from campusfeed import keys
from campusfeed.api import AsyncCampusClient, AuthenticationError, InvalidInputError
from campusfeed.app import CampusApp
from campusfeed.config import MutationPolicy, StoryViewPolicy
from campusfeed.models import AuthSession
from campusfeed.mutations import MutationCoordinator, MutationStatus

BASE_URL = "http://campus.test"


@pytest_asyncio.fixture
async def app(client, cache, coordinator, session_store):
    campus = CampusApp(
        client=client, cache=cache, sessions=session_store, coordinator=coordinator
    )
    yield campus
    await campus.close()


@pytest_asyncio.fixture
async def signed_in(app, session_store, viewer):
    """App restored from a saved session for the viewer."""
    session_store.save(AuthSession(access_token="test-token-123456", user=viewer))
    await app.initialize()
    return app


async def _wait_until(predicate, timeout: float = 1.0) -> None:
    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_poll(), timeout)


class TestSession:
    """Tests for sign-in, restore and sign-out."""

    @pytest.mark.asyncio
    async def test_login_saves_session(self, backend, cache, session_store, user_record):
        backend.on("POST", "/token", json={"access_token": "tok-abcdefghijkl", "token_type": "bearer"})
        backend.on("GET", "/users/me/", json=user_record("u1", "ada"))
        client = AsyncCampusClient(base_url=BASE_URL, transport=backend.transport)

        async with CampusApp(client=client, cache=cache, sessions=session_store) as app:
            session = await app.login("ada@uni.edu", "pw")

            assert app.is_authenticated
            assert app.user.username == "ada"
            assert cache.read(keys.ME) == session.user

        saved = session_store.load()
        assert saved is not None and saved.access_token == "tok-abcdefghijkl"

    @pytest.mark.asyncio
    async def test_initialize_restores_session(self, signed_in, client, viewer):
        assert signed_in.is_authenticated
        assert signed_in.user == viewer
        assert client.token == "test-token-123456"
        assert client.viewer_id == viewer.id

    @pytest.mark.asyncio
    async def test_initialize_without_session(self, app):
        await app.initialize()
        assert not app.is_authenticated
        with pytest.raises(AuthenticationError):
            app.require_user()

    @pytest.mark.asyncio
    async def test_logout_clears_everything(self, signed_in, session_store, client, cache):
        signed_in.logout()

        assert not signed_in.is_authenticated
        assert session_store.load() is None
        assert client.token is None
        assert cache.keys() == []


class TestFeedAndLikes:
    """Tests for the feed and like round-trips."""

    @pytest.mark.asyncio
    async def test_like_after_loading_feed(self, app, backend, post_record):
        backend.on("GET", "/posts/", json=[post_record(1, likes=10)])
        backend.on("POST", "/posts/1/like", json={"likes_count": 11})

        posts = await app.load_feed()
        assert [p.id for p in posts] == ["1"]
        assert app.feed.exhausted

        result = await app.like_post("1")

        assert result.ok
        liked = app.feed.items[0]
        assert (liked.is_liked, liked.likes) == (True, 11)

    @pytest.mark.asyncio
    async def test_like_requires_loaded_post(self, app):
        with pytest.raises(InvalidInputError):
            await app.like_post("404")

    @pytest.mark.asyncio
    async def test_rejected_token_flags_session(self, app, backend, post_record):
        backend.on("GET", "/posts/", json=[post_record(1, likes=10)])
        backend.on("POST", "/posts/1/like", status=401, json={"detail": "expired"})
        await app.load_feed()

        result = await app.like_post("1")

        assert result.status is MutationStatus.ROLLED_BACK
        assert result.auth_failed
        assert app.auth_expired
        assert app.feed.items[0].likes == 10

    @pytest.mark.asyncio
    async def test_feed_error_is_reported_not_raised(self, app, backend):
        backend.on("GET", "/posts/", status=500, json={})

        assert await app.load_feed() == []
        assert app.feed.error is not None

    @pytest.mark.asyncio
    async def test_create_post_with_image(self, signed_in, backend, post_record, tmp_path):
        image = tmp_path / "photo.png"
        image.write_bytes(b"\x89PNG")
        backend.on("GET", "/posts/", json=[post_record(1)])
        backend.on("POST", "/upload/", json={"url": "/static/uploads/photo.png"})
        backend.on("POST", "/posts/", json=post_record(9, image="/static/uploads/photo.png"))
        await signed_in.load_feed()

        result = await signed_in.create_post("sunset", image=image)

        assert result.ok
        assert [p.id for p in signed_in.feed.items] == ["9", "1"]
        sent = backend.last("POST", "/posts/")
        assert b'"image":"/static/uploads/photo.png"' in sent.content.replace(b" ", b"")


class TestComments:
    @pytest.mark.asyncio
    async def test_comment_refetched_without_duplicates(
        self, signed_in, backend, comment_record
    ):
        stored = [comment_record(1, "first", 5)]

        def list_comments(_request):
            return httpx.Response(200, json=stored)

        def add_comment(_request):
            created = comment_record(2, "second", 5)
            stored.append(created)
            return httpx.Response(200, json=created)

        backend.on("GET", "/posts/5/comments", handler=list_comments)
        backend.on("POST", "/posts/5/comments/", handler=add_comment)

        assert [c.id for c in await signed_in.comments("5")] == ["1"]

        result = await signed_in.comment("5", "second")
        assert result.ok

        comments = await signed_in.comments("5")
        assert [c.id for c in comments] == ["1", "2"]
        assert not any(c.pending for c in comments)
        assert backend.count("GET", "/posts/5/comments") == 2

    @pytest.mark.asyncio
    async def test_comment_requires_sign_in(self, app):
        with pytest.raises(AuthenticationError):
            await app.comment("5", "hi")


class TestGroups:
    @pytest.mark.asyncio
    async def test_join_private_group_is_pending(self, app, backend):
        backend.on(
            "GET",
            "/groups/4",
            json={"id": 4, "name": "Chess", "privacy": "private", "member_count": 10},
        )
        backend.on("POST", "/groups/4/join", json={"status": "pending"})

        result = await app.join_group("4")

        assert result.ok and result.value == "pending"
        group = app.cache.peek(keys.group("4"))
        assert group.is_pending and not group.is_joined

    @pytest.mark.asyncio
    async def test_group_post_refreshes_watched_group(self, app, backend, post_record):
        backend.on("GET", "/groups/3/posts/", json=[post_record(1)])
        backend.on("POST", "/groups/3/posts/", json=post_record(2))

        sub = app.watch_group_posts("3")
        await sub.get()
        result = await app.create_group_post("3", "meetup at 6")
        assert result.ok
        await _wait_until(lambda: backend.count("GET", "/groups/3/posts/") == 2)

    @pytest.mark.asyncio
    async def test_create_group_needs_name(self, app):
        with pytest.raises(InvalidInputError):
            await app.create_group("  ")


class TestStories:
    @pytest.mark.asyncio
    async def test_stories_grouped_with_own_first(self, signed_in, backend, story_record):
        backend.on(
            "GET",
            "/stories/feed",
            json=[story_record(1, "u2", "grace"), story_record(2, "u-viewer", "viewer")],
        )

        own, others = await signed_in.stories()

        assert own is not None and own.author.id == "u-viewer"
        assert [g.author.username for g in others] == ["grace"]

    @pytest.mark.asyncio
    async def test_viewer_records_views(self, signed_in, backend, story_record):
        backend.on(
            "GET",
            "/stories/feed",
            json=[story_record(1, "u2", "grace"), story_record(2, "u2", "grace")],
        )
        backend.on("POST", "/stories/1/view", json={})
        backend.on("POST", "/stories/2/view", json={})
        _own, others = await signed_in.stories()

        viewer = signed_in.story_viewer(others[0], progress_step=50)
        viewer.open()
        for _ in range(4):
            viewer.tick()
        await signed_in.coordinator.drain()

        assert not viewer.is_open
        assert backend.count("POST", "/stories/1/view") == 1
        assert backend.count("POST", "/stories/2/view") == 1

    @pytest.mark.asyncio
    async def test_revisit_records_view_under_coalesce(
        self, client, cache, session_store, viewer, backend, story_record
    ):
        """Coalescing mutations never swallows a story view."""
        coordinator = MutationCoordinator(
            cache, policy=MutationPolicy.COALESCE, timeout=2.0
        )
        campus = CampusApp(
            client=client, cache=cache, sessions=session_store, coordinator=coordinator
        )
        session_store.save(AuthSession(access_token="test-token-123456", user=viewer))
        await campus.initialize()

        gate = asyncio.Event()

        async def slow_view(_request):
            await gate.wait()
            return httpx.Response(200, json={})

        backend.on(
            "GET",
            "/stories/feed",
            json=[story_record(1, "u2", "grace"), story_record(2, "u2", "grace")],
        )
        backend.on("POST", "/stories/1/view", handler=slow_view)
        backend.on("POST", "/stories/2/view", handler=slow_view)
        _own, others = await campus.stories()

        story_viewer = campus.story_viewer(
            others[0], view_policy=StoryViewPolicy.EVERY_ENTRY
        )
        story_viewer.open()
        story_viewer.next()
        story_viewer.previous()

        await _wait_until(lambda: backend.count("POST", "/stories/1/view") == 2)
        gate.set()
        await campus.close()

        assert backend.count("POST", "/stories/2/view") == 1


class TestConversations:
    @pytest.mark.asyncio
    async def test_start_conversation_refreshes_chats(self, signed_in, backend, user_record):
        backend.on("GET", "/profiles/grace", json={"user_id": "u2", "full_name": "Grace"})
        backend.on("GET", "/conversations/", json=[])
        backend.on(
            "POST",
            "/conversations/",
            json={
                "id": 9,
                "participants": [user_record("u-viewer", "viewer"), user_record("u2", "grace")],
                "messages": [],
            },
        )
        assert await signed_in.conversations() == []

        result = await signed_in.start_conversation("grace")

        assert result.ok
        assert result.value.id == "9" and result.value.partner.username == "grace"
        assert json.loads(backend.last("POST", "/conversations/").content) == {
            "participant_ids": ["u2"],
            "name": None,
        }
        assert signed_in.cache.is_stale(keys.CHATS)

    @pytest.mark.asyncio
    async def test_conversation_with_self_rejected(self, signed_in, backend):
        backend.on("GET", "/profiles/viewer", json={"user_id": "u-viewer"})

        with pytest.raises(InvalidInputError):
            await signed_in.start_conversation("viewer")
        assert backend.count("POST", "/conversations/") == 0
