"""Tests for the mutation coordinator and the declared mutation table."""

import asyncio

import pytest

from campusfeed import actions, keys
from campusfeed.api import (
    AsyncCampusClient,
    AuthenticationError,
    InvalidInputError,
    TransientAPIError,
)
from campusfeed.cache import Pages
from campusfeed.config import MutationPolicy
from campusfeed.models import Comment, Group, User
from campusfeed.mutations import (
    MutationCoordinator,
    MutationSpec,
    MutationStatus,
    ViewScope,
)
from campusfeed.pagination import FeedPaginator

BASE_URL = "http://campus.test"


@pytest.fixture
def api(mocker):
    """AsyncCampusClient double; each test stubs the calls it needs."""
    return mocker.AsyncMock(spec=AsyncCampusClient)


def _gated(gate: asyncio.Event, value=None, calls: list | None = None):
    async def _send(*_args):
        if calls is not None:
            calls.append(1)
        await gate.wait()
        return value

    return _send


# =============================================================================
# Coordinator mechanics
# =============================================================================


class TestCoordinator:
    """Tests for apply/send/reconcile/rollback sequencing."""

    @pytest.mark.asyncio
    async def test_optimistic_like_then_rollback(self, cache, coordinator, api, make_post):
        """A failed like restores the exact pre-mutation post."""
        post = make_post(1, likes=10)
        cache.write(keys.FEED, Pages().appended([post]))
        gate = asyncio.Event()

        async def failing(_post_id):
            await gate.wait()
            raise TransientAPIError("HTTP 503")

        api.like_post.side_effect = failing

        future = coordinator.submit(actions.like_post(api, post))

        optimistic = cache.read(keys.FEED).items[0]
        assert (optimistic.is_liked, optimistic.likes) == (True, 11)
        assert coordinator.is_pending("like_post", "1")

        gate.set()
        result = await future

        assert result.status is MutationStatus.ROLLED_BACK
        assert isinstance(result.error, TransientAPIError)
        assert cache.read(keys.FEED).items[0] == post
        assert not coordinator.is_pending("like_post", "1")

    @pytest.mark.asyncio
    async def test_like_reconciles_server_count(self, cache, coordinator, api, make_post):
        post = make_post(1, likes=10)
        cache.write(keys.FEED, Pages().appended([post]))
        api.like_post.return_value = 15

        result = await coordinator.run(actions.like_post(api, post))

        assert result.ok
        liked = cache.read(keys.FEED).items[0]
        assert (liked.is_liked, liked.likes) == (True, 15)
        api.like_post.assert_awaited_once_with("1")

    @pytest.mark.asyncio
    async def test_like_patches_every_copy(self, cache, coordinator, api, make_post):
        post = make_post(1, likes=2)
        cache.write(keys.FEED, Pages().appended([post]))
        cache.write(keys.profile_posts("ada"), [post])
        api.like_post.return_value = None

        await coordinator.run(actions.like_post(api, post))

        assert cache.read(keys.FEED).items[0].likes == 3
        assert cache.read(keys.profile_posts("ada"))[0].likes == 3

    @pytest.mark.asyncio
    async def test_queued_toggles_cancel_out(self, cache, coordinator, api, make_post):
        """Two likes in a row under QUEUE leave the post as it started."""
        post = make_post(1, likes=10)
        cache.write(keys.FEED, Pages().appended([post]))
        gate = asyncio.Event()
        calls: list[int] = []
        api.like_post.side_effect = _gated(gate, None, calls)

        first = coordinator.submit(actions.like_post(api, post))
        second = coordinator.submit(actions.like_post(api, post))

        # The queued toggle is applied only once the first one resolves
        assert cache.read(keys.FEED).items[0].is_liked
        assert coordinator.in_flight == 2

        gate.set()
        results = await asyncio.gather(first, second)

        assert [r.status for r in results] == [MutationStatus.SUCCEEDED] * 2
        assert len(calls) == 2
        final = cache.read(keys.FEED).items[0]
        assert (final.is_liked, final.likes) == (False, 10)

    @pytest.mark.asyncio
    async def test_coalesce_drops_second_submit(self, cache, api, make_post):
        coordinator = MutationCoordinator(cache, policy=MutationPolicy.COALESCE, timeout=2.0)
        post = make_post(1, likes=10)
        cache.write(keys.FEED, Pages().appended([post]))
        gate = asyncio.Event()
        api.like_post.side_effect = _gated(gate)

        first = coordinator.submit(actions.like_post(api, post))
        second = coordinator.submit(actions.like_post(api, post))

        assert second.done()
        assert second.result().status is MutationStatus.COALESCED

        gate.set()
        assert (await first).ok
        assert api.like_post.await_count == 1
        assert cache.read(keys.FEED).items[0].is_liked

    @pytest.mark.asyncio
    async def test_different_entities_do_not_block(self, cache, coordinator, api, make_post):
        a, b = make_post(1), make_post(2)
        cache.write(keys.FEED, Pages().appended([a, b]))
        api.like_post.return_value = None

        await asyncio.gather(
            coordinator.run(actions.like_post(api, a)),
            coordinator.run(actions.like_post(api, b)),
        )

        assert all(p.is_liked for p in cache.read(keys.FEED).items)

    @pytest.mark.asyncio
    async def test_invalid_input_raises_before_dispatch(self, cache, coordinator, api, viewer):
        cache.write(keys.comments("1"), [])

        with pytest.raises(InvalidInputError):
            coordinator.submit(actions.create_comment(api, "1", "   ", viewer))

        assert cache.read(keys.comments("1")) == []
        assert coordinator.in_flight == 0
        api.create_comment.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_timeout_rolls_back(self, cache, api, make_post):
        coordinator = MutationCoordinator(cache, policy=MutationPolicy.QUEUE, timeout=0.05)
        post = make_post(1, likes=1)
        cache.write(keys.FEED, Pages().appended([post]))
        api.like_post.side_effect = _gated(asyncio.Event())

        result = await coordinator.run(actions.like_post(api, post))

        assert result.status is MutationStatus.ROLLED_BACK
        assert isinstance(result.error, TransientAPIError)
        assert cache.read(keys.FEED).items[0] == post

    @pytest.mark.asyncio
    async def test_auth_failure_hook(self, cache, api, make_post):
        seen = []
        coordinator = MutationCoordinator(
            cache, policy=MutationPolicy.QUEUE, timeout=2.0, on_auth_failure=seen.append
        )
        post = make_post(1)
        cache.write(keys.FEED, Pages().appended([post]))
        api.like_post.side_effect = AuthenticationError("HTTP 401", 401)

        result = await coordinator.run(actions.like_post(api, post))

        assert result.auth_failed
        assert len(seen) == 1 and seen[0].status_code == 401
        assert cache.read(keys.FEED).items[0] == post

    @pytest.mark.asyncio
    async def test_closed_scope_drops_callback_but_reconciles(
        self, cache, coordinator, api, make_post
    ):
        post = make_post(1, likes=10)
        cache.write(keys.FEED, Pages().appended([post]))
        gate = asyncio.Event()
        api.like_post.side_effect = _gated(gate, 12)
        scope = ViewScope("post-card")
        settled = []

        future = coordinator.submit(
            actions.like_post(api, post), scope=scope, on_settled=settled.append
        )
        scope.close()
        gate.set()
        await future

        assert settled == []
        assert cache.read(keys.FEED).items[0].likes == 12

    @pytest.mark.asyncio
    async def test_callback_runs_for_open_scope(self, coordinator):
        async def send(_snap):
            return "done"

        settled = []
        await coordinator.run(
            MutationSpec(name="noop", send=send),
            scope=ViewScope(),
            on_settled=settled.append,
        )

        assert [r.value for r in settled] == ["done"]

    @pytest.mark.asyncio
    async def test_caller_cancellation_does_not_cancel_request(self, coordinator):
        gate = asyncio.Event()
        sent = []

        async def send(_snap):
            await gate.wait()
            sent.append(1)

        caller = asyncio.create_task(coordinator.run(MutationSpec(name="slow", send=send)))
        await asyncio.sleep(0)
        caller.cancel()
        with pytest.raises(asyncio.CancelledError):
            await caller

        gate.set()
        await coordinator.drain()
        assert sent == [1]

    @pytest.mark.asyncio
    async def test_feed_refresh_keeps_pending_like(self, cache, coordinator, api, make_post):
        """A feed refresh mid-like neither hides the like nor splits flag from count."""
        server_post = make_post(1, likes=10)

        async def fetch_page(page, _size):
            return [server_post] if page == 0 else []

        feed = FeedPaginator(cache, fetch_page, page_size=10)
        await feed.fetch_next()
        gate = asyncio.Event()
        api.like_post.side_effect = _gated(gate, 11)

        future = coordinator.submit(actions.like_post(api, server_post))
        cache.invalidate(keys.FEED)
        for _ in range(5):
            await asyncio.sleep(0)

        pending = cache.read(keys.FEED).items[0]
        assert (pending.is_liked, pending.likes) == (True, 11)

        gate.set()
        assert (await future).ok

        liked = cache.read(keys.FEED).items[0]
        assert (liked.is_liked, liked.likes) == (True, 11)
        feed.close()

    @pytest.mark.asyncio
    async def test_rollback_after_refresh_reverts_to_unliked(
        self, cache, coordinator, api, make_post
    ):
        post = make_post(1, likes=10)
        cache.write(keys.FEED, Pages().appended([post]))
        gate = asyncio.Event()

        async def failing(_post_id):
            await gate.wait()
            raise TransientAPIError("HTTP 503")

        api.like_post.side_effect = failing
        future = coordinator.submit(actions.like_post(api, post))

        # Server state moved on while the like was pending
        cache.write(keys.FEED, Pages().appended([make_post(1, likes=12)]))
        assert cache.read(keys.FEED).items[0].likes == 13

        gate.set()
        await future

        reverted = cache.read(keys.FEED).items[0]
        assert (reverted.is_liked, reverted.likes) == (False, 12)


# =============================================================================
# Mutation table
# =============================================================================


class TestComments:
    """Tests for optimistic comment creation."""

    @pytest.mark.asyncio
    async def test_pending_comment_replaced_by_server_copy(
        self, cache, coordinator, api, viewer
    ):
        existing = Comment(id="1", post_id="7", author=viewer, content="first")
        cache.write(keys.comments("7"), [existing])
        confirmed = Comment(id="2", post_id="7", author=viewer, content="second")
        gate = asyncio.Event()
        api.create_comment.side_effect = _gated(gate, confirmed)

        future = coordinator.submit(actions.create_comment(api, "7", " second ", viewer))

        pending = cache.read(keys.comments("7"))
        assert [c.content for c in pending] == ["first", "second"]
        assert pending[1].pending

        gate.set()
        await future

        comments = cache.peek(keys.comments("7"))
        assert [c.id for c in comments] == ["1", "2"]
        assert cache.is_stale(keys.comments("7"))
        api.create_comment.assert_awaited_once_with("7", "second")

    @pytest.mark.asyncio
    async def test_no_duplicate_when_refetch_landed_first(
        self, cache, coordinator, api, viewer
    ):
        cache.write(keys.comments("7"), [])
        confirmed = Comment(id="2", post_id="7", author=viewer, content="hi")
        gate = asyncio.Event()
        api.create_comment.side_effect = _gated(gate, confirmed)

        future = coordinator.submit(actions.create_comment(api, "7", "hi", viewer))
        temp = cache.read(keys.comments("7"))[0]
        cache.write(keys.comments("7"), [temp, confirmed])
        gate.set()
        await future

        assert [c.id for c in cache.peek(keys.comments("7"))] == ["2"]

    @pytest.mark.asyncio
    async def test_failed_comment_removed(self, cache, coordinator, api, viewer):
        cache.write(keys.comments("7"), [])
        api.create_comment.side_effect = TransientAPIError("down")

        result = await coordinator.run(actions.create_comment(api, "7", "hi", viewer))

        assert result.status is MutationStatus.ROLLED_BACK
        assert cache.read(keys.comments("7")) == []

    @pytest.mark.asyncio
    async def test_comment_invalidates_feed(self, cache, coordinator, api, viewer, make_post):
        cache.write(keys.FEED, Pages().appended([make_post(7)]))
        api.create_comment.return_value = Comment(
            id="2", post_id="7", author=viewer, content="hi"
        )

        await coordinator.run(actions.create_comment(api, "7", "hi", viewer, group_id="3"))

        assert cache.is_stale(keys.FEED)


class TestGroupsAndFollows:
    """Tests for membership and follow toggles."""

    def _group(self, privacy: str) -> Group:
        return Group.from_record(
            {"id": 4, "name": "Chess", "privacy": privacy, "member_count": 10},
            base_url=BASE_URL,
        )

    @pytest.mark.asyncio
    async def test_private_group_stays_pending(self, cache, coordinator, api):
        group = self._group("private")
        cache.write(keys.GROUPS, [group])
        api.join_group.return_value = "pending"

        future = coordinator.submit(actions.join_group(api, group))
        assert cache.read(keys.GROUPS)[0].is_pending
        await future

        settled = cache.read(keys.GROUPS)[0]
        assert settled.is_pending and not settled.is_joined
        assert settled.member_count == 10

    @pytest.mark.asyncio
    async def test_public_group_joined(self, cache, coordinator, api):
        group = self._group("public")
        cache.write(keys.GROUPS, [group])
        api.join_group.return_value = "joined"

        await coordinator.run(actions.join_group(api, group))

        joined = cache.read(keys.GROUPS)[0]
        assert joined.is_joined and joined.member_count == 11

    @pytest.mark.asyncio
    async def test_toggle_follow_sends_by_cached_state(self, cache, coordinator, api, user_record):
        user = User.from_record(user_record("u2", "grace"), base_url=BASE_URL)
        cache.write(keys.profile("grace"), user)

        await coordinator.run(actions.toggle_follow(api, user))
        api.follow_user.assert_awaited_once_with("u2")
        assert cache.peek(keys.profile("grace")).is_following

        await coordinator.run(actions.toggle_follow(api, user))
        api.unfollow_user.assert_awaited_once_with("u2")
        assert not cache.peek(keys.profile("grace")).is_following


class TestConfirmedOnly:
    """Tests for mutations without an optimistic patch."""

    @pytest.mark.asyncio
    async def test_create_post_prepends_to_feed(self, cache, coordinator, api, make_post):
        cache.write(keys.FEED, Pages().appended([make_post(1)]))
        api.create_post.return_value = make_post(9, caption="fresh")

        result = await coordinator.run(actions.create_post(api, " fresh ", "ada"))

        assert result.ok
        assert [p.id for p in cache.read(keys.FEED)] == ["9", "1"]
        api.create_post.assert_awaited_once_with("fresh", None)

    def test_create_post_needs_content(self, api):
        spec = actions.create_post(api, "  ", "ada")
        with pytest.raises(InvalidInputError):
            spec.validate()

    @pytest.mark.asyncio
    async def test_update_profile_writes_me(self, cache, coordinator, api, viewer):
        api.update_profile.return_value = viewer

        await coordinator.run(actions.update_profile(api, "viewer", bio="hello"))

        assert cache.read(keys.ME) == viewer
