"""Client orchestration for campusfeed.

:class:`CampusApp` owns one gateway client, one entity cache, one mutation
coordinator and the session store, and exposes the reads and actions the
front end needs:

1. Reads go through the cache (``fetch`` shares in-flight requests and
   respects invalidation)
2. Writes go through the coordinator with the declared mutation table
3. Polled collections are cache :class:`~campusfeed.cache.Subscription` objects

Example:
    >>> async with CampusApp() as app:
    ...     await app.login("ada@uni.edu", "secret")
    ...     posts = await app.load_feed()
    ...     await app.like_post(posts[0].id)
"""

import itertools
from pathlib import Path
from typing import Any

from campusfeed import actions, keys
from campusfeed.api import AsyncCampusClient, AuthenticationError, InvalidInputError
from campusfeed.cache import EntityCache, RefreshPolicy, Subscription
from campusfeed.config import settings
from campusfeed.logging import clear_request_context, logger, set_request_context
from campusfeed.metrics import initialize_metrics
from campusfeed.models import (
    AuthSession,
    Comment,
    Conversation,
    Group,
    GroupMember,
    GroupPrivacy,
    Message,
    Notification,
    Post,
    Story,
    StoryGroup,
    User,
)
from campusfeed.mutations import MutationCoordinator, MutationResult, MutationSpec, ViewScope
from campusfeed.pagination import FeedPaginator
from campusfeed.session import SessionStore
from campusfeed.stories import StoryViewer, group_stories


class CampusApp:
    """Wires the synchronization layer together.

    Args:
        client: Gateway client (creates new if None)
        cache: Entity cache (creates new if None)
        sessions: Session store (creates new if None)
        coordinator: Mutation coordinator (creates one on ``cache`` if None)
    """

    def __init__(
        self,
        client: AsyncCampusClient | None = None,
        cache: EntityCache | None = None,
        sessions: SessionStore | None = None,
        coordinator: MutationCoordinator | None = None,
    ) -> None:
        self.client = client or AsyncCampusClient()
        self.cache = cache or EntityCache()
        self.sessions = sessions or SessionStore()
        self.coordinator = coordinator or MutationCoordinator(self.cache)
        if self.coordinator.on_auth_failure is None:
            self.coordinator.on_auth_failure = self._on_auth_failure
        self.session: AuthSession | None = None
        self.auth_expired = False
        self._paginator: FeedPaginator[Post] | None = None
        self._subscriptions: list[Subscription[Any]] = []
        self._view_entries = itertools.count()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def initialize(self) -> None:
        """Restore a saved session, if any."""
        initialize_metrics()
        session = self.sessions.load()
        if session is not None:
            self._adopt(session)
            logger.info(f"✅ Restored session for {session.user.username}")
        else:
            logger.debug("No saved session")

    async def close(self) -> None:
        """Stop subscriptions, let pending mutations settle, close the client."""
        for sub in self._subscriptions:
            sub.close()
        self._subscriptions.clear()
        if self._paginator is not None:
            self._paginator.close()
        await self.coordinator.drain()
        await self.client.close()
        clear_request_context()
        logger.debug("App closed")

    async def __aenter__(self) -> "CampusApp":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    # -------------------------------------------------------------------------
    # Authentication
    # -------------------------------------------------------------------------

    @property
    def user(self) -> User | None:
        return self.session.user if self.session else None

    @property
    def is_authenticated(self) -> bool:
        return self.session is not None

    def require_user(self) -> User:
        if self.session is None:
            raise AuthenticationError("not signed in")
        return self.session.user

    async def login(self, email: str, password: str) -> AuthSession:
        session = await self.client.login(email, password)
        self._adopt(session)
        self.sessions.save(session)
        return session

    async def signup(self, username: str, email: str, password: str) -> AuthSession:
        session = await self.client.signup(username, email, password)
        self._adopt(session)
        self.sessions.save(session)
        return session

    def logout(self) -> None:
        """Forget the token, the saved session and every cached value."""
        self.sessions.clear()
        self.client.clear_token()
        self.cache.clear()
        self.session = None
        clear_request_context()
        logger.info("👋 Logged out")

    def _adopt(self, session: AuthSession) -> None:
        self.session = session
        self.auth_expired = False
        self.client.set_token(session.access_token, viewer_id=session.user.id)
        self.cache.write(keys.ME, session.user)
        set_request_context(user_id=session.user.id)

    def _on_auth_failure(self, exc: AuthenticationError) -> None:
        logger.warning(f"🔒 Session rejected by the server: {exc}")
        self.auth_expired = True

    # -------------------------------------------------------------------------
    # Feed
    # -------------------------------------------------------------------------

    @property
    def feed(self) -> FeedPaginator[Post]:
        if self._paginator is None:
            self._paginator = FeedPaginator(self.cache, self.client.get_feed_page)
        return self._paginator

    async def load_feed(self, pages: int = 1) -> list[Post]:
        """Load up to ``pages`` more pages and return every loaded post."""
        for _ in range(pages):
            issued = await self.feed.fetch_next()
            if not issued or self.feed.error is not None:
                break
        return self.feed.items

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def me(self) -> User:
        return await self.cache.fetch(keys.ME, self.client.me)

    async def comments(self, post_id: str) -> list[Comment]:
        return await self.cache.fetch(
            keys.comments(post_id), lambda: self.client.get_comments(post_id)
        )

    async def profile(self, username: str) -> User:
        return await self.cache.fetch(
            keys.profile(username), lambda: self.client.get_profile(username)
        )

    async def profile_posts(self, username: str) -> list[Post]:
        return await self.cache.fetch(
            keys.profile_posts(username),
            lambda: self.client.get_profile_posts(username),
        )

    async def suggestions(self) -> list[User]:
        return await self.cache.fetch(
            keys.SUGGESTIONS,
            self.client.get_suggestions,
            stale_time=settings.suggestions_stale_seconds,
        )

    async def search(self, query: str) -> list[User]:
        return await self.cache.fetch(
            keys.search(query), lambda: self.client.search_users(query)
        )

    async def friends(self) -> list[User]:
        return await self.cache.fetch(keys.FRIENDS, self.client.list_friends)

    async def groups(self) -> list[Group]:
        return await self.cache.fetch(keys.GROUPS, self.client.list_groups)

    async def group(self, group_id: str) -> Group:
        return await self.cache.fetch(
            keys.group(group_id), lambda: self.client.get_group(group_id)
        )

    async def group_posts(self, group_id: str) -> list[Post]:
        return await self.cache.fetch(
            keys.group_posts(group_id), lambda: self.client.get_group_posts(group_id)
        )

    async def group_members(self, group_id: str) -> list[GroupMember]:
        return await self.cache.fetch(
            keys.group_members(group_id),
            lambda: self.client.get_group_members(group_id),
        )

    async def group_requests(self, group_id: str) -> list[GroupMember]:
        return await self.cache.fetch(
            keys.group_requests(group_id),
            lambda: self.client.get_group_requests(group_id),
        )

    async def notifications(self) -> list[Notification]:
        return await self.cache.fetch(keys.NOTIFICATIONS, self.client.list_notifications)

    async def conversations(self) -> list[Conversation]:
        return await self.cache.fetch(keys.CHATS, self.client.list_conversations)

    async def messages(self, conversation_id: str) -> list[Message]:
        return await self.cache.fetch(
            keys.messages(conversation_id),
            lambda: self.client.get_messages(conversation_id),
        )

    async def stories(self) -> tuple[StoryGroup | None, list[StoryGroup]]:
        """Stories feed grouped by author, the viewer's own group first."""
        stories = await self.cache.fetch(keys.STORIES_FEED, self.client.get_stories_feed)
        return group_stories(stories, self.user.id if self.user else None)

    def find_post(self, post_id: str) -> Post | None:
        """Look a post up in every cached post collection."""
        for prefix in (keys.FEED, ("profile-posts",), ("group-posts",)):
            for key in self.cache.match(prefix):
                post = self.cache.find_item(key, post_id)
                if post is not None:
                    return post
        return None

    # -------------------------------------------------------------------------
    # Polled collections
    # -------------------------------------------------------------------------

    def subscribe(
        self, key: keys.CacheKey, fetcher: Any, policy: RefreshPolicy | None = None
    ) -> Subscription[Any]:
        """Start a subscription owned by the app (closed on ``close()``)."""
        sub: Subscription[Any] = Subscription(
            self.cache, key, fetcher, policy or RefreshPolicy()
        )
        sub.start()
        self._subscriptions.append(sub)
        return sub

    def watch_group_posts(self, group_id: str) -> Subscription[list[Post]]:
        return self.subscribe(
            keys.group_posts(group_id),
            lambda: self.client.get_group_posts(group_id),
            RefreshPolicy(interval=settings.group_posts_poll_seconds),
        )

    def watch_notifications(self) -> Subscription[list[Notification]]:
        return self.subscribe(
            keys.NOTIFICATIONS,
            self.client.list_notifications,
            RefreshPolicy(interval=settings.notifications_poll_seconds),
        )

    def watch_stories(self) -> Subscription[list[Story]]:
        return self.subscribe(
            keys.STORIES_FEED,
            self.client.get_stories_feed,
            RefreshPolicy(interval=settings.stories_poll_seconds),
        )

    # -------------------------------------------------------------------------
    # Actions
    # -------------------------------------------------------------------------

    async def _run(self, spec: MutationSpec, scope: ViewScope | None = None) -> MutationResult:
        set_request_context(operation=spec.name)
        result = await self.coordinator.run(spec, scope=scope)
        if not result.ok and result.error is not None:
            logger.info(f"{spec.name} {result.status}: {result.error}")
        return result

    async def like_post(self, post_id: str) -> MutationResult:
        post = self.find_post(post_id)
        if post is None:
            raise InvalidInputError(f"post {post_id} is not loaded")
        return await self._run(actions.like_post(self.client, post))

    async def comment(self, post_id: str, content: str) -> MutationResult:
        author = self.require_user()
        post = self.find_post(post_id)
        return await self._run(
            actions.create_comment(
                self.client,
                post_id,
                content,
                author,
                group_id=post.group_id if post else None,
            )
        )

    async def toggle_follow(self, username: str) -> MutationResult:
        user = await self.profile(username)
        return await self._run(actions.toggle_follow(self.client, user))

    async def join_group(self, group_id: str) -> MutationResult:
        group = await self.group(group_id)
        return await self._run(actions.join_group(self.client, group))

    async def like_story(self, story_id: str) -> MutationResult:
        return await self._run(actions.like_story(self.client, story_id))

    async def send_message(self, conversation_id: str, content: str) -> MutationResult:
        sender = self.require_user()
        return await self._run(
            actions.send_message(self.client, conversation_id, content, sender.id)
        )

    async def start_conversation(self, username: str) -> MutationResult:
        me = self.require_user()
        partner = await self.profile(username)
        if partner.id == me.id:
            raise InvalidInputError("cannot start a conversation with yourself")
        return await self._run(actions.start_conversation(self.client, partner.id))

    async def mark_notification_read(self, notification_id: str) -> MutationResult:
        return await self._run(actions.mark_notification_read(self.client, notification_id))

    async def create_post(self, content: str, image: Path | None = None) -> MutationResult:
        author = self.require_user()
        image_url = await self.client.upload_file(image) if image else None
        return await self._run(
            actions.create_post(self.client, content, author.username, image_url)
        )

    async def create_group_post(
        self, group_id: str, content: str, image: Path | None = None
    ) -> MutationResult:
        image_url = await self.client.upload_file(image) if image else None
        return await self._run(
            actions.create_group_post(self.client, group_id, content, image_url)
        )

    async def create_group(
        self,
        name: str,
        description: str = "",
        privacy: GroupPrivacy = GroupPrivacy.PUBLIC,
        image: Path | None = None,
    ) -> Group:
        if not name.strip():
            raise InvalidInputError("group name cannot be empty")
        cover = await self.client.upload_file(image) if image else None
        group = await self.client.create_group(name.strip(), description, privacy, cover)
        self.cache.invalidate(keys.GROUPS)
        return group

    async def create_story(
        self, content: str | None = None, image: Path | None = None
    ) -> MutationResult:
        image_url = await self.client.upload_file(image) if image else None
        return await self._run(actions.create_story(self.client, content, image_url))

    async def update_profile(self, **fields: Any) -> MutationResult:
        user = self.require_user()
        return await self._run(actions.update_profile(self.client, user.username, **fields))

    async def approve_request(
        self, group_id: str, request_id: str, status: str = "accepted"
    ) -> MutationResult:
        return await self._run(
            actions.approve_request(self.client, group_id, request_id, status)
        )

    async def send_friend_request(self, user_id: str) -> MutationResult:
        return await self._run(actions.send_friend_request(self.client, user_id))

    def story_viewer(self, group: StoryGroup, **options: Any) -> StoryViewer:
        """Viewer over ``group`` that records views and likes through the coordinator."""
        viewer = StoryViewer(group.stories, **options)

        def _record(_index: int, story: Story) -> None:
            self.coordinator.submit(
                actions.record_story_view(self.client, story.id, next(self._view_entries))
            )

        def _like(story: Story) -> None:
            self.coordinator.submit(actions.like_story(self.client, story.id))
            updated = self.cache.find_item(keys.STORIES_FEED, story.id)
            viewer.replace(updated or story.toggled_like())

        viewer.on_view = viewer.on_view or _record
        viewer.on_like = viewer.on_like or _like
        return viewer


__all__ = ["CampusApp"]
