"""Protocol interfaces for dependency injection.

The coordinator, paginator and app depend on these structural contracts
rather than on concrete classes, so tests can hand in fakes without
inheritance.

Example:
    >>> from campusfeed.interfaces import IEntityCache
    >>> from campusfeed.cache import EntityCache
    >>> isinstance(EntityCache(), IEntityCache)  # True, structural typing
"""

from collections.abc import Callable
from typing import Any, Protocol, runtime_checkable

from campusfeed.keys import CacheKey
from campusfeed.models import Comment, Conversation, Message, Post, Story, User


@runtime_checkable
class ICampusClient(Protocol):
    """Subset of the gateway the feed and the mutation table rely on."""

    viewer_id: str | None

    async def get_feed_page(self, page: int, page_size: int | None = None) -> list[Post]:
        """Fetch one page.

        Raises:
            TransientAPIError: Network failure, 429 or 5xx
            AuthenticationError: Token rejected
        """
        ...

    async def like_post(self, post_id: str) -> int | None: ...

    async def create_post(self, content: str, image_url: str | None = None) -> Post: ...

    async def create_comment(self, post_id: str, content: str) -> Comment: ...

    async def follow_user(self, user_id: str) -> Any: ...

    async def unfollow_user(self, user_id: str) -> Any: ...

    async def update_profile(
        self,
        full_name: str | None = None,
        bio: str | None = None,
        university: str | None = None,
        profile_picture: str | None = None,
    ) -> User: ...

    async def send_friend_request(self, user_id: str) -> Any: ...

    async def join_group(self, group_id: str) -> str: ...

    async def approve_request(self, request_id: str, status: str) -> Any: ...

    async def create_group_post(
        self, group_id: str, content: str, image_url: str | None = None
    ) -> Post: ...

    async def send_message(self, conversation_id: str, content: str) -> Message: ...

    async def create_conversation(
        self, participant_ids: list[str], name: str | None = None
    ) -> Conversation: ...

    async def mark_notification_read(self, notification_id: str) -> Any: ...

    async def create_story(
        self, content: str | None = None, image_url: str | None = None
    ) -> Story: ...

    async def view_story(self, story_id: str) -> None: ...

    async def like_story(self, story_id: str) -> Any: ...


@runtime_checkable
class IEntityCache(Protocol):
    """Keyed store contract used by the coordinator and paginator."""

    def read(self, key: CacheKey) -> Any | None: ...

    def peek(self, key: CacheKey) -> Any | None: ...

    def write(self, key: CacheKey, value: Any) -> None: ...

    def patch(self, key: CacheKey, updater: Callable[[Any], Any]) -> bool: ...

    def update_item(
        self, key: CacheKey, item_id: str, fn: Callable[[Any], Any]
    ) -> bool: ...

    def find_item(self, key: CacheKey, item_id: str) -> Any | None: ...

    def invalidate(self, key: CacheKey, exact: bool = True) -> list[CacheKey]: ...

    def add_listener(
        self, key: CacheKey, callback: Callable[[CacheKey, Any], None]
    ) -> Callable[[], None]: ...


__all__ = ["ICampusClient", "IEntityCache"]
