"""campusfeed - client data-synchronization layer for a campus social network.

This package keeps a local entity cache in step with the campus REST backend:
paginated feed loading, optimistic mutations with rollback, polled
collections and a timed story viewer, plus a terminal front end.

Example:
    >>> from campusfeed import CampusApp
    >>> import asyncio
    >>>
    >>> async def main():
    ...     async with CampusApp() as app:
    ...         await app.login("ada@uni.edu", "secret")
    ...         for post in await app.load_feed():
    ...             print(post.author.username, post.content)
    >>>
    >>> asyncio.run(main())
"""

from campusfeed.api import (
    APIError,
    AsyncCampusClient,
    AuthenticationError,
    InvalidInputError,
    TransientAPIError,
)
from campusfeed.app import CampusApp
from campusfeed.cache import EntityCache, Pages, RefreshPolicy, Subscription
from campusfeed.config import settings
from campusfeed.models import (
    AuthSession,
    Comment,
    Conversation,
    Group,
    Message,
    Notification,
    Post,
    Story,
    StoryGroup,
    User,
)
from campusfeed.mutations import (
    MutationCoordinator,
    MutationResult,
    MutationSpec,
    MutationStatus,
    ViewScope,
)
from campusfeed.pagination import FeedPaginator, PageState
from campusfeed.session import SessionStore
from campusfeed.stories import StoryViewer, group_stories

__version__ = "0.1.0"

__all__ = [
    # Main components
    "CampusApp",
    "AsyncCampusClient",
    "EntityCache",
    "MutationCoordinator",
    "FeedPaginator",
    "StoryViewer",
    "SessionStore",
    # Configuration
    "settings",
    # Cache values and handles
    "Pages",
    "RefreshPolicy",
    "Subscription",
    "group_stories",
    # Mutations
    "MutationSpec",
    "MutationResult",
    "MutationStatus",
    "ViewScope",
    "PageState",
    # Errors
    "APIError",
    "AuthenticationError",
    "InvalidInputError",
    "TransientAPIError",
    # View-models
    "AuthSession",
    "Comment",
    "Conversation",
    "Group",
    "Message",
    "Notification",
    "Post",
    "Story",
    "StoryGroup",
    "User",
]
