"""Type definitions for raw campus backend records.

TypedDicts describing the JSON the REST backend returns before it is
normalised into the view-models in :mod:`campusfeed.models`.

Example:
    >>> from campusfeed.types import PostRecord
    >>> record: PostRecord = {
    ...     "id": 7,
    ...     "caption": "Exam week",
    ...     "likes_count": 3,
    ...     "created_at": "2024-03-01T10:00:00",
    ...     "user": {"id": "u1", "username": "ada"},
    ... }
"""

from typing import NotRequired, Required, TypedDict


# =============================================================================
# Users
# =============================================================================


class ProfileRecord(TypedDict, total=False):
    """Profile block nested in a user record, or returned by ``/profiles``."""

    user_id: str
    full_name: str | None
    profile_picture: str | None
    cover_photo: str | None
    university: str | None
    bio: str | None
    followers_count: int
    following_count: int
    is_following: bool


class UserRecord(TypedDict, total=False):
    """User as returned by ``/users/me/``, search and nested references."""

    id: Required[str]
    username: Required[str]
    email: NotRequired[str]
    profile: NotRequired[ProfileRecord | None]
    followers_count: NotRequired[int]
    following_count: NotRequired[int]
    is_following: NotRequired[bool]


class LikeRecord(TypedDict, total=False):
    """Entry of a post's or story's ``likes`` list."""

    id: str
    user_id: str


# =============================================================================
# Content
# =============================================================================


class CommentRecord(TypedDict, total=False):
    """Comment under a post."""

    id: Required[int | str]
    content: Required[str]
    created_at: str
    post_id: int | str
    user: UserRecord


class PostRecord(TypedDict, total=False):
    """Feed, profile or group post."""

    id: Required[int | str]
    caption: str | None
    image: str | None
    likes_count: int
    likes: list[LikeRecord]
    comments: list[CommentRecord]
    comments_count: int
    created_at: str
    group_id: int | str | None
    user: Required[UserRecord]


class StoryRecord(TypedDict, total=False):
    """Ephemeral story from ``/stories/feed``."""

    id: Required[int | str]
    content: str | None
    image_url: str | None
    created_at: str
    likes: list[LikeRecord]
    views: list[LikeRecord]
    user: Required[UserRecord]


# =============================================================================
# Groups
# =============================================================================


class GroupRecord(TypedDict, total=False):
    """Group summary or detail."""

    id: Required[int | str]
    name: Required[str]
    description: str | None
    cover_image: str | None
    privacy: str
    member_count: int
    creator_id: str | None
    is_member: bool
    is_pending: bool


class MembershipRecord(TypedDict, total=False):
    """Group member or join request."""

    id: int | str
    user_id: str
    group_id: int | str
    status: str
    user: UserRecord


# =============================================================================
# Messaging & notifications
# =============================================================================


class MessageRecord(TypedDict, total=False):
    """Direct message."""

    id: Required[int | str]
    content: Required[str]
    sender_id: str
    created_at: str
    is_read: bool


class ConversationRecord(TypedDict, total=False):
    """Conversation with its participants and (optionally) messages."""

    id: Required[int | str]
    name: str | None
    participants: list[UserRecord]
    messages: list[MessageRecord]


class NotificationRecord(TypedDict, total=False):
    """Notification addressed to the signed-in user."""

    id: Required[int | str]
    type: Required[str]
    sender: UserRecord
    created_at: str
    is_read: bool


# =============================================================================
# Auxiliary responses
# =============================================================================


class TokenResponse(TypedDict):
    """``POST /token`` response."""

    access_token: str
    token_type: str


class UploadResponse(TypedDict):
    """``POST /upload/`` response."""

    url: str


class LikeResponse(TypedDict, total=False):
    """``POST /posts/{id}/like`` response."""

    likes_count: int
    liked: bool


__all__ = [
    "ProfileRecord",
    "UserRecord",
    "LikeRecord",
    "CommentRecord",
    "PostRecord",
    "StoryRecord",
    "GroupRecord",
    "MembershipRecord",
    "MessageRecord",
    "ConversationRecord",
    "NotificationRecord",
    "TokenResponse",
    "UploadResponse",
    "LikeResponse",
]
