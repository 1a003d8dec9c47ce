"""View-models for the campus social network client.

Server records (see :mod:`campusfeed.types`) are normalised into these
immutable Pydantic models by the ``from_record`` constructors. The entity
cache only ever holds these models, and local state changes are expressed as
pure ``with_*`` / ``toggled_*`` transforms that return a new instance.
"""

from datetime import datetime
from enum import StrEnum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from campusfeed.utils import (
    default_avatar_url,
    default_group_image_url,
    format_display_date,
    format_display_time,
    full_media_url,
    normalize_id,
    parse_datetime,
    temp_id,
    utc_now,
)
from campusfeed.types import (
    CommentRecord,
    ConversationRecord,
    GroupRecord,
    MembershipRecord,
    MessageRecord,
    NotificationRecord,
    PostRecord,
    ProfileRecord,
    StoryRecord,
    UserRecord,
)

DEFAULT_UNIVERSITY = "University Student"


class NotificationKind(StrEnum):
    """Kinds of notifications the backend emits."""

    LIKE = "like"
    COMMENT = "comment"
    FOLLOW = "follow"


class GroupPrivacy(StrEnum):
    """Visibility of a group and how joining works."""

    PUBLIC = "public"
    PRIVATE = "private"
    SECRET = "secret"


class _ViewModel(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)


def _liked_by(entries: list[dict[str, Any]] | None, viewer_id: str | None) -> bool:
    if not entries or viewer_id is None:
        return False
    for entry in entries:
        if normalize_id(entry.get("user_id")) == viewer_id:
            return True
        if normalize_id(entry.get("id")) == viewer_id:
            return True
    return False


# =============================================================================
# Users
# =============================================================================


class User(_ViewModel):
    """A member of the network as seen by the signed-in viewer.

    Attributes:
        id: User ID
        username: Unique handle
        full_name: Display name (falls back to the username)
        avatar_url: Absolute avatar URL (generated when missing)
        university: Affiliation string
        followers: Follower count
        following: Following count
        bio: Profile text
        cover_url: Absolute cover image URL, empty when missing
        is_following: Whether the viewer follows this user
    """

    id: str
    username: str
    full_name: str
    avatar_url: str
    university: str = DEFAULT_UNIVERSITY
    followers: int = 0
    following: int = 0
    bio: str = ""
    cover_url: str = ""
    is_following: bool = False

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, v: Any) -> str:
        return str(v)

    @classmethod
    def from_record(cls, record: UserRecord, *, base_url: str) -> "User":
        """Normalise a ``/users`` record with its nested ``profile`` block."""
        profile = record.get("profile") or {}
        username = record.get("username") or ""
        return cls(
            id=record.get("id") or profile.get("user_id") or "",
            username=username,
            full_name=profile.get("full_name") or username,
            avatar_url=full_media_url(base_url, profile.get("profile_picture"))
            or default_avatar_url(username),
            university=profile.get("university") or DEFAULT_UNIVERSITY,
            followers=int(
                record.get("followers_count") or profile.get("followers_count") or 0
            ),
            following=int(
                record.get("following_count") or profile.get("following_count") or 0
            ),
            bio=profile.get("bio") or "",
            cover_url=full_media_url(base_url, profile.get("cover_photo")) or "",
            is_following=bool(
                record.get("is_following") or profile.get("is_following") or False
            ),
        )

    @classmethod
    def from_profile(
        cls, record: ProfileRecord, *, username: str, base_url: str
    ) -> "User":
        """Normalise a ``/profiles/{username}`` record."""
        return cls(
            id=record.get("user_id") or record.get("id") or "",
            username=username,
            full_name=record.get("full_name") or username,
            avatar_url=full_media_url(base_url, record.get("profile_picture"))
            or default_avatar_url(username),
            university=record.get("university") or DEFAULT_UNIVERSITY,
            followers=int(record.get("followers_count") or 0),
            following=int(record.get("following_count") or 0),
            bio=record.get("bio") or "",
            cover_url=full_media_url(base_url, record.get("cover_photo")) or "",
            is_following=bool(record.get("is_following") or False),
        )

    def toggled_follow(self) -> "User":
        """Flip ``is_following`` and move the follower count with it."""
        delta = -1 if self.is_following else 1
        return self.model_copy(
            update={
                "is_following": not self.is_following,
                "followers": max(0, self.followers + delta),
            }
        )


# =============================================================================
# Posts & comments
# =============================================================================


class Post(_ViewModel):
    """Feed, profile or group post.

    ``is_liked`` and ``likes`` only ever change together.
    """

    id: str
    author: User
    content: str = ""
    image_url: Optional[str] = None
    likes: int = 0
    comments: int = 0
    is_liked: bool = False
    created_at: Optional[datetime] = None
    timestamp: str = ""
    group_id: Optional[str] = None

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, v: Any) -> str:
        return str(v)

    @classmethod
    def from_record(
        cls,
        record: PostRecord,
        *,
        base_url: str,
        viewer_id: str | None = None,
    ) -> "Post":
        likes = record.get("likes_count")
        if likes is None:
            likes = len(record.get("likes") or [])
        comments = record.get("comments_count")
        if comments is None:
            comments = len(record.get("comments") or [])
        created_at = parse_datetime(record.get("created_at"))
        return cls(
            id=record["id"],
            author=User.from_record(record.get("user") or {}, base_url=base_url),
            content=record.get("caption") or record.get("content") or "",
            image_url=full_media_url(base_url, record.get("image")),
            likes=int(likes),
            comments=int(comments),
            is_liked=bool(record.get("is_liked"))
            or _liked_by(record.get("likes"), viewer_id),
            created_at=created_at,
            timestamp=format_display_date(created_at),
            group_id=normalize_id(record.get("group_id")),
        )

    def toggled_like(self) -> "Post":
        """Flip ``is_liked`` and move ``likes`` by one in the same direction."""
        delta = -1 if self.is_liked else 1
        return self.model_copy(
            update={"is_liked": not self.is_liked, "likes": max(0, self.likes + delta)}
        )

    def with_like_state(self, is_liked: bool) -> "Post":
        """Toggle only if ``is_liked`` differs, keeping the count in step."""
        return self if self.is_liked == is_liked else self.toggled_like()

    def with_likes(self, likes: int, is_liked: bool | None = None) -> "Post":
        """Replace the like count with the server's canonical value."""
        update: dict[str, Any] = {"likes": max(0, likes)}
        if is_liked is not None:
            update["is_liked"] = is_liked
        return self.model_copy(update=update)


class Comment(_ViewModel):
    """Comment under a post. ``pending`` marks an unconfirmed local entry."""

    id: str
    post_id: str
    author: User
    content: str
    created_at: Optional[datetime] = None
    timestamp: str = ""
    pending: bool = False

    @field_validator("id", "post_id", mode="before")
    @classmethod
    def _coerce_id(cls, v: Any) -> str:
        return str(v)

    @classmethod
    def from_record(
        cls, record: CommentRecord, *, post_id: str, base_url: str
    ) -> "Comment":
        created_at = parse_datetime(record.get("created_at"))
        return cls(
            id=record["id"],
            post_id=record.get("post_id") or post_id,
            author=User.from_record(record.get("user") or {}, base_url=base_url),
            content=record.get("content") or "",
            created_at=created_at,
            timestamp=format_display_date(created_at),
        )

    @classmethod
    def optimistic(cls, post_id: str, author: User, content: str) -> "Comment":
        """Local placeholder shown until the server confirms the comment."""
        now = utc_now()
        return cls(
            id=temp_id(),
            post_id=post_id,
            author=author,
            content=content,
            created_at=now,
            timestamp=format_display_date(now),
            pending=True,
        )


# =============================================================================
# Groups
# =============================================================================


class Group(_ViewModel):
    """Interest or course group."""

    id: str
    name: str
    description: str = ""
    member_count: int = 0
    image_url: str = ""
    privacy: GroupPrivacy = GroupPrivacy.PUBLIC
    is_joined: bool = False
    is_pending: bool = False
    creator_id: Optional[str] = None

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, v: Any) -> str:
        return str(v)

    @classmethod
    def from_record(cls, record: GroupRecord, *, base_url: str) -> "Group":
        name = record.get("name") or ""
        privacy = record.get("privacy") or GroupPrivacy.PUBLIC
        return cls(
            id=record["id"],
            name=name,
            description=record.get("description") or "",
            member_count=int(record.get("member_count") or 0),
            image_url=full_media_url(base_url, record.get("cover_image"))
            or default_group_image_url(name),
            privacy=GroupPrivacy(privacy),
            is_joined=bool(record.get("is_member") or record.get("is_joined") or False),
            is_pending=bool(record.get("is_pending") or False),
            creator_id=normalize_id(record.get("creator_id")),
        )

    def requested_join(self) -> "Group":
        """State right after asking to join: members of public groups join
        immediately, private and secret groups leave a pending request."""
        if self.privacy is GroupPrivacy.PUBLIC:
            return self.model_copy(
                update={"is_joined": True, "member_count": self.member_count + 1}
            )
        return self.model_copy(update={"is_pending": True})

    def with_membership_status(self, status: str) -> "Group":
        """Apply the membership status the server reported after a join."""
        if status == "pending":
            return self.model_copy(update={"is_pending": True, "is_joined": False})
        if self.is_joined:
            return self.model_copy(update={"is_pending": False})
        return self.model_copy(
            update={
                "is_joined": True,
                "is_pending": False,
                "member_count": self.member_count + 1,
            }
        )


class GroupMember(_ViewModel):
    """Membership row or join request of a group."""

    id: str
    user_id: str
    group_id: Optional[str] = None
    status: str = "accepted"
    user: Optional[User] = None

    @field_validator("id", "user_id", mode="before")
    @classmethod
    def _coerce_id(cls, v: Any) -> str:
        return str(v)

    @classmethod
    def from_record(cls, record: MembershipRecord, *, base_url: str) -> "GroupMember":
        user = record.get("user")
        return cls(
            id=record.get("id") or record.get("user_id") or "",
            user_id=record.get("user_id") or (user or {}).get("id") or "",
            group_id=normalize_id(record.get("group_id")),
            status=record.get("status") or "accepted",
            user=User.from_record(user, base_url=base_url) if user else None,
        )


# =============================================================================
# Stories
# =============================================================================


class Story(_ViewModel):
    """Ephemeral post shown in the story viewer."""

    id: str
    author: User
    content: Optional[str] = None
    image_url: Optional[str] = None
    likes: int = 0
    views: int = 0
    is_liked: bool = False
    created_at: Optional[datetime] = None
    timestamp: str = ""

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, v: Any) -> str:
        return str(v)

    @classmethod
    def from_record(
        cls,
        record: StoryRecord,
        *,
        base_url: str,
        viewer_id: str | None = None,
    ) -> "Story":
        created_at = parse_datetime(record.get("created_at"))
        return cls(
            id=record["id"],
            author=User.from_record(record.get("user") or {}, base_url=base_url),
            content=record.get("content"),
            image_url=full_media_url(base_url, record.get("image_url")),
            likes=len(record.get("likes") or []),
            views=len(record.get("views") or []),
            is_liked=_liked_by(record.get("likes"), viewer_id),
            created_at=created_at,
            timestamp=format_display_time(created_at),
        )

    def toggled_like(self) -> "Story":
        """Flip ``is_liked`` and move ``likes`` with it."""
        delta = -1 if self.is_liked else 1
        return self.model_copy(
            update={"is_liked": not self.is_liked, "likes": max(0, self.likes + delta)}
        )


class StoryGroup(_ViewModel):
    """All stories of one author, in feed order."""

    author: User
    stories: list[Story] = Field(default_factory=list)


# =============================================================================
# Messaging
# =============================================================================


class Message(_ViewModel):
    """Direct message inside a conversation."""

    id: str
    sender_id: str
    content: str
    created_at: Optional[datetime] = None
    timestamp: str = ""
    is_read: bool = False
    pending: bool = False

    @field_validator("id", "sender_id", mode="before")
    @classmethod
    def _coerce_id(cls, v: Any) -> str:
        return str(v)

    @classmethod
    def from_record(cls, record: MessageRecord) -> "Message":
        created_at = parse_datetime(record.get("created_at"))
        return cls(
            id=record["id"],
            sender_id=record.get("sender_id") or "",
            content=record.get("content") or "",
            created_at=created_at,
            timestamp=format_display_time(created_at),
            is_read=bool(record.get("is_read") or False),
        )

    @classmethod
    def optimistic(cls, sender_id: str, content: str) -> "Message":
        now = utc_now()
        return cls(
            id=temp_id(),
            sender_id=sender_id,
            content=content,
            created_at=now,
            timestamp=format_display_time(now),
            is_read=True,
            pending=True,
        )


class Conversation(_ViewModel):
    """Conversation summary shown in the chat list."""

    id: str
    partner: User
    participants: list[User] = Field(default_factory=list)
    last_message: str = "No messages yet"
    timestamp: str = ""
    unread_count: int = 0

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, v: Any) -> str:
        return str(v)

    @classmethod
    def from_record(
        cls,
        record: ConversationRecord,
        *,
        base_url: str,
        viewer_id: str | None = None,
    ) -> "Conversation":
        participants = [
            User.from_record(p, base_url=base_url)
            for p in record.get("participants") or []
        ]
        partner = next((p for p in participants if p.id != viewer_id), None)
        if partner is None and participants:
            partner = participants[0]
        if partner is None:
            raise ValueError(f"conversation {record.get('id')} has no participants")

        messages = record.get("messages") or []
        last = messages[-1] if messages else None
        unread = sum(
            1
            for m in messages
            if not m.get("is_read") and normalize_id(m.get("sender_id")) != viewer_id
        )
        return cls(
            id=record["id"],
            partner=partner,
            participants=participants,
            last_message=(last or {}).get("content") or "No messages yet",
            timestamp=format_display_time(parse_datetime((last or {}).get("created_at"))),
            unread_count=unread,
        )


# =============================================================================
# Notifications & session
# =============================================================================


_NOTIFICATION_TEXT = {
    NotificationKind.LIKE: "liked your post",
    NotificationKind.COMMENT: "commented on your post",
    NotificationKind.FOLLOW: "started following you",
}


class Notification(_ViewModel):
    """Activity notification for the signed-in user."""

    id: str
    kind: NotificationKind
    actor: User
    message: str
    created_at: Optional[datetime] = None
    timestamp: str = ""
    read: bool = False

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, v: Any) -> str:
        return str(v)

    @classmethod
    def from_record(cls, record: NotificationRecord, *, base_url: str) -> "Notification":
        kind = NotificationKind(record["type"])
        actor = User.from_record(record.get("sender") or {}, base_url=base_url)
        created_at = parse_datetime(record.get("created_at"))
        return cls(
            id=record["id"],
            kind=kind,
            actor=actor,
            message=f"{actor.username} {_NOTIFICATION_TEXT[kind]}",
            created_at=created_at,
            timestamp=format_display_date(created_at),
            read=bool(record.get("is_read") or False),
        )

    def marked_read(self) -> "Notification":
        return self.model_copy(update={"read": True})


class AuthSession(_ViewModel):
    """Bearer token and the minimal profile kept for the signed-in user."""

    access_token: str
    user: User


__all__ = [
    "AuthSession",
    "Comment",
    "Conversation",
    "Group",
    "GroupMember",
    "GroupPrivacy",
    "Message",
    "Notification",
    "NotificationKind",
    "Post",
    "Story",
    "StoryGroup",
    "User",
]
