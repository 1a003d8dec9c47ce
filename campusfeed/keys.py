"""Composite cache keys.

A key is a tuple: the collection name first, then its parameters. Prefix
invalidation relies on that ordering (``("group-posts",)`` matches every
group's post list).
"""

from typing import Any

CacheKey = tuple[Any, ...]

FEED: CacheKey = ("feed",)
ME: CacheKey = ("me",)
GROUPS: CacheKey = ("groups",)
SUGGESTIONS: CacheKey = ("suggestions",)
STORIES_FEED: CacheKey = ("stories-feed",)
CHATS: CacheKey = ("chats",)
NOTIFICATIONS: CacheKey = ("notifications",)
FRIENDS: CacheKey = ("friends",)


def comments(post_id: str) -> CacheKey:
    return ("comments", post_id)


def profile(username: str) -> CacheKey:
    return ("profile", username)


def profile_posts(username: str) -> CacheKey:
    return ("profile-posts", username)


def group(group_id: str) -> CacheKey:
    return ("group", group_id)


def group_posts(group_id: str) -> CacheKey:
    return ("group-posts", group_id)


def group_members(group_id: str) -> CacheKey:
    return ("group-members", group_id)


def group_requests(group_id: str) -> CacheKey:
    return ("group-requests", group_id)


def messages(conversation_id: str) -> CacheKey:
    return ("messages", conversation_id)


def search(query: str) -> CacheKey:
    return ("search", query)


__all__ = [
    "CacheKey",
    "FEED",
    "ME",
    "GROUPS",
    "SUGGESTIONS",
    "STORIES_FEED",
    "CHATS",
    "NOTIFICATIONS",
    "FRIENDS",
    "comments",
    "profile",
    "profile_posts",
    "group",
    "group_posts",
    "group_members",
    "group_requests",
    "messages",
    "search",
]
