"""Declared mutation table.

Each factory returns the :class:`~campusfeed.mutations.MutationSpec` for one
user action: which cached entities it patches, how it reconciles with the
server, and which keys it invalidates. Cascades are listed here per action
and never computed at runtime.

Example:
    >>> spec = like_post(client, post)
    >>> result = await coordinator.run(spec)
    >>> result.status
    <MutationStatus.SUCCEEDED: 'succeeded'>
"""

from typing import Any

from campusfeed import keys
from campusfeed.api import InvalidInputError
from campusfeed.cache import Pages
from campusfeed.interfaces import ICampusClient, IEntityCache
from campusfeed.models import Comment, Group, Message, Post, User
from campusfeed.mutations import ItemSnapshot, MutationSpec, update_items


def _require_text(value: str | None, what: str) -> None:
    if not value or not value.strip():
        raise InvalidInputError(f"{what} cannot be empty")


def _post_keys(post: Post) -> list[keys.CacheKey]:
    targets = [keys.FEED, keys.profile_posts(post.author.username)]
    if post.group_id:
        targets.append(keys.group_posts(post.group_id))
    return targets


def _append_pending(item: Any) -> Any:
    return lambda items: [*(items or []), item]


def _drop(item_id: str) -> Any:
    return lambda items: [i for i in items if i.id != item_id]


def _replace_pending(temp: str, confirmed: Any) -> Any:
    def _updater(items: list[Any]) -> list[Any]:
        kept = [i for i in items if i.id != temp]
        if any(i.id == confirmed.id for i in kept):
            return kept
        return [*kept, confirmed]

    return _updater


# =============================================================================
# Optimistic mutations
# =============================================================================


def like_post(client: ICampusClient, post: Post) -> MutationSpec:
    """Toggle the viewer's like on a post everywhere it is cached.

    ``is_liked`` and ``likes`` always move together: reconcile, rollback and
    re-application after a feed refresh all drive the post to a known like
    state instead of flipping it.
    """
    targets = _post_keys(post)

    def apply(cache: IEntityCache) -> ItemSnapshot:
        return update_items(cache, targets, post.id, Post.toggled_like)

    def liked_after(snap: ItemSnapshot) -> bool:
        return not (snap.first() or post).is_liked

    def set_liked(cache: IEntityCache, liked: bool) -> None:
        for key in targets:
            cache.update_item(key, post.id, lambda p: p.with_like_state(liked))

    def reconcile(cache: IEntityCache, likes_count: int | None, snap: ItemSnapshot) -> None:
        liked = liked_after(snap)
        if likes_count is None:
            set_liked(cache, liked)
            return
        for key in targets:
            cache.update_item(
                key, post.id, lambda p: p.with_likes(likes_count, is_liked=liked)
            )

    return MutationSpec(
        name="like_post",
        entity_id=post.id,
        apply=apply,
        send=lambda _snap: client.like_post(post.id),
        reconcile=reconcile,
        rollback=lambda cache, snap: set_liked(cache, not liked_after(snap)),
        invalidates=[keys.group_posts(post.group_id)] if post.group_id else [],
        holds=targets,
        reapply=lambda cache, snap: set_liked(cache, liked_after(snap)),
    )


def create_comment(
    client: ICampusClient,
    post_id: str,
    content: str,
    author: User,
    group_id: str | None = None,
) -> MutationSpec:
    """Append a pending comment, then swap it for the server's copy."""
    key = keys.comments(post_id)
    pending = Comment.optimistic(post_id, author, (content or "").strip())

    def apply(cache: IEntityCache) -> str:
        cache.patch(key, _append_pending(pending))
        return pending.id

    def reconcile(cache: IEntityCache, comment: Comment, temp: str) -> None:
        cache.patch(key, _replace_pending(temp, comment))

    invalidates = [key, keys.FEED]
    if group_id:
        invalidates.append(keys.group_posts(group_id))

    return MutationSpec(
        name="create_comment",
        entity_id=pending.id,
        validate=lambda: _require_text(content, "comment"),
        apply=apply,
        send=lambda _temp: client.create_comment(post_id, pending.content),
        reconcile=reconcile,
        rollback=lambda cache, temp: cache.patch(key, _drop(temp)),
        invalidates=invalidates,
    )


def toggle_follow(client: ICampusClient, user: User) -> MutationSpec:
    """Follow or unfollow ``user`` depending on the cached state."""
    targets = [keys.profile(user.username), keys.SUGGESTIONS]

    def apply(cache: IEntityCache) -> ItemSnapshot:
        return update_items(cache, targets, user.id, User.toggled_follow)

    async def send(snap: ItemSnapshot) -> Any:
        before = snap.first() or user
        if before.is_following:
            return await client.unfollow_user(user.id)
        return await client.follow_user(user.id)

    return MutationSpec(
        name="toggle_follow",
        entity_id=user.id,
        apply=apply,
        send=send,
        rollback=lambda cache, snap: snap.restore(cache),
        invalidates=targets,
    )


def join_group(client: ICampusClient, group: Group) -> MutationSpec:
    """Join a public group, or leave a pending request on a private one."""
    targets = [keys.GROUPS, keys.group(group.id)]

    def apply(cache: IEntityCache) -> ItemSnapshot:
        return update_items(cache, targets, group.id, Group.requested_join)

    def reconcile(cache: IEntityCache, status: str, snap: ItemSnapshot) -> None:
        for key, before in snap.items.items():
            settled = before.with_membership_status(status)
            cache.update_item(key, group.id, lambda _g, settled=settled: settled)

    return MutationSpec(
        name="join_group",
        entity_id=group.id,
        apply=apply,
        send=lambda _snap: client.join_group(group.id),
        reconcile=reconcile,
        rollback=lambda cache, snap: snap.restore(cache),
        invalidates=[
            keys.group(group.id),
            keys.group_members(group.id),
            keys.group_requests(group.id),
        ],
    )


def like_story(client: ICampusClient, story_id: str) -> MutationSpec:
    def apply(cache: IEntityCache) -> ItemSnapshot:
        return update_items(
            cache, [keys.STORIES_FEED], story_id, lambda s: s.toggled_like()
        )

    return MutationSpec(
        name="like_story",
        entity_id=story_id,
        apply=apply,
        send=lambda _snap: client.like_story(story_id),
        rollback=lambda cache, snap: snap.restore(cache),
        invalidates=[keys.STORIES_FEED],
    )


def send_message(
    client: ICampusClient, conversation_id: str, content: str, sender_id: str
) -> MutationSpec:
    key = keys.messages(conversation_id)
    pending = Message.optimistic(sender_id, (content or "").strip())

    def apply(cache: IEntityCache) -> str:
        cache.patch(key, _append_pending(pending))
        return pending.id

    def reconcile(cache: IEntityCache, message: Message, temp: str) -> None:
        cache.patch(key, _replace_pending(temp, message))

    return MutationSpec(
        name="send_message",
        entity_id=pending.id,
        validate=lambda: _require_text(content, "message"),
        apply=apply,
        send=lambda _temp: client.send_message(conversation_id, pending.content),
        reconcile=reconcile,
        rollback=lambda cache, temp: cache.patch(key, _drop(temp)),
        invalidates=[key, keys.CHATS],
    )


def mark_notification_read(
    client: ICampusClient, notification_id: str
) -> MutationSpec:
    def apply(cache: IEntityCache) -> ItemSnapshot:
        return update_items(
            cache, [keys.NOTIFICATIONS], notification_id, lambda n: n.marked_read()
        )

    return MutationSpec(
        name="mark_notification_read",
        entity_id=notification_id,
        apply=apply,
        send=lambda _snap: client.mark_notification_read(notification_id),
        rollback=lambda cache, snap: snap.restore(cache),
    )


# =============================================================================
# Confirmed-only mutations
# =============================================================================


def create_post(
    client: ICampusClient,
    content: str,
    author_username: str,
    image_url: str | None = None,
) -> MutationSpec:
    """Publish a post and put it at the head of the feed once confirmed."""

    def validate() -> None:
        if not (content and content.strip()) and not image_url:
            raise InvalidInputError("a post needs text or an image")

    def reconcile(cache: IEntityCache, post: Post, _snap: Any) -> None:
        cache.patch(
            keys.FEED,
            lambda feed: feed.prepended(post) if isinstance(feed, Pages) else [post, *feed],
        )

    return MutationSpec(
        name="create_post",
        validate=validate,
        send=lambda _snap: client.create_post(content.strip(), image_url),
        reconcile=reconcile,
        invalidates=[keys.profile_posts(author_username)],
    )


def create_group_post(
    client: ICampusClient,
    group_id: str,
    content: str,
    image_url: str | None = None,
) -> MutationSpec:
    def validate() -> None:
        if not (content and content.strip()) and not image_url:
            raise InvalidInputError("a post needs text or an image")

    return MutationSpec(
        name="create_group_post",
        entity_id=group_id,
        validate=validate,
        send=lambda _snap: client.create_group_post(group_id, content.strip(), image_url),
        invalidates=[keys.group_posts(group_id)],
    )


def create_story(
    client: ICampusClient,
    content: str | None = None,
    image_url: str | None = None,
) -> MutationSpec:
    def validate() -> None:
        if not (content and content.strip()) and not image_url:
            raise InvalidInputError("a story needs text or an image")

    return MutationSpec(
        name="create_story",
        validate=validate,
        send=lambda _snap: client.create_story(content, image_url),
        invalidates=[keys.STORIES_FEED],
    )


def update_profile(
    client: ICampusClient,
    username: str,
    *,
    full_name: str | None = None,
    bio: str | None = None,
    university: str | None = None,
    profile_picture: str | None = None,
) -> MutationSpec:
    def reconcile(cache: IEntityCache, user: User, _snap: Any) -> None:
        cache.write(keys.ME, user)

    return MutationSpec(
        name="update_profile",
        entity_id=username,
        send=lambda _snap: client.update_profile(
            full_name=full_name,
            bio=bio,
            university=university,
            profile_picture=profile_picture,
        ),
        reconcile=reconcile,
        invalidates=[keys.profile(username)],
    )


def approve_request(
    client: ICampusClient, group_id: str, request_id: str, status: str = "accepted"
) -> MutationSpec:
    def validate() -> None:
        if status not in ("accepted", "rejected"):
            raise InvalidInputError("status must be 'accepted' or 'rejected'")

    return MutationSpec(
        name="approve_request",
        entity_id=request_id,
        validate=validate,
        send=lambda _snap: client.approve_request(request_id, status),
        invalidates=[keys.group_requests(group_id), keys.group_members(group_id)],
    )


def send_friend_request(client: ICampusClient, user_id: str) -> MutationSpec:
    return MutationSpec(
        name="send_friend_request",
        entity_id=user_id,
        send=lambda _snap: client.send_friend_request(user_id),
        invalidates=[keys.FRIENDS],
    )


def start_conversation(
    client: ICampusClient, participant_id: str, name: str | None = None
) -> MutationSpec:
    """Open a conversation with another user; listed once the server confirms."""

    def validate() -> None:
        if not participant_id:
            raise InvalidInputError("a conversation needs a participant")

    return MutationSpec(
        name="start_conversation",
        entity_id=participant_id,
        validate=validate,
        send=lambda _snap: client.create_conversation([participant_id], name),
        invalidates=[keys.CHATS],
    )


def record_story_view(
    client: ICampusClient, story_id: str, entry: int = 0
) -> MutationSpec:
    """Fire-and-forget view ping; no cache effect.

    Each entry into a story gets its own slot, so the viewer's view policy
    alone decides how many views are sent.
    """
    return MutationSpec(
        name="record_story_view",
        entity_id=f"{story_id}#{entry}",
        send=lambda _snap: client.view_story(story_id),
    )


__all__ = [
    "approve_request",
    "create_comment",
    "create_group_post",
    "create_post",
    "create_story",
    "join_group",
    "like_post",
    "like_story",
    "mark_notification_read",
    "record_story_view",
    "send_friend_request",
    "send_message",
    "start_conversation",
    "toggle_follow",
    "update_profile",
]
