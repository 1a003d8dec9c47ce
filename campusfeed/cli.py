"""Command-line interface for campusfeed.

Each command builds a :class:`~campusfeed.app.CampusApp`, runs one coroutine
against it and renders the resulting state with Rich.

Commands:
- login / signup / logout / whoami: Session management
- feed / post / like / comments / comment: Posts
- profile / follow / search / suggestions: People
- groups / join: Groups
- notifications / stories: Activity
- chats / messages / send: Direct messages

Example:
    $ campusfeed login ada@uni.edu
    $ campusfeed feed --pages 2
    $ campusfeed like 42
    $ campusfeed comment 42 "See you at the library"
"""

import asyncio
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, Optional, TypeVar

import typer
from rich.console import Console
from rich.table import Table

from campusfeed import keys
from campusfeed.api import APIError, AuthenticationError, InvalidInputError, TransientAPIError
from campusfeed.app import CampusApp
from campusfeed.config import settings
from campusfeed.logging import setup_logging
from campusfeed.models import Post, StoryGroup
from campusfeed.mutations import MutationResult
from campusfeed.telemetry import shutdown_telemetry
from campusfeed.utils import redact_token

T = TypeVar("T")

# Initialize CLI app
app = typer.Typer(
    name="campusfeed",
    help="Terminal client for the campus social network",
    add_completion=False,
)
console = Console()


# =============================================================================
# Helper Functions
# =============================================================================


def run_async(coro: Awaitable[T]) -> T:
    """Run async coroutine in event loop."""
    return asyncio.run(coro)  # type: ignore[arg-type]


def with_app(action: Callable[[CampusApp], Awaitable[T]]) -> T:
    """Run ``action`` against an initialized app and map failures to exit codes.

    Exit codes:
        1: Request failed (network, server or authentication)
        2: Invalid input, nothing was sent
    """

    async def _runner() -> T:
        campus = CampusApp()
        try:
            await campus.initialize()
            return await action(campus)
        finally:
            await campus.close()

    try:
        return run_async(_runner())
    except InvalidInputError as e:
        console.print(f"❌ [bold red]{e}[/bold red]")
        raise typer.Exit(code=2)
    except AuthenticationError as e:
        console.print(f"🔒 [bold red]Not signed in or session expired ({e})[/bold red]")
        console.print("Run: campusfeed login <email>")
        raise typer.Exit(code=1)
    except (TransientAPIError, APIError) as e:
        console.print(f"❌ [bold red]Request failed: {e}[/bold red]")
        raise typer.Exit(code=1)


def report(result: MutationResult, success: str) -> None:
    """Print the outcome of a mutation; exit non-zero if it was rolled back."""
    if result.ok:
        console.print(f"✅ [bold green]{success}[/bold green]")
        return
    if result.auth_failed:
        console.print("🔒 [bold red]Session expired, change reverted[/bold red]")
    else:
        console.print(f"↩️  [bold yellow]Reverted: {result.error}[/bold yellow]")
    raise typer.Exit(code=1)


def posts_table(posts: list[Post], title: str) -> Table:
    table = Table(title=title)
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Author", style="magenta")
    table.add_column("Post")
    table.add_column("♥", justify="right")
    table.add_column("💬", justify="right")
    table.add_column("When", style="dim")
    for post in posts:
        likes = f"[red]{post.likes}[/red]" if post.is_liked else str(post.likes)
        table.add_row(
            post.id,
            post.author.full_name,
            post.content or ("[dim]image[/dim]" if post.image_url else ""),
            likes,
            str(post.comments),
            post.timestamp,
        )
    return table


# =============================================================================
# Global options
# =============================================================================


@app.callback()
def main_callback(
    ctx: typer.Context,
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable verbose logging",
    ),
) -> None:
    """Terminal client for the campus social network."""
    if verbose:
        setup_logging(level="DEBUG", json_logs=False)
    ctx.call_on_close(shutdown_telemetry)


# =============================================================================
# Session Commands
# =============================================================================


@app.command()
def login(
    email: str = typer.Argument(..., help="Account email"),
    password: str = typer.Option(
        ..., "--password", "-p", prompt=True, hide_input=True, help="Account password"
    ),
) -> None:
    """Sign in and remember the session."""
    session = with_app(lambda campus: campus.login(email, password))
    console.print(f"✅ [bold green]Signed in as {session.user.username}[/bold green]")
    console.print(f"🔑 Token: [yellow]{redact_token(session.access_token)}[/yellow]")


@app.command()
def signup(
    username: str = typer.Argument(..., help="Unique handle"),
    email: str = typer.Argument(..., help="Account email"),
    password: str = typer.Option(
        ...,
        "--password",
        "-p",
        prompt=True,
        hide_input=True,
        confirmation_prompt=True,
        help="Account password",
    ),
) -> None:
    """Create an account and sign in."""
    session = with_app(lambda campus: campus.signup(username, email, password))
    console.print(f"🎉 [bold green]Welcome, {session.user.username}![/bold green]")


@app.command()
def logout() -> None:
    """Forget the saved session."""

    async def _logout(campus: CampusApp) -> None:
        campus.logout()

    with_app(_logout)
    console.print("👋 [bold green]Logged out[/bold green]")


@app.command()
def whoami() -> None:
    """Show the signed-in user."""

    async def _whoami(campus: CampusApp) -> Any:
        campus.require_user()
        return await campus.me()

    user = with_app(_whoami)
    table = Table(title="Signed-in User", show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="yellow")
    table.add_row("Username", user.username)
    table.add_row("Name", user.full_name)
    table.add_row("University", user.university)
    table.add_row("Followers", str(user.followers))
    table.add_row("Following", str(user.following))
    table.add_row("API", settings.api_url)
    console.print(table)


# =============================================================================
# Post Commands
# =============================================================================


@app.command()
def feed(
    pages: int = typer.Option(1, "--pages", "-n", min=1, help="Pages to load"),
) -> None:
    """Show the latest posts."""

    async def _feed(campus: CampusApp) -> tuple[list[Post], Any]:
        posts = await campus.load_feed(pages)
        return posts, campus.feed

    posts, paginator = with_app(_feed)
    if paginator.error is not None:
        console.print(f"⚠️  [bold yellow]Could not load more: {paginator.error}[/bold yellow]")
    if not posts:
        console.print("📭 No posts yet")
        return
    console.print(posts_table(posts, f"Feed ({len(posts)} posts)"))
    if paginator.exhausted:
        console.print("🏁 [dim]You're all caught up[/dim]")


@app.command()
def post(
    content: str = typer.Argument("", help="Post text"),
    image: Optional[Path] = typer.Option(None, "--image", "-i", help="Image to attach"),
    group: Optional[str] = typer.Option(None, "--group", "-g", help="Post to a group"),
) -> None:
    """Publish a post to the feed or a group."""

    async def _post(campus: CampusApp) -> MutationResult:
        if group:
            return await campus.create_group_post(group, content, image)
        return await campus.create_post(content, image)

    report(with_app(_post), "Posted")


@app.command()
def like(
    post_id: str = typer.Argument(..., help="Post ID"),
    pages: int = typer.Option(3, "--pages", "-n", min=1, help="Feed pages to search"),
) -> None:
    """Like or unlike a post from the feed."""

    async def _like(campus: CampusApp) -> tuple[MutationResult, Any]:
        campus.require_user()
        await campus.load_feed(pages)
        result = await campus.like_post(post_id)
        return result, campus.find_post(post_id)

    result, updated = with_app(_like)
    verb = "Liked" if updated is not None and updated.is_liked else "Unliked"
    report(result, f"{verb} post {post_id}")


@app.command()
def comments(post_id: str = typer.Argument(..., help="Post ID")) -> None:
    """List the comments under a post."""
    items = with_app(lambda campus: campus.comments(post_id))
    if not items:
        console.print("💬 No comments yet")
        return
    table = Table(title=f"Comments on {post_id}")
    table.add_column("Author", style="magenta")
    table.add_column("Comment")
    table.add_column("When", style="dim")
    for comment in items:
        table.add_row(comment.author.full_name, comment.content, comment.timestamp)
    console.print(table)


@app.command()
def comment(
    post_id: str = typer.Argument(..., help="Post ID"),
    content: str = typer.Argument(..., help="Comment text"),
) -> None:
    """Comment on a post."""
    report(with_app(lambda campus: campus.comment(post_id, content)), "Comment added")


# =============================================================================
# People Commands
# =============================================================================


@app.command()
def profile(username: str = typer.Argument(..., help="Username")) -> None:
    """Show a user's profile and posts."""

    async def _profile(campus: CampusApp) -> tuple[Any, list[Post]]:
        return await campus.profile(username), await campus.profile_posts(username)

    user, user_posts = with_app(_profile)
    console.print(f"👤 [bold]{user.full_name}[/bold] [dim]@{user.username}[/dim]")
    console.print(f"🎓 {user.university}")
    if user.bio:
        console.print(user.bio)
    following = " · [green]following[/green]" if user.is_following else ""
    console.print(f"{user.followers} followers · {user.following} following{following}\n")
    if user_posts:
        console.print(posts_table(user_posts, "Posts"))


@app.command()
def follow(username: str = typer.Argument(..., help="Username")) -> None:
    """Follow or unfollow a user."""

    async def _follow(campus: CampusApp) -> tuple[MutationResult, Any]:
        campus.require_user()
        before = await campus.profile(username)
        return await campus.toggle_follow(username), before

    result, before = with_app(_follow)
    verb = "Unfollowed" if before.is_following else "Followed"
    report(result, f"{verb} {username}")


def _users_table(users: list[Any], title: str) -> Table:
    table = Table(title=title)
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Username", style="magenta")
    table.add_column("Name")
    table.add_column("University", style="dim")
    for user in users:
        table.add_row(user.id, user.username, user.full_name, user.university)
    return table


@app.command()
def search(query: str = typer.Argument(..., help="Text to search for")) -> None:
    """Search users by name."""
    users = with_app(lambda campus: campus.search(query))
    if not users:
        console.print(f"🔍 No users match '{query}'")
        return
    console.print(_users_table(users, f"Users matching '{query}'"))


@app.command()
def suggestions() -> None:
    """People you may want to follow."""
    users = with_app(lambda campus: campus.suggestions())
    if not users:
        console.print("🤷 No suggestions right now")
        return
    console.print(_users_table(users, "Suggested for you"))


# =============================================================================
# Group Commands
# =============================================================================


@app.command()
def groups() -> None:
    """List groups."""
    items = with_app(lambda campus: campus.groups())
    if not items:
        console.print("📭 No groups yet")
        return
    table = Table(title="Groups")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Name", style="magenta")
    table.add_column("Privacy")
    table.add_column("Members", justify="right")
    table.add_column("Status")
    for group in items:
        status = "joined" if group.is_joined else ("pending" if group.is_pending else "")
        table.add_row(group.id, group.name, group.privacy, str(group.member_count), status)
    console.print(table)


@app.command()
def join(group_id: str = typer.Argument(..., help="Group ID")) -> None:
    """Join a group (or request to join a private one)."""

    async def _join(campus: CampusApp) -> tuple[MutationResult, Any]:
        campus.require_user()
        result = await campus.join_group(group_id)
        return result, campus.cache.find_item(keys.group(group_id), group_id)

    result, group = with_app(_join)
    pending = group is not None and group.is_pending
    report(result, "Join request sent" if pending else f"Joined group {group_id}")


# =============================================================================
# Activity Commands
# =============================================================================


@app.command()
def notifications(
    mark_read: Optional[str] = typer.Option(
        None, "--mark-read", "-r", help="Notification ID to mark as read"
    ),
) -> None:
    """List notifications."""

    async def _notifications(campus: CampusApp) -> Any:
        items = await campus.notifications()
        if mark_read:
            result = await campus.mark_notification_read(mark_read)
            if not result.ok:
                console.print(f"↩️  [bold yellow]Could not mark read: {result.error}[/bold yellow]")
            items = campus.cache.peek(keys.NOTIFICATIONS) or items
        return items

    items = with_app(_notifications)
    if not items:
        console.print("🔔 No notifications")
        return
    table = Table(title="Notifications")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("")
    table.add_column("When", style="dim")
    for note in items:
        text = note.message if note.read else f"[bold]{note.message}[/bold]"
        table.add_row(note.id, text, note.timestamp)
    console.print(table)


def _print_story_group(group: StoryGroup, own: bool = False) -> None:
    label = "Your story" if own else group.author.full_name
    console.print(f"📸 [bold]{label}[/bold] [dim]({len(group.stories)})[/dim]")


@app.command()
def stories(
    view: Optional[str] = typer.Option(
        None, "--view", help="Play the stories of this username"
    ),
) -> None:
    """List story authors, or play one author's stories."""

    async def _stories(campus: CampusApp) -> tuple[StoryGroup | None, list[StoryGroup]]:
        own, others = await campus.stories()
        if view:
            groups_ = ([own] if own else []) + others
            target = next((g for g in groups_ if g.author.username == view), None)
            if target is None:
                raise InvalidInputError(f"{view} has no stories")
            viewer = campus.story_viewer(target)
            original = viewer.on_view

            def _show(index: int, story: Any) -> None:
                console.print(
                    f"[{index + 1}/{len(target.stories)}] {story.content or '[image]'} "
                    f"[dim]{story.timestamp}[/dim]"
                )
                if original is not None:
                    original(index, story)

            viewer.on_view = _show
            await viewer.run()
        return own, others

    own, others = with_app(_stories)
    if view:
        return
    if own is None and not others:
        console.print("📭 No stories right now")
        return
    if own is not None:
        _print_story_group(own, own=True)
    for group in others:
        _print_story_group(group)


# =============================================================================
# Message Commands
# =============================================================================


@app.command()
def chats() -> None:
    """List conversations."""
    items = with_app(lambda campus: campus.conversations())
    if not items:
        console.print("💬 No conversations yet")
        return
    table = Table(title="Chats")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("With", style="magenta")
    table.add_column("Last message")
    table.add_column("Unread", justify="right")
    for chat in items:
        unread = f"[bold]{chat.unread_count}[/bold]" if chat.unread_count else ""
        table.add_row(chat.id, chat.partner.full_name, chat.last_message, unread)
    console.print(table)


@app.command()
def messages(conversation_id: str = typer.Argument(..., help="Conversation ID")) -> None:
    """Show the messages of a conversation."""

    async def _messages(campus: CampusApp) -> tuple[list[Any], str | None]:
        me = campus.user.id if campus.user else None
        return await campus.messages(conversation_id), me

    items, me = with_app(_messages)
    if not items:
        console.print("💬 No messages yet")
        return
    for message in items:
        who = "[green]you[/green]" if message.sender_id == me else "[magenta]them[/magenta]"
        console.print(f"[dim]{message.timestamp}[/dim] {who}: {message.content}")


@app.command()
def chat(username: str = typer.Argument(..., help="Username")) -> None:
    """Start a conversation with a user."""
    result = with_app(lambda campus: campus.start_conversation(username))
    report(result, f"Conversation with {username} started")
    console.print(f"[dim]Reply with: campusfeed send {result.value.id} <text>[/dim]")


@app.command()
def send(
    conversation_id: str = typer.Argument(..., help="Conversation ID"),
    content: str = typer.Argument(..., help="Message text"),
) -> None:
    """Send a direct message."""
    report(
        with_app(lambda campus: campus.send_message(conversation_id, content)),
        "Message sent",
    )


def main() -> None:
    """Main entry point for CLI."""
    app()


if __name__ == "__main__":
    main()
