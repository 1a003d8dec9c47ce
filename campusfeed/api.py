"""Remote Data Gateway for the campus REST backend.

This module provides an async HTTP/2 client with:
- Bearer-token authentication attached to every request
- Retry with exponential backoff for reads (never for mutations)
- A bounded timeout on every call
- Error classification into transient, authentication and permanent failures
- Normalisation of server records into the view-models in ``models.py``
- OpenTelemetry spans and Prometheus metrics per request

Example:
    >>> from campusfeed.api import AsyncCampusClient
    >>>
    >>> async with AsyncCampusClient() as client:
    ...     session = await client.login("ada@uni.edu", "secret")
    ...     posts = await client.get_feed_page(0)
    ...     print(f"Fetched {len(posts)} posts as {session.user.username}")
"""

import logging
import time
from pathlib import Path
from typing import Any

import httpx
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from campusfeed.config import settings
from campusfeed.logging import logger, request_scope
from campusfeed.metrics import api_request_duration_seconds, api_requests_total
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
    User,
)
from campusfeed.telemetry import (
    add_span_attributes,
    get_tracer,
    record_exception_in_span,
    sync_logging_context_to_span,
)
from campusfeed.types import TokenResponse, UploadResponse
from campusfeed.utils import redact_token

tracer = get_tracer(__name__)


# =============================================================================
# Custom Exceptions
# =============================================================================


class TransientAPIError(Exception):
    """Request never completed or the server asked us to come back later.

    Raised for network errors, timeouts, HTTP 429 and HTTP 5xx.
    """


class APIError(RuntimeError):
    """Permanent failure reported by the backend (non-retryable 4xx)."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AuthenticationError(APIError):
    """Missing, expired or rejected bearer token (HTTP 401/403)."""


class InvalidInputError(ValueError):
    """Local precondition failed; nothing was sent to the backend."""


# =============================================================================
# Async REST Client
# =============================================================================


class AsyncCampusClient:
    """Async client for the campus social network REST API.

    Args:
        base_url: API root (defaults to settings.api_url)
        token: Bearer token to attach to requests
        viewer_id: ID of the signed-in user, used to compute viewer-relative
            flags such as ``Post.is_liked``
        timeout: Custom httpx timeout configuration
        max_retries: Attempts for retryable reads
        retry_wait: Base backoff in seconds between read retries
        transport: Custom httpx transport (tests pass ``httpx.MockTransport``)

    Example:
        >>> async with AsyncCampusClient(token="...") as client:
        ...     me = await client.me()
    """

    def __init__(
        self,
        base_url: str | None = None,
        token: str | None = None,
        viewer_id: str | None = None,
        timeout: httpx.Timeout | None = None,
        max_retries: int | None = None,
        retry_wait: float = 0.5,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = (base_url or settings.api_url).rstrip("/")
        self._token = token
        self.viewer_id = viewer_id
        self._max_retries = max_retries or settings.max_retries
        self._retry_wait = retry_wait
        self._transport = transport

        self._timeout = timeout or httpx.Timeout(
            timeout=settings.request_timeout,
            connect=min(5.0, settings.request_timeout),
        )

        self._limits = httpx.Limits(
            max_connections=20,
            max_keepalive_connections=10,
            keepalive_expiry=30.0,
        )

        self._client: httpx.AsyncClient | None = None

    async def _ensure_client(self) -> httpx.AsyncClient:
        """Lazy initialization of the HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                limits=self._limits,
                timeout=self._timeout,
                http2=True,
                follow_redirects=True,
                transport=self._transport,
            )
        return self._client

    async def __aenter__(self) -> "AsyncCampusClient":
        await self._ensure_client()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    async def close(self) -> None:
        """Close all connections."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    # -------------------------------------------------------------------------
    # Authentication state
    # -------------------------------------------------------------------------

    @property
    def token(self) -> str | None:
        return self._token

    @property
    def is_authenticated(self) -> bool:
        return self._token is not None

    def set_token(self, token: str, viewer_id: str | None = None) -> None:
        """Attach a bearer token to all subsequent requests."""
        self._token = token
        if viewer_id is not None:
            self.viewer_id = viewer_id
        logger.debug(f"Bearer token set ({redact_token(token)})")

    def clear_token(self) -> None:
        self._token = None
        self.viewer_id = None

    # -------------------------------------------------------------------------
    # Transport
    # -------------------------------------------------------------------------

    async def _send(
        self,
        method: str,
        path: str,
        *,
        endpoint: str | None = None,
        params: dict[str, Any] | None = None,
        json: Any = None,
        data: dict[str, Any] | None = None,
        files: dict[str, Any] | None = None,
    ) -> Any:
        """Perform one HTTP request and classify its outcome.

        Args:
            method: HTTP method
            path: Request path relative to the API root
            endpoint: Route template used for metrics labels (defaults to path)

        Returns:
            Parsed JSON body, or None for empty responses

        Raises:
            TransientAPIError: Network/timeout failure, HTTP 429 or 5xx
            AuthenticationError: HTTP 401 or 403
            APIError: Any other non-2xx status
        """
        client = await self._ensure_client()
        endpoint = endpoint or path
        headers = {"Authorization": f"Bearer {self._token}"} if self._token else {}
        start = time.perf_counter()
        outcome = "error"

        with (
            request_scope() as request_id,
            tracer.start_as_current_span(f"api.{method.lower()}") as span,
        ):
            headers["X-Request-ID"] = request_id
            sync_logging_context_to_span(span)
            add_span_attributes(span, {"http.method": method, "http.route": endpoint})
            try:
                try:
                    resp = await client.request(
                        method,
                        path,
                        params=params,
                        json=json,
                        data=data,
                        files=files,
                        headers=headers,
                    )
                except (httpx.TimeoutException, httpx.NetworkError) as exc:
                    outcome = "transient"
                    raise TransientAPIError(f"Network/timeout error: {exc}") from exc

                add_span_attributes(span, {"http.status_code": resp.status_code})

                if resp.status_code in (401, 403):
                    outcome = "auth"
                    raise AuthenticationError(
                        f"HTTP {resp.status_code} on {endpoint}", resp.status_code
                    )

                if resp.status_code == 429 or 500 <= resp.status_code < 600:
                    outcome = "transient"
                    raise TransientAPIError(f"HTTP {resp.status_code} on {endpoint}")

                if resp.status_code >= 400:
                    logger.error(
                        f"Non-retryable HTTP {resp.status_code} on {endpoint}: "
                        f"{resp.text[:200]}"
                    )
                    raise APIError(
                        f"HTTP {resp.status_code}: {self._error_detail(resp)}",
                        resp.status_code,
                    )

                if resp.status_code == 204 or not resp.content:
                    outcome = "success"
                    return None

                try:
                    body = resp.json()
                except ValueError as exc:
                    outcome = "transient"
                    raise TransientAPIError(f"Invalid JSON from {endpoint}: {exc}") from exc

                outcome = "success"
                return body

            except Exception as exc:
                record_exception_in_span(span, exc)
                raise

            finally:
                api_requests_total.labels(
                    endpoint=endpoint, method=method, outcome=outcome
                ).inc()
                api_request_duration_seconds.labels(
                    endpoint=endpoint, method=method
                ).observe(time.perf_counter() - start)

    @staticmethod
    def _error_detail(resp: httpx.Response) -> str:
        try:
            body = resp.json()
        except ValueError:
            return resp.text[:200]
        if isinstance(body, dict) and "detail" in body:
            return str(body["detail"])
        return str(body)[:200]

    async def _get(
        self,
        path: str,
        *,
        endpoint: str | None = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        """GET with retry on transient failures."""
        logging_logger = logging.getLogger(__name__)

        @retry(
            reraise=True,
            stop=stop_after_attempt(self._max_retries),
            wait=wait_exponential(
                multiplier=self._retry_wait,
                min=self._retry_wait,
                max=self._retry_wait * 16,
            )
            + wait_random(0, self._retry_wait),
            retry=retry_if_exception_type(TransientAPIError),
            before_sleep=before_sleep_log(logging_logger, logging.WARNING),
        )
        async def _runner() -> Any:
            return await self._send("GET", path, endpoint=endpoint, params=params)

        return await _runner()

    async def _post(
        self,
        path: str,
        *,
        endpoint: str | None = None,
        json: Any = None,
        data: dict[str, Any] | None = None,
        files: dict[str, Any] | None = None,
    ) -> Any:
        """POST once. Mutations are not retried: toggles are not idempotent."""
        return await self._send(
            "POST", path, endpoint=endpoint, json=json, data=data, files=files
        )

    async def _put(self, path: str, *, json: Any = None) -> Any:
        return await self._send("PUT", path, json=json)

    # -------------------------------------------------------------------------
    # Conversion helpers
    # -------------------------------------------------------------------------

    def _user(self, record: dict[str, Any]) -> User:
        return User.from_record(record, base_url=self.base_url)

    def _post_model(self, record: dict[str, Any]) -> Post:
        return Post.from_record(record, base_url=self.base_url, viewer_id=self.viewer_id)

    # -------------------------------------------------------------------------
    # Auth
    # -------------------------------------------------------------------------

    async def login(self, email: str, password: str) -> AuthSession:
        """Exchange credentials for a bearer token and load the profile.

        Raises:
            InvalidInputError: If email or password is empty
            AuthenticationError: If the credentials are rejected
        """
        if not email.strip() or not password:
            raise InvalidInputError("email and password are required")

        # OAuth2 password flow expects the email in the "username" field
        body: TokenResponse | None = await self._post(
            "/token", data={"username": email, "password": password}
        )
        if not body or "access_token" not in body:
            raise AuthenticationError("login response carried no access token")

        self.set_token(body["access_token"])
        user = await self.me()
        self.viewer_id = user.id
        logger.info(f"Signed in as {user.username}")
        return AuthSession(access_token=body["access_token"], user=user)

    async def signup(self, username: str, email: str, password: str) -> AuthSession:
        """Create an account, then sign in with it."""
        if not username.strip() or not email.strip() or not password:
            raise InvalidInputError("username, email and password are required")

        await self._post(
            "/users/",
            json={"username": username, "email": email, "password": password},
        )
        return await self.login(email, password)

    async def me(self) -> User:
        return self._user(await self._get("/users/me/"))

    # -------------------------------------------------------------------------
    # Posts & comments
    # -------------------------------------------------------------------------

    async def get_feed_page(self, page: int, page_size: int | None = None) -> list[Post]:
        """Fetch one page of the feed.

        Args:
            page: Zero-based page index (the pagination cursor)
            page_size: Items per page (defaults to settings.page_size)
        """
        page_size = page_size or settings.page_size
        data = await self._get(
            "/posts/",
            endpoint="/posts/",
            params={"skip": page * page_size, "limit": page_size},
        )
        return [self._post_model(p) for p in data or []]

    async def create_post(self, content: str, image_url: str | None = None) -> Post:
        data = await self._post("/posts/", json={"caption": content, "image": image_url})
        return self._post_model(data)

    async def like_post(self, post_id: str) -> int | None:
        """Toggle the viewer's like. Returns the canonical like count if sent."""
        data = await self._post(f"/posts/{post_id}/like", endpoint="/posts/{id}/like")
        if isinstance(data, dict) and data.get("likes_count") is not None:
            return int(data["likes_count"])
        return None

    async def get_comments(self, post_id: str) -> list[Comment]:
        data = await self._get(
            f"/posts/{post_id}/comments", endpoint="/posts/{id}/comments"
        )
        return [
            Comment.from_record(c, post_id=post_id, base_url=self.base_url)
            for c in data or []
        ]

    async def create_comment(self, post_id: str, content: str) -> Comment:
        data = await self._post(
            f"/posts/{post_id}/comments/",
            endpoint="/posts/{id}/comments/",
            json={"content": content},
        )
        return Comment.from_record(data, post_id=post_id, base_url=self.base_url)

    # -------------------------------------------------------------------------
    # Profiles & social graph
    # -------------------------------------------------------------------------

    async def get_profile(self, username: str) -> User:
        data = await self._get(f"/profiles/{username}", endpoint="/profiles/{username}")
        return User.from_profile(data, username=username, base_url=self.base_url)

    async def get_profile_posts(self, username: str) -> list[Post]:
        """Posts authored by ``username``.

        The backend has no per-user listing; the most recent posts are
        fetched and filtered client-side.
        """
        data = await self._get("/posts/", params={"skip": 0, "limit": 100})
        return [
            self._post_model(p)
            for p in data or []
            if (p.get("user") or {}).get("username") == username
        ]

    async def update_profile(
        self,
        full_name: str | None = None,
        bio: str | None = None,
        university: str | None = None,
        profile_picture: str | None = None,
    ) -> User:
        """Update the viewer's profile and return the refreshed user."""
        await self._put(
            "/profiles/me",
            json={
                "full_name": full_name,
                "bio": bio,
                "university": university,
                "profile_picture": profile_picture,
            },
        )
        return await self.me()

    async def follow_user(self, user_id: str) -> Any:
        return await self._post(f"/users/{user_id}/follow", endpoint="/users/{id}/follow")

    async def unfollow_user(self, user_id: str) -> Any:
        return await self._post(
            f"/users/{user_id}/unfollow", endpoint="/users/{id}/unfollow"
        )

    async def search_users(self, query: str) -> list[User]:
        data = await self._get("/search/users", params={"q": query})
        return [self._user(u) for u in data or []]

    async def get_suggestions(self) -> list[User]:
        """Users to follow: an empty search minus the viewer."""
        users = await self.search_users("")
        return [u for u in users if u.id != self.viewer_id]

    async def list_friends(self) -> list[User]:
        data = await self._get("/friends/")
        return [self._user(u) for u in data or []]

    async def send_friend_request(self, user_id: str) -> Any:
        return await self._post(
            f"/friend-request/{user_id}", endpoint="/friend-request/{id}"
        )

    # -------------------------------------------------------------------------
    # Groups
    # -------------------------------------------------------------------------

    async def list_groups(self) -> list[Group]:
        data = await self._get("/groups/")
        return [Group.from_record(g, base_url=self.base_url) for g in data or []]

    async def get_group(self, group_id: str) -> Group:
        data = await self._get(f"/groups/{group_id}", endpoint="/groups/{id}")
        return Group.from_record(data, base_url=self.base_url)

    async def create_group(
        self,
        name: str,
        description: str = "",
        privacy: GroupPrivacy = GroupPrivacy.PUBLIC,
        cover_image: str | None = None,
    ) -> Group:
        data = await self._post(
            "/groups/",
            json={
                "name": name,
                "description": description,
                "privacy": privacy.value,
                "cover_image": cover_image,
            },
        )
        return Group.from_record(data, base_url=self.base_url)

    async def get_group_members(self, group_id: str) -> list[GroupMember]:
        data = await self._get(
            f"/groups/{group_id}/members", endpoint="/groups/{id}/members"
        )
        return [GroupMember.from_record(m, base_url=self.base_url) for m in data or []]

    async def get_group_requests(self, group_id: str) -> list[GroupMember]:
        data = await self._get(
            f"/groups/{group_id}/requests", endpoint="/groups/{id}/requests"
        )
        return [GroupMember.from_record(r, base_url=self.base_url) for r in data or []]

    async def join_group(self, group_id: str) -> str:
        """Ask to join. Returns the membership status ("joined" or "pending")."""
        data = await self._post(f"/groups/{group_id}/join", endpoint="/groups/{id}/join")
        if isinstance(data, dict) and data.get("status"):
            return str(data["status"])
        return "joined"

    async def approve_request(self, request_id: str, status: str) -> Any:
        if status not in ("accepted", "rejected"):
            raise InvalidInputError("status must be 'accepted' or 'rejected'")
        return await self._post(
            f"/groups/requests/{request_id}",
            endpoint="/groups/requests/{id}",
            json={"status": status},
        )

    async def get_group_posts(self, group_id: str) -> list[Post]:
        data = await self._get(f"/groups/{group_id}/posts/", endpoint="/groups/{id}/posts/")
        return [self._post_model({**p, "group_id": group_id}) for p in data or []]

    async def create_group_post(
        self, group_id: str, content: str, image_url: str | None = None
    ) -> Post:
        data = await self._post(
            f"/groups/{group_id}/posts/",
            endpoint="/groups/{id}/posts/",
            json={"caption": content, "image": image_url},
        )
        return self._post_model({**data, "group_id": group_id})

    # -------------------------------------------------------------------------
    # Messaging
    # -------------------------------------------------------------------------

    async def list_conversations(self) -> list[Conversation]:
        data = await self._get("/conversations/")
        return [
            Conversation.from_record(c, base_url=self.base_url, viewer_id=self.viewer_id)
            for c in data or []
        ]

    async def get_messages(self, conversation_id: str) -> list[Message]:
        data = await self._get(
            f"/conversations/{conversation_id}/messages/",
            endpoint="/conversations/{id}/messages/",
        )
        return [Message.from_record(m) for m in data or []]

    async def send_message(self, conversation_id: str, content: str) -> Message:
        data = await self._post(
            f"/conversations/{conversation_id}/messages/",
            endpoint="/conversations/{id}/messages/",
            json={"content": content},
        )
        return Message.from_record(data)

    async def create_conversation(
        self, participant_ids: list[str], name: str | None = None
    ) -> Conversation:
        data = await self._post(
            "/conversations/", json={"participant_ids": participant_ids, "name": name}
        )
        return Conversation.from_record(
            data, base_url=self.base_url, viewer_id=self.viewer_id
        )

    # -------------------------------------------------------------------------
    # Notifications
    # -------------------------------------------------------------------------

    async def list_notifications(self) -> list[Notification]:
        data = await self._get("/notifications/")
        return [Notification.from_record(n, base_url=self.base_url) for n in data or []]

    async def mark_notification_read(self, notification_id: str) -> Any:
        return await self._post(
            f"/notifications/{notification_id}/read",
            endpoint="/notifications/{id}/read",
        )

    # -------------------------------------------------------------------------
    # Stories
    # -------------------------------------------------------------------------

    async def get_stories_feed(self) -> list[Story]:
        data = await self._get("/stories/feed")
        return [
            Story.from_record(s, base_url=self.base_url, viewer_id=self.viewer_id)
            for s in data or []
        ]

    async def create_story(
        self, content: str | None = None, image_url: str | None = None
    ) -> Story:
        data = await self._post(
            "/stories/", json={"content": content, "image_url": image_url}
        )
        return Story.from_record(data, base_url=self.base_url, viewer_id=self.viewer_id)

    async def view_story(self, story_id: str) -> None:
        await self._post(f"/stories/{story_id}/view", endpoint="/stories/{id}/view")

    async def like_story(self, story_id: str) -> Any:
        return await self._post(f"/stories/{story_id}/like", endpoint="/stories/{id}/like")

    # -------------------------------------------------------------------------
    # Media
    # -------------------------------------------------------------------------

    async def upload_media(
        self,
        filename: str,
        content: bytes,
        content_type: str = "application/octet-stream",
    ) -> str:
        """Upload a binary file and return its reference URL."""
        if not content:
            raise InvalidInputError("cannot upload an empty file")
        data: UploadResponse | None = await self._post(
            "/upload/", files={"file": (filename, content, content_type)}
        )
        url = (data or {}).get("url")
        if not url:
            raise APIError("upload response carried no url")
        return str(url)

    async def upload_file(self, path: Path) -> str:
        """Upload a file from disk and return its reference URL."""
        if not path.is_file():
            raise InvalidInputError(f"no such file: {path}")
        return await self.upload_media(path.name, path.read_bytes())


__all__ = [
    "AsyncCampusClient",
    "APIError",
    "AuthenticationError",
    "InvalidInputError",
    "TransientAPIError",
]
