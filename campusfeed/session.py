"""Persistence of the signed-in session.

The bearer token and a minimal copy of the user's profile are kept as one
JSON document in ``settings.session_file``. Logging out deletes the file.
"""

import os
from pathlib import Path

from pydantic import ValidationError

from campusfeed.config import settings
from campusfeed.logging import logger
from campusfeed.models import AuthSession


class SessionStore:
    """Reads and writes the session file.

    Args:
        path: Session file (defaults to settings.session_file)
    """

    def __init__(self, path: Path | None = None) -> None:
        self.path = path or settings.session_file

    def save(self, session: AuthSession) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(session.model_dump_json(indent=2), encoding="utf-8")
        # Owner read/write only: the file holds a bearer token
        os.chmod(self.path, 0o600)
        logger.debug(f"Session for {session.user.username} saved to {self.path}")

    def load(self) -> AuthSession | None:
        """Return the stored session, or None if absent or unreadable."""
        if not self.path.exists():
            return None
        try:
            return AuthSession.model_validate_json(self.path.read_text(encoding="utf-8"))
        except (ValidationError, ValueError) as e:
            logger.warning(f"Ignoring unreadable session file {self.path}: {e}")
            return None

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)
        logger.debug(f"Session file {self.path} removed")


__all__ = ["SessionStore"]
