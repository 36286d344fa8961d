"""Credential storage for API sessions."""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


def resolve_api_base(explicit: Optional[str], host: Optional[str] = None, port: int = 9000) -> str:
    """
    Pick the API base URL.

    An explicitly configured URL wins; otherwise the URL is derived from the
    host the client runs against and the API port.
    """
    if explicit:
        return explicit.rstrip("/")
    return f"http://{host or 'localhost'}:{port}"


class CredentialStore:
    """In-memory holder for the access token, the signed-in user and the refresh cookie."""

    def __init__(self):
        self.access_token: Optional[str] = None
        self.user: Optional[Dict[str, Any]] = None
        self.refresh_cookie: Optional[str] = None

    def save(
        self,
        access_token: Optional[str],
        user: Optional[Dict[str, Any]] = None,
        refresh_cookie: Optional[str] = None,
    ) -> None:
        self.access_token = access_token
        if user is not None:
            self.user = user
        if refresh_cookie is not None:
            self.refresh_cookie = refresh_cookie

    def clear(self) -> None:
        self.access_token = None
        self.user = None
        self.refresh_cookie = None


class FileCredentialStore(CredentialStore):
    """
    Credential store persisted as JSON so a CLI session survives between runs.

    The file is written with mode 0600 since it holds the refresh cookie.
    """

    def __init__(self, path: Path):
        super().__init__()
        self.path = Path(path)
        self.load()

    def load(self) -> None:
        if not self.path.exists():
            return
        try:
            data = json.loads(self.path.read_text())
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable credentials file {self.path}: {e}")
            return
        self.access_token = data.get("access_token")
        self.user = data.get("user")
        self.refresh_cookie = data.get("refresh_cookie")

    def _write(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(
            {
                "access_token": self.access_token,
                "user": self.user,
                "refresh_cookie": self.refresh_cookie,
            }
        )
        fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w") as f:
            f.write(payload)
        os.chmod(self.path, 0o600)

    def save(
        self,
        access_token: Optional[str],
        user: Optional[Dict[str, Any]] = None,
        refresh_cookie: Optional[str] = None,
    ) -> None:
        super().save(access_token, user, refresh_cookie)
        self._write()

    def clear(self) -> None:
        super().clear()
        if self.path.exists():
            self.path.unlink()
