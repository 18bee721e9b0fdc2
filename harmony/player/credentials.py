"""Access-token source consumed by the player client.

Token storage and the OAuth exchange live outside the session core; this
module only defines what the core needs from them.
"""

from __future__ import annotations

import logging
import os
from typing import Optional, Protocol


logger = logging.getLogger(__name__)


class CredentialStore(Protocol):
    def access_token(self) -> Optional[str]: ...

    def invalidate(self) -> None: ...


class StaticCredentials:
    """Holds one bearer token in memory until it is invalidated."""

    def __init__(self, token: Optional[str]):
        self._token = token or None

    def access_token(self) -> Optional[str]:
        return self._token

    def invalidate(self) -> None:
        if self._token:
            logger.warning("credentials invalidated; re-authentication required")
        self._token = None

    @classmethod
    def from_env(cls, name: str = "HARMONY_ACCESS_TOKEN") -> "StaticCredentials":
        return cls(os.environ.get(name, "").strip() or None)
