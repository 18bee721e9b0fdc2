"""Error taxonomy shared by the session components."""

from __future__ import annotations

from typing import Optional


class HarmonyError(Exception):
    """Base class for every error raised by the session core."""


class ChannelError(HarmonyError):
    """Transport failure of the realtime channel.

    ``terminal`` is set once reconnect attempts are exhausted on the lowest
    transport; the session has to be reset at that point.
    """

    def __init__(self, message: str, *, terminal: bool = False):
        super().__init__(message)
        self.terminal = terminal


class SignalingError(HarmonyError):
    """Malformed or out-of-order handshake message for one peer pair."""

    def __init__(self, peer_id: str, message: str):
        super().__init__(f"pair[{peer_id}] {message}")
        self.peer_id = peer_id


class ReconciliationError(HarmonyError):
    """External player failure while syncing a single entry."""

    def __init__(self, message: str, *, uri: Optional[str] = None):
        super().__init__(message)
        self.uri = uri


class PlayerAPIError(ReconciliationError):
    def __init__(self, message: str, *, status_code: int, uri: Optional[str] = None):
        super().__init__(message, uri=uri)
        self.status_code = status_code


class RateLimitExceeded(HarmonyError):
    """A call was attempted before its category's window elapsed."""

    def __init__(self, category: str, retry_after: float):
        super().__init__(f"rate limit exceeded category={category} retry_after={retry_after:.3f}s")
        self.category = category
        self.retry_after = retry_after


class AuthExpired(HarmonyError):
    """The external player rejected the bearer token."""
