"""
Custom exceptions for llamadesk.

This module defines the error taxonomy shared by the startup sequence
(asset provisioning, process supervision, readiness) and the per-request
chat path (HTTP calls, streaming, session relay).
"""

from typing import Optional


class LlamaDeskError(Exception):
    """Base exception for all llamadesk errors."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def __str__(self):
        return self.message


# Startup phase. Any of these aborts application launch.

class StartupError(LlamaDeskError):
    """Base class for failures that are fatal to application launch."""


class AssetMissing(StartupError):
    """Raised when an asset is neither bundled nor downloadable."""

    def __init__(self, asset: str, message: Optional[str] = None):
        super().__init__(message or f"Asset not available: {asset}")
        self.asset = asset


class DownloadFailed(StartupError):
    """Raised when fetching an asset fails."""

    def __init__(
        self,
        asset: str,
        message: str = "Download failed",
        status_code: Optional[int] = None
    ):
        super().__init__(message)
        self.asset = asset
        self.status_code = status_code

    def __str__(self):
        if self.status_code:
            return f"{self.asset}: [{self.status_code}] {self.message}"
        return f"{self.asset}: {self.message}"


class ChecksumMismatch(StartupError):
    """Raised when a downloaded file does not hash to the expected value."""

    def __init__(self, asset: str, expected: str, actual: str):
        super().__init__(
            f"Checksum mismatch for {asset}: expected {expected}, got {actual}"
        )
        self.asset = asset
        self.expected = expected
        self.actual = actual


class UserCanceled(StartupError):
    """Raised when the user declines a download prompt."""

    def __init__(self, asset: str):
        super().__init__(f"Download of {asset} declined by user")
        self.asset = asset


class ProcessSpawnFailed(StartupError):
    """Raised when the inference server cannot be launched."""

    def __init__(self, message: str = "Failed to start inference server"):
        super().__init__(message)


class ProcessUnresponsive(StartupError):
    """Raised when the inference server never becomes ready."""

    def __init__(self, url: str, result: str, timeout_ms: int):
        super().__init__(
            f"Inference server at {url} not ready after {timeout_ms} ms ({result})"
        )
        self.url = url
        self.result = result
        self.timeout_ms = timeout_ms


# Per-request failures. These end one session only.

class RequestFailed(LlamaDeskError):
    """Base class for failures scoped to a single chat request."""


class HTTPError(RequestFailed):
    """Raised when the inference server answers with a non-success status."""

    def __init__(self, status_code: int, message: str = ""):
        super().__init__(message or "Request failed")
        self.status_code = status_code

    def __str__(self):
        return f"llama.cpp HTTP {self.status_code}: {self.message}"


class StreamUnavailable(RequestFailed):
    """Raised when no response body can be read or the connection drops."""

    def __init__(self, message: str = "Stream unavailable"):
        super().__init__(message)


class StreamParseError(LlamaDeskError):
    """Raised for a single undecodable event line. Never ends a session."""

    def __init__(self, line: str, reason: str = "invalid JSON"):
        super().__init__(f"Unparseable stream line ({reason}): {line[:80]!r}")
        self.line = line
        self.reason = reason


# Session relay.

class SessionError(LlamaDeskError):
    """Base class for session relay errors."""


class SessionNotFound(SessionError):
    """Raised when a session id has no live binding."""

    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class SessionAlreadySubscribed(SessionError):
    """Raised when a second listener tries to attach to a session."""

    def __init__(self, session_id: str):
        super().__init__(f"Session already has a listener: {session_id}")
        self.session_id = session_id


# Process supervision.

class SupervisorError(LlamaDeskError):
    """Base class for supervisor misuse."""


class SupervisorBusy(SupervisorError):
    """Raised when starting a second server from the same supervisor."""

    def __init__(self, pid: Optional[int] = None):
        super().__init__(f"Supervisor already owns a live server (pid={pid})")
        self.pid = pid


class InvalidStateTransition(SupervisorError):
    """Raised on a lifecycle transition the handle does not allow."""

    def __init__(self, current: str, target: str):
        super().__init__(f"Invalid server state transition: {current} -> {target}")
        self.current = current
        self.target = target
