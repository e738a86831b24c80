"""
Pipeline error taxonomy.

Every failure surfaced through on_error carries one of these kinds.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """
    Distinguishable failure kinds.

    Fatal kinds end the session's relay (FAILED). Recoverable kinds are
    reported and the pipeline keeps running.
    """

    AUDIO_PERMISSION_DENIED = "audio_permission_denied"
    AUDIO_DEVICE_UNAVAILABLE = "audio_device_unavailable"
    CONNECTION_FAILED = "connection_failed"
    AUTH_REJECTED = "auth_rejected"
    CONNECTION_TIMEOUT = "connection_timeout"
    MALFORMED_BACKEND_MESSAGE = "malformed_backend_message"
    AI_REQUEST_TIMEOUT = "ai_request_timeout"
    AI_REQUEST_FAILED = "ai_request_failed"
    SESSION_STOPPED = "session_stopped"

    @property
    def fatal(self) -> bool:
        """True if the pipeline cannot continue after this error."""
        return self in _FATAL


_FATAL = frozenset({
    ErrorKind.AUDIO_PERMISSION_DENIED,
    ErrorKind.CONNECTION_FAILED,
    ErrorKind.AUTH_REJECTED,
    ErrorKind.CONNECTION_TIMEOUT,
})
