"""
Pipeline exceptions.

Raised at component boundaries (capture start, relay handshake) and
converted into on_error events by the call session.
Per-frame and per-transcript failures never raise past their component.
"""

from __future__ import annotations

from orchestrator.enums.error_kind import ErrorKind


class PipelineError(Exception):
    """Base class for pipeline errors. Always carries an ErrorKind."""

    def __init__(self, kind: ErrorKind, detail: str = "") -> None:
        super().__init__(f"{kind.value}: {detail}" if detail else kind.value)
        self.kind = kind
        self.detail = detail


class AudioError(PipelineError):
    """Audio source could not be opened or failed while running."""


class RelayError(PipelineError):
    """Speech-to-text connection failed (handshake, auth, timeout)."""
