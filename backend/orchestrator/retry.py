"""
Relay reconnection policy.

Purpose:
- Centralize reconnect rules for the speech-to-text relay
- Let the relay client make deterministic retry decisions

This module contains NO timers, NO async, NO side effects.
"""
from __future__ import annotations

from dataclasses import dataclass

from orchestrator.enums.error_kind import ErrorKind
from spec import RELAY_MAX_RECONNECT_ATTEMPTS, RELAY_RECONNECT_BASE_DELAY_MS


# =============================================================================
# Retry State
# =============================================================================

@dataclass(frozen=True)
class RetryAttempt:
    """
    Immutable retry attempt counter.

    Semantics:
    - attempt == 0 represents "no reconnect attempted yet".
    - attempt >= 1 represents the Nth reconnect attempt.
    """
    attempt: int


def next_attempt(current: RetryAttempt) -> RetryAttempt:
    """
    Advance to the next retry attempt.

    Returns a new RetryAttempt with attempt incremented by 1.
    """
    return RetryAttempt(attempt=current.attempt + 1)


def reset_attempt() -> RetryAttempt:
    """Returns a fresh retry attempt counter."""
    return RetryAttempt(attempt=0)


# =============================================================================
# Policy
# =============================================================================

def max_attempts(
    failure: ErrorKind,
    *,
    limit: int = RELAY_MAX_RECONNECT_ATTEMPTS,
) -> int:
    """
    Maximum reconnect attempts after a failure of the given kind.

    - AUTH_REJECTED: 0 (credentials will not fix themselves)
    - anything else: `limit`
    """
    if failure is ErrorKind.AUTH_REJECTED:
        return 0
    return max(0, limit)


def should_retry(
    *,
    failure: ErrorKind,
    attempt: RetryAttempt,
    limit: int = RELAY_MAX_RECONNECT_ATTEMPTS,
) -> bool:
    """
    Returns True if another reconnect attempt is allowed.

    attempt = number of reconnect attempts already performed
    """
    return attempt.attempt < max_attempts(failure, limit=limit)


# =============================================================================
# Delay Calculation
# =============================================================================

def get_retry_delay_ms(
    *,
    attempt: RetryAttempt,
    base_delay_ms: int = RELAY_RECONNECT_BASE_DELAY_MS,
) -> int:
    """
    Delay before reconnect attempt N (1-based): linear backoff.

    delay = base_delay_ms * N
    """
    return max(0, base_delay_ms) * max(1, attempt.attempt)
