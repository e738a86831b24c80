# pylint: disable=missing-module-docstring,missing-function-docstring

from orchestrator.enums.error_kind import ErrorKind
from orchestrator.retry import (
    get_retry_delay_ms,
    max_attempts,
    next_attempt,
    reset_attempt,
    should_retry,
)


def test_auth_rejected_is_never_retried():
    assert max_attempts(ErrorKind.AUTH_REJECTED, limit=3) == 0
    assert should_retry(failure=ErrorKind.AUTH_REJECTED, attempt=reset_attempt(), limit=3) is False


def test_transient_failures_retry_up_to_limit():
    attempt = reset_attempt()
    allowed = 0
    while should_retry(failure=ErrorKind.CONNECTION_FAILED, attempt=attempt, limit=3):
        attempt = next_attempt(attempt)
        allowed += 1

    assert allowed == 3
    assert should_retry(failure=ErrorKind.CONNECTION_TIMEOUT, attempt=attempt, limit=3) is False


def test_linear_backoff():
    attempt = reset_attempt()
    delays = []
    for _ in range(3):
        attempt = next_attempt(attempt)
        delays.append(get_retry_delay_ms(attempt=attempt, base_delay_ms=1000))

    assert delays == [1000, 2000, 3000]
