"""Bounded exponential-backoff retry for single remote calls.

Errors are classified by HTTP-style status code:

* 404 -> NotFoundError, not retried
* 400 -> InvalidRequestError, not retried
* 429 and 5xx -> retried after 1s, 2s, 4s, ...
* anything else -> the original exception is re-raised untouched
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3
BASE_DELAY_MS = 1000


class RetryPolicyError(RuntimeError):
    """Base class for failures produced by the retry policy."""

    def __init__(self, message: str, context: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.context = context
        self.status_code = status_code


class NotFoundError(RetryPolicyError):
    """The remote resource no longer exists."""


class InvalidRequestError(RetryPolicyError):
    """The remote side rejected the request as malformed."""


class RetriesExhaustedError(RetryPolicyError):
    """Every attempt failed with a transient error."""

    def __init__(
        self,
        message: str,
        context: str,
        attempts: int,
        last_error: Optional[BaseException] = None,
    ):
        super().__init__(message, context, status_code=status_code_of(last_error))
        self.attempts = attempts
        self.last_error = last_error


def status_code_of(error: Optional[BaseException]) -> Optional[int]:
    if error is None:
        return None

    code = getattr(error, "status_code", None)
    if isinstance(code, int) and not isinstance(code, bool):
        return code

    code = getattr(error, "code", None)
    if isinstance(code, int) and not isinstance(code, bool):
        return code

    response = getattr(error, "response", None)
    code = getattr(response, "status_code", None)
    if isinstance(code, int) and not isinstance(code, bool):
        return code

    return None


def is_retryable(status_code: Optional[int]) -> bool:
    if status_code is None:
        return False
    return status_code == 429 or status_code >= 500


def backoff_delay_ms(attempt: int) -> int:
    # 1000, 2000, 4000...
    return (2 ** attempt) * BASE_DELAY_MS


def with_retry(
    operation: Callable[[], T],
    context: str,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    sleep: Callable[[float], Any] = time.sleep,
) -> T:
    """Run ``operation`` until it succeeds or a non-retryable error occurs.

    ``context`` names the operation and prefixes every error message raised
    here. ``sleep`` receives the backoff in seconds; it blocks only the
    calling thread.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    last_error: Optional[BaseException] = None

    for attempt in range(max_attempts):
        try:
            return operation()
        except Exception as err:
            last_error = err
            code = status_code_of(err)

            if code == 404:
                raise NotFoundError(
                    f"{context}: Resource not found (may have been deleted)",
                    context,
                    status_code=code,
                ) from err

            if code == 400:
                raise InvalidRequestError(
                    f"{context}: Invalid request - {err}",
                    context,
                    status_code=code,
                ) from err

            if not is_retryable(code):
                raise

            # A single-attempt budget has nothing to wait for.
            if max_attempts > 1:
                delay = backoff_delay_ms(attempt)
                logger.warning(
                    "%s: Retrying in %dms (attempt %d/%d)",
                    context,
                    delay,
                    attempt + 1,
                    max_attempts,
                )
                sleep(delay / 1000.0)

    raise RetriesExhaustedError(
        f"{context}: Failed after {max_attempts} attempts - {last_error}",
        context,
        attempts=max_attempts,
        last_error=last_error,
    ) from last_error
