"""
Retry policy shared by generation, embedding and provenance calls.

Retry state lives in a tenacity ``AsyncRetrying`` object built per call, so
concurrent batches never share attempt counters.
"""

import asyncio
import logging
import re
from datetime import timedelta
from typing import Any, Awaitable, Callable, Iterable, Optional, Tuple, Type

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .exceptions import RateLimitError

logger = logging.getLogger(__name__)

RETRY_INFO_TYPE = "type.googleapis.com/google.rpc.RetryInfo"

_DURATION_PATTERN = re.compile(r"^\s*([0-9]*\.?[0-9]+)\s*s?\s*$")

SleepFn = Callable[[float], Awaitable[Any]]


def parse_retry_delay(details: Optional[Iterable[Any]]) -> Optional[float]:
    """
    Extract a server-suggested retry delay from Google RPC error details.

    Handles both the JSON form (``{"@type": ".../RetryInfo", "retryDelay": "30s"}``)
    and protobuf ``RetryInfo`` messages exposing ``retry_delay``.

    Returns:
        Delay in seconds, or None when the server gave no usable hint
    """
    for detail in details or []:
        if isinstance(detail, dict):
            if detail.get("@type") != RETRY_INFO_TYPE:
                continue
            delay = _parse_duration(detail.get("retryDelay"))
        else:
            delay = _parse_duration(getattr(detail, "retry_delay", None))
        if delay is not None and delay > 0:
            return delay
    return None


def _parse_duration(value: Any) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, timedelta):
        return value.total_seconds()
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        match = _DURATION_PATTERN.match(value)
        return float(match.group(1)) if match else None
    if hasattr(value, "seconds"):
        return value.seconds + getattr(value, "nanos", 0) / 1e9
    return None


class ServerDirectedWait:
    """
    Tenacity wait strategy: honour the server's delay, else back off exponentially.

    The fallback is ``initial_delay * 2 ** (attempt - 1)``.
    """

    def __init__(self, initial_delay: float):
        self.initial_delay = initial_delay
        self._backoff = wait_exponential(multiplier=initial_delay)

    def __call__(self, retry_state: RetryCallState) -> float:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(error, RateLimitError) and error.retry_delay:
            return error.retry_delay
        return self._backoff(retry_state)


def build_retrying(
    max_attempts: int,
    initial_delay: float,
    label: str,
    sleep: Optional[SleepFn] = None,
    retry_on: Tuple[Type[BaseException], ...] = (RateLimitError,),
) -> AsyncRetrying:
    """
    Build a fresh retry controller for one call.

    Only exceptions in `retry_on` (by default ``RateLimitError``) are retried;
    any other exception propagates on the first attempt. After the last
    attempt the final retryable exception is re-raised.

    Args:
        max_attempts: Total attempts including the first one
        initial_delay: Base delay in seconds for exponential backoff
        label: Human readable name of the call, used in log lines
        sleep: Coroutine used to sleep between attempts
        retry_on: Exception types that trigger another attempt
    """

    def _log_retry(retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception()
        delay = retry_state.next_action.sleep if retry_state.next_action else 0
        from_api = isinstance(error, RateLimitError) and bool(error.retry_delay)
        logger.warning(
            f"Retryable failure for {label} (attempt {retry_state.attempt_number}/{max_attempts}). "
            f"Retrying in {delay:.2f}s (from API: {'yes' if from_api else 'no'})"
        )

    return AsyncRetrying(
        stop=stop_after_attempt(max_attempts),
        wait=ServerDirectedWait(initial_delay),
        retry=retry_if_exception_type(retry_on),
        sleep=sleep or asyncio.sleep,
        before_sleep=_log_retry,
        reraise=True,
    )
