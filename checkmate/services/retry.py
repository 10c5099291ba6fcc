import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from checkmate.facades.replicate import PredictionError, TransientUpstreamError

log = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_MARKERS = ("503", "overloaded", "UNAVAILABLE")


def is_transient_error(exc: BaseException) -> bool:
    if isinstance(exc, PredictionError):
        return isinstance(exc, TransientUpstreamError)
    message = str(exc)
    return any(marker in message for marker in TRANSIENT_MARKERS)


def _log_retry(retry_state: RetryCallState) -> None:
    log.warning(
        f"Upstream unavailable, retrying in {retry_state.next_action.sleep:.1f}s "
        f"(attempt {retry_state.attempt_number}): {retry_state.outcome.exception()}"
    )


async def retry_async(
    call: Callable[[], Awaitable[T]],
    *,
    max_retries: int = 3,
    base_delay: float = 1.0,
    multiplier: float = 2.0,
    is_retryable: Callable[[BaseException], bool] = is_transient_error,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Await ``call`` until it succeeds, retrying retryable errors with
    exponential backoff. At most ``max_retries + 1`` attempts are made and
    the last error is re-raised unchanged.
    """
    retrying = AsyncRetrying(
        stop=stop_after_attempt(max_retries + 1),
        wait=wait_exponential(multiplier=base_delay, exp_base=multiplier),
        retry=retry_if_exception(is_retryable),
        before_sleep=_log_retry,
        reraise=True,
        sleep=sleep,
    )
    async for attempt in retrying:
        with attempt:
            return await call()


class RetryPolicy:
    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 1.0,
        multiplier: float = 2.0,
        is_retryable: Callable[[BaseException], bool] = is_transient_error,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.multiplier = multiplier
        self.is_retryable = is_retryable
        self.sleep = sleep

    async def run(self, call: Callable[[], Awaitable[T]]) -> T:
        return await retry_async(
            call,
            max_retries=self.max_retries,
            base_delay=self.base_delay,
            multiplier=self.multiplier,
            is_retryable=self.is_retryable,
            sleep=self.sleep,
        )
