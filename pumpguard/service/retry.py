from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional, TypeVar

from pumpguard.logging import get_logger
from pumpguard.service.boundary import is_transient

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 3
DEFAULT_INITIAL_DELAY_SECONDS = 0.5


class RetryableCall:
    """Retry remote reads that race a fresh credential exchange.

    Right after a PKCE-style handshake the new credential is briefly
    invisible to dependent reads, which answer with a not-found shaped
    error. When ``fn`` fails that way the credential is refreshed and, if
    the refresh succeeds, ``fn`` is retried after ``delay`` (doubling each
    time). Any other failure, a failed refresh, or running out of retries
    re-raises the first error ``fn`` produced.
    """

    def __init__(
        self,
        refresh: Callable[[], Awaitable[object]],
        *,
        max_retries: int = DEFAULT_MAX_RETRIES,
        initial_delay: float = DEFAULT_INITIAL_DELAY_SECONDS,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        self._refresh = refresh
        self.max_retries = max_retries
        self.initial_delay = initial_delay
        self._sleep = sleep

    async def call(
        self,
        fn: Callable[[], Awaitable[T]],
        max_retries: Optional[int] = None,
        initial_delay: Optional[float] = None,
    ) -> T:
        retries_left = self.max_retries if max_retries is None else max_retries
        delay = self.initial_delay if initial_delay is None else initial_delay
        first_error: Optional[BaseException] = None
        attempt = 0

        while True:
            attempt += 1
            try:
                return await fn()
            except Exception as exc:
                if first_error is None:
                    first_error = exc
                if not is_transient(exc):
                    if exc is first_error:
                        raise
                    logger.warning(
                        "retry_aborted_non_transient",
                        attempt=attempt,
                        error_type=type(exc).__name__,
                    )
                    raise first_error
                if retries_left <= 0:
                    logger.warning("retry_exhausted", attempts=attempt)
                    raise first_error

            logger.warning("transient_backend_detected", attempt=attempt, delay=delay)
            try:
                await self._refresh()
            except Exception as refresh_exc:
                logger.error(
                    "retry_refresh_failed",
                    attempt=attempt,
                    error=str(refresh_exc),
                    error_type=type(refresh_exc).__name__,
                )
                raise first_error

            await self._sleep(delay)
            delay *= 2
            retries_left -= 1


__all__ = ["DEFAULT_INITIAL_DELAY_SECONDS", "DEFAULT_MAX_RETRIES", "RetryableCall"]
