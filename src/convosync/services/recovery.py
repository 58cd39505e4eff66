"""Retry policy for storage operations.

Two failure families are retried. Transient lock contention ("database is
locked") just backs off and tries again. Corrupted-storage errors (missing
table, unreadable file) first reset the connection pool and re-create the
schema, then retry. Anything else propagates on the first failure.
"""

from collections.abc import Awaitable, Callable
from typing import TypeVar

import structlog
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncEngine
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_exponential

from convosync.exceptions import CorruptedStorageError, StorageError

T = TypeVar("T")

_TRANSIENT_MARKERS = (
    "database is locked",
    "database table is locked",
    "database is busy",
    "sqlite_busy",
)

_CORRUPTED_MARKERS = (
    "no such table",
    "unable to open database file",
    "file is not a database",
    "database disk image is malformed",
    "disk i/o error",
)

_MAX_BACKOFF_SECONDS = 5.0


def _error_text(exc: BaseException) -> str:
    if isinstance(exc, DBAPIError) and exc.orig is not None:
        return str(exc.orig).lower()
    return str(exc).lower()


def is_transient_error(exc: BaseException) -> bool:
    return any(marker in _error_text(exc) for marker in _TRANSIENT_MARKERS)


def is_corrupted_storage_error(exc: BaseException) -> bool:
    return any(marker in _error_text(exc) for marker in _CORRUPTED_MARKERS)


def _is_retryable(exc: BaseException) -> bool:
    return is_transient_error(exc) or is_corrupted_storage_error(exc)


class StorageRecovery:
    """Runs storage operations under the bounded retry policy.

    ``on_reset`` is awaited after the pool is disposed on the corrupted path;
    the repository factory wires it to schema creation.
    """

    def __init__(
        self,
        engine: AsyncEngine,
        max_attempts: int = 4,
        backoff_seconds: float = 0.2,
        on_reset: Callable[[], Awaitable[None]] | None = None,
        logger: structlog.stdlib.BoundLogger | None = None,
    ) -> None:
        self._engine = engine
        self._max_attempts = max_attempts
        self._backoff_seconds = backoff_seconds
        self._on_reset = on_reset
        self._logger = logger or structlog.get_logger(__name__)

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    def set_reset_hook(self, on_reset: Callable[[], Awaitable[None]]) -> None:
        self._on_reset = on_reset

    async def reset(self) -> None:
        """Drop pooled connections and re-create missing schema objects."""
        await self._engine.dispose()
        if self._on_reset is not None:
            await self._on_reset()
        self._logger.warning("storage_connection_reset")

    async def run(self, operation: Callable[[], Awaitable[T]], name: str) -> T:
        """Execute ``operation`` with retries.

        Raises:
            StorageError: Transient failures exhausted the attempt budget.
            CorruptedStorageError: Storage stayed unreadable after resets.
        """
        retrying = AsyncRetrying(
            retry=retry_if_exception(_is_retryable),
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_exponential(multiplier=self._backoff_seconds, max=_MAX_BACKOFF_SECONDS),
            before_sleep=lambda state: self._log_retry(name, state),
            reraise=True,
        )
        needs_reset = False
        try:
            async for attempt in retrying:
                with attempt:
                    if needs_reset:
                        needs_reset = False
                        await self.reset()
                    try:
                        result = await operation()
                    except Exception as exc:
                        needs_reset = is_corrupted_storage_error(exc)
                        raise
        except Exception as exc:
            if is_corrupted_storage_error(exc):
                raise CorruptedStorageError(name, self._max_attempts, exc) from exc
            if is_transient_error(exc):
                raise StorageError(name, self._max_attempts, exc) from exc
            raise
        return result

    def _log_retry(self, name: str, state: RetryCallState) -> None:
        exc = state.outcome.exception() if state.outcome else None
        self._logger.warning(
            "storage_operation_retrying",
            operation=name,
            attempt=state.attempt_number,
            max_attempts=self._max_attempts,
            corrupted=exc is not None and is_corrupted_storage_error(exc),
            error=str(exc),
        )
