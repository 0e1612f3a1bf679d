from __future__ import annotations

import asyncio
import inspect
from typing import Any, Awaitable, Callable, TypeVar, Union

from leasekeeper.logging import get_logger
from leasekeeper.storage.errors import StorageUnavailable

logger = get_logger(__name__)

T = TypeVar("T")


async def call_with_storage_retry(
    fn: Callable[[], Union[T, Awaitable[T]]],
    *,
    attempts: int = 3,
    backoff_ms: int = 50,
    operation: str = "lease_operation",
) -> T:
    """Run an idempotent operation, retrying transient storage failures.

    Waits ``backoff_ms * attempt`` between tries and re-raises the last
    ``StorageUnavailable`` once ``attempts`` are used up.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            result: Any = fn()
            if inspect.isawaitable(result):
                result = await result
            return result
        except StorageUnavailable as exc:
            if attempt >= attempts:
                logger.error(
                    "storage_retry_exhausted",
                    operation=operation,
                    attempts=attempt,
                    error=exc.message,
                )
                raise
            delay = backoff_ms * attempt / 1000
            logger.warning(
                "storage_retry",
                operation=operation,
                attempt=attempt,
                retry_delay=delay,
            )
            await asyncio.sleep(delay)
