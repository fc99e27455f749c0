"""Explicit timeouts for store round trips."""

import asyncio

from ..errors import OperationTimeoutError
from .logging import get_logger

logger = get_logger("utils.timeouts")


async def with_timeout(coro, timeout: float, operation: str):
    """Await ``coro`` for at most ``timeout`` seconds.

    Raises OperationTimeoutError (a retryable TimeoutError) on expiry
    instead of letting the caller hang on a stalled database.
    """
    try:
        return await asyncio.wait_for(coro, timeout=timeout)
    except asyncio.TimeoutError:
        logger.error("store_operation_timeout", operation=operation, timeout=timeout)
        raise OperationTimeoutError(
            f"{operation} timed out after {timeout}s", operation=operation
        ) from None
