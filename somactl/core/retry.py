"""Bounded automatic retry of transient BLE failures."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from somactl.core.errors import BleAdapterUnavailableError, BleError

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


def is_transient(exc: BaseException) -> bool:
    """BLE errors are worth retrying, except when the adapter is gone."""
    return isinstance(exc, BleError) and not isinstance(exc, BleAdapterUnavailableError)


async def call_with_retries(
    operation: Callable[[], Awaitable[T]],
    *,
    retries: int,
    is_retryable: Callable[[BaseException], bool] = is_transient,
    delay: float = 0.0,
    description: str = "operation",
) -> T:
    """Run `operation` until it succeeds or fails for good.

    `operation` is called again from scratch, up to `retries` extra times,
    while it raises an error that `is_retryable` accepts. Other errors, and
    the last retryable one, propagate to the caller.
    """
    attempt = 0
    while True:
        try:
            return await operation()
        except Exception as exc:
            if not is_retryable(exc):
                raise
            if attempt >= retries:
                LOGGER.debug(
                    "%s: %s, reached max retries (%s/%s)",
                    description,
                    exc,
                    attempt,
                    retries,
                )
                raise
            attempt += 1
            LOGGER.debug(
                "%s: %s, retrying (%s/%s)...",
                description,
                exc,
                attempt,
                retries,
            )
            if delay > 0:
                await asyncio.sleep(delay)
