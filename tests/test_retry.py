from __future__ import annotations

import pytest

from somactl.core.errors import (
    BleAdapterUnavailableError,
    BleTimeoutError,
    UnknownCharacteristicError,
)
from somactl.core.retry import call_with_retries, is_transient


class Flaky:
    def __init__(self, failures: list[Exception]) -> None:
        self.failures = failures
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return "ok"


def test_is_transient() -> None:
    assert is_transient(BleTimeoutError("slow"))
    assert not is_transient(BleAdapterUnavailableError("off"))
    assert not is_transient(UnknownCharacteristicError("nope"))


@pytest.mark.asyncio
async def test_recovers_within_budget() -> None:
    operation = Flaky([BleTimeoutError("slow")] * 3)
    assert await call_with_retries(operation, retries=5) == "ok"
    assert operation.calls == 4


@pytest.mark.asyncio
async def test_gives_up_after_budget() -> None:
    operation = Flaky([BleTimeoutError("slow")] * 3)
    with pytest.raises(BleTimeoutError):
        await call_with_retries(operation, retries=2)
    assert operation.calls == 3


@pytest.mark.asyncio
async def test_does_not_retry_permanent_errors() -> None:
    operation = Flaky([UnknownCharacteristicError("nope")])
    with pytest.raises(UnknownCharacteristicError):
        await call_with_retries(operation, retries=5)
    assert operation.calls == 1
