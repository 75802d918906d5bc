"""Tests for the Timeout Guard."""
import asyncio

import pytest

from fulfillment.errors import OperationTimeout
from fulfillment.timeouts import with_timeout


def test_returns_result_when_operation_finishes_first():
    async def fast():
        return 42

    assert asyncio.run(with_timeout(fast(), 1000)) == 42


def test_operation_errors_propagate_unchanged():
    async def broken():
        raise ValueError("bad row")

    with pytest.raises(ValueError, match="bad row"):
        asyncio.run(with_timeout(broken(), 1000))


def test_timeout_carries_deadline_and_leaves_operation_running():
    finished = []

    async def slow():
        await asyncio.sleep(0.05)
        finished.append(True)
        return "late"

    async def scenario():
        with pytest.raises(OperationTimeout) as exc_info:
            await with_timeout(slow(), 10, "Slow op")
        # the guarded operation keeps going in the background
        await asyncio.sleep(0.1)
        return exc_info.value

    error = asyncio.run(scenario())

    assert error.timeout_ms == 10
    assert str(error) == "Slow op timed out after 10ms"
    assert finished == [True]
