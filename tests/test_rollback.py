"""
Tests for RollbackStack.
"""

from unittest.mock import AsyncMock

import pytest

from simulation_coordinator.utils.rollback import RollbackStack


@pytest.mark.unit
class TestRollbackStack:
    @pytest.mark.asyncio
    async def test_unwinds_in_reverse_order(self):
        calls = []

        async def undo(name):
            calls.append(name)

        stack = RollbackStack("sim-a")
        stack.push("namespace", undo, "namespace")
        stack.push("broker", undo, "broker")
        stack.push("physics", undo, "physics")

        assert await stack.unwind() == []
        assert calls == ["physics", "broker", "namespace"]
        assert len(stack) == 0

    @pytest.mark.asyncio
    async def test_failing_action_does_not_stop_the_rest(self):
        first = AsyncMock()
        broken = AsyncMock(side_effect=RuntimeError("api down"))
        stack = RollbackStack("sim-a")
        stack.push("first", first)
        stack.push("broken", broken)

        failures = await stack.unwind()

        assert [str(e) for e in failures] == ["api down"]
        first.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_clear_commits(self):
        action = AsyncMock()
        stack = RollbackStack("sim-a")
        stack.push("step", action)
        stack.clear()

        await stack.unwind()

        action.assert_not_awaited()
