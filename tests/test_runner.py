"""
Tests for TurnRunner background execution.
"""

import asyncio

import pytest

from shopchat.services.runner import TurnRunner


class TestTurnRunner:
    """Tests for supervised background turns."""

    async def test_submitted_task_runs_and_is_released(self) -> None:
        runner = TurnRunner()
        done = asyncio.Event()

        async def turn() -> None:
            done.set()

        task = runner.submit(turn(), name="chat-turn:session-1")
        await task

        assert done.is_set()
        assert runner.pending == 0
        assert task.get_name() == "chat-turn:session-1"

    async def test_failing_task_is_contained(self) -> None:
        runner = TurnRunner()

        async def turn() -> None:
            raise RuntimeError("boom")

        task = runner.submit(turn(), name="chat-turn:fail")
        await asyncio.wait({task})

        assert runner.pending == 0
        assert isinstance(task.exception(), RuntimeError)

    async def test_shutdown_waits_for_running_tasks(self) -> None:
        runner = TurnRunner()
        finished: list[str] = []

        async def turn() -> None:
            await asyncio.sleep(0.01)
            finished.append("done")

        runner.submit(turn(), name="chat-turn:slow")
        await runner.shutdown(timeout=1.0)

        assert finished == ["done"]
        assert runner.pending == 0

    async def test_shutdown_cancels_after_timeout(self) -> None:
        runner = TurnRunner()

        async def turn() -> None:
            await asyncio.sleep(10)

        task = runner.submit(turn(), name="chat-turn:stuck")
        await runner.shutdown(timeout=0.01)

        assert task.cancelled()
        assert runner.pending == 0

    async def test_submit_after_shutdown_rejected(self) -> None:
        runner = TurnRunner()
        await runner.shutdown()

        async def turn() -> None:
            return None

        with pytest.raises(RuntimeError):
            runner.submit(turn(), name="chat-turn:late")
