"""Tests for the background task runner."""
import asyncio

from supportdesk.tasks import BackgroundTasks


async def test_spawned_tasks_run_to_completion():
    tasks = BackgroundTasks()
    done = []

    async def work(value):
        await asyncio.sleep(0)
        done.append(value)

    tasks.spawn(work(1), name="one")
    tasks.spawn(work(2), name="two")
    await tasks.drain()

    assert sorted(done) == [1, 2]
    assert tasks.pending == 0


async def test_failures_do_not_escape():
    """Test that a failing task is logged and forgotten."""
    tasks = BackgroundTasks()

    async def fail():
        raise RuntimeError("boom")

    task = tasks.spawn(fail(), name="fail")
    await tasks.drain()

    assert task.done()
    assert tasks.pending == 0


async def test_cancel_all():
    tasks = BackgroundTasks()
    tasks.spawn(asyncio.sleep(60), name="sleeper")

    await tasks.cancel_all()

    assert tasks.pending == 0
