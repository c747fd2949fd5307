import asyncio

import pytest

from container_manager.errors import ConflictError
from container_manager.lifecycle import InstanceLocks


@pytest.mark.asyncio
async def test_second_operation_is_rejected():
    locks = InstanceLocks()
    lock_id = await locks.acquire("svc-1", "start")

    with pytest.raises(ConflictError) as exc:
        await locks.acquire("svc-1", "scale")
    assert exc.value.context["operation"] == "start"
    assert locks.operation("svc-1") == "start"

    # other instances are independent
    other = await locks.acquire("svc-2", "scale")
    assert locks.release("svc-2", other)

    assert locks.release("svc-1", lock_id)
    assert locks.operation("svc-1") is None
    await locks.acquire("svc-1", "scale")


@pytest.mark.asyncio
async def test_release_with_stale_id_is_ignored():
    locks = InstanceLocks()
    lock_id = await locks.acquire("svc-1", "start")

    assert not locks.release("svc-1", "stale")
    assert locks.operation("svc-1") == "start"
    assert locks.release("svc-1", lock_id)


@pytest.mark.asyncio
async def test_preempt_cancels_holder_and_waits():
    locks = InstanceLocks()
    lock_id = await locks.acquire("svc-1", "start")

    async def long_build():
        await asyncio.sleep(3600)

    task = asyncio.create_task(long_build())
    task.add_done_callback(lambda _: locks.release("svc-1", lock_id))
    locks.attach_task("svc-1", lock_id, task)
    assert locks.tasks() == [task]

    stop_id = await asyncio.wait_for(locks.preempt("svc-1", "stop"), timeout=1)

    assert task.cancelled()
    assert locks.operation("svc-1") == "stop"
    assert locks.release("svc-1", stop_id)


@pytest.mark.asyncio
async def test_preempt_free_instance_acquires_immediately():
    locks = InstanceLocks()
    lock_id = await locks.preempt("svc-1", "delete")
    assert locks.operation("svc-1") == "delete"
    assert locks.task("svc-1") is None
    locks.release("svc-1", lock_id)


@pytest.mark.asyncio
async def test_preempt_before_task_is_attached_flags_the_hold():
    locks = InstanceLocks()
    lock_id = await locks.acquire("svc-1", "start")

    stop = asyncio.create_task(locks.preempt("svc-1", "stop"))
    await asyncio.sleep(0)

    assert locks.preempted_by("svc-1", lock_id) == "stop"
    assert locks.preempted_by("svc-1", "stale") is None
    assert not stop.done()

    # the holder sees the flag and lets go instead of spawning its task
    assert locks.release("svc-1", lock_id)
    stop_id = await asyncio.wait_for(stop, timeout=1)
    assert locks.operation("svc-1") == "stop"
    assert locks.preempted_by("svc-1", stop_id) is None
