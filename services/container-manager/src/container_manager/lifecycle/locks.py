"""
Per-instance operation locks.

At most one lifecycle operation may hold an instance at a time. A second
request is rejected with ConflictError instead of queueing. Stop and delete
preempt the holder: its background task is cancelled and they wait for the
lock to be released. A holder that has not spawned its task yet is flagged
instead, and the task is never started.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import UTC, datetime
import uuid

import structlog

from ..errors import ConflictError

logger = structlog.get_logger()


@dataclass
class _Hold:
    lock_id: str
    operation: str
    acquired_at: datetime
    task: asyncio.Task | None = None
    # Set when stop/delete arrives before the holder has spawned its task
    preempted_by: str | None = None
    released: asyncio.Event = field(default_factory=asyncio.Event)


class InstanceLocks:
    def __init__(self):
        self._holds: dict[str, _Hold] = {}
        self._mutex = asyncio.Lock()

    async def acquire(self, instance_id: str, operation: str) -> str:
        """Acquire the instance lock. Raises ConflictError if another operation holds it."""
        async with self._mutex:
            existing = self._holds.get(instance_id)
            if existing is not None:
                raise ConflictError(
                    f"Operation '{existing.operation}' already in progress "
                    f"for service '{instance_id}'",
                    service_id=instance_id,
                    operation=existing.operation,
                )
            hold = _Hold(
                lock_id=uuid.uuid4().hex, operation=operation, acquired_at=datetime.now(UTC)
            )
            self._holds[instance_id] = hold
            return hold.lock_id

    async def preempt(self, instance_id: str, operation: str) -> str:
        """Cancel whatever holds the instance, wait for it to let go, then acquire."""
        while True:
            async with self._mutex:
                existing = self._holds.get(instance_id)
                if existing is None:
                    hold = _Hold(
                        lock_id=uuid.uuid4().hex,
                        operation=operation,
                        acquired_at=datetime.now(UTC),
                    )
                    self._holds[instance_id] = hold
                    return hold.lock_id
                if existing.task is not None and not existing.task.done():
                    logger.info(
                        "operation_preempted",
                        instance_id=instance_id,
                        operation=existing.operation,
                        preempted_by=operation,
                    )
                    existing.task.cancel()
                elif existing.task is None and existing.preempted_by is None:
                    logger.info(
                        "operation_preempt_requested",
                        instance_id=instance_id,
                        operation=existing.operation,
                        preempted_by=operation,
                    )
                    existing.preempted_by = operation
                released = existing.released
            await released.wait()

    def attach_task(self, instance_id: str, lock_id: str, task: asyncio.Task) -> None:
        """Associate the background task running under a held lock, so it can be preempted."""
        hold = self._holds.get(instance_id)
        if hold is not None and hold.lock_id == lock_id:
            hold.task = task

    def preempted_by(self, instance_id: str, lock_id: str) -> str | None:
        """Operation waiting to preempt a hold that has no task yet, if any."""
        hold = self._holds.get(instance_id)
        if hold is None or hold.lock_id != lock_id:
            return None
        return hold.preempted_by

    def release(self, instance_id: str, lock_id: str) -> bool:
        """Release a held lock. Synchronous so task done-callbacks can call it."""
        hold = self._holds.get(instance_id)
        if hold is None or hold.lock_id != lock_id:
            return False
        del self._holds[instance_id]
        hold.released.set()
        return True

    def operation(self, instance_id: str) -> str | None:
        """Name of the operation currently holding the instance, if any."""
        hold = self._holds.get(instance_id)
        return hold.operation if hold else None

    def task(self, instance_id: str) -> asyncio.Task | None:
        hold = self._holds.get(instance_id)
        return hold.task if hold else None

    def tasks(self) -> list[asyncio.Task]:
        return [h.task for h in self._holds.values() if h.task is not None and not h.task.done()]
