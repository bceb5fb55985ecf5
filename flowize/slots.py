"""Fixed-size pool of worktree slots.

Each slot is a sibling directory of the repository root (``<root>-wt-<id>``)
bound to at most one task at a time.
"""

import logging
from typing import Iterable, Optional

from pydantic import BaseModel

from flowize.config import MAX_WORKTREES, MIN_WORKTREES
from flowize.errors import ConflictError

logger = logging.getLogger(__name__)


class WorktreeSlot(BaseModel):
    id: int
    path: str
    task_id: Optional[str] = None

    @property
    def is_free(self) -> bool:
        return self.task_id is None


def slot_path(root: str, slot_id: int) -> str:
    """Path of slot ``slot_id`` for a repository at ``root``.

    The trailing separator is stripped; the separator style of ``root`` is kept
    (Windows roots produce Windows-style paths).
    """
    trimmed = root.rstrip("\\/")
    if not trimmed:
        trimmed = root
    return f"{trimmed}-wt-{slot_id}"


def clamp_slot_count(count: int) -> int:
    return max(MIN_WORKTREES, min(MAX_WORKTREES, count))


class SlotPool:
    """Ordered pool of slots with exclusive task bindings.

    ``assign`` checks and sets a binding without yielding to the event loop, so
    two concurrent flows can never bind the same slot or the same task twice.
    """

    def __init__(self, root: str, count: int, slots: Optional[Iterable[WorktreeSlot]] = None) -> None:
        self.root = root
        self._slots: dict[int, WorktreeSlot] = {}
        bindings = {s.id: s.task_id for s in slots or []}
        for slot_id in range(1, clamp_slot_count(count) + 1):
            self._slots[slot_id] = WorktreeSlot(id=slot_id, path=slot_path(root, slot_id), task_id=bindings.get(slot_id))

    @property
    def slots(self) -> list[WorktreeSlot]:
        return [self._slots[k] for k in sorted(self._slots)]

    def __len__(self) -> int:
        return len(self._slots)

    def get(self, slot_id: int) -> WorktreeSlot:
        try:
            return self._slots[slot_id]
        except KeyError:
            raise ConflictError(f"Slot {slot_id} does not exist (pool has {len(self)} slots)") from None

    def slot_for_task(self, task_id: str) -> Optional[WorktreeSlot]:
        for slot in self.slots:
            if slot.task_id == task_id:
                return slot
        return None

    def find_free(self) -> list[WorktreeSlot]:
        """Free slots in ascending id order."""
        return [slot for slot in self.slots if slot.is_free]

    def assign(self, task_id: str, slot_id: int) -> WorktreeSlot:
        """Bind ``task_id`` to ``slot_id``.

        Raises:
            ConflictError: If the slot is bound to another task, or the task is
                already bound to a different slot
        """
        slot = self.get(slot_id)
        if slot.task_id == task_id:
            return slot
        if slot.task_id is not None:
            raise ConflictError(f"Slot {slot_id} is already assigned to task {slot.task_id}")

        existing = self.slot_for_task(task_id)
        if existing is not None:
            raise ConflictError(f"Task {task_id} is already assigned to slot {existing.id} ({existing.path})")

        slot.task_id = task_id
        logger.debug("Assigned task %s to slot %s (%s)", task_id, slot_id, slot.path)
        return slot

    def release(self, slot_id: int) -> None:
        """Clear the binding of ``slot_id``; releasing a free or unknown slot is a no-op."""
        slot = self._slots.get(slot_id)
        if slot is not None and slot.task_id is not None:
            logger.debug("Released slot %s from task %s", slot_id, slot.task_id)
            slot.task_id = None

    def resize(self, new_count: int, root: str) -> list[str]:
        """Rebuild the pool for ``new_count`` slots under ``root``.

        Bindings of surviving slots are kept and their paths recomputed.

        Returns:
            Task ids that were bound to dropped slots
        """
        new_count = clamp_slot_count(new_count)
        released = [
            slot.task_id
            for slot_id, slot in sorted(self._slots.items())
            if slot_id > new_count and slot.task_id is not None
        ]

        bindings = {slot_id: slot.task_id for slot_id, slot in self._slots.items()}
        self.root = root
        self._slots = {
            slot_id: WorktreeSlot(id=slot_id, path=slot_path(root, slot_id), task_id=bindings.get(slot_id))
            for slot_id in range(1, new_count + 1)
        }

        if released:
            logger.info("Resize to %s slots released tasks: %s", new_count, ", ".join(released))
        return released

    def drop_unknown_tasks(self, known_task_ids: Iterable[str]) -> list[int]:
        """Release slots whose task no longer exists; returns the freed slot ids."""
        known = set(known_task_ids)
        freed = []
        for slot in self.slots:
            if slot.task_id is not None and slot.task_id not in known:
                slot.task_id = None
                freed.append(slot.id)
        return freed
