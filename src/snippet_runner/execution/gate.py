from __future__ import annotations

import contextlib
import itertools
import logging
import threading
from dataclasses import dataclass
from typing import Iterator

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Slot:
    """Token proving one acquired execution slot.

    Example:
        ```python
        slot = gate.acquire()
        ```
    """

    number: int
    owner: int
    released: bool = False


class ConcurrencyGate:
    """Bounded, non-blocking pool of concurrent execution slots.

    Example:
        ```python
        gate = ConcurrencyGate(max_slots=3)
        with gate.reserve() as slot:
            if slot is None:
                ...  # saturated
        ```
    """

    def __init__(self, max_slots: int) -> None:
        """Initialize a gate allowing at most `max_slots` holders.

        Example:
            ```python
            gate = ConcurrencyGate(max_slots=1)
            ```
        """
        if max_slots < 1:
            raise ValueError("max_slots must be at least 1")
        self._max_slots = max_slots
        self._lock = threading.Lock()
        self._held: set[int] = set()
        self._numbers = itertools.count(1)

    @property
    def max_slots(self) -> int:
        """Return the configured capacity.

        Example:
            ```python
            assert gate.max_slots == 3
            ```
        """
        return self._max_slots

    @property
    def in_use(self) -> int:
        """Return how many slots are currently held.

        Example:
            ```python
            busy = gate.in_use
            ```
        """
        with self._lock:
            return len(self._held)

    def acquire(self) -> Slot | None:
        """Take a slot, or return None immediately when saturated.

        Example:
            ```python
            slot = gate.acquire()
            ```
        """
        with self._lock:
            if len(self._held) >= self._max_slots:
                return None
            slot = Slot(number=next(self._numbers), owner=id(self))
            self._held.add(slot.number)
            logger.debug("Acquired slot %d (%d/%d)", slot.number, len(self._held), self._max_slots)
            return slot

    def release(self, slot: Slot) -> None:
        """Return a slot to the pool; a second release of the same slot is a no-op.

        Example:
            ```python
            gate.release(slot)
            ```
        """
        with self._lock:
            if slot.released:
                return
            if slot.owner != id(self) or slot.number not in self._held:
                raise ValueError(f"Slot {slot.number} does not belong to this gate")
            self._held.discard(slot.number)
            slot.released = True
            logger.debug("Released slot %d (%d/%d)", slot.number, len(self._held), self._max_slots)

    @contextlib.contextmanager
    def reserve(self) -> Iterator[Slot | None]:
        """Hold a slot for the body of a `with` block, releasing it on every exit path.

        Yields None when the gate is saturated.

        Example:
            ```python
            with gate.reserve() as slot:
                ...
            ```
        """
        slot = self.acquire()
        try:
            yield slot
        finally:
            if slot is not None:
                self.release(slot)
