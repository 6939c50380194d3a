"""FIFO of pending update batches. Enqueueing while draining is allowed."""

from __future__ import annotations

from collections import deque


class BatchQueue:
    __slots__ = ("_batches",)

    def __init__(self) -> None:
        self._batches: deque[dict[str, object]] = deque()

    def enqueue(self, batch: dict[str, object]) -> None:
        self._batches.append(dict(batch))

    def dequeue(self) -> dict[str, object]:
        if not self._batches:
            raise IndexError("Queue is empty")
        return self._batches.popleft()

    def clear(self) -> None:
        self._batches.clear()

    def __len__(self) -> int:
        return len(self._batches)

    def __bool__(self) -> bool:
        return bool(self._batches)
