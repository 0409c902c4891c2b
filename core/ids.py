from __future__ import annotations


class IdAllocator:
    """Monotonic post-increment counter.

    Every call to post_inc() hands out the current value and advances by one.
    Values are never reused, even after the objects holding them are gone.
    """

    def __init__(self, start: int = 0) -> None:
        self._next = int(start)

    def post_inc(self) -> int:
        value = self._next
        self._next += 1
        return value


class MessageIdAllocator(IdAllocator):
    pass


class ContextIdAllocator(IdAllocator):
    pass
