from __future__ import annotations
from typing import Set


class GraceTimerRegistry:
    """
    Process-wide claims: one armed grace timer per shoppable in this process.
    """

    def __init__(self) -> None:
        self._claimed: Set[str] = set()

    async def claim(self, shoppable_id: str, ttl_seconds: float) -> bool:
        # no await before the set: check-and-set is atomic on the event loop
        if shoppable_id in self._claimed:
            return False
        self._claimed.add(shoppable_id)
        return True

    async def release(self, shoppable_id: str) -> None:
        self._claimed.discard(shoppable_id)
