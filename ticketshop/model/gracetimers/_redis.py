from __future__ import annotations
import math
import os
import socket
import redis.asyncio as redis

from ...helpers import new_id


# ---- keys
def k_grace(shoppable_id: str) -> str: return f"grace:{shoppable_id}"


# keep the claim a bit past the due time so a slow resolution is not doubled
CLAIM_SLACK_SECONDS = 60

# delete only while the claim is still ours; it may have expired and been
# taken by another worker in the meantime
_RELEASE_LUA = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""


class GraceTimerRegistry:
    """
    Cluster-wide claims: across all workers sharing this Redis, only the
    worker that wins SET NX arms the grace timer for a shoppable.
    """

    def __init__(self, r: redis.Redis) -> None:
        self.r = r
        self.owner = f"{os.getpid()}@{socket.gethostname()}/{new_id()[:8]}"

    async def claim(self, shoppable_id: str, ttl_seconds: float) -> bool:
        px = int(math.ceil((max(0.0, ttl_seconds) + CLAIM_SLACK_SECONDS)
                           * 1000))
        ok = await self.r.set(k_grace(shoppable_id), self.owner, nx=True,
                              px=px)
        return bool(ok)

    async def release(self, shoppable_id: str) -> None:
        await self.r.eval(_RELEASE_LUA, 1, k_grace(shoppable_id), self.owner)
