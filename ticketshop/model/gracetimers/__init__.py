# model/gracetimers/__init__.py
import os
from typing import Optional
import redis.asyncio as redis

BACKEND = os.getenv("GRACE_REGISTRY", "local").lower()  # 'local' | 'redis'

if BACKEND == "redis":
    from ._redis import GraceTimerRegistry as _GraceTimerRegistry
else:
    from ._local import GraceTimerRegistry as _GraceTimerRegistry


# Factory keeps server.py simple and constructor-agnostic:
def new_registry(*, r: Optional[redis.Redis] = None):
    if BACKEND == "redis":
        if r is None:
            raise RuntimeError(
                "GraceTimerRegistry(redis) requires r=redis.Redis"
            )
        return _GraceTimerRegistry(r=r)
    return _GraceTimerRegistry()


# Optional: also export the selected class name for typing/imports
GraceTimerRegistry = _GraceTimerRegistry
__all__ = ["GraceTimerRegistry", "new_registry", "BACKEND"]
