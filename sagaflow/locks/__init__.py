"""Lock store factory."""

from __future__ import annotations

import os
from typing import Optional

from ..config import SagaflowConfig, load_config
from .base import LockStore
from .inmemory import InMemoryLockStore


def get_lock_store(
    backend: Optional[str] = None, config: Optional[SagaflowConfig] = None
) -> LockStore:
    """Factory function to get the configured lock store."""

    config = config or load_config()
    backend = (
        backend
        or os.getenv("SAGAFLOW_LOCK_BACKEND")
        or config.locks.backend
    ).lower()

    if backend == "inmemory":
        return InMemoryLockStore()
    elif backend == "redis":
        from .redis import RedisLockStore

        redis_conf = config.locks.redis
        return RedisLockStore(
            host=redis_conf.host,
            port=redis_conf.port,
            db=redis_conf.db,
            password=redis_conf.password,
        )
    else:
        raise ValueError(f"Unsupported lock backend: {backend}")


__all__ = ["InMemoryLockStore", "LockStore", "get_lock_store"]
