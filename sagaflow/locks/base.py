"""Distributed lock store interface."""

from __future__ import annotations

import abc


class LockStore(metaclass=abc.ABCMeta):
    """Atomic set-if-absent-with-expiry store used for mutual exclusion.

    A lock held past its TTL expires silently, so the TTL must exceed the
    longest expected run of the work it guards.
    """

    async def connect(self) -> None:
        pass

    async def disconnect(self) -> None:
        pass

    @abc.abstractmethod
    async def set_if_absent_with_expiry(self, key: str, value: str, ttl_seconds: float) -> bool:
        """Store ``value`` under ``key`` unless it is held; return whether it was stored."""
        raise NotImplementedError

    @abc.abstractmethod
    async def delete(self, key: str) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    async def get(self, key: str) -> str | None:
        """Return the current holder of ``key`` or ``None`` when free."""
        raise NotImplementedError

    @abc.abstractmethod
    async def ping(self) -> bool:
        """Liveness probe; raises or returns ``False`` when unreachable."""
        raise NotImplementedError
