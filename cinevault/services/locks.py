from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator


class KeyedLock:
    """asyncio locks created on demand per key and dropped once idle.

    Serialises read-modify-write sequences for one key (an identity, a push
    endpoint) inside a process without contending across unrelated keys. The
    database row lock taken by callers covers the multi-process case.
    """

    def __init__(self) -> None:
        self._locks: dict[str, tuple[asyncio.Lock, int]] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock, waiters = self._locks.get(key, (None, 0))
        if lock is None:
            lock = asyncio.Lock()
        self._locks[key] = (lock, waiters + 1)
        try:
            async with lock:
                yield
        finally:
            current_lock, current_waiters = self._locks[key]
            if current_waiters <= 1:
                del self._locks[key]
            else:
                self._locks[key] = (current_lock, current_waiters - 1)

    def __len__(self) -> int:
        return len(self._locks)


_identity_locks = KeyedLock()
_push_token_locks = KeyedLock()


def identity_lock(identity_id: str):
    # Per-identity guard for subscription transitions.
    return _identity_locks.hold(f"identity:{identity_id}")


def push_token_lock(push_token: str):
    # Per-endpoint guard for the clear-old-owner/set-new-owner pair.
    return _push_token_locks.hold(f"push:{push_token}")
