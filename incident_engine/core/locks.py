#!/usr/bin/env python3
"""
Incident Engine - Keyed Locks
Per-incident (and per-correlation-key) mutual exclusion scopes.
"""

import asyncio
from typing import Dict, Hashable


class KeyedLocks:
    """
    Map of lightweight asyncio locks, one per key.

    Locks are created on first touch and never removed, so two tasks can never
    end up holding different lock objects for the same key.
    """

    def __init__(self):
        self._locks: Dict[Hashable, asyncio.Lock] = {}

    def lock_for(self, key: Hashable) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks.setdefault(key, asyncio.Lock())
        return lock

    def is_locked(self, key: Hashable) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)
