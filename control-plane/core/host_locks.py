# control-plane/core/host_locks.py
"""
Per-host serialization

Deployment, sampling and credential changes for the same gateway never
overlap. Different gateways never share a lock.
"""

import asyncio


class HostLocks:
    """One asyncio.Lock per gateway id, created on first use"""

    def __init__(self):
        self._locks: dict[int, asyncio.Lock] = {}

    def get(self, gateway_id: int) -> asyncio.Lock:
        lock = self._locks.get(gateway_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[gateway_id] = lock
        return lock


host_locks = HostLocks()
