from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Dict, Optional

from .models import LiveHandle, Presence, SessionPhase


LOGGER = logging.getLogger("waworker.registry")


class SessionRegistry:
    """In-memory map of tenant id to live handle plus the QR cache.

    Reads never take a lock; writers are already serialized per tenant by the
    coordinator, the reactor and the reaper.
    """

    def __init__(self) -> None:
        self._handles: Dict[str, LiveHandle] = {}
        self._qr_cache: Dict[str, str] = {}

    def get(self, tenant_id: str) -> Presence:
        handle = self._handles.get(tenant_id)
        has_qr = tenant_id in self._qr_cache
        if handle is None:
            return Presence(exists=False, has_qr=has_qr)
        return Presence(
            exists=True,
            ready=handle.ready,
            has_qr=has_qr,
            phase=handle.phase.value,
        )

    def handle(self, tenant_id: str) -> Optional[LiveHandle]:
        return self._handles.get(tenant_id)

    def put(self, handle: LiveHandle) -> None:
        current = self._handles.get(handle.tenant_id)
        if current is not None and current is not handle:
            raise RuntimeError(f"live handle already registered for tenant {handle.tenant_id}")
        self._handles[handle.tenant_id] = handle

    def remove(self, tenant_id: str, handle: Optional[LiveHandle] = None) -> Optional[LiveHandle]:
        current = self._handles.get(tenant_id)
        if current is None:
            return None
        if handle is not None and current is not handle:
            return None
        self._handles.pop(tenant_id, None)
        return current

    def is_current(self, handle: LiveHandle) -> bool:
        return self._handles.get(handle.tenant_id) is handle

    def cache_qr(self, tenant_id: str, payload: str) -> None:
        self._qr_cache[tenant_id] = payload

    def qr(self, tenant_id: str) -> Optional[str]:
        return self._qr_cache.get(tenant_id)

    def clear_qr(self, tenant_id: str) -> None:
        self._qr_cache.pop(tenant_id, None)

    def list_all(self) -> dict[str, Presence]:
        return {tenant_id: self.get(tenant_id) for tenant_id in list(self._handles)}

    def handles(self) -> list[LiveHandle]:
        return list(self._handles.values())

    def clear(self) -> None:
        self._handles.clear()
        self._qr_cache.clear()

    def stats_snapshot(self) -> dict[str, int]:
        handles = list(self._handles.values())
        return {
            "live": len(handles),
            "ready": sum(1 for handle in handles if handle.ready),
            "awaiting_scan": sum(
                1 for handle in handles if handle.phase is SessionPhase.AWAITING_SCAN
            ),
            "pending": sum(1 for handle in handles if handle.phase is SessionPhase.PENDING),
        }


@dataclass(frozen=True, slots=True)
class Acquisition:
    tenant_id: str
    already_running: bool


class CreationCoordinator:
    """Per-tenant exclusive section shared by connect/disconnect/restart/delete."""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    def _lock(self, tenant_id: str) -> asyncio.Lock:
        lock = self._locks.get(tenant_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[tenant_id] = lock
        return lock

    def is_running(self, tenant_id: str) -> bool:
        lock = self._locks.get(tenant_id)
        return bool(lock and lock.locked())

    def running(self) -> list[str]:
        return [tenant_id for tenant_id, lock in list(self._locks.items()) if lock.locked()]

    @contextlib.asynccontextmanager
    async def sequence(self, tenant_id: str) -> AsyncIterator[Acquisition]:
        lock = self._lock(tenant_id)
        already_running = bool(self._users.get(tenant_id)) or lock.locked()
        if already_running:
            LOGGER.info("stage=sequence_wait tenant_id=%s", tenant_id)
        self._users[tenant_id] = self._users.get(tenant_id, 0) + 1
        try:
            async with lock:
                yield Acquisition(tenant_id=tenant_id, already_running=already_running)
        finally:
            remaining = self._users.get(tenant_id, 1) - 1
            if remaining > 0:
                self._users[tenant_id] = remaining
            else:
                self._users.pop(tenant_id, None)
                self._locks.pop(tenant_id, None)

    def discard(self, tenant_id: str) -> None:
        # a lock with users must stay shared by every caller
        if self._users.get(tenant_id):
            return
        self._locks.pop(tenant_id, None)

    def clear(self) -> None:
        for tenant_id in list(self._locks):
            self.discard(tenant_id)


__all__ = ["SessionRegistry", "CreationCoordinator", "Acquisition"]
