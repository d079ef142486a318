"""Per-handle state machine driven by driver lifecycle events.

``PENDING -> AWAITING_SCAN -> CONNECTED``; any phase may fall to ``ERROR``
(auth failure) or reset back to ``PENDING`` (remote disconnect or unpair).
A handle that reached ``ERROR`` or was reset is never resumed: the next
``connect`` builds a fresh driver.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

from .driver import (
    UNPAIRED_STATES,
    AuthFailure,
    Authenticated,
    Disconnected,
    DriverEvent,
    PeerStateChanged,
    QrReceived,
    Ready,
    event_kind,
)
from .errors import DriverAuthError, NotFoundError
from .metrics import DRIVER_EVENTS_TOTAL, update_session_gauges
from .models import LiveHandle, SessionPhase, SessionStatus, normalize_phone
from .notifications import NotificationHub
from .reaper import ResourceReaper
from .registry import SessionRegistry
from .store import SessionStore


LOGGER = logging.getLogger("waworker.reactor")


class EventReactor:
    def __init__(
        self,
        registry: SessionRegistry,
        store: SessionStore,
        hub: NotificationHub,
        reaper: ResourceReaper,
    ) -> None:
        self._registry = registry
        self._store = store
        self._hub = hub
        self._reaper = reaper

    def attach(self, handle: LiveHandle) -> asyncio.Task[Any]:
        task = asyncio.get_running_loop().create_task(
            self._receive_loop(handle), name=f"waworker-events-{handle.tenant_id}"
        )
        handle.receive_task = task
        return task

    async def _receive_loop(self, handle: LiveHandle) -> None:
        tenant_id = handle.tenant_id
        LOGGER.debug("stage=receive_loop_start tenant_id=%s", tenant_id)
        async for event in handle.driver.events():
            kind = event_kind(event)
            DRIVER_EVENTS_TOTAL.labels(kind).inc()
            if handle.closed or not self._registry.is_current(handle):
                LOGGER.info(
                    "stage=event_ignored tenant_id=%s kind=%s reason=stale_handle",
                    tenant_id,
                    kind,
                )
                continue
            try:
                await self.dispatch(handle, event)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                LOGGER.exception(
                    "stage=event_handler_failed tenant_id=%s kind=%s", tenant_id, kind
                )
                self._hub.error_raised(tenant_id, exc)
        LOGGER.debug("stage=receive_loop_done tenant_id=%s", tenant_id)

    async def dispatch(self, handle: LiveHandle, event: DriverEvent) -> None:
        if isinstance(event, QrReceived):
            await self._on_qr(handle, event)
        elif isinstance(event, Authenticated):
            LOGGER.info("stage=authenticated tenant_id=%s", handle.tenant_id)
        elif isinstance(event, Ready):
            await self._on_ready(handle, event)
        elif isinstance(event, AuthFailure):
            await self._on_auth_failure(handle, event)
        elif isinstance(event, Disconnected):
            await self.reset_cold(handle, event.reason)
        elif isinstance(event, PeerStateChanged):
            if event.state in UNPAIRED_STATES:
                await self.reset_cold(handle, f"state:{event.state.value}")
            else:
                LOGGER.info(
                    "stage=peer_state tenant_id=%s state=%s",
                    handle.tenant_id,
                    event.state.value,
                )
        else:
            LOGGER.warning(
                "stage=event_unknown tenant_id=%s type=%s",
                handle.tenant_id,
                type(event).__name__,
            )

    async def _persist(self, tenant_id: str, **fields: Any) -> None:
        try:
            record = await self._store.update(tenant_id, **fields)
        except NotFoundError:
            LOGGER.info("stage=persist_skip tenant_id=%s reason=record_missing", tenant_id)
            return
        self._hub.status_changed(tenant_id, record.to_payload())

    async def _on_qr(self, handle: LiveHandle, event: QrReceived) -> None:
        tenant_id = handle.tenant_id
        handle.phase = SessionPhase.AWAITING_SCAN
        handle.qr = event.payload
        self._registry.cache_qr(tenant_id, event.payload)
        update_session_gauges(self._registry.stats_snapshot())
        await self._persist(
            tenant_id,
            status=SessionStatus.PENDING,
            qr_payload=event.payload,
            last_activity=time.time(),
        )
        self._hub.qr_issued(tenant_id, event.payload)
        self._hub.log_line(tenant_id, "info", "QR code generated, waiting for scan")
        LOGGER.info("stage=qr_issued tenant_id=%s", tenant_id)

    async def _on_ready(self, handle: LiveHandle, event: Ready) -> None:
        tenant_id = handle.tenant_id
        phone_id = normalize_phone(event.phone_id)
        handle.phase = SessionPhase.CONNECTED
        handle.ready = True
        handle.qr = None
        handle.phone_id = phone_id
        self._registry.clear_qr(tenant_id)
        update_session_gauges(self._registry.stats_snapshot())
        await self._persist(
            tenant_id,
            status=SessionStatus.CONNECTED,
            phone_id=phone_id,
            qr_payload=None,
            is_active=True,
            last_activity=time.time(),
        )
        self._hub.connected(tenant_id, phone_id)
        self._hub.log_line(tenant_id, "info", "Session connected", phone=phone_id)
        LOGGER.info("stage=ready tenant_id=%s phone=%s", tenant_id, phone_id)

    async def _on_auth_failure(self, handle: LiveHandle, event: AuthFailure) -> None:
        tenant_id = handle.tenant_id
        if handle.closed:
            return
        handle.phase = SessionPhase.ERROR
        LOGGER.warning("stage=auth_failure tenant_id=%s reason=%s", tenant_id, event.reason)
        await self._reaper.destroy(tenant_id, handle=handle, reason="auth_failure")
        await self._persist(tenant_id, status=SessionStatus.ERROR, qr_payload=None)
        self._hub.error_raised(tenant_id, DriverAuthError(event.reason, tenant_id=tenant_id))
        self._hub.log_line(tenant_id, "error", f"Authentication failed: {event.reason}")

    async def reset_cold(self, handle: LiveHandle, reason: str) -> bool:
        """Tear the handle down and wipe its credentials.

        Returns False when the handle was already torn down, so a burst of
        disconnect and unpair signals resets it only once.
        """
        tenant_id = handle.tenant_id
        if handle.closed:
            LOGGER.info("stage=reset_debounced tenant_id=%s reason=%s", tenant_id, reason)
            return False
        handle.phase = SessionPhase.PENDING
        LOGGER.warning("stage=reset_cold tenant_id=%s reason=%s", tenant_id, reason)
        await self._reaper.destroy(tenant_id, handle=handle, reason="remote_disconnect")
        self._reaper.schedule_nuke(tenant_id)
        await self._persist(
            tenant_id,
            status=SessionStatus.PENDING,
            qr_payload=None,
            phone_id=None,
            intentional_disconnect=True,
            last_activity=time.time(),
        )
        self._hub.disconnected(tenant_id, reason)
        self._hub.log_line(tenant_id, "warning", f"Session disconnected: {reason}")
        return True


__all__ = ["EventReactor"]
