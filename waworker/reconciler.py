from __future__ import annotations

import asyncio
import logging
import time
from typing import Optional

from .driver import DriverState
from .errors import NotFoundError
from .metrics import RECONCILER_FIXES_TOTAL
from .models import SessionStatus, SweepReport, VerifyResult
from .notifications import NotificationHub
from .reaper import ResourceReaper
from .registry import SessionRegistry
from .store import SessionStore


LOGGER = logging.getLogger("waworker.reconciler")

DEFAULT_INACTIVE_TTL = 24 * 60 * 60.0


class StatusReconciler:
    """Repairs drift between the persisted status and the live registry.

    It only ever downgrades a record. Reconnecting is left to an explicit
    ``connect`` call.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        store: SessionStore,
        hub: NotificationHub,
        reaper: ResourceReaper,
        *,
        verify_timeout: float = 5.0,
    ) -> None:
        self._registry = registry
        self._store = store
        self._hub = hub
        self._reaper = reaper
        self._verify_timeout = verify_timeout

    async def _probe(self, tenant_id: str) -> tuple[bool, str]:
        handle = self._registry.handle(tenant_id)
        if handle is None:
            return False, "no_live_session"
        if handle.closed or not handle.ready:
            return False, "session_not_ready"
        try:
            state = await asyncio.wait_for(handle.driver.get_state(), self._verify_timeout)
        except asyncio.TimeoutError:
            return False, "state_probe_timeout"
        except Exception as exc:
            LOGGER.warning("stage=state_probe_failed tenant_id=%s error=%s", tenant_id, exc)
            return False, "state_probe_failed"
        if state is not DriverState.CONNECTED:
            return False, f"driver_state:{state.value}"
        return True, "driver_connected"

    async def verify(self, tenant_id: str) -> VerifyResult:
        record = await self._store.get(tenant_id)
        if record is None:
            return VerifyResult(tenant_id=tenant_id, outcome="error", detail="tenant_not_found")
        live, detail = await self._probe(tenant_id)
        if record.status is not SessionStatus.CONNECTED or live:
            return VerifyResult(
                tenant_id=tenant_id,
                outcome="consistent",
                detail=detail,
                previous_status=record.status,
                status=record.status,
            )

        LOGGER.warning(
            "stage=status_drift tenant_id=%s persisted=%s detail=%s",
            tenant_id,
            record.status.value,
            detail,
        )
        try:
            updated = await self._store.update(
                tenant_id, status=SessionStatus.DISCONNECTED, qr_payload=None
            )
        except NotFoundError:
            return VerifyResult(tenant_id=tenant_id, outcome="error", detail="tenant_not_found")
        except Exception as exc:
            LOGGER.error("stage=status_fix_failed tenant_id=%s error=%s", tenant_id, exc)
            return VerifyResult(
                tenant_id=tenant_id,
                outcome="error",
                detail=str(exc) or exc.__class__.__name__,
                previous_status=record.status,
                status=record.status,
            )
        RECONCILER_FIXES_TOTAL.inc()
        self._hub.status_changed(tenant_id, updated.to_payload())
        self._hub.log_line(
            tenant_id, "warning", "Session marked disconnected; call connect to re-pair"
        )
        return VerifyResult(
            tenant_id=tenant_id,
            outcome="fixed",
            detail=detail,
            previous_status=record.status,
            status=updated.status,
        )

    async def verify_all(self) -> SweepReport:
        records = await self._store.list_records(active_only=True)
        report = SweepReport(total=len(records))
        for record in records:
            try:
                result = await self.verify(record.tenant_id)
            except Exception as exc:
                LOGGER.exception("stage=verify_failed tenant_id=%s", record.tenant_id)
                result = VerifyResult(
                    tenant_id=record.tenant_id,
                    outcome="error",
                    detail=str(exc) or exc.__class__.__name__,
                )
            report.add(result)
        LOGGER.info(
            "stage=verify_all total=%s consistent=%s fixed=%s errors=%s",
            report.total,
            report.consistent,
            report.fixed,
            report.errors,
        )
        return report

    async def initialize(self) -> list[str]:
        """Mark every persisted ``connected`` tenant as disconnected.

        Live handles do not survive a restart, so nothing is reconnected here.
        """
        downgraded: list[str] = []
        for record in await self._store.list_records():
            if record.status is not SessionStatus.CONNECTED:
                continue
            if self._registry.handle(record.tenant_id) is not None:
                continue
            try:
                await self._store.update(
                    record.tenant_id, status=SessionStatus.DISCONNECTED, qr_payload=None
                )
            except NotFoundError:
                continue
            downgraded.append(record.tenant_id)
        LOGGER.info("stage=initialize downgraded=%s", len(downgraded))
        return downgraded

    async def cleanup_inactive(self, max_idle: Optional[float] = None) -> list[str]:
        ttl = DEFAULT_INACTIVE_TTL if max_idle is None else max_idle
        cutoff = time.time() - ttl
        cleaned: list[str] = []
        for handle in self._registry.handles():
            record = await self._store.get(handle.tenant_id)
            if record is None:
                continue
            if record.status not in (SessionStatus.DISCONNECTED, SessionStatus.ERROR):
                continue
            if record.last_activity > cutoff:
                continue
            await self._reaper.destroy(handle.tenant_id, handle=handle, reason="inactive")
            cleaned.append(handle.tenant_id)
        LOGGER.info("stage=cleanup_inactive cleaned=%s ttl=%s", len(cleaned), ttl)
        return cleaned


__all__ = ["StatusReconciler", "DEFAULT_INACTIVE_TTL"]
