from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from pathlib import Path
from typing import Any, Dict, Optional

from config import WorkerConfig

from .bridge import subprocess_driver_factory
from .driver import DriverFactory
from .errors import (
    ConflictError,
    DriverAuthError,
    DriverDisconnectedError,
    DriverStartError,
    DriverTimeoutError,
    NotFoundError,
    NotReadyError,
    SendFailedError,
    SessionError,
    ValidationError,
)
from .metrics import CREATION_TOTAL, update_session_gauges
from .models import (
    LiveHandle,
    MessageStatus,
    OperationResult,
    SessionPhase,
    SessionStatus,
    SweepReport,
    TenantRecord,
    VerifyResult,
    validate_tenant_id,
)
from .notifications import NotificationHub
from .reactor import EventReactor
from .reaper import ResourceReaper
from .reconciler import DEFAULT_INACTIVE_TTL, StatusReconciler
from .registry import CreationCoordinator, SessionRegistry
from .store import MemorySessionStore, PostgresSessionStore, SessionStore


LOGGER = logging.getLogger("waworker")

HOUSEKEEPING_INTERVAL = 60 * 60.0
MAX_MESSAGE_LENGTH = 4096
MAX_PAGE_SIZE = 100


def chat_id_for(target: str) -> str:
    cleaned = (target or "").strip()
    if not cleaned:
        raise ValidationError("recipient_required")
    if "@" in cleaned:
        return cleaned
    digits = "".join(ch for ch in cleaned if ch.isdigit())
    if not digits:
        raise ValidationError("recipient_invalid")
    return f"{digits}@c.us"


class SessionManager:
    """Owns every per-tenant session and the collaborators that drive them."""

    def __init__(
        self,
        *,
        store: SessionStore,
        sessions_dir: Path,
        driver_factory: DriverFactory,
        hub: Optional[NotificationHub] = None,
        start_timeout: float = 60.0,
        settle_delay: float = 1.0,
        restart_settle_delay: float = 3.0,
        nuke_attempts: int = 3,
        nuke_backoff: float = 1.0,
        verify_timeout: float = 5.0,
        inactive_ttl: float = DEFAULT_INACTIVE_TTL,
        housekeeping_interval: Optional[float] = HOUSEKEEPING_INTERVAL,
    ) -> None:
        self._store = store
        self._driver_factory = driver_factory
        self._hub = hub or NotificationHub()
        self._start_timeout = start_timeout
        self._settle_delay = settle_delay
        self._restart_settle_delay = restart_settle_delay
        self._inactive_ttl = inactive_ttl
        self._housekeeping_interval = housekeeping_interval
        self._housekeeping_task: Optional[asyncio.Task[Any]] = None
        self._started = False

        self.registry = SessionRegistry()
        self.coordinator = CreationCoordinator()
        self.reaper = ResourceReaper(
            self.registry,
            self.coordinator,
            sessions_dir,
            nuke_attempts=nuke_attempts,
            nuke_backoff=nuke_backoff,
        )
        self.reactor = EventReactor(self.registry, self._store, self._hub, self.reaper)
        self.reconciler = StatusReconciler(
            self.registry,
            self._store,
            self._hub,
            self.reaper,
            verify_timeout=verify_timeout,
        )

    @classmethod
    def from_config(
        cls,
        cfg: WorkerConfig,
        *,
        store: Optional[SessionStore] = None,
        driver_factory: Optional[DriverFactory] = None,
    ) -> "SessionManager":
        if store is None:
            if cfg.database_url:
                store = PostgresSessionStore(cfg.database_url)
            else:
                LOGGER.warning("stage=store_memory reason=database_url_missing")
                store = MemorySessionStore()
        hub = NotificationHub(webhook_url=cfg.notify_webhook, webhook_token=cfg.webhook_token)
        return cls(
            store=store,
            sessions_dir=cfg.sessions_dir,
            driver_factory=driver_factory or subprocess_driver_factory(cfg.driver_cmd),
            hub=hub,
            start_timeout=cfg.start_timeout,
            settle_delay=cfg.settle_delay,
            restart_settle_delay=cfg.restart_settle_delay,
            nuke_attempts=cfg.nuke_attempts,
            nuke_backoff=cfg.nuke_backoff,
            verify_timeout=cfg.verify_timeout,
            inactive_ttl=cfg.inactive_ttl,
        )

    @property
    def hub(self) -> NotificationHub:
        return self._hub

    @property
    def store(self) -> SessionStore:
        return self._store

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        await self.reconciler.initialize()
        records = await self._store.list_records()
        await self.reaper.sweep_orphans(record.tenant_id for record in records if record.is_active)
        if self._housekeeping_interval:
            self._housekeeping_task = asyncio.create_task(self._housekeeping_loop())
        LOGGER.info("stage=started tenants=%s", len(records))

    async def shutdown(self) -> None:
        task = self._housekeeping_task
        self._housekeeping_task = None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await self.reaper.shutdown()
        await self._hub.aclose()
        await self._store.close()
        self._started = False
        LOGGER.info("stage=shutdown")

    async def _housekeeping_loop(self) -> None:
        while True:
            await asyncio.sleep(self._housekeeping_interval or HOUSEKEEPING_INTERVAL)
            try:
                await self.reconciler.cleanup_inactive(self._inactive_ttl)
            except Exception:
                LOGGER.exception("stage=housekeeping_failed")

    async def _require(self, tenant_id: str) -> TenantRecord:
        record = await self._store.get(tenant_id)
        if record is None:
            raise NotFoundError("tenant_not_found", tenant_id=tenant_id)
        return record

    async def create_tenant(self, tenant_id: Any, *, name: str = "") -> TenantRecord:
        tenant = validate_tenant_id(tenant_id)
        if await self._store.get(tenant) is not None:
            raise ConflictError("tenant_exists", tenant_id=tenant)
        record = await self._store.create(tenant, name=(name or "").strip() or tenant)
        LOGGER.info("stage=tenant_created tenant_id=%s", tenant)
        self._hub.status_changed(tenant, record.to_payload())
        return record

    async def list_sessions(self) -> list[Dict[str, Any]]:
        items = []
        for record in await self._store.list_records():
            payload = record.to_payload()
            payload["live"] = self.registry.get(record.tenant_id).to_payload()
            items.append(payload)
        return items

    async def connect(self, tenant_id: Any) -> OperationResult:
        tenant = validate_tenant_id(tenant_id)
        await self._require(tenant)
        async with self.coordinator.sequence(tenant) as acquisition:
            if acquisition.already_running:
                existing = self.registry.handle(tenant)
                if existing is not None and not existing.closed:
                    CREATION_TOTAL.labels("reused").inc()
                    record = await self._require(tenant)
                    LOGGER.info("stage=connect_reused tenant_id=%s", tenant)
                    return OperationResult(
                        tenant_id=tenant,
                        ok=True,
                        previous_status=record.status,
                        status=record.status,
                        detail="already_initialized",
                    )
            return await self._create_locked(tenant, settle_delay=self._settle_delay)

    async def _create_locked(self, tenant: str, *, settle_delay: float) -> OperationResult:
        record = await self._require(tenant)
        stale = self.registry.handle(tenant)
        if stale is not None:
            LOGGER.info("stage=connect_replace tenant_id=%s", tenant)
            await self.reaper.destroy(tenant, handle=stale, reason="replaced")
            await asyncio.sleep(settle_delay)
        await self.reaper.wait_pending(tenant)

        updated = await self._store.update(
            tenant,
            status=SessionStatus.PENDING,
            qr_payload=None,
            intentional_disconnect=False,
            is_active=True,
        )
        self._hub.status_changed(tenant, updated.to_payload())

        handle: Optional[LiveHandle] = None
        try:
            driver = self._driver_factory(tenant, self.reaper.session_dir(tenant))
            handle = LiveHandle(tenant_id=tenant, driver=driver)
            self.registry.put(handle)
            self.reactor.attach(handle)
            update_session_gauges(self.registry.stats_snapshot())
            await asyncio.wait_for(driver.start(), self._start_timeout)
        except asyncio.TimeoutError:
            CREATION_TOTAL.labels("timeout").inc()
            await self._abort_creation(tenant, handle)
            raise DriverTimeoutError(self._start_timeout, tenant_id=tenant) from None
        except Exception as exc:
            auth_failed = handle is not None and handle.phase is SessionPhase.ERROR
            if isinstance(exc, DriverDisconnectedError) and not auth_failed:
                # the reactor already reset the record to pending
                CREATION_TOTAL.labels("disconnected").inc()
                await self.reaper.destroy(tenant, handle=handle, reason="start_failed")
                current = await self._require(tenant)
                return OperationResult(
                    tenant_id=tenant,
                    ok=False,
                    previous_status=record.status,
                    status=current.status,
                    detail="disconnected_during_start",
                )
            CREATION_TOTAL.labels("auth_failure" if auth_failed else "failed").inc()
            await self._abort_creation(tenant, handle)
            if auth_failed:
                raise DriverAuthError(str(exc) or "auth_failure", tenant_id=tenant) from exc
            if isinstance(exc, SessionError):
                raise
            raise DriverStartError(str(exc) or exc.__class__.__name__, tenant_id=tenant) from exc

        CREATION_TOTAL.labels("created").inc()
        current = await self._require(tenant)
        LOGGER.info("stage=connect_started tenant_id=%s status=%s", tenant, current.status.value)
        self._hub.log_line(tenant, "info", "Session starting")
        return OperationResult(
            tenant_id=tenant,
            ok=True,
            previous_status=record.status,
            status=current.status,
            detail="initializing",
        )

    async def _abort_creation(self, tenant: str, handle: Optional[LiveHandle]) -> None:
        LOGGER.warning("stage=connect_failed tenant_id=%s", tenant)
        await self.reaper.destroy(tenant, handle=handle, reason="start_failed")
        record = await self._store.get(tenant)
        if record is None or record.status is SessionStatus.ERROR:
            return
        with contextlib.suppress(NotFoundError):
            record = await self._store.update(tenant, status=SessionStatus.ERROR, qr_payload=None)
            self._hub.status_changed(tenant, record.to_payload())

    async def disconnect(self, tenant_id: Any) -> OperationResult:
        tenant = validate_tenant_id(tenant_id)
        record = await self._require(tenant)
        async with self.coordinator.sequence(tenant):
            await self.reaper.destroy(tenant, reason="operator_disconnect")
            await self.reaper.nuke(tenant)
            updated = await self._store.update(
                tenant,
                status=SessionStatus.PENDING,
                qr_payload=None,
                phone_id=None,
                intentional_disconnect=True,
            )
        self._hub.status_changed(tenant, updated.to_payload())
        self._hub.disconnected(tenant, "operator")
        self._hub.log_line(tenant, "info", "Session disconnected by operator")
        LOGGER.info("stage=disconnected tenant_id=%s", tenant)
        return OperationResult(
            tenant_id=tenant,
            ok=True,
            previous_status=record.status,
            status=updated.status,
            detail="session_wiped",
        )

    async def restart(self, tenant_id: Any) -> OperationResult:
        tenant = validate_tenant_id(tenant_id)
        record = await self._require(tenant)
        async with self.coordinator.sequence(tenant):
            await self.reaper.destroy(tenant, reason="restart")
            await self.reaper.nuke(tenant)
            await asyncio.sleep(self._restart_settle_delay)
            result = await self._create_locked(tenant, settle_delay=self._restart_settle_delay)
        LOGGER.info("stage=restarted tenant_id=%s", tenant)
        result.previous_status = record.status
        result.detail = "restarted"
        return result

    async def delete(self, tenant_id: Any) -> OperationResult:
        tenant = validate_tenant_id(tenant_id)
        record = await self._require(tenant)
        async with self.coordinator.sequence(tenant):
            await self.reaper.destroy(tenant, reason="delete")
            await self.reaper.nuke(tenant)
            await self._store.delete(tenant)
        self._hub.deleted(tenant)
        LOGGER.info("stage=deleted tenant_id=%s", tenant)
        return OperationResult(
            tenant_id=tenant,
            ok=True,
            previous_status=record.status,
            status=None,
            detail="deleted",
        )

    async def verify(self, tenant_id: Any) -> VerifyResult:
        tenant = validate_tenant_id(tenant_id)
        await self._require(tenant)
        return await self.reconciler.verify(tenant)

    async def verify_all(self) -> SweepReport:
        return await self.reconciler.verify_all()

    async def status(self, tenant_id: Any) -> Dict[str, Any]:
        tenant = validate_tenant_id(tenant_id)
        await self._require(tenant)
        check = await self.reconciler.verify(tenant)
        record = await self._require(tenant)
        presence = self.registry.get(tenant)
        ready = presence.ready and record.status is SessionStatus.CONNECTED
        payload = record.to_payload()
        payload.update(
            {
                "live": presence.to_payload(),
                "ready": ready,
                "consistent": check.outcome in ("consistent", "fixed"),
                "check": check.to_payload(),
                "creating": self.coordinator.is_running(tenant),
                "checked_at": int(time.time() * 1000),
            }
        )
        payload["messages"] = await self._store.message_stats(tenant)
        return payload

    async def get_qr(self, tenant_id: Any) -> Optional[str]:
        tenant = validate_tenant_id(tenant_id)
        cached = self.registry.qr(tenant)
        if cached:
            return cached
        record = await self._require(tenant)
        if record.status is not SessionStatus.PENDING:
            return None
        return record.qr_payload

    async def send_text(self, tenant_id: Any, to: str, text: str) -> Dict[str, Any]:
        tenant = validate_tenant_id(tenant_id)
        body = (text or "").strip()
        if not body:
            raise ValidationError("text_required", tenant_id=tenant)
        if len(body) > MAX_MESSAGE_LENGTH:
            raise ValidationError("text_too_long", tenant_id=tenant)
        chat_id = chat_id_for(to)
        await self._require(tenant)

        handle = self.registry.handle(tenant)
        if handle is None or handle.closed or not handle.ready:
            raise NotReadyError("session_not_ready", tenant_id=tenant)

        entry = await self._store.add_message(tenant, to=chat_id, body=body)
        try:
            message_id = await handle.driver.send_text(chat_id, body)
        except Exception as exc:
            await self._store.mark_message(
                entry.record_id,
                status=MessageStatus.FAILED,
                error=str(exc) or exc.__class__.__name__,
            )
            LOGGER.warning("stage=message_failed tenant_id=%s to=%s error=%s", tenant, chat_id, exc)
            self._hub.error_raised(tenant, exc)
            self._hub.log_line(tenant, "error", f"Failed to send message to {chat_id}: {exc}")
            if isinstance(exc, DriverDisconnectedError):
                raise NotReadyError("session_not_ready", tenant_id=tenant) from exc
            raise SendFailedError(str(exc) or "send_failed", tenant_id=tenant) from exc

        entry = await self._store.mark_message(
            entry.record_id, status=MessageStatus.SENT, message_id=message_id
        )
        now = time.time()
        with contextlib.suppress(NotFoundError):
            await self._store.update(tenant, last_activity=now)
        payload = {
            "tenant": tenant,
            "to": chat_id,
            "id": entry.record_id,
            "message_id": message_id,
            "status": entry.status.value,
            "timestamp": int(now * 1000),
        }
        self._hub.message_sent(tenant, payload)
        self._hub.log_line(tenant, "info", f"Message sent to {chat_id}")
        LOGGER.info("stage=message_sent tenant_id=%s to=%s", tenant, chat_id)
        return payload

    async def list_messages(
        self, tenant_id: Any, *, page: int = 1, limit: int = 10
    ) -> Dict[str, Any]:
        tenant = validate_tenant_id(tenant_id)
        await self._require(tenant)
        page = max(1, int(page))
        limit = min(max(1, int(limit)), MAX_PAGE_SIZE)
        items, total = await self._store.list_messages(
            tenant, offset=(page - 1) * limit, limit=limit
        )
        return {
            "tenant": tenant,
            "items": [item.to_payload() for item in items],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": -(-total // limit),
            },
        }

    async def message_stats(self, tenant_id: Any) -> Dict[str, int]:
        tenant = validate_tenant_id(tenant_id)
        await self._require(tenant)
        return await self._store.message_stats(tenant)

    def stats_snapshot(self) -> Dict[str, int]:
        snapshot = self.registry.stats_snapshot()
        snapshot["creating"] = len(self.coordinator.running())
        return snapshot


__all__ = ["SessionManager", "chat_id_for"]
