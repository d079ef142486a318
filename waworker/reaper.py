from __future__ import annotations

import asyncio
import contextlib
import logging
import shutil
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Set

from .errors import ResourceCleanupError
from .metrics import NUKE_FAILURES_TOTAL, TEARDOWN_TOTAL, update_session_gauges
from .models import LiveHandle
from .registry import CreationCoordinator, SessionRegistry


LOGGER = logging.getLogger("waworker.reaper")

SESSION_DIR_PREFIX = "session-bot_"
TEARDOWN_WAIT_TIMEOUT = 10.0


class ResourceReaper:
    """Kills live drivers and removes their on-disk session artifacts.

    Teardown never logs out through the remote protocol: the automation
    process is killed and its directory is deleted afterwards.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        coordinator: CreationCoordinator,
        sessions_dir: Path,
        *,
        nuke_attempts: int = 3,
        nuke_backoff: float = 1.0,
        teardown_wait: float = TEARDOWN_WAIT_TIMEOUT,
    ) -> None:
        self._registry = registry
        self._coordinator = coordinator
        self._sessions_dir = sessions_dir
        self._sessions_dir.mkdir(parents=True, exist_ok=True)
        self._nuke_attempts = max(1, nuke_attempts)
        self._nuke_backoff = max(0.0, nuke_backoff)
        self._teardown_wait = max(0.0, teardown_wait)
        self._background: Set[asyncio.Task[Any]] = set()
        self._pending_nukes: Dict[str, asyncio.Task[bool]] = {}

    @property
    def sessions_dir(self) -> Path:
        return self._sessions_dir

    def session_dir(self, tenant_id: str) -> Path:
        return self._sessions_dir / f"{SESSION_DIR_PREFIX}{tenant_id}"

    async def destroy(
        self,
        tenant_id: str,
        *,
        handle: Optional[LiveHandle] = None,
        reason: str = "destroy",
    ) -> bool:
        current = self._registry.handle(tenant_id)
        target = handle or current
        destroyed = False
        if target is not None:
            first_close = not target.closed
            target.closed = True
            target.ready = False
            task = target.receive_task
            if task is not None and not task.done() and task is not asyncio.current_task():
                if first_close:
                    await self._cancel_task(task)
                else:
                    # a teardown from the event loop owns this handle; let it
                    # schedule the wipe and persist the reset before we go on
                    await self._await_teardown(tenant_id, task)
            if first_close:
                try:
                    await target.driver.destroy()
                    destroyed = True
                except Exception as exc:
                    LOGGER.warning(
                        "stage=driver_destroy_failed tenant_id=%s reason=%s error=%s",
                        tenant_id,
                        reason,
                        exc,
                    )
                TEARDOWN_TOTAL.labels(reason).inc()
            self._registry.remove(tenant_id, handle=target)
        if handle is None or current is None or current is handle:
            self._registry.clear_qr(tenant_id)
        self._coordinator.discard(tenant_id)
        update_session_gauges(self._registry.stats_snapshot())
        LOGGER.info(
            "stage=destroyed tenant_id=%s reason=%s had_handle=%s driver_destroyed=%s",
            tenant_id,
            reason,
            target is not None,
            destroyed,
        )
        return destroyed

    @staticmethod
    async def _cancel_task(task: asyncio.Task[Any]) -> None:
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _await_teardown(self, tenant_id: str, task: asyncio.Task[Any]) -> None:
        LOGGER.info("stage=teardown_wait tenant_id=%s", tenant_id)
        done, _ = await asyncio.wait({task}, timeout=self._teardown_wait)
        if not done:
            LOGGER.warning(
                "stage=teardown_wait_timeout tenant_id=%s timeout=%s",
                tenant_id,
                self._teardown_wait,
            )
            await self._cancel_task(task)

    async def nuke(self, tenant_id: str) -> bool:
        path = self.session_dir(tenant_id)
        for attempt in range(1, self._nuke_attempts + 1):
            try:
                await asyncio.to_thread(shutil.rmtree, path)
            except FileNotFoundError:
                if not path.exists():
                    LOGGER.info("stage=nuke_skip tenant_id=%s reason=absent", tenant_id)
                    return True
                error: OSError = FileNotFoundError(str(path))
            except OSError as exc:
                error = exc
            else:
                LOGGER.info("stage=nuke_ok tenant_id=%s attempt=%s", tenant_id, attempt)
                return True

            if attempt < self._nuke_attempts:
                LOGGER.warning(
                    "stage=nuke_retry tenant_id=%s attempt=%s error=%s",
                    tenant_id,
                    attempt,
                    error,
                )
                await asyncio.sleep(self._nuke_backoff * attempt)

        NUKE_FAILURES_TOTAL.inc()
        failure = ResourceCleanupError(path, self._nuke_attempts, tenant_id=tenant_id)
        LOGGER.error("stage=nuke_failed tenant_id=%s error=%s", tenant_id, failure)
        return False

    def schedule_nuke(self, tenant_id: str) -> asyncio.Task[bool]:
        task = asyncio.get_running_loop().create_task(self.nuke(tenant_id))
        self._background.add(task)
        self._pending_nukes[tenant_id] = task
        task.add_done_callback(lambda done: self._background_done(tenant_id, done))
        return task

    async def wait_pending(self, tenant_id: str) -> None:
        """Block until a scheduled deletion for ``tenant_id`` has finished."""
        task = self._pending_nukes.get(tenant_id)
        if task is None or task.done():
            return
        LOGGER.info("stage=nuke_wait tenant_id=%s", tenant_id)
        await asyncio.wait({task})

    def _background_done(self, tenant_id: str, task: asyncio.Task[Any]) -> None:
        self._background.discard(task)
        if self._pending_nukes.get(tenant_id) is task:
            self._pending_nukes.pop(tenant_id, None)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.error("stage=nuke_background_error error=%s", exc)

    async def wait_background(self) -> None:
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def sweep_orphans(self, active_ids: Iterable[str]) -> list[str]:
        active = set(active_ids)
        removed: list[str] = []
        try:
            entries = sorted(self._sessions_dir.iterdir())
        except FileNotFoundError:
            LOGGER.info("stage=sweep_skip reason=no_sessions_dir")
            return removed
        for entry in entries:
            if not entry.name.startswith(SESSION_DIR_PREFIX) or not entry.is_dir():
                continue
            tenant_id = entry.name[len(SESSION_DIR_PREFIX):]
            if tenant_id in active or self._registry.handle(tenant_id) is not None:
                continue
            LOGGER.info("stage=orphan_found tenant_id=%s path=%s", tenant_id, entry)
            if await self.nuke(tenant_id):
                removed.append(tenant_id)
        LOGGER.info("stage=sweep_done removed=%s", len(removed))
        return removed

    async def shutdown(self) -> None:
        for task in list(self._background):
            task.cancel()
        self._pending_nukes.clear()
        handles = self._registry.handles()
        for handle in handles:
            if handle.receive_task is not None and not handle.receive_task.done():
                handle.receive_task.cancel()
        if handles:
            await asyncio.gather(
                *(
                    self.destroy(handle.tenant_id, handle=handle, reason="shutdown")
                    for handle in handles
                ),
                return_exceptions=True,
            )
        self._registry.clear()
        self._coordinator.clear()
        update_session_gauges(self._registry.stats_snapshot())


__all__ = ["ResourceReaper", "SESSION_DIR_PREFIX"]
