"""Subprocess-backed driver speaking newline-delimited JSON.

The bridge command (``WA_DRIVER_CMD``) runs the browser automation for one
tenant. It receives ``--session-dir`` and ``--client-id`` and exchanges one
JSON object per line:

* stdout events: ``{"event": "qr", "qr": ...}``, ``{"event": "authenticated"}``,
  ``{"event": "ready", "phone": ...}``, ``{"event": "auth_failure", "message": ...}``,
  ``{"event": "disconnected", "reason": ...}``, ``{"event": "change_state", "state": ...}``
* stdout replies: ``{"id": n, "result": ...}`` or ``{"id": n, "error": ...}``
* stdin requests: ``{"id": n, "method": ..., "params": {...}}``
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import signal
from pathlib import Path
from typing import Any, Dict, Optional, Sequence

from .driver import (
    AuthFailure,
    Authenticated,
    Disconnected,
    DriverState,
    PeerStateChanged,
    QrReceived,
    Ready,
    SessionDriver,
)
from .errors import DriverDisconnectedError, DriverRequestError, DriverStartError


LOGGER = logging.getLogger("waworker.bridge")

KILL_WAIT_TIMEOUT = 5.0
# longest stdout/stderr line the bridge may write
LINE_LIMIT = 16 * 1024 * 1024


class SubprocessDriver(SessionDriver):
    def __init__(
        self,
        tenant_id: str,
        session_dir: Path,
        command: Sequence[str],
        *,
        env: Optional[Dict[str, str]] = None,
        line_limit: int = LINE_LIMIT,
    ) -> None:
        super().__init__(tenant_id, session_dir)
        if not command:
            raise DriverStartError("driver_command_missing", tenant_id=tenant_id)
        self._command = list(command)
        self._env = env
        self._line_limit = line_limit
        self._process: Optional[asyncio.subprocess.Process] = None
        self._reader_task: Optional[asyncio.Task[Any]] = None
        self._stderr_task: Optional[asyncio.Task[Any]] = None
        self._pending: Dict[int, asyncio.Future[Any]] = {}
        self._next_id = 0
        self._destroyed = False

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    async def start(self) -> None:
        self.session_dir.parent.mkdir(parents=True, exist_ok=True)
        argv = self._command + [
            "--session-dir",
            str(self.session_dir),
            "--client-id",
            f"bot_{self.tenant_id}",
        ]
        env = dict(os.environ)
        if self._env:
            env.update(self._env)
        try:
            self._process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                start_new_session=True,
                limit=self._line_limit,
            )
        except OSError as exc:
            raise DriverStartError(str(exc), tenant_id=self.tenant_id) from exc
        LOGGER.info(
            "stage=bridge_spawned tenant_id=%s pid=%s", self.tenant_id, self._process.pid
        )
        self._reader_task = asyncio.create_task(self._read_stdout())
        self._stderr_task = asyncio.create_task(self._read_stderr())
        try:
            await self._request("initialize")
        except DriverRequestError as exc:
            raise DriverStartError(str(exc), tenant_id=self.tenant_id) from exc

    async def send_text(self, target: str, body: str) -> str:
        result = await self._request("send_text", {"to": target, "body": body})
        if isinstance(result, dict):
            return str(result.get("id") or "")
        return str(result or "")

    async def get_state(self) -> DriverState:
        return DriverState.parse(await self._request("get_state"))

    async def destroy(self) -> None:
        if self._destroyed:
            return
        self._destroyed = True
        process = self._process
        if process is not None and process.returncode is None:
            with contextlib.suppress(ProcessLookupError, PermissionError):
                os.killpg(process.pid, signal.SIGKILL)
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            try:
                await asyncio.wait_for(process.wait(), timeout=KILL_WAIT_TIMEOUT)
            except asyncio.TimeoutError:
                LOGGER.warning(
                    "stage=bridge_kill_timeout tenant_id=%s pid=%s",
                    self.tenant_id,
                    process.pid,
                )
        for task in (self._reader_task, self._stderr_task):
            if task and not task.done() and task is not asyncio.current_task():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._fail_pending(DriverDisconnectedError("driver_destroyed", tenant_id=self.tenant_id))
        self.close_events()

    async def _request(self, method: str, params: Optional[Dict[str, Any]] = None) -> Any:
        process = self._process
        if self._destroyed or process is None or process.stdin is None:
            raise DriverDisconnectedError("driver_not_running", tenant_id=self.tenant_id)
        self._next_id += 1
        request_id = self._next_id
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        line = json.dumps({"id": request_id, "method": method, "params": params or {}})
        try:
            process.stdin.write(line.encode("utf-8") + b"\n")
            await process.stdin.drain()
            return await future
        except (BrokenPipeError, ConnectionResetError) as exc:
            raise DriverDisconnectedError(str(exc), tenant_id=self.tenant_id) from exc
        finally:
            self._pending.pop(request_id, None)

    async def _read_stdout(self) -> None:
        process = self._process
        if process is None or process.stdout is None:
            return
        reason: Optional[str] = None
        try:
            while True:
                try:
                    raw = await process.stdout.readline()
                except ValueError as exc:
                    # the stream drops the oversized chunk; its tail arrives as noise
                    LOGGER.warning(
                        "stage=bridge_line_too_long tenant_id=%s limit=%s error=%s",
                        self.tenant_id,
                        self._line_limit,
                        exc,
                    )
                    continue
                if not raw:
                    break
                try:
                    message = json.loads(raw.decode("utf-8"))
                except (UnicodeDecodeError, json.JSONDecodeError):
                    LOGGER.debug(
                        "stage=bridge_noise tenant_id=%s line=%r", self.tenant_id, raw[:200]
                    )
                    continue
                if isinstance(message, dict):
                    self._dispatch(message)
        except Exception as exc:
            LOGGER.exception("stage=bridge_reader_failed tenant_id=%s", self.tenant_id)
            reason = f"bridge_reader_failed:{exc.__class__.__name__}"
        if self._destroyed:
            return
        if reason is None:
            code = await process.wait()
            LOGGER.warning(
                "stage=bridge_exited tenant_id=%s returncode=%s", self.tenant_id, code
            )
            reason = f"bridge_exited:{code}"
        self._fail_pending(DriverDisconnectedError(reason, tenant_id=self.tenant_id))
        self.emit(Disconnected(reason=reason))

    async def _read_stderr(self) -> None:
        process = self._process
        if process is None or process.stderr is None:
            return
        while True:
            try:
                raw = await process.stderr.readline()
            except ValueError:
                continue
            if not raw:
                return
            LOGGER.debug(
                "stage=bridge_stderr tenant_id=%s line=%s",
                self.tenant_id,
                raw.decode("utf-8", "replace").rstrip(),
            )

    def _dispatch(self, message: Dict[str, Any]) -> None:
        request_id = message.get("id")
        if request_id is not None:
            future = self._pending.get(request_id)
            if future is None or future.done():
                return
            if message.get("error"):
                error = str(message.get("error"))
                future.set_exception(DriverRequestError(error, tenant_id=self.tenant_id))
            else:
                future.set_result(message.get("result"))
            return

        kind = str(message.get("event") or "")
        if kind == "qr":
            self.emit(QrReceived(payload=str(message.get("qr") or "")))
        elif kind == "authenticated":
            self.emit(Authenticated())
        elif kind == "ready":
            phone = message.get("phone")
            self.emit(Ready(phone_id=str(phone) if phone else None))
        elif kind == "auth_failure":
            self.emit(AuthFailure(reason=str(message.get("message") or "auth_failure")))
        elif kind == "disconnected":
            self.emit(Disconnected(reason=str(message.get("reason") or "unknown")))
        elif kind == "change_state":
            self.emit(PeerStateChanged(state=DriverState.parse(message.get("state"))))
        else:
            LOGGER.debug("stage=bridge_event_ignored tenant_id=%s event=%s", self.tenant_id, kind)

    def _fail_pending(self, exc: Exception) -> None:
        for future in list(self._pending.values()):
            if not future.done():
                future.set_exception(exc)
        self._pending.clear()


def subprocess_driver_factory(command: Sequence[str], *, env: Optional[Dict[str, str]] = None):
    def _factory(tenant_id: str, session_dir: Path) -> SubprocessDriver:
        return SubprocessDriver(tenant_id, session_dir, command, env=env)

    return _factory


__all__ = ["SubprocessDriver", "subprocess_driver_factory"]
