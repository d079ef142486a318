from __future__ import annotations

import asyncio
import time
from pathlib import Path
from typing import Any, Callable, Optional

import pytest

from waworker.driver import DriverState, SessionDriver
from waworker.manager import SessionManager
from waworker.models import SessionStatus, TenantRecord
from waworker.notifications import NotificationHub
from waworker.store import MemorySessionStore


class FakeDriver(SessionDriver):
    def __init__(
        self,
        tenant_id: str,
        session_dir: Path,
        *,
        start_delay: float = 0.0,
        start_error: Optional[BaseException] = None,
        destroy_delay: float = 0.0,
        state: DriverState = DriverState.CONNECTED,
    ) -> None:
        super().__init__(tenant_id, session_dir)
        self.start_delay = start_delay
        self.destroy_delay = destroy_delay
        self.start_error = start_error
        self.state = state
        self.started = False
        self.destroy_calls = 0
        self.sent: list[tuple[str, str]] = []
        self.send_error: Optional[BaseException] = None

    async def start(self) -> None:
        self.session_dir.mkdir(parents=True, exist_ok=True)
        (self.session_dir / "Default").mkdir(exist_ok=True)
        if self.start_delay:
            await asyncio.sleep(self.start_delay)
        if self.start_error is not None:
            raise self.start_error
        self.started = True

    async def send_text(self, target: str, body: str) -> str:
        if self.send_error is not None:
            raise self.send_error
        self.sent.append((target, body))
        return f"msg-{len(self.sent)}"

    async def get_state(self) -> DriverState:
        return self.state

    async def destroy(self) -> None:
        self.destroy_calls += 1
        if self.destroy_delay:
            await asyncio.sleep(self.destroy_delay)
        self.close_events()


class FakeDriverFactory:
    def __init__(self, **driver_kwargs: Any) -> None:
        self.driver_kwargs = driver_kwargs
        self.created: list[FakeDriver] = []

    def __call__(self, tenant_id: str, session_dir: Path) -> FakeDriver:
        driver = FakeDriver(tenant_id, session_dir, **self.driver_kwargs)
        self.created.append(driver)
        return driver

    @property
    def last(self) -> FakeDriver:
        return self.created[-1]


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached before timeout")
        await asyncio.sleep(0.01)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def sessions_dir(tmp_path: Path) -> Path:
    path = tmp_path / "wwebjs_auth"
    path.mkdir()
    return path


@pytest.fixture
def store() -> MemorySessionStore:
    return MemorySessionStore(
        [
            TenantRecord(tenant_id="t1", name="Shop One"),
            TenantRecord(tenant_id="t2", name="Shop Two"),
        ]
    )


@pytest.fixture
def driver_factory() -> FakeDriverFactory:
    return FakeDriverFactory()


@pytest.fixture
def hub() -> NotificationHub:
    return NotificationHub()


@pytest.fixture
def manager(
    store: MemorySessionStore,
    sessions_dir: Path,
    driver_factory: FakeDriverFactory,
    hub: NotificationHub,
) -> SessionManager:
    return SessionManager(
        store=store,
        sessions_dir=sessions_dir,
        driver_factory=driver_factory,
        hub=hub,
        start_timeout=1.0,
        settle_delay=0.0,
        restart_settle_delay=0.0,
        nuke_backoff=0.0,
        verify_timeout=0.5,
        housekeeping_interval=None,
    )


def connected_record(tenant_id: str, phone: str = "+51999") -> TenantRecord:
    return TenantRecord(
        tenant_id=tenant_id,
        name=tenant_id,
        status=SessionStatus.CONNECTED,
        phone_id=phone,
    )
