from __future__ import annotations

import asyncio
from pathlib import Path

import pytest
from prometheus_client import REGISTRY

from conftest import FakeDriverFactory, wait_until
from waworker.driver import QrReceived, Ready
from waworker.errors import (
    ConflictError,
    DriverRequestError,
    DriverStartError,
    DriverTimeoutError,
    NotFoundError,
    NotReadyError,
    SendFailedError,
    ValidationError,
)
from waworker.manager import SessionManager, chat_id_for
from waworker.models import SessionStatus
from waworker.store import MemorySessionStore


async def _ready(manager: SessionManager, driver_factory: FakeDriverFactory, tenant: str) -> None:
    await manager.connect(tenant)
    driver_factory.last.emit(Ready(phone_id="51999888777"))
    await wait_until(lambda: manager.registry.get(tenant).ready)


@pytest.mark.anyio
async def test_concurrent_connects_build_one_driver(manager, store, sessions_dir) -> None:
    factory = FakeDriverFactory(start_delay=0.05)
    manager._driver_factory = factory

    first, second = await asyncio.gather(manager.connect("t1"), manager.connect("t1"))

    assert len(factory.created) == 1
    assert first.ok and second.ok
    assert second.detail == "already_initialized"
    assert len(manager.registry.handles()) == 1
    assert manager.registry.handle("t1").driver is factory.created[0]


@pytest.mark.anyio
async def test_sequential_connect_replaces_live_handle(manager, driver_factory) -> None:
    await manager.connect("t1")
    first = driver_factory.last
    await manager.connect("t1")

    assert len(driver_factory.created) == 2
    assert first.destroy_calls == 1
    assert manager.registry.handle("t1").driver is driver_factory.last


@pytest.mark.anyio
async def test_connect_clears_intentional_disconnect(manager, store) -> None:
    await store.update("t1", intentional_disconnect=True)
    result = await manager.connect("t1")

    assert result.ok
    assert result.status is SessionStatus.PENDING
    assert (await store.get("t1")).intentional_disconnect is False


@pytest.mark.anyio
async def test_connect_then_qr_then_disconnect_before_ready(manager, store, driver_factory) -> None:
    await manager.connect("t1")
    driver_factory.last.emit(QrReceived("qr-before-scan"))
    await wait_until(lambda: manager.registry.qr("t1") is not None)

    result = await manager.disconnect("t1")

    assert result.ok
    assert manager.registry.handle("t1") is None
    assert manager.registry.list_all() == {}
    record = await store.get("t1")
    assert record.status is SessionStatus.PENDING
    assert record.phone_id is None
    assert record.qr_payload is None
    assert not manager.reaper.session_dir("t1").exists()


@pytest.mark.anyio
async def test_status_after_disconnect_is_never_connected(manager, driver_factory) -> None:
    await _ready(manager, driver_factory, "t1")
    assert (await manager.status("t1"))["status"] == "connected"

    await manager.disconnect("t1")
    payload = await manager.status("t1")

    assert payload["status"] != "connected"
    assert payload["ready"] is False
    assert payload["live"]["exists"] is False
    assert payload["intentional_disconnect"] is True


@pytest.mark.anyio
async def test_status_reconciles_before_returning(manager, store) -> None:
    await store.update("t1", status=SessionStatus.CONNECTED)

    payload = await manager.status("t1")

    assert payload["status"] == "disconnected"
    assert payload["check"]["outcome"] == "fixed"
    assert payload["consistent"] is True


@pytest.mark.anyio
async def test_connect_timeout_forces_cleanup(store, sessions_dir) -> None:
    before = REGISTRY.get_sample_value("waworker_creation_total", {"outcome": "timeout"}) or 0.0
    factory = FakeDriverFactory(start_delay=5.0)
    manager = SessionManager(
        store=store,
        sessions_dir=sessions_dir,
        driver_factory=factory,
        start_timeout=0.05,
        settle_delay=0.0,
        housekeeping_interval=None,
    )

    with pytest.raises(DriverTimeoutError):
        await manager.connect("t1")

    assert manager.registry.handle("t1") is None
    assert factory.last.destroy_calls == 1
    assert (await store.get("t1")).status is SessionStatus.ERROR
    assert manager.coordinator.running() == []
    assert REGISTRY.get_sample_value("waworker_creation_total", {"outcome": "timeout"}) == before + 1


@pytest.mark.anyio
async def test_connect_start_failure_is_wrapped(store, sessions_dir) -> None:
    factory = FakeDriverFactory(start_error=OSError("chrome not found"))
    manager = SessionManager(
        store=store,
        sessions_dir=sessions_dir,
        driver_factory=factory,
        settle_delay=0.0,
        housekeeping_interval=None,
    )

    with pytest.raises(DriverStartError) as excinfo:
        await manager.connect("t1")

    assert "chrome not found" in str(excinfo.value)
    assert manager.registry.handle("t1") is None
    assert (await store.get("t1")).status is SessionStatus.ERROR


@pytest.mark.anyio
async def test_connect_rejects_unknown_and_malformed_tenants(manager) -> None:
    with pytest.raises(NotFoundError):
        await manager.connect("ghost")
    with pytest.raises(ValidationError):
        await manager.connect("../etc")


@pytest.mark.anyio
async def test_restart_starts_from_scratch(manager, store, driver_factory) -> None:
    await _ready(manager, driver_factory, "t1")
    first = driver_factory.last
    marker = manager.reaper.session_dir("t1") / "Default" / "marker"
    marker.write_text("old credentials")

    result = await manager.restart("t1")

    assert result.ok
    assert result.previous_status is SessionStatus.CONNECTED
    assert result.detail == "restarted"
    assert first.destroy_calls == 1
    assert driver_factory.last is not first
    assert not marker.exists()
    assert (await store.get("t1")).status is SessionStatus.PENDING


@pytest.mark.anyio
async def test_delete_removes_record_and_artifacts(manager, store, driver_factory, hub) -> None:
    subscription = hub.subscribe("t1")
    await manager.connect("t1")

    result = await manager.delete("t1")

    assert result.ok
    assert await store.get("t1") is None
    assert manager.registry.handle("t1") is None
    assert not manager.reaper.session_dir("t1").exists()
    events = []
    while not subscription.queue.empty():
        events.append(subscription.queue.get_nowait()["event"])
    assert events[-1] == "bot-deleted"
    with pytest.raises(NotFoundError):
        await manager.status("t1")


@pytest.mark.anyio
async def test_send_text_requires_ready_session(manager) -> None:
    with pytest.raises(NotReadyError):
        await manager.send_text("t1", "51999888777", "hola")

    await manager.connect("t1")
    with pytest.raises(NotReadyError):
        await manager.send_text("t1", "51999888777", "hola")


@pytest.mark.anyio
async def test_send_text_formats_chat_id_and_touches_activity(
    manager, store, driver_factory, hub
) -> None:
    await _ready(manager, driver_factory, "t1")
    before = (await store.get("t1")).last_activity
    subscription = hub.subscribe("t1")

    result = await manager.send_text("t1", "+51 999 888 777", "hola")

    assert result["to"] == "51999888777@c.us"
    assert result["message_id"] == "msg-1"
    assert driver_factory.last.sent == [("51999888777@c.us", "hola")]
    assert (await store.get("t1")).last_activity >= before
    events = []
    while not subscription.queue.empty():
        events.append(subscription.queue.get_nowait()["event"])
    assert "message-sent" in events


@pytest.mark.anyio
async def test_send_text_validates_input(manager) -> None:
    with pytest.raises(ValidationError):
        await manager.send_text("t1", "51999", "   ")
    with pytest.raises(ValidationError):
        await manager.send_text("t1", "not-a-number", "hola")


@pytest.mark.anyio
async def test_sent_messages_are_logged_with_stats(manager, driver_factory) -> None:
    await _ready(manager, driver_factory, "t1")
    for index in range(3):
        await manager.send_text("t1", "51999888777", f"hola {index}")

    first_page = await manager.list_messages("t1", page=1, limit=2)
    assert first_page["pagination"] == {"page": 1, "limit": 2, "total": 3, "pages": 2}
    assert [item["message"] for item in first_page["items"]] == ["hola 2", "hola 1"]
    assert all(item["status"] == "sent" for item in first_page["items"])
    assert first_page["items"][0]["message_id"] == "msg-3"
    assert first_page["items"][0]["sent_at"] is not None

    second_page = await manager.list_messages("t1", page=2, limit=2)
    assert [item["message"] for item in second_page["items"]] == ["hola 0"]

    stats = await manager.message_stats("t1")
    assert stats == {"total": 3, "sent": 3, "pending": 0, "failed": 0}
    assert (await manager.status("t1"))["messages"]["sent"] == 3


@pytest.mark.anyio
async def test_failed_send_is_recorded_and_reported(manager, driver_factory, hub) -> None:
    await _ready(manager, driver_factory, "t1")
    driver_factory.last.send_error = DriverRequestError("chat not found", tenant_id="t1")
    subscription = hub.subscribe("t1")

    with pytest.raises(SendFailedError) as excinfo:
        await manager.send_text("t1", "51000", "hola")

    assert excinfo.value.status_code == 502
    assert "chat not found" in str(excinfo.value)
    history = await manager.list_messages("t1")
    assert history["items"][0]["status"] == "failed"
    assert history["items"][0]["error"] == "chat not found"
    assert (await manager.message_stats("t1"))["failed"] == 1
    events = []
    while not subscription.queue.empty():
        events.append(subscription.queue.get_nowait()["event"])
    assert "bot-error" in events
    # the session itself stays up
    assert manager.registry.get("t1").ready


@pytest.mark.anyio
async def test_delete_drops_message_history(manager, store, driver_factory) -> None:
    await _ready(manager, driver_factory, "t1")
    await manager.send_text("t1", "51999", "hola")

    await manager.delete("t1")

    items, total = await store.list_messages("t1")
    assert items == [] and total == 0


def test_chat_id_for_keeps_existing_suffix() -> None:
    assert chat_id_for("12345@g.us") == "12345@g.us"
    assert chat_id_for("51 999-888") == "51999888@c.us"


@pytest.mark.anyio
async def test_create_tenant_and_list(manager) -> None:
    record = await manager.create_tenant("shop-3", name="Shop Three")
    assert record.status is SessionStatus.PENDING

    with pytest.raises(ConflictError):
        await manager.create_tenant("shop-3")

    sessions = await manager.list_sessions()
    assert {item["tenant"] for item in sessions} == {"t1", "t2", "shop-3"}
    assert all(item["live"]["exists"] is False for item in sessions)


@pytest.mark.anyio
async def test_start_downgrades_and_sweeps_orphans(sessions_dir: Path, driver_factory) -> None:
    store = MemorySessionStore()
    await store.create("alive", name="alive")
    await store.update("alive", status=SessionStatus.CONNECTED)
    (sessions_dir / "session-bot_alive").mkdir()
    (sessions_dir / "session-bot_gone").mkdir()
    manager = SessionManager(
        store=store,
        sessions_dir=sessions_dir,
        driver_factory=driver_factory,
        housekeeping_interval=None,
    )

    await manager.start()

    assert (await store.get("alive")).status is SessionStatus.DISCONNECTED
    assert (sessions_dir / "session-bot_alive").exists()
    assert not (sessions_dir / "session-bot_gone").exists()
    await manager.shutdown()


@pytest.mark.anyio
async def test_shutdown_kills_live_sessions(manager, driver_factory) -> None:
    await manager.connect("t1")
    await manager.connect("t2")

    await manager.shutdown()

    assert manager.registry.handles() == []
    assert all(driver.destroy_calls == 1 for driver in driver_factory.created)
