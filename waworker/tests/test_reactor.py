from __future__ import annotations

import pytest
from prometheus_client import REGISTRY

from conftest import wait_until
from waworker.driver import (
    AuthFailure,
    Authenticated,
    Disconnected,
    DriverState,
    PeerStateChanged,
    QrReceived,
    Ready,
)
from waworker.models import SessionPhase, SessionStatus


def _teardowns(reason: str) -> float:
    return REGISTRY.get_sample_value("waworker_teardown_total", {"reason": reason}) or 0.0


@pytest.mark.anyio
async def test_qr_then_ready_marks_connected(manager, store, driver_factory, hub) -> None:
    subscription = hub.subscribe("t1")
    await manager.connect("t1")
    driver = driver_factory.last

    driver.emit(QrReceived("2@abc,def"))
    await wait_until(lambda: manager.registry.qr("t1") == "2@abc,def")
    record = await store.get("t1")
    assert record.status is SessionStatus.PENDING
    assert record.qr_payload == "2@abc,def"
    assert manager.registry.handle("t1").phase is SessionPhase.AWAITING_SCAN

    driver.emit(Authenticated())
    driver.emit(Ready(phone_id="519876543210"))
    await wait_until(lambda: manager.registry.get("t1").ready)

    record = await store.get("t1")
    assert record.status is SessionStatus.CONNECTED
    assert record.phone_id == "+519876543210"
    assert record.qr_payload is None
    assert record.is_active is True
    assert manager.registry.qr("t1") is None

    events = []
    while not subscription.queue.empty():
        events.append(subscription.queue.get_nowait()["event"])
    assert "bot-qr-generated" in events
    assert "bot-connected" in events
    assert events.index("bot-qr-generated") < events.index("bot-connected")
    subscription.close()


@pytest.mark.anyio
async def test_remote_logout_resets_to_cold(manager, store, driver_factory, sessions_dir) -> None:
    await manager.connect("t1")
    driver = driver_factory.last
    driver.emit(Ready(phone_id="51999"))
    await wait_until(lambda: manager.registry.get("t1").ready)
    session_dir = manager.reaper.session_dir("t1")
    assert session_dir.exists()
    await store.update("t1", last_activity=1.0)
    handle = manager.registry.handle("t1")

    driver.emit(Disconnected("LOGOUT"))
    await wait_until(lambda: handle.receive_task.done())
    assert manager.registry.handle("t1") is None
    await manager.reaper.wait_pending("t1")

    record = await store.get("t1")
    assert record.status is SessionStatus.PENDING
    assert record.qr_payload is None
    assert record.phone_id is None
    assert record.intentional_disconnect is True
    assert driver.destroy_calls == 1
    assert not session_dir.exists()
    # idle time restarts from the disconnect
    assert record.last_activity > 1.0


@pytest.mark.anyio
async def test_duplicate_teardown_signals_are_debounced(manager, store, driver_factory) -> None:
    before = _teardowns("remote_disconnect")
    await manager.connect("t1")
    driver = driver_factory.last
    driver.emit(Ready(phone_id="51999"))
    await wait_until(lambda: manager.registry.get("t1").ready)

    handle = manager.registry.handle("t1")
    driver.emit(PeerStateChanged(DriverState.UNPAIRED))
    driver.emit(Disconnected("UNPAIRED"))
    await wait_until(lambda: handle.receive_task.done())

    assert driver.destroy_calls == 1
    assert _teardowns("remote_disconnect") == before + 1
    assert manager.registry.handle("t1") is None


@pytest.mark.anyio
async def test_other_peer_states_are_informational(manager, driver_factory) -> None:
    await manager.connect("t1")
    driver = driver_factory.last
    driver.emit(PeerStateChanged(DriverState.OPENING))
    driver.emit(QrReceived("qr-1"))
    await wait_until(lambda: manager.registry.qr("t1") == "qr-1")
    assert manager.registry.handle("t1") is not None
    assert driver.destroy_calls == 0


@pytest.mark.anyio
async def test_auth_failure_moves_to_error(manager, store, driver_factory, hub) -> None:
    subscription = hub.subscribe("t1")
    await manager.connect("t1")
    driver = driver_factory.last
    driver.emit(QrReceived("qr-1"))
    handle = manager.registry.handle("t1")
    driver.emit(AuthFailure("credentials rejected"))
    await wait_until(lambda: handle.receive_task.done())
    assert manager.registry.handle("t1") is None

    record = await store.get("t1")
    assert record.status is SessionStatus.ERROR
    assert record.qr_payload is None
    assert manager.registry.qr("t1") is None
    assert driver.destroy_calls == 1

    events = []
    while not subscription.queue.empty():
        events.append(subscription.queue.get_nowait())
    errors = [item for item in events if item["event"] == "bot-error"]
    assert errors and errors[-1]["data"]["type"] == "DriverAuthError"
    subscription.close()


@pytest.mark.anyio
async def test_events_from_replaced_handle_are_ignored(manager, store, driver_factory) -> None:
    await manager.connect("t1")
    first = driver_factory.last
    await manager.restart("t1")
    second = driver_factory.last
    assert first is not second

    first.emit(Ready(phone_id="51000"))
    second.emit(QrReceived("fresh-qr"))
    await wait_until(lambda: manager.registry.qr("t1") == "fresh-qr")

    record = await store.get("t1")
    assert record.status is SessionStatus.PENDING
    assert record.phone_id is None


@pytest.mark.anyio
async def test_connect_during_remote_teardown_waits_for_the_wipe(
    manager, store, driver_factory, hub
) -> None:
    driver_factory.driver_kwargs["destroy_delay"] = 0.2
    await manager.connect("t1")
    driver = driver_factory.last
    driver.emit(Ready(phone_id="51999"))
    await wait_until(lambda: manager.registry.get("t1").ready)
    marker = manager.reaper.session_dir("t1") / "Default" / "credentials"
    marker.write_text("invalidated by the phone")
    handle = manager.registry.handle("t1")
    subscription = hub.subscribe("t1")

    driver.emit(Disconnected("LOGOUT"))
    await wait_until(lambda: handle.closed)
    result = await manager.connect("t1")

    assert result.ok
    assert handle.receive_task.done()
    assert not marker.exists()
    assert manager.registry.handle("t1").driver is driver_factory.last
    assert driver_factory.last is not driver
    record = await store.get("t1")
    assert record.phone_id is None
    assert record.intentional_disconnect is False

    events = []
    while not subscription.queue.empty():
        events.append(subscription.queue.get_nowait()["event"])
    assert "bot-disconnected" in events
    subscription.close()
