from __future__ import annotations

import asyncio
import sys
import textwrap
from pathlib import Path

import pytest

from waworker.bridge import SubprocessDriver, subprocess_driver_factory
from waworker.driver import Disconnected, DriverState, QrReceived, Ready
from waworker.errors import DriverDisconnectedError, DriverRequestError, DriverStartError


FAKE_BRIDGE = textwrap.dedent(
    """
    import json
    import os
    import sys

    args = sys.argv[1:]
    client_id = args[args.index("--client-id") + 1]

    def send(message):
        sys.stdout.write(json.dumps(message) + "\\n")
        sys.stdout.flush()

    for line in sys.stdin:
        request = json.loads(line)
        method = request["method"]
        if method == "initialize":
            blob = int(os.environ.get("FAKE_BRIDGE_BLOB", "0"))
            if blob:
                send({"event": "diagnostics", "data": "x" * blob})
            send({"event": "qr", "qr": "qr-for-" + client_id})
            send({"event": "ready", "phone": "51999888777"})
            send({"id": request["id"], "result": True})
        elif method == "get_state":
            send({"id": request["id"], "result": "CONNECTED"})
        elif method == "send_text":
            if request["params"]["body"] == "boom":
                send({"id": request["id"], "error": "chat not found"})
            else:
                send({"id": request["id"], "result": {"id": "wamid-1"}})
        elif method == "crash":
            sys.exit(3)
        else:
            send({"id": request["id"], "error": "unknown method " + method})
    """
)


@pytest.fixture
def bridge_command(tmp_path: Path) -> list[str]:
    script = tmp_path / "fake_bridge.py"
    script.write_text(FAKE_BRIDGE)
    return [sys.executable, str(script)]


async def _next_event(driver: SubprocessDriver):
    stream = driver.events()
    return await asyncio.wait_for(stream.__anext__(), timeout=5.0)


@pytest.mark.anyio
async def test_bridge_round_trip(bridge_command, tmp_path: Path) -> None:
    factory = subprocess_driver_factory(bridge_command)
    driver = factory("t1", tmp_path / "session-bot_t1")
    try:
        await asyncio.wait_for(driver.start(), timeout=10.0)
        assert driver.pid is not None

        first = await _next_event(driver)
        second = await _next_event(driver)
        assert first == QrReceived(payload="qr-for-bot_t1")
        assert second == Ready(phone_id="51999888777")

        assert await driver.get_state() is DriverState.CONNECTED
        assert await driver.send_text("51999888777@c.us", "hola") == "wamid-1"

        with pytest.raises(DriverRequestError, match="chat not found"):
            await driver.send_text("51999888777@c.us", "boom")
        with pytest.raises(DriverRequestError):
            await driver._request("unsupported")
    finally:
        await driver.destroy()

    with pytest.raises(DriverDisconnectedError):
        await driver.get_state()


@pytest.mark.anyio
async def test_bridge_exit_is_reported_as_disconnect(bridge_command, tmp_path: Path) -> None:
    driver = SubprocessDriver("t2", tmp_path / "session-bot_t2", bridge_command)
    try:
        await asyncio.wait_for(driver.start(), timeout=10.0)
        await _next_event(driver)
        await _next_event(driver)

        with pytest.raises(DriverDisconnectedError):
            await asyncio.wait_for(driver._request("crash"), timeout=5.0)

        event = await _next_event(driver)
        assert event == Disconnected(reason="bridge_exited:3")
    finally:
        await driver.destroy()


@pytest.mark.anyio
async def test_missing_bridge_binary_fails_start(tmp_path: Path) -> None:
    driver = SubprocessDriver(
        "t3", tmp_path / "session-bot_t3", [str(tmp_path / "does-not-exist")]
    )
    with pytest.raises(DriverStartError):
        await driver.start()
    await driver.destroy()


@pytest.mark.anyio
async def test_long_bridge_lines_are_read(bridge_command, tmp_path: Path) -> None:
    driver = SubprocessDriver(
        "t4", tmp_path / "session-bot_t4", bridge_command, env={"FAKE_BRIDGE_BLOB": "200000"}
    )
    try:
        await asyncio.wait_for(driver.start(), timeout=10.0)
        assert await _next_event(driver) == QrReceived(payload="qr-for-bot_t4")
    finally:
        await driver.destroy()


@pytest.mark.anyio
async def test_lines_over_the_limit_are_skipped(bridge_command, tmp_path: Path) -> None:
    driver = SubprocessDriver(
        "t5",
        tmp_path / "session-bot_t5",
        bridge_command,
        env={"FAKE_BRIDGE_BLOB": "8000"},
        line_limit=1024,
    )
    try:
        await asyncio.wait_for(driver.start(), timeout=10.0)
        assert await _next_event(driver) == QrReceived(payload="qr-for-bot_t5")
        assert await driver.get_state() is DriverState.CONNECTED
    finally:
        await driver.destroy()
