"""Driver contract: one automated messaging client per tenant.

A driver is opaque to the lifecycle core. It exposes ``start``/``send_text``/
``get_state``/``destroy`` and publishes lifecycle events on a typed stream
consumed by exactly one receive loop (see :mod:`waworker.reactor`).
"""

from __future__ import annotations

import asyncio
import enum
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Callable, Optional, Union


class DriverState(str, enum.Enum):
    CONNECTED = "CONNECTED"
    OPENING = "OPENING"
    PAIRING = "PAIRING"
    TIMEOUT = "TIMEOUT"
    CONFLICT = "CONFLICT"
    UNLAUNCHED = "UNLAUNCHED"
    UNPAIRED = "UNPAIRED"
    UNPAIRED_IDLE = "UNPAIRED_IDLE"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def parse(cls, raw: object) -> "DriverState":
        try:
            return cls(str(raw or "").strip().upper())
        except ValueError:
            return cls.UNKNOWN


UNPAIRED_STATES = frozenset({DriverState.UNPAIRED, DriverState.UNPAIRED_IDLE})


@dataclass(frozen=True, slots=True)
class QrReceived:
    payload: str


@dataclass(frozen=True, slots=True)
class Authenticated:
    pass


@dataclass(frozen=True, slots=True)
class Ready:
    phone_id: Optional[str] = None


@dataclass(frozen=True, slots=True)
class AuthFailure:
    reason: str = "auth_failure"


@dataclass(frozen=True, slots=True)
class Disconnected:
    reason: str = "unknown"


@dataclass(frozen=True, slots=True)
class PeerStateChanged:
    state: DriverState


DriverEvent = Union[QrReceived, Authenticated, Ready, AuthFailure, Disconnected, PeerStateChanged]


def event_kind(event: DriverEvent) -> str:
    return {
        QrReceived: "qr",
        Authenticated: "authenticated",
        Ready: "ready",
        AuthFailure: "auth_failure",
        Disconnected: "disconnected",
        PeerStateChanged: "peer_state_change",
    }.get(type(event), "unknown")


class SessionDriver:
    """Base class for drivers; subclasses implement the four operations."""

    def __init__(self, tenant_id: str, session_dir: Path) -> None:
        self.tenant_id = tenant_id
        self.session_dir = session_dir
        self._events: asyncio.Queue[Optional[DriverEvent]] = asyncio.Queue()
        self._events_closed = False

    async def start(self) -> None:
        raise NotImplementedError

    async def send_text(self, target: str, body: str) -> str:
        raise NotImplementedError

    async def get_state(self) -> DriverState:
        raise NotImplementedError

    async def destroy(self) -> None:
        raise NotImplementedError

    def emit(self, event: DriverEvent) -> None:
        if self._events_closed:
            return
        self._events.put_nowait(event)

    def close_events(self) -> None:
        if self._events_closed:
            return
        self._events_closed = True
        self._events.put_nowait(None)

    async def events(self) -> AsyncIterator[DriverEvent]:
        while True:
            event = await self._events.get()
            if event is None:
                return
            yield event


DriverFactory = Callable[[str, Path], SessionDriver]


__all__ = [
    "DriverState",
    "UNPAIRED_STATES",
    "QrReceived",
    "Authenticated",
    "Ready",
    "AuthFailure",
    "Disconnected",
    "PeerStateChanged",
    "DriverEvent",
    "DriverFactory",
    "SessionDriver",
    "event_kind",
]
