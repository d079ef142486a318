from __future__ import annotations

import asyncio
import enum
import re
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Optional

from .errors import ValidationError

if TYPE_CHECKING:  # pragma: no cover - typing only
    from .driver import SessionDriver


_TENANT_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,63}$")


class SessionStatus(str, enum.Enum):
    """Persisted status of a tenant session record."""

    PENDING = "pending"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"


class MessageStatus(str, enum.Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class SessionPhase(str, enum.Enum):
    """In-memory phase of a live handle."""

    PENDING = "PENDING"
    AWAITING_SCAN = "AWAITING_SCAN"
    CONNECTED = "CONNECTED"
    ERROR = "ERROR"


def validate_tenant_id(raw: Any) -> str:
    tenant = str(raw or "").strip()
    if not _TENANT_ID_RE.match(tenant):
        raise ValidationError("invalid_tenant_id", tenant_id=tenant or None)
    return tenant


def normalize_phone(raw: Optional[str]) -> Optional[str]:
    if not raw:
        return None
    digits = re.sub(r"\D", "", str(raw))
    if not digits:
        return None
    return f"+{digits}"


@dataclass(slots=True)
class TenantRecord:
    tenant_id: str
    name: str = ""
    status: SessionStatus = SessionStatus.PENDING
    qr_payload: Optional[str] = None
    phone_id: Optional[str] = None
    last_activity: float = field(default_factory=time.time)
    is_active: bool = True
    intentional_disconnect: bool = False

    def to_payload(self) -> dict[str, Any]:
        return {
            "tenant": self.tenant_id,
            "name": self.name,
            "status": self.status.value,
            "has_qr": bool(self.qr_payload),
            "phone": self.phone_id,
            "last_activity": int(self.last_activity * 1000),
            "is_active": self.is_active,
            "intentional_disconnect": self.intentional_disconnect,
        }


@dataclass(slots=True, eq=False)
class LiveHandle:
    tenant_id: str
    driver: "SessionDriver"
    phase: SessionPhase = SessionPhase.PENDING
    ready: bool = False
    qr: Optional[str] = None
    phone_id: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    receive_task: Optional[asyncio.Task[Any]] = None
    closed: bool = False


@dataclass(frozen=True, slots=True)
class Presence:
    """Point-in-time view of a tenant in the registry."""

    exists: bool
    ready: bool = False
    has_qr: bool = False
    phase: Optional[str] = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "exists": self.exists,
            "ready": self.ready,
            "has_qr": self.has_qr,
            "phase": self.phase,
        }


@dataclass(slots=True)
class MessageRecord:
    """One outbound message and its delivery outcome."""

    record_id: int
    tenant_id: str
    to: str
    body: str
    status: MessageStatus = MessageStatus.PENDING
    message_id: Optional[str] = None
    error: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    sent_at: Optional[float] = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.record_id,
            "tenant": self.tenant_id,
            "to": self.to,
            "message": self.body,
            "status": self.status.value,
            "message_id": self.message_id,
            "error": self.error,
            "created_at": int(self.created_at * 1000),
            "sent_at": int(self.sent_at * 1000) if self.sent_at else None,
        }


@dataclass(slots=True)
class OperationResult:
    tenant_id: str
    ok: bool
    previous_status: Optional[SessionStatus]
    status: Optional[SessionStatus]
    detail: Optional[str] = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "tenant": self.tenant_id,
            "previous_status": self.previous_status.value if self.previous_status else None,
            "status": self.status.value if self.status else None,
            "detail": self.detail,
        }


@dataclass(slots=True)
class VerifyResult:
    tenant_id: str
    outcome: str
    detail: str
    previous_status: Optional[SessionStatus] = None
    status: Optional[SessionStatus] = None

    @property
    def consistent(self) -> bool:
        return self.outcome == "consistent"

    @property
    def fixed(self) -> bool:
        return self.outcome == "fixed"

    def to_payload(self) -> dict[str, Any]:
        return {
            "tenant": self.tenant_id,
            "outcome": self.outcome,
            "detail": self.detail,
            "previous_status": self.previous_status.value if self.previous_status else None,
            "status": self.status.value if self.status else None,
        }


@dataclass(slots=True)
class SweepReport:
    total: int = 0
    checked: int = 0
    consistent: int = 0
    fixed: int = 0
    errors: int = 0
    details: list[VerifyResult] = field(default_factory=list)

    def add(self, result: VerifyResult) -> None:
        self.checked += 1
        if result.outcome == "fixed":
            self.fixed += 1
        elif result.outcome == "consistent":
            self.consistent += 1
        else:
            self.errors += 1
        self.details.append(result)

    def to_payload(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "checked": self.checked,
            "consistent": self.consistent,
            "fixed": self.fixed,
            "errors": self.errors,
            "details": [item.to_payload() for item in self.details],
        }


__all__ = [
    "SessionStatus",
    "SessionPhase",
    "MessageStatus",
    "MessageRecord",
    "TenantRecord",
    "LiveHandle",
    "Presence",
    "OperationResult",
    "VerifyResult",
    "SweepReport",
    "validate_tenant_id",
    "normalize_phone",
]
