"""Durable tenant session records and the outbound message log.

The schema itself (tables ``wa_sessions`` and ``wa_messages``) is managed
outside of this service; the store only reads and writes rows.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional

import asyncpg

from .errors import NotFoundError, ValidationError
from .models import MessageRecord, MessageStatus, SessionStatus, TenantRecord


LOGGER = logging.getLogger("waworker.store")

_UPDATABLE_FIELDS = frozenset(
    {
        "name",
        "status",
        "qr_payload",
        "phone_id",
        "last_activity",
        "is_active",
        "intentional_disconnect",
    }
)


def _check_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    unknown = set(fields) - _UPDATABLE_FIELDS
    if unknown:
        raise ValidationError(f"unknown_fields:{','.join(sorted(unknown))}")
    cleaned = dict(fields)
    if "status" in cleaned:
        cleaned["status"] = SessionStatus(cleaned["status"])
    return cleaned


def _empty_stats() -> Dict[str, int]:
    return {"total": 0, "sent": 0, "pending": 0, "failed": 0}


class SessionStore:
    """Interface of the persistence collaborator."""

    async def get(self, tenant_id: str) -> Optional[TenantRecord]:
        raise NotImplementedError

    async def create(self, tenant_id: str, *, name: str = "") -> TenantRecord:
        raise NotImplementedError

    async def update(self, tenant_id: str, **fields: Any) -> TenantRecord:
        raise NotImplementedError

    async def delete(self, tenant_id: str) -> bool:
        raise NotImplementedError

    async def list_records(self, *, active_only: bool = False) -> list[TenantRecord]:
        raise NotImplementedError

    async def add_message(self, tenant_id: str, *, to: str, body: str) -> MessageRecord:
        raise NotImplementedError

    async def mark_message(
        self,
        record_id: int,
        *,
        status: MessageStatus,
        message_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> MessageRecord:
        raise NotImplementedError

    async def list_messages(
        self, tenant_id: str, *, offset: int = 0, limit: int = 10
    ) -> tuple[list[MessageRecord], int]:
        """Newest first; returns the page and the tenant's total count."""
        raise NotImplementedError

    async def message_stats(self, tenant_id: str) -> Dict[str, int]:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class MemorySessionStore(SessionStore):
    """Process-local store used by tests and offline runs."""

    def __init__(self, records: Iterable[TenantRecord] = ()) -> None:
        self._records: Dict[str, TenantRecord] = {record.tenant_id: record for record in records}
        self._messages: Dict[int, MessageRecord] = {}
        self._next_message_id = 0
        self._lock = asyncio.Lock()

    async def get(self, tenant_id: str) -> Optional[TenantRecord]:
        record = self._records.get(tenant_id)
        return dataclasses.replace(record) if record else None

    async def create(self, tenant_id: str, *, name: str = "") -> TenantRecord:
        async with self._lock:
            record = self._records.get(tenant_id)
            if record is None:
                record = TenantRecord(tenant_id=tenant_id, name=name)
                self._records[tenant_id] = record
            return dataclasses.replace(record)

    async def update(self, tenant_id: str, **fields: Any) -> TenantRecord:
        cleaned = _check_fields(fields)
        async with self._lock:
            record = self._records.get(tenant_id)
            if record is None:
                raise NotFoundError("tenant_not_found", tenant_id=tenant_id)
            for key, value in cleaned.items():
                setattr(record, key, value)
            return dataclasses.replace(record)

    async def delete(self, tenant_id: str) -> bool:
        async with self._lock:
            for record_id in [
                key for key, message in self._messages.items() if message.tenant_id == tenant_id
            ]:
                del self._messages[record_id]
            return self._records.pop(tenant_id, None) is not None

    async def list_records(self, *, active_only: bool = False) -> list[TenantRecord]:
        return [
            dataclasses.replace(record)
            for record in self._records.values()
            if record.is_active or not active_only
        ]

    async def add_message(self, tenant_id: str, *, to: str, body: str) -> MessageRecord:
        async with self._lock:
            self._next_message_id += 1
            message = MessageRecord(
                record_id=self._next_message_id, tenant_id=tenant_id, to=to, body=body
            )
            self._messages[message.record_id] = message
            return dataclasses.replace(message)

    async def mark_message(
        self,
        record_id: int,
        *,
        status: MessageStatus,
        message_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> MessageRecord:
        async with self._lock:
            message = self._messages.get(record_id)
            if message is None:
                raise NotFoundError("message_not_found")
            message.status = MessageStatus(status)
            message.message_id = message_id
            message.error = error
            if message.status is MessageStatus.SENT:
                message.sent_at = time.time()
            return dataclasses.replace(message)

    async def list_messages(
        self, tenant_id: str, *, offset: int = 0, limit: int = 10
    ) -> tuple[list[MessageRecord], int]:
        owned = sorted(
            (message for message in self._messages.values() if message.tenant_id == tenant_id),
            key=lambda message: message.record_id,
            reverse=True,
        )
        page = owned[offset : offset + limit]
        return [dataclasses.replace(message) for message in page], len(owned)

    async def message_stats(self, tenant_id: str) -> Dict[str, int]:
        stats = _empty_stats()
        for message in self._messages.values():
            if message.tenant_id == tenant_id:
                stats[message.status.value] += 1
                stats["total"] += 1
        return stats


def _to_datetime(value: Optional[float]) -> datetime:
    return datetime.fromtimestamp(value if value is not None else time.time(), tz=timezone.utc)


def _row_to_record(row: Any) -> TenantRecord:
    last_activity = row["last_activity"]
    if isinstance(last_activity, datetime):
        last_ts = last_activity.timestamp()
    else:
        last_ts = float(last_activity or time.time())
    return TenantRecord(
        tenant_id=str(row["tenant_id"]),
        name=row["name"] or "",
        status=SessionStatus(row["status"]),
        qr_payload=row["qr_payload"],
        phone_id=row["phone_id"],
        last_activity=last_ts,
        is_active=bool(row["is_active"]),
        intentional_disconnect=bool(row["intentional_disconnect"]),
    )


_SELECT_COLUMNS = (
    "tenant_id, name, status, qr_payload, phone_id, last_activity, "
    "is_active, intentional_disconnect"
)

_MESSAGE_COLUMNS = "id, tenant_id, recipient, body, status, message_id, error, created_at, sent_at"


def _timestamp(value: Any) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.timestamp()
    return float(value)


def _row_to_message(row: Any) -> MessageRecord:
    return MessageRecord(
        record_id=int(row["id"]),
        tenant_id=str(row["tenant_id"]),
        to=row["recipient"],
        body=row["body"],
        status=MessageStatus(row["status"]),
        message_id=row["message_id"],
        error=row["error"],
        created_at=_timestamp(row["created_at"]) or time.time(),
        sent_at=_timestamp(row["sent_at"]),
    )


class PostgresSessionStore(SessionStore):
    def __init__(self, dsn: str, *, min_size: int = 1, max_size: int = 10) -> None:
        self._dsn = dsn.replace("postgresql+asyncpg://", "postgresql://")
        self._min_size = min_size
        self._max_size = max_size
        self._pool: Optional[asyncpg.Pool] = None
        self._pool_lock = asyncio.Lock()

    async def _ensure_pool(self) -> asyncpg.Pool:
        if self._pool is not None:
            return self._pool
        async with self._pool_lock:
            if self._pool is None:
                self._pool = await asyncpg.create_pool(
                    self._dsn, min_size=self._min_size, max_size=self._max_size
                )
                LOGGER.info("stage=db_pool_ready")
        return self._pool

    async def _fetchrow(self, sql: str, *args: Any):
        pool = await self._ensure_pool()
        async with pool.acquire() as con:
            return await con.fetchrow(sql, *args)

    async def _fetch(self, sql: str, *args: Any):
        pool = await self._ensure_pool()
        async with pool.acquire() as con:
            return await con.fetch(sql, *args)

    async def get(self, tenant_id: str) -> Optional[TenantRecord]:
        row = await self._fetchrow(
            f"SELECT {_SELECT_COLUMNS} FROM wa_sessions WHERE tenant_id=$1", tenant_id
        )
        return _row_to_record(row) if row else None

    async def create(self, tenant_id: str, *, name: str = "") -> TenantRecord:
        row = await self._fetchrow(
            f"""
            INSERT INTO wa_sessions (tenant_id, name, status, last_activity, is_active, intentional_disconnect)
            VALUES ($1, $2, 'pending', now(), TRUE, FALSE)
            ON CONFLICT (tenant_id) DO UPDATE SET tenant_id=EXCLUDED.tenant_id
            RETURNING {_SELECT_COLUMNS}
            """,
            tenant_id,
            name,
        )
        return _row_to_record(row)

    async def update(self, tenant_id: str, **fields: Any) -> TenantRecord:
        cleaned = _check_fields(fields)
        if not cleaned:
            record = await self.get(tenant_id)
            if record is None:
                raise NotFoundError("tenant_not_found", tenant_id=tenant_id)
            return record
        assignments = []
        values: list[Any] = []
        for index, (key, value) in enumerate(sorted(cleaned.items()), start=2):
            if key == "status":
                value = value.value
            elif key == "last_activity":
                value = _to_datetime(value)
            assignments.append(f"{key}=${index}")
            values.append(value)
        row = await self._fetchrow(
            f"UPDATE wa_sessions SET {', '.join(assignments)}, updated_at=now() "
            f"WHERE tenant_id=$1 RETURNING {_SELECT_COLUMNS}",
            tenant_id,
            *values,
        )
        if row is None:
            raise NotFoundError("tenant_not_found", tenant_id=tenant_id)
        return _row_to_record(row)

    async def delete(self, tenant_id: str) -> bool:
        pool = await self._ensure_pool()
        async with pool.acquire() as con:
            async with con.transaction():
                await con.execute("DELETE FROM wa_messages WHERE tenant_id=$1", tenant_id)
                row = await con.fetchrow(
                    "DELETE FROM wa_sessions WHERE tenant_id=$1 RETURNING tenant_id", tenant_id
                )
        return row is not None

    async def list_records(self, *, active_only: bool = False) -> list[TenantRecord]:
        if active_only:
            rows = await self._fetch(
                f"SELECT {_SELECT_COLUMNS} FROM wa_sessions WHERE is_active ORDER BY tenant_id"
            )
        else:
            rows = await self._fetch(f"SELECT {_SELECT_COLUMNS} FROM wa_sessions ORDER BY tenant_id")
        return [_row_to_record(row) for row in rows]

    async def add_message(self, tenant_id: str, *, to: str, body: str) -> MessageRecord:
        row = await self._fetchrow(
            f"""
            INSERT INTO wa_messages (tenant_id, recipient, body, status, created_at)
            VALUES ($1, $2, $3, 'pending', now())
            RETURNING {_MESSAGE_COLUMNS}
            """,
            tenant_id,
            to,
            body,
        )
        return _row_to_message(row)

    async def mark_message(
        self,
        record_id: int,
        *,
        status: MessageStatus,
        message_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> MessageRecord:
        status = MessageStatus(status)
        row = await self._fetchrow(
            f"""
            UPDATE wa_messages
               SET status=$2, message_id=$3, error=$4,
                   sent_at=CASE WHEN $2='sent' THEN now() ELSE sent_at END
             WHERE id=$1
            RETURNING {_MESSAGE_COLUMNS}
            """,
            record_id,
            status.value,
            message_id,
            error,
        )
        if row is None:
            raise NotFoundError("message_not_found")
        return _row_to_message(row)

    async def list_messages(
        self, tenant_id: str, *, offset: int = 0, limit: int = 10
    ) -> tuple[list[MessageRecord], int]:
        rows = await self._fetch(
            f"SELECT {_MESSAGE_COLUMNS} FROM wa_messages WHERE tenant_id=$1 "
            "ORDER BY created_at DESC, id DESC LIMIT $2 OFFSET $3",
            tenant_id,
            limit,
            offset,
        )
        total = await self._fetchrow(
            "SELECT count(*) AS total FROM wa_messages WHERE tenant_id=$1", tenant_id
        )
        return [_row_to_message(row) for row in rows], int(total["total"] if total else 0)

    async def message_stats(self, tenant_id: str) -> Dict[str, int]:
        rows = await self._fetch(
            "SELECT status, count(*) AS count FROM wa_messages WHERE tenant_id=$1 GROUP BY status",
            tenant_id,
        )
        stats = _empty_stats()
        for row in rows:
            stats[str(row["status"])] = int(row["count"])
            stats["total"] += int(row["count"])
        return stats

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None


__all__ = ["SessionStore", "MemorySessionStore", "PostgresSessionStore"]
