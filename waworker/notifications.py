from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from typing import Any, AsyncIterator, Dict, Optional, Set

import httpx


LOGGER = logging.getLogger("waworker.notifications")

SUBSCRIBER_QUEUE_SIZE = 256


class Subscription:
    def __init__(self, hub: "NotificationHub", tenant_id: Optional[str]) -> None:
        self.tenant_id = tenant_id
        self.queue: asyncio.Queue[Dict[str, Any]] = asyncio.Queue(maxsize=SUBSCRIBER_QUEUE_SIZE)
        self._hub = hub

    async def get(self) -> Dict[str, Any]:
        return await self.queue.get()

    def close(self) -> None:
        self._hub.unsubscribe(self)

    async def __aiter__(self) -> AsyncIterator[Dict[str, Any]]:
        while True:
            yield await self.queue.get()


class NotificationHub:
    """Fire-and-forget fan-out of session events keyed by tenant id.

    Observers subscribe per tenant (``tenant_id``) or globally (``None``).
    Publishing never blocks: slow subscribers lose events once their queue
    is full. When a webhook URL is configured every event is also POSTed
    there in the background.
    """

    def __init__(
        self,
        *,
        webhook_url: Optional[str] = None,
        webhook_token: Optional[str] = None,
        http_timeout: float = 10.0,
    ) -> None:
        self._subscribers: Dict[Optional[str], Set[Subscription]] = {}
        self._webhook_url = (webhook_url or "").strip().rstrip("/") or None
        self._webhook_token = (webhook_token or "").strip() or None
        self._http: Optional[httpx.AsyncClient] = (
            httpx.AsyncClient(timeout=http_timeout) if self._webhook_url else None
        )
        self._tasks: Set[asyncio.Task[Any]] = set()

    def subscribe(self, tenant_id: Optional[str] = None) -> Subscription:
        subscription = Subscription(self, tenant_id)
        self._subscribers.setdefault(tenant_id, set()).add(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        bucket = self._subscribers.get(subscription.tenant_id)
        if not bucket:
            return
        bucket.discard(subscription)
        if not bucket:
            self._subscribers.pop(subscription.tenant_id, None)

    def subscriber_count(self, tenant_id: Optional[str] = None) -> int:
        return len(self._subscribers.get(tenant_id, ()))

    def publish(self, tenant_id: str, event: str, data: Optional[Dict[str, Any]] = None) -> None:
        message = {
            "event": event,
            "tenant": tenant_id,
            "data": data or {},
            "timestamp": int(time.time() * 1000),
        }
        targets = list(self._subscribers.get(tenant_id, ())) + list(self._subscribers.get(None, ()))
        for subscription in targets:
            try:
                subscription.queue.put_nowait(message)
            except asyncio.QueueFull:
                LOGGER.warning(
                    "stage=notify_dropped tenant_id=%s event=%s", tenant_id, event
                )
        if self._http is not None:
            self._spawn_webhook(message)

    def status_changed(self, tenant_id: str, payload: Dict[str, Any]) -> None:
        self.publish(tenant_id, "bot-status-update", payload)

    def qr_issued(self, tenant_id: str, qr_payload: str) -> None:
        self.publish(tenant_id, "bot-qr-generated", {"qr": qr_payload})

    def connected(self, tenant_id: str, phone_id: Optional[str]) -> None:
        self.publish(tenant_id, "bot-connected", {"phone": phone_id})

    def disconnected(self, tenant_id: str, reason: str) -> None:
        self.publish(tenant_id, "bot-disconnected", {"reason": reason})

    def error_raised(self, tenant_id: str, error: object) -> None:
        self.publish(
            tenant_id,
            "bot-error",
            {"error": str(error) or error.__class__.__name__, "type": error.__class__.__name__},
        )

    def log_line(self, tenant_id: str, level: str, message: str, **extra: Any) -> None:
        self.publish(tenant_id, "bot-log", {"level": level, "message": message, **extra})

    def message_sent(self, tenant_id: str, payload: Dict[str, Any]) -> None:
        self.publish(tenant_id, "message-sent", payload)

    def deleted(self, tenant_id: str) -> None:
        self.publish(tenant_id, "bot-deleted", {})

    def _spawn_webhook(self, message: Dict[str, Any]) -> None:
        try:
            task = asyncio.get_running_loop().create_task(self._send_webhook(message))
        except RuntimeError:
            return
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _send_webhook(self, payload: Dict[str, Any]) -> None:
        if self._http is None or self._webhook_url is None:
            return
        headers = {"Content-Type": "application/json"}
        if self._webhook_token:
            headers["X-Webhook-Token"] = self._webhook_token
        try:
            await self._http.post(self._webhook_url, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            LOGGER.error(
                "stage=notify_webhook_fail tenant_id=%s event=%s error=%s",
                payload.get("tenant"),
                payload.get("event"),
                exc,
            )

    async def aclose(self) -> None:
        for task in list(self._tasks):
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()
        self._subscribers.clear()
        if self._http is not None:
            await self._http.aclose()
            self._http = None


__all__ = ["NotificationHub", "Subscription"]
