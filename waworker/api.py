from __future__ import annotations

import asyncio
import contextlib
import logging
import os
from typing import Any, Optional

from fastapi import FastAPI, Query, Request, Response, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel, ConfigDict, Field, model_validator

from config import WorkerConfig, worker_config

from .errors import SessionError
from .manager import SessionManager
from .notifications import Subscription
from .qr import build_qr_png


logger = logging.getLogger("waworker.api")

NO_STORE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}


def init_logging() -> None:
    level_name = (os.getenv("LOG_LEVEL") or "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    fmt = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"
    logging.basicConfig(level=level, format=fmt)

    # basicConfig is a no-op once uvicorn has configured the root logger
    logging.getLogger("waworker").setLevel(level)


class _TenantModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    @model_validator(mode="before")
    @classmethod
    def _alias_tenant(cls, values: Any) -> Any:
        if isinstance(values, dict) and "tenant" not in values and "tenant_id" in values:
            data = dict(values)
            data["tenant"] = data.pop("tenant_id")
            return data
        return values


class TenantBody(_TenantModel):
    tenant: str = Field(..., min_length=1, max_length=64)


class CreateTenantBody(TenantBody):
    name: str = Field("", max_length=128)


class SendRequest(TenantBody):
    to: str = Field(..., min_length=1)
    text: str = Field(..., min_length=1)


def _json(body: Any, status_code: int = 200) -> JSONResponse:
    return JSONResponse(body, status_code=status_code, headers=dict(NO_STORE_HEADERS))


def create_app(
    manager: Optional[SessionManager] = None,
    *,
    config: Optional[WorkerConfig] = None,
) -> FastAPI:
    init_logging()
    cfg = config or worker_config()
    if manager is None:
        manager = SessionManager.from_config(cfg)
    admin_token = (cfg.admin_token or "").strip()
    logger.info(
        "stage=app_config sessions_dir=%s admin_token_present=%s webhook_present=%s",
        cfg.sessions_dir,
        "true" if admin_token else "false",
        "true" if cfg.notify_webhook else "false",
    )

    app = FastAPI(title="waworker")
    app.state.session_manager = manager

    def _unauthorized_response(route: str, tenant: Optional[str] = None) -> JSONResponse:
        logger.warning("event=admin_token_invalid route=%s tenant=%s", route, tenant)
        return _json({"error": "not_authorized"}, status_code=401)

    def _enforce_admin(
        request: Request,
        route: str,
        *,
        tenant: Optional[str] = None,
    ) -> JSONResponse | None:
        if not admin_token:
            return None
        header = request.headers.get("X-Admin-Token", "").strip()
        if not header or header != admin_token:
            return _unauthorized_response(route, tenant)
        return None

    @app.exception_handler(SessionError)
    async def _session_error(request: Request, exc: SessionError) -> JSONResponse:
        logger.info(
            "event=request_failed route=%s tenant=%s error=%s detail=%s",
            request.url.path,
            exc.tenant_id,
            exc.code,
            exc,
        )
        return _json(exc.to_payload(), status_code=exc.status_code)

    @app.on_event("startup")
    async def _startup() -> None:  # pragma: no cover - wiring
        await manager.start()

    @app.on_event("shutdown")
    async def _shutdown() -> None:  # pragma: no cover - wiring
        await manager.shutdown()

    @app.post("/tenants")
    async def create_tenant(request: Request, payload: CreateTenantBody):
        unauthorized = _enforce_admin(request, "/tenants", tenant=payload.tenant)
        if unauthorized is not None:
            return unauthorized
        record = await manager.create_tenant(payload.tenant, name=payload.name)
        return _json({"ok": True, **record.to_payload()}, status_code=201)

    @app.get("/tenants")
    async def list_tenants(request: Request):
        unauthorized = _enforce_admin(request, "/tenants")
        if unauthorized is not None:
            return unauthorized
        items = await manager.list_sessions()
        return _json({"ok": True, "count": len(items), "items": items})

    @app.post("/session/connect")
    async def connect_session(request: Request, payload: TenantBody):
        unauthorized = _enforce_admin(request, "/session/connect", tenant=payload.tenant)
        if unauthorized is not None:
            return unauthorized
        result = await manager.connect(payload.tenant)
        return _json(result.to_payload())

    @app.post("/session/disconnect")
    async def disconnect_session(request: Request, payload: TenantBody):
        unauthorized = _enforce_admin(request, "/session/disconnect", tenant=payload.tenant)
        if unauthorized is not None:
            return unauthorized
        result = await manager.disconnect(payload.tenant)
        return _json(result.to_payload())

    @app.post("/session/restart")
    async def restart_session(request: Request, payload: TenantBody):
        unauthorized = _enforce_admin(request, "/session/restart", tenant=payload.tenant)
        if unauthorized is not None:
            return unauthorized
        result = await manager.restart(payload.tenant)
        return _json(result.to_payload())

    @app.delete("/session/{tenant}")
    async def delete_session(request: Request, tenant: str):
        unauthorized = _enforce_admin(request, "/session/delete", tenant=tenant)
        if unauthorized is not None:
            return unauthorized
        result = await manager.delete(tenant)
        return _json(result.to_payload())

    @app.get("/session/status")
    async def session_status(request: Request, tenant: str = Query(..., min_length=1)):
        unauthorized = _enforce_admin(request, "/session/status", tenant=tenant)
        if unauthorized is not None:
            return unauthorized
        payload = await manager.status(tenant)
        payload["stats"] = manager.stats_snapshot()
        return _json(payload)

    @app.post("/session/verify")
    async def verify_session(request: Request, payload: TenantBody):
        unauthorized = _enforce_admin(request, "/session/verify", tenant=payload.tenant)
        if unauthorized is not None:
            return unauthorized
        result = await manager.verify(payload.tenant)
        return _json({"ok": result.outcome != "error", **result.to_payload()})

    @app.post("/session/verify-all")
    async def verify_all(request: Request):
        unauthorized = _enforce_admin(request, "/session/verify-all")
        if unauthorized is not None:
            return unauthorized
        report = await manager.verify_all()
        return _json({"ok": True, **report.to_payload()})

    @app.get("/session/qr")
    async def session_qr(request: Request, tenant: str = Query(..., min_length=1)):
        unauthorized = _enforce_admin(request, "/session/qr", tenant=tenant)
        if unauthorized is not None:
            return unauthorized
        qr_payload = await manager.get_qr(tenant)
        if not qr_payload:
            return _json({"error": "qr_not_available", "tenant": tenant}, status_code=404)
        return _json({"ok": True, "tenant": tenant, "qr": qr_payload})

    @app.get("/session/qr.png")
    async def session_qr_png(request: Request, tenant: str = Query(..., min_length=1)):
        unauthorized = _enforce_admin(request, "/session/qr.png", tenant=tenant)
        if unauthorized is not None:
            return unauthorized
        qr_payload = await manager.get_qr(tenant)
        if not qr_payload:
            return _json({"error": "qr_not_available", "tenant": tenant}, status_code=404)
        blob = await asyncio.to_thread(build_qr_png, qr_payload)
        return Response(content=blob, media_type="image/png", headers=dict(NO_STORE_HEADERS))

    @app.post("/send")
    async def send_message(request: Request, payload: SendRequest):
        unauthorized = _enforce_admin(request, "/send", tenant=payload.tenant)
        if unauthorized is not None:
            return unauthorized
        result = await manager.send_text(payload.tenant, payload.to, payload.text)
        return _json({"ok": True, **result})

    @app.get("/session/messages")
    async def session_messages(
        request: Request,
        tenant: str = Query(..., min_length=1),
        page: int = Query(1, ge=1),
        limit: int = Query(10, ge=1, le=100),
    ):
        unauthorized = _enforce_admin(request, "/session/messages", tenant=tenant)
        if unauthorized is not None:
            return unauthorized
        payload = await manager.list_messages(tenant, page=page, limit=limit)
        payload["stats"] = await manager.message_stats(tenant)
        return _json({"ok": True, **payload})

    async def _pump(websocket: WebSocket, subscription: Subscription) -> None:
        async for message in subscription:
            await websocket.send_json(message)

    @app.websocket("/ws/{tenant}")
    async def notifications_ws(websocket: WebSocket, tenant: str):
        if admin_token:
            supplied = (
                websocket.headers.get("X-Admin-Token")
                or websocket.query_params.get("token")
                or ""
            ).strip()
            if supplied != admin_token:
                logger.warning("event=admin_token_invalid route=/ws tenant=%s", tenant)
                await websocket.close(code=4401)
                return
        try:
            snapshot = await manager.status(tenant)
        except SessionError as exc:
            await websocket.close(code=4404, reason=exc.code)
            return

        await websocket.accept()
        subscription = manager.hub.subscribe(snapshot["tenant"])
        logger.info("event=ws_subscribed tenant=%s", tenant)
        sender: Optional[asyncio.Task[Any]] = None
        try:
            await websocket.send_json(
                {"event": "subscribed", "tenant": snapshot["tenant"], "data": snapshot}
            )
            sender = asyncio.create_task(_pump(websocket, subscription))
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            logger.info("event=ws_closed tenant=%s", tenant)
        finally:
            subscription.close()
            if sender is not None:
                sender.cancel()
                with contextlib.suppress(asyncio.CancelledError, WebSocketDisconnect, RuntimeError):
                    await sender

    @app.get("/health")
    async def health():
        stats = manager.stats_snapshot()
        return {
            "ok": True,
            "live_count": int(stats.get("live", 0)),
            "ready_count": int(stats.get("ready", 0)),
            "awaiting_scan": int(stats.get("awaiting_scan", 0)),
            "creating": int(stats.get("creating", 0)),
        }

    @app.get("/metrics")
    async def metrics():
        data = generate_latest()
        return PlainTextResponse(data.decode("utf-8"), media_type=CONTENT_TYPE_LATEST)

    return app


__all__ = ["create_app", "init_logging", "NO_STORE_HEADERS"]
