"""
FastAPI receiver for Mindbody webhooks.

Routes live under the configured prefix: the delivery endpoint, a health
check, an optional statistics view and a local-only test echo.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from mindbody import __version__
from mindbody.config import Settings
from mindbody.config import settings as default_settings
from mindbody.localdb import session as db
from mindbody.utils.logger import get_logger

from .handler import VALIDATION_FAILED, WebhookHandler
from .store import WebhookEventStore

logger = get_logger(__name__)

SERVICE_NAME = "Mindbody Webhook Receiver"
SENSITIVE_HEADERS = ("authorization", "x-api-key", "api-key", "x-mindbody-signature", "x-mb-signature", "x-signature", "signature")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def sanitize_headers(headers: Dict[str, str]) -> Dict[str, str]:
    return {k: ("[REDACTED]" if k.lower() in SENSITIVE_HEADERS else v) for k, v in headers.items()}


def create_app(settings: Optional[Settings] = None, handler: Optional[WebhookHandler] = None) -> FastAPI:
    settings = settings or default_settings
    prefix = "/" + settings.webhook_route_prefix.strip("/") if settings.webhook_route_prefix.strip("/") else ""

    app = FastAPI(title=SERVICE_NAME, version=__version__)
    app.state.settings = settings
    app.state.handler = handler

    @app.on_event("startup")
    async def startup() -> None:
        if app.state.handler is None:
            db.init_engine(settings.db_url)
            if settings.db_auto_create:
                await db.create_all()
            store = WebhookEventStore(db.async_session, settings.webhook_max_retry_attempts)
            app.state.handler = WebhookHandler(settings, store)
            logger.info(f"Webhook DB initialized at {settings.db_url}")
        await app.state.handler.dispatcher.start()
        logger.info(f"Webhook receiver listening under {prefix or '/'}")

    @app.on_event("shutdown")
    async def shutdown() -> None:
        if app.state.handler is not None:
            await app.state.handler.dispatcher.stop()
        if db.async_engine is not None and handler is None:
            await db.async_engine.dispose()

    async def receive(request: Request) -> JSONResponse:
        raw_body = await request.body()
        try:
            result = await app.state.handler.handle(raw_body, dict(request.headers))
        except Exception as e:
            logger.exception(f"Webhook processing failed: {e}")
            return JSONResponse(
                {"success": False, "error": "Internal server error", "message": "Failed to process webhook"},
                status_code=500,
            )

        if result.failure is not None:
            client_ip = request.client.host if request.client else None
            logger.warning(
                f"Webhook validation failed: {result.failure.message} ip={client_ip} "
                f"user_agent={request.headers.get('user-agent')}"
            )
            return JSONResponse(
                {"success": False, "error": VALIDATION_FAILED, "message": result.failure.message},
                status_code=result.failure.status_code,
            )

        event = result.event
        return JSONResponse(
            {
                "success": True,
                "message": "Webhook already received" if result.duplicate else "Webhook received",
                "event_id": event.event_id,
                "event_type": event.event_type,
            }
        )

    app.add_api_route(prefix + "/", receive, methods=["POST"])
    if prefix:
        app.add_api_route(prefix, receive, methods=["POST"], include_in_schema=False)

    @app.get(prefix + "/health")
    async def health() -> Dict[str, Any]:
        return {"status": "ok", "service": SERVICE_NAME, "timestamp": _now_iso(), "version": __version__}

    @app.get(prefix + "/stats")
    async def stats() -> JSONResponse:
        if not settings.webhooks_expose_stats:
            return JSONResponse({"error": "Statistics endpoint not enabled"}, status_code=404)
        try:
            data = await app.state.handler.get_stats()
        except Exception as e:
            logger.exception(f"Failed to retrieve webhook statistics: {e}")
            return JSONResponse(
                {"error": "Failed to retrieve statistics", "message": str(e)},
                status_code=500,
            )
        return JSONResponse({"stats": data, "timestamp": _now_iso()})

    @app.post(prefix + "/test")
    async def test(request: Request) -> JSONResponse:
        client_ip = request.client.host if request.client else None
        if client_ip not in settings.webhook_test_allowed_ips:
            logger.warning(f"Test endpoint access denied for {client_ip}")
            return JSONResponse({"error": "Test endpoint access denied"}, status_code=403)

        raw_body = await request.body()
        try:
            payload: Any = await request.json() if raw_body else {}
        except ValueError:
            payload = {"raw": raw_body.decode("utf-8", errors="replace")}

        data = {
            "received_at": _now_iso(),
            "ip": client_ip,
            "user_agent": request.headers.get("user-agent"),
            "headers": sanitize_headers(dict(request.headers)),
            "payload": payload,
            "method": request.method,
            "url": str(request.url),
        }
        logger.info(f"Test webhook request received from {client_ip}")
        return JSONResponse({"success": True, "message": "Test webhook received successfully", "data": data})

    return app
