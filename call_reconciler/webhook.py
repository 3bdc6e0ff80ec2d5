"""
FastAPI webhook receiver for Retell call events.
Verifies the signature over the raw body, then hands the event to the
reconciliation pipeline.
"""

from __future__ import annotations

import hashlib
import hmac
import json
from typing import Optional

import structlog
from fastapi import APIRouter, FastAPI, HTTPException, Request

from call_reconciler.config import Settings
from call_reconciler.database import Database
from call_reconciler.event_store import classify_webhook_event
from call_reconciler.models import EventSource
from call_reconciler.payloads import provider_call_id_of
from call_reconciler.reconciler import Reconciler

log = structlog.get_logger(__name__)


def sign_body(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def verify_signature(secret: str, body: bytes, signature: Optional[str]) -> bool:
    """Constant-time check of a hex HMAC-SHA256 signature, optionally ``sha256=``-prefixed."""
    if not secret or not signature:
        return False
    provided = signature.strip()
    if provided.lower().startswith("sha256="):
        provided = provided[len("sha256="):]
    return hmac.compare_digest(sign_body(secret, body), provided.lower())


def create_webhook_router(settings: Settings, db: Database, reconciler: Reconciler) -> APIRouter:
    router = APIRouter()

    @router.get("/health")
    async def health():
        return {"status": "ok"}

    @router.post("/webhooks/retell")
    async def retell_webhook(request: Request):
        # Untouched bytes: any re-serialisation would break the signature.
        body = await request.body()
        signature = request.headers.get(settings.signature_header)

        try:
            payload = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise HTTPException(status_code=400, detail="Invalid JSON")
        if not isinstance(payload, dict):
            raise HTTPException(status_code=400, detail="Invalid payload")

        call_id = provider_call_id_of(payload)
        if not call_id:
            log.warning("webhook_missing_call_id", provider_event=payload.get("event"))
            raise HTTPException(status_code=400, detail="Missing call_id")

        session = await db.get_session_by_call_id(call_id)
        if session is None:
            if settings.webhook_secret and not verify_signature(settings.webhook_secret, body, signature):
                log.warning("webhook_signature_mismatch", call_id=call_id, tenant_id=None)
                raise HTTPException(status_code=401, detail="Invalid signature")
            log.warning("webhook_unknown_call", call_id=call_id, provider_event=payload.get("event"))
            raise HTTPException(status_code=404, detail="Unknown call")

        tenant = await db.get_tenant(session.tenant_id)
        secret = (tenant.webhook_secret if tenant else "") or settings.webhook_secret
        if not verify_signature(secret, body, signature):
            log.warning("webhook_signature_mismatch", call_id=call_id, tenant_id=session.tenant_id)
            raise HTTPException(status_code=401, detail="Invalid signature")

        event_type = classify_webhook_event(payload)
        log.info(
            "webhook_received",
            call_id=call_id,
            provider_event=payload.get("event"),
            event_type=event_type.value if event_type else None,
        )
        if event_type is None:
            return {"ok": True, "status": "ignored"}

        result = await reconciler.ingest(payload, EventSource.WEBHOOK, event_type, provider_call_id=call_id)
        if not result.found:
            raise HTTPException(status_code=404, detail="Unknown call")

        return {
            "ok": True,
            "status": result.record.value,
            "outcome": result.session.outcome.value,
        }

    return router


def create_webhook_app(settings: Settings, db: Database, reconciler: Reconciler) -> FastAPI:
    """Create and return a standalone FastAPI app with the webhook routes."""
    app = FastAPI(
        title="Call Outcome Reconciler - Webhook Receiver",
        version="0.1.0",
    )
    app.include_router(create_webhook_router(settings, db, reconciler))
    return app
