"""
Inbound webhook endpoints, one per provider.

Request flow: raw bytes -> signature check (card, aggregator) -> JSON parse
-> normalize -> reference trust check (mobile money) -> reconcile. Handlers
are safe to re-invoke with the same event; providers own the retry policy.
"""
import json
from typing import Any, Mapping

import structlog
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from payhooks.dependencies import get_engine, get_status_cache, get_verifier
from payhooks.errors import ReconcileError, ValidationError
from payhooks.logging_config import new_request_id
from payhooks.normalizer import AGGREGATOR, CARD, MOBILE_MONEY, normalize
from payhooks.verification import ReferenceTrustStrategy

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def parse_body(raw: bytes) -> Any:
    if not raw or not raw.strip():
        raise ValidationError("No event data")
    try:
        return json.loads(raw)
    except ValueError:
        raise ValidationError("Invalid JSON payload")


def handle_webhook(provider: str, raw: bytes, headers: Mapping[str, str], engine, verifier, status_cache) -> dict:
    verified = False
    if provider in (CARD, AGGREGATOR):
        verified = verifier.verify(verifier.strategy_for(provider), raw, headers)

    event = normalize(provider, parse_body(raw))
    structlog.contextvars.bind_contextvars(api_ref=event.reference)

    if provider == MOBILE_MONEY:
        verified = ReferenceTrustStrategy(status_cache).verify(event.reference, event.invoice_id)

    logger.info(
        "webhook_event_normalized",
        status=event.status,
        invoice_id=event.invoice_id,
        amount=str(event.amount) if event.amount is not None else None,
        verified=verified,
    )
    result = engine.reconcile(event)
    return {
        "success": True,
        "received": True,
        "verified": verified,
        "payment_ref": event.reference,
        "payment_id": result.payment_id,
        "status": result.status,
        "applied": result.applied,
        "order_updated": result.order_updated,
    }


async def _dispatch(provider: str, request: Request, engine, verifier, status_cache):
    request_id = new_request_id()
    request.state.request_id = request_id
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=request_id, provider=provider)

    raw = await request.body()
    logger.info("webhook_received", size=len(raw))
    try:
        body = handle_webhook(provider, raw, request.headers, engine, verifier, status_cache)
    except ReconcileError:
        raise
    except Exception:
        logger.exception("webhook_processing_error")
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error", "request_id": request_id},
        )
    body["request_id"] = request_id
    logger.info("webhook_processed", applied=body["applied"], status=body["status"])
    return body


@router.post("/card")
async def card_webhook(
    request: Request,
    engine=Depends(get_engine),
    verifier=Depends(get_verifier),
    status_cache=Depends(get_status_cache),
):
    return await _dispatch(CARD, request, engine, verifier, status_cache)


@router.post("/mobile-money")
async def mobile_money_webhook(
    request: Request,
    engine=Depends(get_engine),
    verifier=Depends(get_verifier),
    status_cache=Depends(get_status_cache),
):
    return await _dispatch(MOBILE_MONEY, request, engine, verifier, status_cache)


@router.post("/aggregator")
async def aggregator_webhook(
    request: Request,
    engine=Depends(get_engine),
    verifier=Depends(get_verifier),
    status_cache=Depends(get_status_cache),
):
    return await _dispatch(AGGREGATOR, request, engine, verifier, status_cache)
