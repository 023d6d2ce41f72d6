"""Webhook handlers for external services.

Registered WITHOUT user auth — uses secret-based verification over the raw
body. Handles: Razorpay payment events, generation backend completion.
"""

import json
import logging
from typing import Any

from fastapi import APIRouter, Depends, Request

from app.api.deps import MemoServices, get_memo_services
from app.core.errors import Conflict, InvalidSignature, SessionNotFound
from app.core.logging import get_logger, log_with_context
from app.core.payment_signature import verify_webhook_body
from app.core.schemas_intake import IntakeEvent

logger = get_logger(__name__)

router = APIRouter(prefix="/webhooks")


async def _verified_json(request: Request, header: str, secret: str | None) -> dict[str, Any]:
    body = await request.body()
    if not verify_webhook_body(body, request.headers.get(header), secret):
        logger.warning(f"Rejected webhook {request.url.path}: bad or missing {header}")
        raise InvalidSignature("Invalid webhook signature")
    try:
        payload = json.loads(body)
    except ValueError as e:
        raise InvalidSignature("Webhook body is not JSON") from e
    return payload if isinstance(payload, dict) else {}


# ============================================================================
# Razorpay
# ============================================================================


def _payment_entity(payload: dict[str, Any]) -> dict[str, Any]:
    """Payment entity of a Razorpay event; ``order.paid`` may carry only the order."""
    entities = payload.get("payload") or {}
    payment = (entities.get("payment") or {}).get("entity")
    if payment:
        return payment
    order = (entities.get("order") or {}).get("entity") or {}
    return {"order_id": order.get("id"), "id": None}


@router.post("/razorpay")
async def razorpay_webhook(
    request: Request,
    services: MemoServices = Depends(get_memo_services),
) -> dict[str, Any]:
    """
    Handle Razorpay webhook events.

    Events: payment.captured, order.paid, payment.failed
    """
    payload = await _verified_json(
        request, "X-Razorpay-Signature", services.settings.RAZORPAY_WEBHOOK_SECRET
    )
    event = payload.get("event", "")
    entity = _payment_entity(payload)
    logger.info(f"Razorpay webhook: event={event}, order={entity.get('order_id')}")

    try:
        result = await services.payments.handle_webhook(event, entity)
    except (SessionNotFound, Conflict) as e:
        # Acknowledge so the provider stops retrying; the event cannot apply.
        logger.warning(f"Razorpay webhook {event} not applied: {e.message}")
        return {"status": "ignored", "reason": e.message}

    return {"status": "ok", **result}


# ============================================================================
# Generation backend
# ============================================================================


@router.post("/generation")
async def generation_webhook(
    request: Request,
    services: MemoServices = Depends(get_memo_services),
) -> dict[str, Any]:
    """
    Completion notice from the generation backend.

    Events: memo_ready, memo_failed
    """
    payload = await _verified_json(
        request, "X-Generation-Signature", services.settings.GENERATION_WEBHOOK_SECRET
    )
    event = payload.get("event", "")
    intake_id = payload.get("intake_id")
    if not intake_id:
        return {"status": "ignored", "reason": "missing intake_id"}

    if event == "memo_ready":
        transition_event, context = IntakeEvent.ARTIFACT_READY, {}
    elif event == "memo_failed":
        transition_event, context = IntakeEvent.BACKEND_ERROR, {"error": payload.get("error") or "Generation failed"}
    else:
        logger.info(f"Unhandled generation webhook event: {event}")
        return {"status": "ignored", "reason": f"unhandled event {event}"}

    try:
        session = await services.intakes.apply(intake_id, transition_event, **context)
    except Conflict as e:
        # Stream relay usually records completion first.
        logger.info(f"Generation webhook {event} for intake {intake_id} not applied: {e.message}")
        return {"status": "ignored", "reason": e.message}

    log_with_context(
        logger, logging.INFO, "Generation webhook applied", intake_id=intake_id, event=event, status=session.status.value
    )
    return {"status": "ok", "intake_status": session.status.value}
