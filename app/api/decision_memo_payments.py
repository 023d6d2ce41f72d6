"""Payment endpoints for the Decision Memo checkout."""

from typing import Any

from fastapi import APIRouter, Depends, HTTPException

from app.api.deps import MemoServices, get_memo_services
from app.core.errors import DecisionMemoError
from app.core.intake_service import session_summary
from app.core.logging import get_logger
from app.core.schemas_intake import (
    PaymentInitiateRequest,
    PaymentInitiateResponse,
    PaymentVerifyRequest,
    VerificationResult,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/decision-memo")


@router.post("/payment/initiate", response_model=PaymentInitiateResponse)
async def initiate_payment(
    request: PaymentInitiateRequest,
    services: MemoServices = Depends(get_memo_services),
) -> PaymentInitiateResponse:
    """
    Create a checkout order for an intake at ``preview_ready``.

    Returns the order and the public key the checkout widget needs.
    """
    try:
        order = await services.payments.initiate(request.intake_id, request.tier)
        return PaymentInitiateResponse(
            order_id=order.order_id,
            amount=order.amount,
            currency=order.currency,
            key=services.settings.RAZORPAY_KEY_ID,
            tier=order.tier,
        )
    except DecisionMemoError:
        raise
    except Exception as e:
        logger.exception(f"Failed to initiate payment for intake {request.intake_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to initiate payment") from e


@router.post("/payment/verify", response_model=VerificationResult)
async def verify_payment(
    request: PaymentVerifyRequest,
    services: MemoServices = Depends(get_memo_services),
) -> VerificationResult:
    """
    Verify the checkout signature and start memo generation.

    Idempotent per order: repeating the call returns ``already_verified``
    and never triggers a second generation.
    """
    try:
        return await services.payments.verify(
            request.intake_id, request.order_id, request.payment_id, request.signature
        )
    except DecisionMemoError:
        raise
    except Exception as e:
        logger.exception(f"Payment verification crashed for intake {request.intake_id}: {e}")
        raise HTTPException(status_code=500, detail="Payment verification failed") from e


@router.get("/payment/status/{intake_id}")
async def payment_status(
    intake_id: str,
    services: MemoServices = Depends(get_memo_services),
) -> dict[str, Any]:
    return await services.payments.payment_status(intake_id)


@router.post("/{intake_id}/retry-generation")
async def retry_generation(
    intake_id: str,
    services: MemoServices = Depends(get_memo_services),
) -> dict[str, Any]:
    """Retry a failed generation on the already verified payment."""
    session = await services.payments.retry_generation(intake_id)
    return session_summary(session)
