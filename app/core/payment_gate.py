"""
Payment gate — unlocks the paid memo.

Ordering for verify:
  1. signature check (no state touched before it passes)
  2. under the intake lock: order → verified, session → paid
  3. trigger backend generation, session → generating
  4. open the event stream proxy (buffered until the client attaches)

The order id is the idempotency key: a repeated verify for an already
verified order returns the recorded result and triggers nothing.
"""

import logging
from typing import Any, Optional

from app.core import payment_signature
from app.core.errors import Conflict, InvalidSignature, SessionNotFound, UpstreamUnavailable
from app.core.event_stream_proxy import EventStreamProxy
from app.core.intake_service import IntakeService, IntakeWriter
from app.core.logging import get_logger, log_with_context
from app.core.schemas_intake import (
    IntakeEvent,
    IntakeSession,
    IntakeStatus,
    PaymentOrder,
    PaymentStatus,
    PaymentTier,
    VerificationResult,
)
from app.services.generation_client import GenerationClient
from app.services.razorpay_client import RazorpayClient

logger = get_logger(__name__)

PAYABLE_STATUSES = frozenset({IntakeStatus.PREVIEW_READY, IntakeStatus.PAYMENT_PENDING})
_PAID_STATUSES = frozenset({IntakeStatus.PAID, IntakeStatus.GENERATING, IntakeStatus.DELIVERED})


def _find_order(session: IntakeSession, order_id: str) -> Optional[PaymentOrder]:
    if session.payment is not None and session.payment.order_id == order_id:
        return session.payment
    for order in session.payment_history:
        if order.order_id == order_id:
            return order
    return None


class PaymentGate:
    """Order creation, signature verification, and the at-most-once generation trigger."""

    def __init__(
        self,
        intakes: IntakeService,
        provider: RazorpayClient,
        generation: GenerationClient,
        proxy: EventStreamProxy,
        key_secret: Optional[str],
        prices: dict[PaymentTier, int],
        currency: str = "USD",
    ):
        self.intakes = intakes
        self.provider = provider
        self.generation = generation
        self.proxy = proxy
        self._key_secret = key_secret
        self.prices = prices
        self.currency = currency

    # ------------------------------------------------------------------
    # Initiate
    # ------------------------------------------------------------------

    async def initiate(self, intake_id: str, tier: PaymentTier = PaymentTier.SINGLE) -> PaymentOrder:
        """
        Create a checkout order for an intake at ``preview_ready``.

        A new order while one is pending supersedes it.

        Raises:
            Conflict: intake not payable (including already paid)
            UpstreamUnavailable: provider could not create the order
        """
        session = await self.intakes.load(intake_id)
        if session.status in _PAID_STATUSES:
            raise Conflict(f"Intake {intake_id} is already paid ({session.status.value})")
        if session.status not in PAYABLE_STATUSES:
            raise Conflict(f"Intake {intake_id} is {session.status.value}; payment requires a preview")

        amount = self.prices[tier]
        provider_order = await self.provider.create_order(
            amount=amount,
            currency=self.currency,
            receipt=f"memo_{intake_id}",
            notes={"intake_id": intake_id, "tier": tier.value},
        )
        order = PaymentOrder(
            order_id=provider_order["id"],
            intake_id=intake_id,
            amount=provider_order.get("amount", amount),
            currency=provider_order.get("currency", self.currency),
            tier=tier,
        )

        session = await self.intakes.apply(intake_id, IntakeEvent.PAYMENT_INITIATED, order=order)
        log_with_context(
            logger, logging.INFO, "Payment initiated", intake_id=intake_id, order_id=order.order_id, tier=tier.value
        )
        return session.payment

    # ------------------------------------------------------------------
    # Verify
    # ------------------------------------------------------------------

    async def verify(
        self,
        intake_id: str,
        order_id: str,
        payment_id: str,
        signature: str,
    ) -> VerificationResult:
        """
        Verify a checkout signature and unlock generation.

        Raises:
            InvalidSignature: signature mismatch (order marked, session back to preview)
            Conflict: order does not belong to the intake or cannot be verified
            UpstreamUnavailable: backend refused the generation trigger (payment stays verified)
        """
        if not self._key_secret:
            raise UpstreamUnavailable("Payment gateway not configured")

        if not payment_signature.verify(order_id, payment_id, signature, self._key_secret):
            await self._reject(intake_id, order_id, payment_id, signature)
            raise InvalidSignature("Invalid payment signature")

        result = await self._unlock(intake_id, order_id, payment_id, signature)
        await self._open_stream(intake_id, result)
        return result

    async def _reject(self, intake_id: str, order_id: str, payment_id: str, signature: str) -> None:
        log_with_context(logger, logging.WARNING, "Invalid payment signature", intake_id=intake_id, order_id=order_id)
        async with self.intakes.writer(intake_id) as writer:
            payment = writer.session.payment
            if (
                writer.session.status == IntakeStatus.PAYMENT_PENDING
                and payment is not None
                and payment.order_id == order_id
                and payment.status == PaymentStatus.PENDING
            ):
                await writer.apply(
                    IntakeEvent.SIGNATURE_INVALID,
                    order_id=order_id,
                    payment_id=payment_id,
                    signature=signature,
                )

    async def _unlock(
        self,
        intake_id: str,
        order_id: str,
        payment_id: str,
        signature: Optional[str],
    ) -> VerificationResult:
        async with self.intakes.writer(intake_id) as writer:
            order = _find_order(writer.session, order_id)
            if order is None:
                raise Conflict(f"Order {order_id} does not belong to intake {intake_id}")
            if order is not writer.session.payment:
                # Paid against a checkout the user abandoned; nothing here unlocks it.
                log_with_context(
                    logger,
                    logging.ERROR,
                    "Payment for superseded order needs manual reconciliation or refund",
                    intake_id=intake_id,
                    order_id=order_id,
                    payment_id=payment_id,
                    current_order_id=writer.session.payment.order_id if writer.session.payment else None,
                )
                raise Conflict(f"Order {order_id} was superseded by a newer checkout")

            already_verified = order.status == PaymentStatus.VERIFIED
            if already_verified:
                if order.payment_id != payment_id:
                    raise Conflict(f"Order {order_id} was verified with a different payment")
            else:
                await writer.apply(
                    IntakeEvent.SIGNATURE_VALID,
                    order_id=order_id,
                    payment_id=payment_id,
                    signature=signature,
                )
                log_with_context(
                    logger, logging.INFO, "Payment verified", intake_id=intake_id, order_id=order_id
                )

            if writer.session.status == IntakeStatus.PAID:
                await self._start_generation(writer, order_id, payment_id)

            return VerificationResult(
                success=True,
                intake_id=intake_id,
                order_id=order_id,
                status=writer.session.status,
                already_verified=already_verified,
            )

    async def _start_generation(self, writer: IntakeWriter, order_id: str, payment_id: Optional[str]) -> None:
        intake_id = writer.session.id
        # The session stays ``paid`` if the trigger fails; a retried verify resumes here.
        await self.generation.trigger_generation(intake_id, order_id, payment_id)
        await writer.apply(IntakeEvent.GENERATION_STARTED, order_id=order_id)

    async def _open_stream(self, intake_id: str, result: VerificationResult) -> None:
        if result.status != IntakeStatus.GENERATING or self.proxy.get(intake_id) is not None:
            return
        try:
            await self.proxy.open(intake_id, self.proxy.new_sink())
        except Conflict as e:
            logger.info(f"Stream for intake {intake_id} not opened at payment time: {e.message}")

    # ------------------------------------------------------------------
    # Retry / status / webhook
    # ------------------------------------------------------------------

    async def retry_generation(self, intake_id: str) -> IntakeSession:
        """Start a fresh generation attempt for a failed intake without re-charging."""
        async with self.intakes.writer(intake_id) as writer:
            payment = writer.session.payment
            if writer.session.status != IntakeStatus.FAILED or payment is None:
                raise Conflict(f"Intake {intake_id} is {writer.session.status.value}; nothing to retry")
            await self.generation.trigger_generation(intake_id, payment.order_id, payment.payment_id)
            session = await writer.apply(IntakeEvent.GENERATION_RETRY)

        log_with_context(
            logger, logging.INFO, "Generation retry", intake_id=intake_id, attempt=session.generation_attempts
        )
        await self._open_stream(
            intake_id,
            VerificationResult(
                success=True, intake_id=intake_id, order_id=payment.order_id, status=session.status
            ),
        )
        return session

    async def payment_status(self, intake_id: str) -> dict[str, Any]:
        session = await self.intakes.load(intake_id)
        payment = session.payment
        return {
            "intake_id": intake_id,
            "status": session.status.value,
            "is_paid": payment is not None and payment.status == PaymentStatus.VERIFIED,
            "order_id": payment.order_id if payment else None,
            "payment_status": payment.status.value if payment else None,
            "superseded_orders": [o.order_id for o in session.payment_history],
        }

    async def handle_webhook(self, event: str, payment_entity: dict[str, Any]) -> dict[str, Any]:
        """
        Apply a provider webhook whose body signature was already verified.

        ``payment.captured`` / ``order.paid`` take the same idempotent unlock
        path as ``verify``; ``payment.failed`` releases the intake back to
        preview so the user can pay again.
        """
        order_id = payment_entity.get("order_id")
        payment_id = payment_entity.get("id")
        if not order_id or not payment_id:
            return {"handled": False, "reason": "missing order or payment id"}

        session = await self.intakes.store.get_by_order_id(order_id)
        if session is None:
            raise SessionNotFound(f"No intake for order {order_id}")

        if event in ("payment.captured", "order.paid"):
            result = await self._unlock(session.id, order_id, payment_id, signature=None)
            await self._open_stream(session.id, result)
            return {"handled": True, "status": result.status.value, "already_verified": result.already_verified}

        if event == "payment.failed":
            async with self.intakes.writer(session.id) as writer:
                payment = writer.session.payment
                if (
                    writer.session.status == IntakeStatus.PAYMENT_PENDING
                    and payment is not None
                    and payment.order_id == order_id
                    and payment.status == PaymentStatus.PENDING
                ):
                    await writer.apply(IntakeEvent.PAYMENT_FAILED, order_id=order_id, payment_id=payment_id)
                    log_with_context(
                        logger, logging.INFO, "Order failed at provider", intake_id=session.id, order_id=order_id
                    )
                    return {"handled": True, "status": writer.session.status.value}
            return {"handled": False, "reason": "order not pending"}

        logger.info(f"Unhandled Razorpay webhook event: {event}")
        return {"handled": False, "reason": f"unhandled event {event}"}
