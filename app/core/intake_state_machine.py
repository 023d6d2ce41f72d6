"""Intake state machine — legal transitions for a Decision Memo intake.

Flow:  created → answering → preview_ready → payment_pending → paid → generating → delivered

Rules are declarative data; ``transition`` is a pure function that returns an
updated copy of the session or raises ``TransitionRejected`` without touching
its input. Persistence and locking live in the intake service.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from app.core.errors import Conflict, TransitionRejected
from app.core.instant_preview import build_instant_preview
from app.core.schemas_intake import (
    TERMINAL_STATUSES,
    Discovery,
    DiscoveryType,
    IntakeEvent,
    IntakeSession,
    IntakeStatus,
    PaymentOrder,
    PaymentStatus,
    utcnow,
)

# =============================================================================
# Transition rules (declarative)
# =============================================================================


@dataclass(frozen=True)
class TransitionRule:
    from_status: IntakeStatus
    event: IntakeEvent
    to_status: IntakeStatus
    description: str


_NON_TERMINAL = [s for s in IntakeStatus if s not in TERMINAL_STATUSES]

TRANSITION_RULES: list[TransitionRule] = [
    TransitionRule(
        IntakeStatus.CREATED, IntakeEvent.FIRST_ANSWER, IntakeStatus.ANSWERING,
        "First answer recorded",
    ),
    TransitionRule(
        IntakeStatus.ANSWERING, IntakeEvent.ALL_REQUIRED_ANSWERED, IntakeStatus.PREVIEW_READY,
        "Every required question answered; instant preview computed",
    ),
    TransitionRule(
        IntakeStatus.PREVIEW_READY, IntakeEvent.PAYMENT_INITIATED, IntakeStatus.PAYMENT_PENDING,
        "Checkout order created",
    ),
    TransitionRule(
        IntakeStatus.PAYMENT_PENDING, IntakeEvent.PAYMENT_INITIATED, IntakeStatus.PAYMENT_PENDING,
        "New checkout order supersedes the pending one",
    ),
    TransitionRule(
        IntakeStatus.PAYMENT_PENDING, IntakeEvent.SIGNATURE_VALID, IntakeStatus.PAID,
        "Payment signature verified",
    ),
    TransitionRule(
        IntakeStatus.PAID, IntakeEvent.SIGNATURE_VALID, IntakeStatus.PAID,
        "Repeated verification of the same order (no-op)",
    ),
    TransitionRule(
        IntakeStatus.PAYMENT_PENDING, IntakeEvent.SIGNATURE_INVALID, IntakeStatus.PREVIEW_READY,
        "Signature mismatch; user may retry payment",
    ),
    TransitionRule(
        IntakeStatus.PAYMENT_PENDING, IntakeEvent.PAYMENT_FAILED, IntakeStatus.PREVIEW_READY,
        "Provider reported the payment as failed",
    ),
    TransitionRule(
        IntakeStatus.PAID, IntakeEvent.GENERATION_STARTED, IntakeStatus.GENERATING,
        "Backend generation triggered",
    ),
    TransitionRule(
        IntakeStatus.GENERATING, IntakeEvent.ARTIFACT_READY, IntakeStatus.DELIVERED,
        "Memo delivered",
    ),
    TransitionRule(
        IntakeStatus.GENERATING, IntakeEvent.BACKEND_ERROR, IntakeStatus.FAILED,
        "Generation failed upstream",
    ),
    TransitionRule(
        IntakeStatus.FAILED, IntakeEvent.GENERATION_RETRY, IntakeStatus.GENERATING,
        "Fresh generation attempt on an already verified payment",
    ),
] + [
    TransitionRule(status, IntakeEvent.INACTIVITY_TIMEOUT, IntakeStatus.EXPIRED, "Inactivity timeout")
    for status in _NON_TERMINAL
]

_RULES: dict[tuple[IntakeStatus, IntakeEvent], TransitionRule] = {
    (r.from_status, r.event): r for r in TRANSITION_RULES
}

ANSWERABLE_STATUSES = frozenset({IntakeStatus.CREATED, IntakeStatus.ANSWERING})
DISCOVERY_STATUSES = frozenset({IntakeStatus.ANSWERING, IntakeStatus.GENERATING})


def allowed_events(status: IntakeStatus) -> list[IntakeEvent]:
    """Events that are legal from ``status``."""
    return [r.event for r in TRANSITION_RULES if r.from_status == status]


def get_rule(status: IntakeStatus, event: IntakeEvent) -> Optional[TransitionRule]:
    return _RULES.get((status, event))


# =============================================================================
# Guards and effects
# =============================================================================


def _require_order(session: IntakeSession, event: IntakeEvent, order_id: Optional[str]) -> PaymentOrder:
    payment = session.payment
    if payment is None:
        raise TransitionRejected(session.status.value, event.value, "No payment attached to intake")
    if order_id is not None and payment.order_id != order_id:
        raise TransitionRejected(
            session.status.value, event.value, f"Order {order_id} is not the current order"
        )
    return payment


def _all_required_answered(session: IntakeSession, ctx: dict[str, Any]) -> None:
    required = ctx.get("required_questions") or []
    missing = [q for q in required if q not in session.answers]
    if missing:
        raise TransitionRejected(
            session.status.value,
            IntakeEvent.ALL_REQUIRED_ANSWERED.value,
            f"Unanswered required questions: {', '.join(missing)}",
        )
    session.preview = build_instant_preview(session.answers, session.discoveries, required)


def _payment_initiated(session: IntakeSession, ctx: dict[str, Any]) -> None:
    order: Optional[PaymentOrder] = ctx.get("order")
    if order is None or order.intake_id != session.id:
        raise TransitionRejected(
            session.status.value, IntakeEvent.PAYMENT_INITIATED.value, "Order does not belong to intake"
        )
    prior = session.payment
    if prior is not None:
        if prior.status == PaymentStatus.PENDING:
            prior.superseded_at = ctx["now"]
        session.payment_history.append(prior)
    session.payment = order


def _signature_valid(session: IntakeSession, ctx: dict[str, Any]) -> None:
    payment = _require_order(session, IntakeEvent.SIGNATURE_VALID, ctx.get("order_id"))
    if payment.status != PaymentStatus.PENDING:
        raise TransitionRejected(
            session.status.value,
            IntakeEvent.SIGNATURE_VALID.value,
            f"Order {payment.order_id} is {payment.status.value}, expected pending",
        )
    payment.status = PaymentStatus.VERIFIED
    payment.payment_id = ctx.get("payment_id")
    payment.signature = ctx.get("signature")
    payment.verified_at = ctx["now"]


def _payment_rejected(status: PaymentStatus) -> Callable[[IntakeSession, dict[str, Any]], None]:
    def effect(session: IntakeSession, ctx: dict[str, Any]) -> None:
        payment = _require_order(session, ctx["event"], ctx.get("order_id"))
        if payment.status != PaymentStatus.PENDING:
            raise TransitionRejected(
                session.status.value, ctx["event"].value, f"Order {payment.order_id} is not pending"
            )
        payment.status = status
        payment.payment_id = ctx.get("payment_id") or payment.payment_id
        payment.signature = ctx.get("signature") or payment.signature

    return effect


def _generation_started(session: IntakeSession, ctx: dict[str, Any]) -> None:
    # Compare-and-set: generation may only start from a verified order.
    payment = _require_order(session, IntakeEvent.GENERATION_STARTED, ctx.get("order_id"))
    if payment.status != PaymentStatus.VERIFIED:
        raise TransitionRejected(
            session.status.value, IntakeEvent.GENERATION_STARTED.value, "Payment is not verified"
        )
    session.generation_attempts += 1
    session.last_error = None


def _generation_retry(session: IntakeSession, ctx: dict[str, Any]) -> None:
    payment = session.payment
    if payment is None or payment.status != PaymentStatus.VERIFIED:
        raise TransitionRejected(
            session.status.value, IntakeEvent.GENERATION_RETRY.value, "Retry requires a verified payment"
        )
    session.generation_attempts += 1
    session.last_error = None


def _backend_error(session: IntakeSession, ctx: dict[str, Any]) -> None:
    session.last_error = ctx.get("error") or "Generation failed"


def _artifact_ready(session: IntakeSession, ctx: dict[str, Any]) -> None:
    session.last_error = None


_EFFECTS: dict[IntakeEvent, Callable[[IntakeSession, dict[str, Any]], None]] = {
    IntakeEvent.ALL_REQUIRED_ANSWERED: _all_required_answered,
    IntakeEvent.PAYMENT_INITIATED: _payment_initiated,
    IntakeEvent.SIGNATURE_VALID: _signature_valid,
    IntakeEvent.SIGNATURE_INVALID: _payment_rejected(PaymentStatus.SIGNATURE_INVALID),
    IntakeEvent.PAYMENT_FAILED: _payment_rejected(PaymentStatus.PROVIDER_FAILED),
    IntakeEvent.GENERATION_STARTED: _generation_started,
    IntakeEvent.GENERATION_RETRY: _generation_retry,
    IntakeEvent.BACKEND_ERROR: _backend_error,
    IntakeEvent.ARTIFACT_READY: _artifact_ready,
}


# =============================================================================
# Transition function
# =============================================================================


def _is_repeat_verification(session: IntakeSession, event: IntakeEvent, ctx: dict[str, Any]) -> bool:
    if session.status != IntakeStatus.PAID or event != IntakeEvent.SIGNATURE_VALID:
        return False
    payment = session.payment
    return (
        payment is not None
        and payment.status == PaymentStatus.VERIFIED
        and payment.order_id == ctx.get("order_id")
    )


def transition(
    session: IntakeSession,
    event: IntakeEvent | str,
    *,
    now: Optional[datetime] = None,
    **context: Any,
) -> IntakeSession:
    """Apply ``event`` to ``session`` and return the updated copy.

    Context keywords used by specific events: ``required_questions``,
    ``order``, ``order_id``, ``payment_id``, ``signature``, ``error``.

    Raises:
        TransitionRejected: if the event is not legal from the current status
            or its guard fails. The input session is never mutated.
    """
    event = IntakeEvent(event)
    rule = _RULES.get((session.status, event))
    if rule is None:
        raise TransitionRejected(session.status.value, event.value)

    ctx = dict(context, now=now or utcnow(), event=event)

    if _is_repeat_verification(session, event, ctx):
        return session.model_copy(deep=True)
    if session.status == IntakeStatus.PAID and event == IntakeEvent.SIGNATURE_VALID:
        raise TransitionRejected(
            session.status.value, event.value, "Intake already paid with a different order"
        )

    updated = session.model_copy(deep=True)
    effect = _EFFECTS.get(event)
    if effect is not None:
        effect(updated, ctx)
    updated.status = rule.to_status
    updated.last_transition_at = ctx["now"]
    return updated


# =============================================================================
# Answers and discoveries
# =============================================================================


def record_answer(
    session: IntakeSession,
    question_id: str,
    answer: Any,
    *,
    now: Optional[datetime] = None,
) -> IntakeSession:
    """Append one answer, moving ``created`` to ``answering`` on the first one."""
    if session.status not in ANSWERABLE_STATUSES:
        raise TransitionRejected(
            session.status.value, "answer", f"Answers are closed in status '{session.status.value}'"
        )
    if question_id in session.answers:
        raise Conflict(f"Question {question_id} already answered")

    now = now or utcnow()
    updated = session
    if session.status == IntakeStatus.CREATED:
        updated = transition(session, IntakeEvent.FIRST_ANSWER, now=now)
    else:
        updated = session.model_copy(deep=True)
    updated.answers[question_id] = answer
    updated.last_transition_at = now
    return updated


def append_discoveries(
    session: IntakeSession,
    discoveries: list[tuple[str, DiscoveryType, dict[str, Any]]],
    *,
    now: Optional[datetime] = None,
) -> tuple[IntakeSession, int]:
    """Append new discoveries, skipping ids already recorded.

    Returns the updated copy and the number actually added.
    """
    if session.status not in DISCOVERY_STATUSES:
        raise TransitionRejected(
            session.status.value,
            "discovery",
            f"Discoveries are frozen in status '{session.status.value}'",
        )

    now = now or utcnow()
    updated = session.model_copy(deep=True)
    known = {d.id for d in updated.discoveries}
    added = 0
    for discovery_id, discovery_type, payload in discoveries:
        if discovery_id in known:
            continue
        updated.event_sequence += 1
        updated.discoveries.append(
            Discovery(
                id=discovery_id,
                type=discovery_type,
                sequence=updated.event_sequence,
                payload=payload,
                discovered_at=now,
            )
        )
        known.add(discovery_id)
        added += 1
    return updated, added


def is_inactive(session: IntakeSession, timeout_seconds: int, now: Optional[datetime] = None) -> bool:
    """True when a non-terminal session has been idle longer than the timeout."""
    if session.is_terminal:
        return False
    now = now or utcnow()
    return now - session.last_transition_at > timedelta(seconds=timeout_seconds)
