"""Fake generation backend and payment provider for Decision Memo tests."""

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from app.core.errors import UpstreamUnavailable
from app.core.payment_signature import compute_signature
from app.core.schemas_intake import (
    IntakeSession,
    IntakeStatus,
    PaymentOrder,
    PaymentStatus,
)
from app.core.sse import format_event

REQUIRED_QUESTIONS = [f"q{i}" for i in range(1, 11)]

SAMPLE_ANSWERS: Dict[str, Any] = {
    "q1": "Sell a controlling stake in the family business",
    "q2": "12-18 months",
    "q3": "United Kingdom",
    "q4": "UAE, Portugal",
    "q5": "Approximately $40M liquid after sale",
    "q6": "Buyer deadline at quarter end",
    "q7": "Preserve family control of the holding company",
    "q8": "Three advisors with no single lead",
    "q9": "",
    "q10": "Minimize exit tax on relocation",
}

KEY_SECRET = "rzp-test-secret"


def sign(order_id: str, payment_id: str, secret: str = KEY_SECRET) -> str:
    return compute_signature(order_id, payment_id, secret)


def sse(event: str, data: Dict[str, Any], event_id: Optional[str] = None) -> bytes:
    return format_event(event, data, event_id=event_id)


class FakeGenerationClient:
    """In-memory stand-in for ``GenerationClient``.

    Stream behaviour is scripted: ``chunks`` are yielded in order, then the
    stream either ends, raises ``stream_error``, or blocks on ``hold_open``
    and yields ``tail_chunks`` once it is set.
    """

    def __init__(
        self,
        chunks: Optional[List[bytes]] = None,
        answer_discoveries: Optional[Dict[str, List[Dict[str, Any]]]] = None,
        artifact: Optional[Dict[str, Any]] = None,
    ):
        self.chunks: List[bytes] = list(chunks or [])
        self.answer_discoveries = answer_discoveries or {}
        self.artifact = artifact or {"title": "Decision Memo", "sections": ["exposures", "sequencing"]}
        self.artifact_ready = False
        self.fail_answers = False
        self.fail_trigger = False
        self.connect_error: Optional[Exception] = None
        self.stream_error: Optional[Exception] = None
        self.hold_open: Optional[asyncio.Event] = None
        self.tail_chunks: List[bytes] = []
        self.chunk_delay = 0.0

        self.answer_calls: List[tuple] = []
        self.trigger_calls: List[tuple] = []
        self.stream_calls: List[tuple] = []
        self.streams_closed = 0

    async def submit_answer(self, intake_id: str, question_id: str, answer: Any) -> List[Dict[str, Any]]:
        self.answer_calls.append((intake_id, question_id, answer))
        if self.fail_answers:
            raise UpstreamUnavailable("Generation backend rejected the answer")
        return list(self.answer_discoveries.get(question_id, []))

    async def trigger_generation(self, intake_id: str, order_id: str, payment_id: Optional[str]) -> None:
        if self.fail_trigger:
            raise UpstreamUnavailable("Generation backend unavailable")
        self.trigger_calls.append((intake_id, order_id, payment_id))

    @asynccontextmanager
    async def stream_events(self, intake_id: str, last_event_id: Optional[str] = None):
        self.stream_calls.append((intake_id, last_event_id))
        if self.connect_error is not None:
            raise self.connect_error
        try:
            yield self._chunks()
        finally:
            self.streams_closed += 1

    async def _chunks(self):
        for chunk in self.chunks:
            if self.chunk_delay:
                await asyncio.sleep(self.chunk_delay)
            yield chunk
        if self.stream_error is not None:
            raise self.stream_error
        if self.hold_open is not None:
            await self.hold_open.wait()
            for chunk in self.tail_chunks:
                yield chunk

    async def artifact_exists(self, intake_id: str) -> bool:
        return self.artifact_ready

    async def fetch_artifact(self, intake_id: str) -> Dict[str, Any]:
        return dict(self.artifact)


class FakeRazorpayClient:
    """In-memory stand-in for ``RazorpayClient``."""

    def __init__(self):
        self.orders: List[Dict[str, Any]] = []
        self.fail = False

    async def create_order(self, amount: int, currency: str, receipt: str, notes: Optional[dict] = None) -> dict:
        if self.fail:
            raise UpstreamUnavailable("Payment provider unavailable")
        order = {
            "id": f"order_{len(self.orders) + 1}",
            "amount": amount,
            "currency": currency,
            "receipt": receipt,
            "notes": notes or {},
        }
        self.orders.append(order)
        return order


def make_session(
    status: IntakeStatus = IntakeStatus.CREATED,
    intake_id: str = "intake-1",
    user_id: str = "user-1",
    order_status: PaymentStatus = PaymentStatus.PENDING,
    **overrides: Any,
) -> IntakeSession:
    """Build an internally consistent intake at ``status``."""
    data: Dict[str, Any] = {"id": intake_id, "user_id": user_id, "status": status}

    if status not in (IntakeStatus.CREATED, IntakeStatus.ANSWERING):
        data["answers"] = dict(SAMPLE_ANSWERS)
        data["preview"] = {"questions_answered": len(SAMPLE_ANSWERS)}

    if status == IntakeStatus.PAYMENT_PENDING:
        data["payment"] = PaymentOrder(
            order_id="order_1", intake_id=intake_id, amount=500_000, currency="USD", status=order_status
        )
    elif status in (IntakeStatus.PAID, IntakeStatus.GENERATING, IntakeStatus.DELIVERED, IntakeStatus.FAILED):
        data["payment"] = PaymentOrder(
            order_id="order_1",
            intake_id=intake_id,
            amount=500_000,
            currency="USD",
            status=PaymentStatus.VERIFIED,
            payment_id="pay_1",
            signature=sign("order_1", "pay_1"),
        )
        if status != IntakeStatus.PAID:
            data["generation_attempts"] = 1

    data.update(overrides)
    return IntakeSession(**data)
