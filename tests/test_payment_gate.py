"""Tests for the payment gate (checkout, verification, at-most-once generation)."""

import asyncio
import logging

import pytest

from app.core.errors import Conflict, InvalidSignature, SessionNotFound, UpstreamUnavailable
from app.core.event_stream_proxy import EventStreamProxy
from app.core.intake_service import IntakeService
from app.core.payment_gate import PaymentGate
from app.core.schemas_intake import IntakeStatus, PaymentStatus, PaymentTier
from app.db.intake_sessions import InMemoryIntakeSessionStore
from tests.fakes.fake_generation import (
    KEY_SECRET,
    REQUIRED_QUESTIONS,
    FakeGenerationClient,
    FakeRazorpayClient,
    make_session,
    sign,
    sse,
)

PRICES = {PaymentTier.SINGLE: 500_000, PaymentTier.ANNUAL: 2_500_000}


@pytest.fixture
def store():
    return InMemoryIntakeSessionStore()


@pytest.fixture
def generation():
    client = FakeGenerationClient()
    # Keep relays parked so tests control when generation ends
    client.hold_open = asyncio.Event()
    return client


@pytest.fixture
def provider():
    return FakeRazorpayClient()


@pytest.fixture
def proxy(store, generation):
    intakes = IntakeService(store, generation, REQUIRED_QUESTIONS, inactivity_timeout_seconds=3600)
    return EventStreamProxy(intakes, generation, timeout_seconds=5)


@pytest.fixture
def gate(proxy, provider, generation):
    return PaymentGate(proxy.intakes, provider, generation, proxy, key_secret=KEY_SECRET, prices=PRICES)


async def _stop_streams(proxy: EventStreamProxy):
    await proxy.close("intake-1")


class TestInitiate:
    @pytest.mark.asyncio
    async def test_creates_order_at_preview(self, gate, store, provider):
        await store.create(make_session(IntakeStatus.PREVIEW_READY))

        order = await gate.initiate("intake-1")

        assert order.order_id == "order_1"
        assert order.amount == 500_000
        assert provider.orders[0]["notes"]["intake_id"] == "intake-1"
        assert (await store.get("intake-1")).status == IntakeStatus.PAYMENT_PENDING

    @pytest.mark.asyncio
    async def test_annual_tier_price(self, gate, store):
        await store.create(make_session(IntakeStatus.PREVIEW_READY))

        order = await gate.initiate("intake-1", PaymentTier.ANNUAL)

        assert order.amount == 2_500_000
        assert order.tier == PaymentTier.ANNUAL

    @pytest.mark.asyncio
    async def test_second_initiate_supersedes(self, gate, store):
        await store.create(make_session(IntakeStatus.PREVIEW_READY))

        await gate.initiate("intake-1")
        second = await gate.initiate("intake-1")

        session = await store.get("intake-1")
        assert session.payment.order_id == second.order_id == "order_2"
        assert [o.order_id for o in session.payment_history] == ["order_1"]

    @pytest.mark.asyncio
    async def test_already_paid_conflicts(self, gate, store, provider):
        await store.create(make_session(IntakeStatus.GENERATING))

        with pytest.raises(Conflict, match="already paid"):
            await gate.initiate("intake-1")
        assert provider.orders == []

    @pytest.mark.asyncio
    async def test_requires_preview(self, gate, store):
        await store.create(make_session(IntakeStatus.ANSWERING))

        with pytest.raises(Conflict):
            await gate.initiate("intake-1")

    @pytest.mark.asyncio
    async def test_provider_failure_leaves_state(self, gate, store, provider):
        await store.create(make_session(IntakeStatus.PREVIEW_READY))
        provider.fail = True

        with pytest.raises(UpstreamUnavailable):
            await gate.initiate("intake-1")
        assert (await store.get("intake-1")).status == IntakeStatus.PREVIEW_READY


class TestVerify:
    @pytest.mark.asyncio
    async def test_valid_signature_starts_generation_and_stream(self, gate, store, generation, proxy):
        await store.create(make_session(IntakeStatus.PAYMENT_PENDING))

        result = await gate.verify("intake-1", "order_1", "pay_1", sign("order_1", "pay_1"))

        assert result.success
        assert result.status == IntakeStatus.GENERATING
        assert not result.already_verified
        assert generation.trigger_calls == [("intake-1", "order_1", "pay_1")]
        session = await store.get("intake-1")
        assert session.payment.status == PaymentStatus.VERIFIED
        assert session.generation_attempts == 1
        assert proxy.get("intake-1") is not None
        await _stop_streams(proxy)

    @pytest.mark.asyncio
    async def test_duplicate_verify_is_idempotent(self, gate, store, generation, proxy):
        await store.create(make_session(IntakeStatus.PAYMENT_PENDING))
        signature = sign("order_1", "pay_1")

        first = await gate.verify("intake-1", "order_1", "pay_1", signature)
        second = await gate.verify("intake-1", "order_1", "pay_1", signature)

        assert first.status == second.status == IntakeStatus.GENERATING
        assert second.already_verified
        assert len(generation.trigger_calls) == 1
        assert len(generation.stream_calls) <= 1
        await _stop_streams(proxy)

    @pytest.mark.asyncio
    async def test_concurrent_verifies_trigger_once(self, gate, store, generation, proxy):
        await store.create(make_session(IntakeStatus.PAYMENT_PENDING))
        signature = sign("order_1", "pay_1")

        results = await asyncio.gather(
            *(gate.verify("intake-1", "order_1", "pay_1", signature) for _ in range(5))
        )

        assert len(generation.trigger_calls) == 1
        assert sum(not r.already_verified for r in results) == 1
        await _stop_streams(proxy)

    @pytest.mark.asyncio
    async def test_forged_signature_returns_to_preview(self, gate, store, generation):
        await store.create(make_session(IntakeStatus.PAYMENT_PENDING))

        with pytest.raises(InvalidSignature):
            await gate.verify("intake-1", "order_1", "pay_1", "forged")

        session = await store.get("intake-1")
        assert session.status == IntakeStatus.PREVIEW_READY
        assert session.payment.status == PaymentStatus.SIGNATURE_INVALID
        assert generation.trigger_calls == []

    @pytest.mark.asyncio
    async def test_repeated_forgery_is_rejected_every_time(self, gate, store, generation):
        await store.create(make_session(IntakeStatus.PAYMENT_PENDING))

        for _ in range(3):
            with pytest.raises(InvalidSignature):
                await gate.verify("intake-1", "order_1", "pay_1", "forged")

        assert (await store.get("intake-1")).status == IntakeStatus.PREVIEW_READY
        assert generation.trigger_calls == []

    @pytest.mark.asyncio
    async def test_superseded_order_cannot_unlock(self, gate, store, generation, caplog):
        await store.create(make_session(IntakeStatus.PREVIEW_READY))
        await gate.initiate("intake-1")
        await gate.initiate("intake-1")

        with caplog.at_level(logging.ERROR, logger="app.core.payment_gate"):
            with pytest.raises(Conflict, match="superseded"):
                await gate.verify("intake-1", "order_1", "pay_1", sign("order_1", "pay_1"))

        assert generation.trigger_calls == []
        (record,) = [r for r in caplog.records if r.name == "app.core.payment_gate" and r.levelno == logging.ERROR]
        assert record.intake_id == "intake-1"
        assert record.extra_data["order_id"] == "order_1"
        assert record.extra_data["current_order_id"] == "order_2"

    @pytest.mark.asyncio
    async def test_trigger_failure_keeps_payment_and_retries_on_next_verify(self, gate, store, generation, proxy):
        await store.create(make_session(IntakeStatus.PAYMENT_PENDING))
        signature = sign("order_1", "pay_1")
        generation.fail_trigger = True

        with pytest.raises(UpstreamUnavailable):
            await gate.verify("intake-1", "order_1", "pay_1", signature)
        session = await store.get("intake-1")
        assert session.status == IntakeStatus.PAID
        assert session.payment.status == PaymentStatus.VERIFIED

        generation.fail_trigger = False
        result = await gate.verify("intake-1", "order_1", "pay_1", signature)

        assert result.already_verified
        assert result.status == IntakeStatus.GENERATING
        assert len(generation.trigger_calls) == 1
        await _stop_streams(proxy)

    @pytest.mark.asyncio
    async def test_gateway_not_configured(self, proxy, provider, generation, store):
        gate = PaymentGate(proxy.intakes, provider, generation, proxy, key_secret=None, prices=PRICES)
        await store.create(make_session(IntakeStatus.PAYMENT_PENDING))

        with pytest.raises(UpstreamUnavailable):
            await gate.verify("intake-1", "order_1", "pay_1", sign("order_1", "pay_1"))


class TestPaidIntakeLifecycle:
    @pytest.mark.asyncio
    async def test_preview_to_delivered(self, gate, store, generation, proxy):
        await store.create(make_session(IntakeStatus.PREVIEW_READY))
        generation.chunks = [sse("opportunity_found", {"id": "o1"})]
        generation.tail_chunks = [sse("memo_ready", {"memo_id": "m1"})]

        order = await gate.initiate("intake-1")
        await gate.verify("intake-1", order.order_id, "pay_1", sign(order.order_id, "pay_1"))
        handle = await proxy.attach_or_open("intake-1")
        generation.hold_open.set()
        chunks = [chunk async for chunk in handle.sink]

        assert b"memo_ready" in chunks[-1]
        session = await store.get("intake-1")
        assert session.status == IntakeStatus.DELIVERED
        assert [d.id for d in session.discoveries] == ["o1"]


class TestRetryAndStatus:
    @pytest.mark.asyncio
    async def test_retry_failed_generation_without_new_payment(self, gate, store, generation, proxy, provider):
        await store.create(make_session(IntakeStatus.FAILED, last_error="boom"))

        session = await gate.retry_generation("intake-1")

        assert session.status == IntakeStatus.GENERATING
        assert session.generation_attempts == 2
        assert generation.trigger_calls == [("intake-1", "order_1", "pay_1")]
        assert provider.orders == []
        await _stop_streams(proxy)

    @pytest.mark.asyncio
    async def test_retry_requires_failed(self, gate, store):
        await store.create(make_session(IntakeStatus.DELIVERED))

        with pytest.raises(Conflict):
            await gate.retry_generation("intake-1")

    @pytest.mark.asyncio
    async def test_payment_status(self, gate, store):
        await store.create(make_session(IntakeStatus.PREVIEW_READY))
        await gate.initiate("intake-1")

        status = await gate.payment_status("intake-1")

        assert status["status"] == "payment_pending"
        assert status["order_id"] == "order_1"
        assert status["payment_status"] == "pending"
        assert status["is_paid"] is False


class TestWebhook:
    @pytest.mark.asyncio
    async def test_captured_unlocks_like_verify(self, gate, store, generation, proxy):
        await store.create(make_session(IntakeStatus.PAYMENT_PENDING))

        result = await gate.handle_webhook("payment.captured", {"id": "pay_1", "order_id": "order_1"})
        verify = await gate.verify("intake-1", "order_1", "pay_1", sign("order_1", "pay_1"))

        assert result["handled"] and result["status"] == "generating"
        assert verify.already_verified
        assert len(generation.trigger_calls) == 1
        await _stop_streams(proxy)

    @pytest.mark.asyncio
    async def test_failed_payment_returns_to_preview(self, gate, store):
        await store.create(make_session(IntakeStatus.PAYMENT_PENDING))

        result = await gate.handle_webhook("payment.failed", {"id": "pay_1", "order_id": "order_1"})

        assert result["handled"]
        session = await store.get("intake-1")
        assert session.status == IntakeStatus.PREVIEW_READY
        assert session.payment.status == PaymentStatus.PROVIDER_FAILED

    @pytest.mark.asyncio
    async def test_capture_on_superseded_order_is_flagged(self, gate, store, generation, caplog):
        await store.create(make_session(IntakeStatus.PREVIEW_READY))
        await gate.initiate("intake-1")
        await gate.initiate("intake-1")

        with caplog.at_level(logging.ERROR, logger="app.core.payment_gate"):
            with pytest.raises(Conflict):
                await gate.handle_webhook("payment.captured", {"id": "pay_9", "order_id": "order_1"})

        assert any(
            r.levelno == logging.ERROR and getattr(r, "extra_data", {}).get("payment_id") == "pay_9" for r in caplog.records
        )
        session = await store.get("intake-1")
        assert session.status == IntakeStatus.PAYMENT_PENDING
        assert session.payment.order_id == "order_2"
        assert generation.trigger_calls == []

    @pytest.mark.asyncio
    async def test_unknown_order(self, gate):
        with pytest.raises(SessionNotFound):
            await gate.handle_webhook("payment.captured", {"id": "pay_1", "order_id": "order_x"})

    @pytest.mark.asyncio
    async def test_unhandled_event(self, gate, store):
        await store.create(make_session(IntakeStatus.PAYMENT_PENDING))

        result = await gate.handle_webhook("refund.created", {"id": "pay_1", "order_id": "order_1"})

        assert result["handled"] is False
