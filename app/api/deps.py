"""Wiring for the Decision Memo components shared by the routers."""

from dataclasses import dataclass
from functools import lru_cache

from app.core.access_tokens import AccessTokenManager
from app.core.completion_reconciler import CompletionReconciler
from app.core.config import Settings, get_settings
from app.core.event_stream_proxy import EventStreamProxy
from app.core.intake_service import IntakeService
from app.core.payment_gate import PaymentGate
from app.core.schemas_intake import PaymentTier
from app.db.intake_sessions import IntakeSessionStore, build_store
from app.services.generation_client import GenerationClient
from app.services.razorpay_client import RazorpayClient


@dataclass
class MemoServices:
    settings: Settings
    store: IntakeSessionStore
    generation: GenerationClient
    intakes: IntakeService
    proxy: EventStreamProxy
    payments: PaymentGate
    reconciler: CompletionReconciler
    tokens: AccessTokenManager


def build_services(
    settings: Settings,
    store: IntakeSessionStore | None = None,
    generation: GenerationClient | None = None,
    provider: RazorpayClient | None = None,
) -> MemoServices:
    """Assemble the component graph; tests pass fakes for the outer edges."""
    store = store or build_store(settings.SESSION_BACKEND, settings.INTAKE_TABLE)
    generation = generation or GenerationClient(
        settings.GENERATION_API_BASE_URL,
        api_key=settings.GENERATION_API_KEY,
        connect_timeout=settings.UPSTREAM_CONNECT_TIMEOUT_SECONDS,
        request_timeout=settings.BACKEND_REQUEST_TIMEOUT_SECONDS,
        probe_timeout=settings.COMPLETION_CHECK_TIMEOUT_SECONDS,
        stream_read_timeout=settings.GENERATION_STREAM_TIMEOUT_SECONDS,
    )
    provider = provider or RazorpayClient(
        settings.RAZORPAY_KEY_ID, settings.RAZORPAY_KEY_SECRET, settings.RAZORPAY_API_URL
    )

    intakes = IntakeService(
        store,
        generation,
        required_questions=settings.REQUIRED_QUESTION_IDS,
        inactivity_timeout_seconds=settings.INTAKE_INACTIVITY_TIMEOUT_SECONDS,
    )
    proxy = EventStreamProxy(
        intakes,
        generation,
        timeout_seconds=settings.GENERATION_STREAM_TIMEOUT_SECONDS,
        buffer_max_chunks=settings.STREAM_BUFFER_MAX_CHUNKS,
    )
    payments = PaymentGate(
        intakes,
        provider,
        generation,
        proxy,
        key_secret=settings.RAZORPAY_KEY_SECRET,
        prices={
            PaymentTier.SINGLE: settings.MEMO_PRICE_SINGLE,
            PaymentTier.ANNUAL: settings.MEMO_PRICE_ANNUAL,
        },
        currency=settings.MEMO_CURRENCY,
    )
    return MemoServices(
        settings=settings,
        store=store,
        generation=generation,
        intakes=intakes,
        proxy=proxy,
        payments=payments,
        reconciler=CompletionReconciler(store, generation),
        tokens=AccessTokenManager(settings.ACCESS_TOKEN_SECRET),
    )


@lru_cache
def get_memo_services() -> MemoServices:
    """Process-wide services (overridden in tests via ``app.dependency_overrides``)."""
    return build_services(get_settings())
