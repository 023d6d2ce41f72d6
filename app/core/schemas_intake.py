"""Pydantic schemas for Decision Memo intakes, payments and access tokens."""

from datetime import UTC, datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(UTC)


# ============================================================================
# Enums
# ============================================================================


class IntakeStatus(str, Enum):
    """Lifecycle status of an intake session."""
    CREATED = "created"
    ANSWERING = "answering"
    PREVIEW_READY = "preview_ready"
    PAYMENT_PENDING = "payment_pending"
    PAID = "paid"
    GENERATING = "generating"
    DELIVERED = "delivered"
    FAILED = "failed"
    EXPIRED = "expired"


TERMINAL_STATUSES = frozenset({IntakeStatus.DELIVERED, IntakeStatus.FAILED, IntakeStatus.EXPIRED})


class IntakeEvent(str, Enum):
    """Events accepted by the intake state machine."""
    FIRST_ANSWER = "first_answer"
    ALL_REQUIRED_ANSWERED = "all_required_answered"
    PAYMENT_INITIATED = "payment_initiated"
    SIGNATURE_VALID = "signature_valid"
    SIGNATURE_INVALID = "signature_invalid"
    PAYMENT_FAILED = "payment_failed"
    GENERATION_STARTED = "generation_started"
    ARTIFACT_READY = "artifact_ready"
    BACKEND_ERROR = "backend_error"
    GENERATION_RETRY = "generation_retry"
    INACTIVITY_TIMEOUT = "inactivity_timeout"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    SIGNATURE_INVALID = "signature_invalid"
    PROVIDER_FAILED = "provider_failed"


class PaymentTier(str, Enum):
    SINGLE = "single"
    ANNUAL = "annual"


class DiscoveryType(str, Enum):
    OPPORTUNITY = "opportunity"
    MISTAKE = "mistake"
    INTELLIGENCE_MATCH = "intelligence_match"


class StreamEventType(str, Enum):
    """Event names carried on the generation stream."""
    OPPORTUNITY_FOUND = "opportunity_found"
    MISTAKE_IDENTIFIED = "mistake_identified"
    INTELLIGENCE_MATCH = "intelligence_match"
    MEMO_GENERATING = "memo_generating"
    MEMO_READY = "memo_ready"
    ERROR = "error"


# Stream event name -> persisted discovery type
DISCOVERY_EVENT_TYPES: dict[str, DiscoveryType] = {
    StreamEventType.OPPORTUNITY_FOUND.value: DiscoveryType.OPPORTUNITY,
    StreamEventType.MISTAKE_IDENTIFIED.value: DiscoveryType.MISTAKE,
    StreamEventType.INTELLIGENCE_MATCH.value: DiscoveryType.INTELLIGENCE_MATCH,
}


class PersistenceMode(str, Enum):
    EPHEMERAL = "ephemeral"
    REMEMBERED = "remembered"


# ============================================================================
# Domain records
# ============================================================================


class Discovery(BaseModel):
    """A typed finding surfaced during intake or generation."""
    id: str
    type: DiscoveryType
    sequence: int = 0
    payload: dict[str, Any] = Field(default_factory=dict)
    discovered_at: datetime = Field(default_factory=utcnow)


class PaymentOrder(BaseModel):
    """Provider order attached to an intake."""
    order_id: str
    intake_id: str
    amount: int
    currency: str
    tier: PaymentTier = PaymentTier.SINGLE
    status: PaymentStatus = PaymentStatus.PENDING
    payment_id: Optional[str] = None
    signature: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    verified_at: Optional[datetime] = None
    superseded_at: Optional[datetime] = None


class IntakeSession(BaseModel):
    """Durable record of one intake."""
    id: str
    user_id: str
    contact: Optional[str] = None
    status: IntakeStatus = IntakeStatus.CREATED
    answers: dict[str, Any] = Field(default_factory=dict)
    discoveries: list[Discovery] = Field(default_factory=list)
    event_sequence: int = 0
    payment: Optional[PaymentOrder] = None
    payment_history: list[PaymentOrder] = Field(default_factory=list)
    preview: Optional[dict[str, Any]] = None
    generation_attempts: int = 0
    last_error: Optional[str] = None
    revoked_token_ids: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    last_transition_at: datetime = Field(default_factory=utcnow)
    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class AccessTokenClaims(BaseModel):
    """Decoded contents of a scoped access token."""
    intake_id: str
    issued_at: datetime
    expires_at: Optional[datetime] = None
    persistence_mode: PersistenceMode
    token_id: str
    context_id: Optional[str] = None


class VerificationResult(BaseModel):
    """Outcome of a payment verification."""
    success: bool
    intake_id: str
    order_id: str
    status: IntakeStatus
    already_verified: bool = False


# ============================================================================
# API request / response models
# ============================================================================


class StartIntakeRequest(BaseModel):
    contact: Optional[str] = Field(default=None, description="Optional email or phone")


class StartIntakeResponse(BaseModel):
    intake_id: str


class SubmitAnswerRequest(BaseModel):
    intake_id: str
    question_id: str = Field(..., min_length=1)
    answer: Any


class SubmitAnswerResponse(BaseModel):
    accepted: bool = True
    discoveries_triggered: int = 0
    status: IntakeStatus


class SubmitQuestionnaireRequest(BaseModel):
    intake_id: str
    answers: dict[str, Any]


class InstantPreviewResponse(BaseModel):
    intake_id: str
    status: IntakeStatus
    preview: dict[str, Any]


class PaymentInitiateRequest(BaseModel):
    intake_id: str
    tier: PaymentTier = PaymentTier.SINGLE


class PaymentInitiateResponse(BaseModel):
    order_id: str
    amount: int
    currency: str
    key: Optional[str] = None
    tier: PaymentTier


class PaymentVerifyRequest(BaseModel):
    intake_id: str
    order_id: str
    payment_id: str
    signature: str


class IssueTokenRequest(BaseModel):
    remember_device: bool = False


class IssueTokenResponse(BaseModel):
    token: str
    persistence_mode: PersistenceMode
    expires_at: Optional[datetime] = None


class ReadinessResponse(BaseModel):
    intake_id: str
    ready: bool
