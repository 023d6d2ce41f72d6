"""Intake service — the single writer for Decision Memo intake sessions.

Every mutation runs under the per-intake lock: load, lazily expire idle
sessions, apply a state-machine transition, compare-and-set persist.
"""

import hashlib
import logging
import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any, Optional
from uuid import uuid4

from app.core.errors import Conflict, SessionExpired, SessionNotFound, UpstreamUnavailable
from app.core.intake_state_machine import append_discoveries, is_inactive, record_answer, transition
from app.core.logging import get_logger, log_with_context
from app.core.schemas_intake import (
    DISCOVERY_EVENT_TYPES,
    DiscoveryType,
    IntakeEvent,
    IntakeSession,
    IntakeStatus,
    utcnow,
)
from app.db.intake_sessions import IntakeSessionStore
from app.services.generation_client import GenerationClient

logger = get_logger(__name__)

DiscoveryTuple = tuple[str, DiscoveryType, dict[str, Any]]


def discovery_from_payload(
    kind: str, payload: Any, event_id: Optional[str] = None
) -> Optional[DiscoveryTuple]:
    """Normalize a backend discovery (answer response or stream event).

    ``kind`` may be a stream event name (``opportunity_found``) or a bare
    discovery type (``opportunity``). Returns None for non-discovery kinds.
    The id is the explicit one when present, otherwise a content hash so
    re-delivery of the same finding is detected.
    """
    discovery_type = DISCOVERY_EVENT_TYPES.get(kind)
    if discovery_type is None:
        try:
            discovery_type = DiscoveryType(kind)
        except ValueError:
            return None

    body = payload if isinstance(payload, dict) else {"value": payload}
    discovery_id = body.get("id") or event_id
    if not discovery_id:
        canonical = json.dumps(body, sort_keys=True, default=str)
        digest = hashlib.sha256(f"{discovery_type.value}:{canonical}".encode()).hexdigest()
        discovery_id = f"{discovery_type.value}-{digest[:16]}"
    return str(discovery_id), discovery_type, body


class IntakeWriter:
    """Handle for a locked intake; each ``apply`` persists immediately."""

    def __init__(self, store: IntakeSessionStore, session: IntakeSession):
        self._store = store
        self.session = session

    async def apply(self, event: IntakeEvent, **context: Any) -> IntakeSession:
        updated = transition(self.session, event, **context)
        return await self.save(updated)

    async def save(self, session: IntakeSession) -> IntakeSession:
        self.session = await self._store.save(session)
        return self.session


class IntakeService:
    """Start, answer, and transition intake sessions."""

    def __init__(
        self,
        store: IntakeSessionStore,
        generation: GenerationClient,
        required_questions: list[str],
        inactivity_timeout_seconds: int,
    ):
        self.store = store
        self.generation = generation
        self.required_questions = list(required_questions)
        self.inactivity_timeout_seconds = inactivity_timeout_seconds

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, intake_id: str) -> IntakeSession:
        """Load without side effects."""
        session = await self.store.get(intake_id)
        if session is None:
            raise SessionNotFound(f"Intake {intake_id} not found")
        return session

    async def load(self, intake_id: str) -> IntakeSession:
        """Load, recording expiry first if the session went idle."""
        session = await self.get(intake_id)
        if is_inactive(session, self.inactivity_timeout_seconds):
            async with self.store.lock(intake_id):
                session = await self.get(intake_id)
                if is_inactive(session, self.inactivity_timeout_seconds):
                    session = await self._expire(session)
        return session

    async def _expire(self, session: IntakeSession) -> IntakeSession:
        expired = transition(session, IntakeEvent.INACTIVITY_TIMEOUT)
        log_with_context(
            logger, logging.INFO, "Intake expired after inactivity", intake_id=session.id, was=session.status.value
        )
        return await self.store.save(expired)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def writer(self, intake_id: str) -> AsyncIterator[IntakeWriter]:
        """Acquire the intake's single-writer lock.

        Raises:
            SessionNotFound: unknown intake
            SessionExpired: intake is (or just became) expired
        """
        async with self.store.lock(intake_id):
            session = await self.get(intake_id)
            if session.status == IntakeStatus.EXPIRED:
                raise SessionExpired(f"Intake {intake_id} has expired")
            if is_inactive(session, self.inactivity_timeout_seconds):
                await self._expire(session)
                raise SessionExpired(f"Intake {intake_id} has expired")
            yield IntakeWriter(self.store, session)

    async def apply(self, intake_id: str, event: IntakeEvent, **context: Any) -> IntakeSession:
        """Apply one transition under the lock."""
        async with self.writer(intake_id) as writer:
            return await writer.apply(event, **context)

    async def start(self, user_id: str, contact: Optional[str] = None) -> IntakeSession:
        """Create a new intake in ``created``."""
        session = IntakeSession(id=uuid4().hex, user_id=user_id, contact=contact)
        created = await self.store.create(session)
        log_with_context(logger, logging.INFO, "Started intake", intake_id=created.id, user_id=user_id)
        return created

    async def submit_answer(self, intake_id: str, question_id: str, answer: Any) -> tuple[IntakeSession, int]:
        """
        Record one answer and collect the discoveries it triggers.

        Advances to ``preview_ready`` once every required question is answered.

        Returns:
            (updated session, number of new discoveries)
        """
        async with self.writer(intake_id) as writer:
            session = record_answer(writer.session, question_id, answer)

            try:
                raw = await self.generation.submit_answer(intake_id, question_id, answer)
            except UpstreamUnavailable as e:
                logger.warning(f"No discoveries for intake {intake_id} question {question_id}: {e.message}")
                raw = []

            found = [
                d for d in (
                    discovery_from_payload(item.get("type", ""), item.get("payload", item))
                    for item in raw
                    if isinstance(item, dict)
                )
                if d is not None
            ]
            session, added = append_discoveries(session, found)

            if self._all_required_answered(session):
                session = transition(
                    session,
                    IntakeEvent.ALL_REQUIRED_ANSWERED,
                    required_questions=self.required_questions,
                )
            session = await writer.save(session)

        log_with_context(
            logger,
            logging.INFO,
            "Answer recorded",
            intake_id=intake_id,
            question_id=question_id,
            discoveries=added,
            status=session.status.value,
        )
        return session, added

    async def submit_questionnaire(self, intake_id: str, answers: dict[str, Any]) -> IntakeSession:
        """Record a full answer batch and compute the instant preview.

        Re-submitting identical answers to a session already at
        ``preview_ready`` returns it unchanged.
        """
        async with self.writer(intake_id) as writer:
            session = writer.session
            if session.status == IntakeStatus.PREVIEW_READY and all(
                session.answers.get(q) == a for q, a in answers.items()
            ):
                return session

            for question_id, answer in answers.items():
                if question_id in session.answers:
                    if session.answers[question_id] != answer:
                        raise Conflict(f"Question {question_id} already answered")
                    continue
                session = record_answer(session, question_id, answer)

            session = transition(
                session,
                IntakeEvent.ALL_REQUIRED_ANSWERED,
                required_questions=self.required_questions,
            )
            return await writer.save(session)

    async def record_discoveries(self, intake_id: str, discoveries: list[DiscoveryTuple]) -> int:
        """Append discoveries delivered on the generation stream."""
        async with self.writer(intake_id) as writer:
            session, added = append_discoveries(writer.session, discoveries)
            if added:
                await writer.save(session)
            return added

    async def revoke_token(self, intake_id: str, revocation_key: str) -> IntakeSession:
        """Record a revoked token/context id; allowed in any status."""
        async with self.store.lock(intake_id):
            session = await self.get(intake_id)
            if revocation_key in session.revoked_token_ids:
                return session
            updated = session.model_copy(deep=True)
            updated.revoked_token_ids.append(revocation_key)
            return await self.store.save(updated)

    def _all_required_answered(self, session: IntakeSession) -> bool:
        return session.status == IntakeStatus.ANSWERING and all(
            q in session.answers for q in self.required_questions
        )


def session_summary(session: IntakeSession) -> dict[str, Any]:
    """Public view of an intake (no token material, no signatures)."""
    payment = session.payment
    return {
        "intake_id": session.id,
        "status": session.status.value,
        "answers_count": len(session.answers),
        "discoveries": [d.model_dump(mode="json") for d in session.discoveries],
        "event_sequence": session.event_sequence,
        "preview": session.preview,
        "payment": (
            {
                "order_id": payment.order_id,
                "status": payment.status.value,
                "amount": payment.amount,
                "currency": payment.currency,
                "tier": payment.tier.value,
            }
            if payment
            else None
        ),
        "generation_attempts": session.generation_attempts,
        "last_error": session.last_error,
        "created_at": session.created_at.isoformat(),
        "last_transition_at": session.last_transition_at.isoformat(),
        "checked_at": utcnow().isoformat(),
    }
