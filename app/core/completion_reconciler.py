"""Completion reconciler — pull-side fallback to the generation stream.

Stateless and lock-free: reports what the state machine already recorded,
or asks the backend whether the artifact exists while the intake is still
generating. It never writes session state.
"""

from app.core.errors import SessionNotFound
from app.core.logging import get_logger
from app.core.schemas_intake import IntakeStatus
from app.db.intake_sessions import IntakeSessionStore
from app.services.generation_client import GenerationClient

logger = get_logger(__name__)


class CompletionReconciler:
    def __init__(self, store: IntakeSessionStore, generation: GenerationClient):
        self.store = store
        self.generation = generation

    async def check_ready(self, intake_id: str) -> bool:
        """
        Is the memo for ``intake_id`` ready?

        Returns:
            True when delivered (or the backend already has the artifact while
            generating); False otherwise, which is a normal polling state.

        Raises:
            SessionNotFound: unknown intake
        """
        session = await self.store.get(intake_id)
        if session is None:
            raise SessionNotFound(f"Intake {intake_id} not found")

        if session.status == IntakeStatus.DELIVERED:
            return True
        if session.status != IntakeStatus.GENERATING:
            return False

        ready = await self.generation.artifact_exists(intake_id)
        logger.debug(f"Completion probe for intake {intake_id}: ready={ready}")
        return ready
