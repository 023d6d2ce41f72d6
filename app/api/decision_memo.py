"""API endpoints for the Decision Memo intake, generation stream and report access."""

from typing import Any, Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from fastapi.responses import StreamingResponse

from app.api.deps import MemoServices, get_memo_services
from app.core.access_tokens import revocation_key
from app.core.auth_middleware import AuthContext, bearer_token, require_auth
from app.core.errors import AuthRequired, DecisionMemoError
from app.core.intake_service import session_summary
from app.core.logging import get_logger
from app.core.schemas_intake import (
    InstantPreviewResponse,
    IntakeStatus,
    IssueTokenRequest,
    IssueTokenResponse,
    PersistenceMode,
    ReadinessResponse,
    StartIntakeRequest,
    StartIntakeResponse,
    SubmitAnswerRequest,
    SubmitAnswerResponse,
    SubmitQuestionnaireRequest,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/decision-memo")

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",  # Disable nginx buffering
}


# ============================================================================
# Intake
# ============================================================================


@router.post("/start", response_model=StartIntakeResponse)
async def start_intake(
    request: StartIntakeRequest,
    auth: AuthContext = Depends(require_auth),
    services: MemoServices = Depends(get_memo_services),
) -> StartIntakeResponse:
    """Start a new intake for the authenticated user."""
    try:
        session = await services.intakes.start(auth.user_id, request.contact)
        return StartIntakeResponse(intake_id=session.id)
    except DecisionMemoError:
        raise
    except Exception as e:
        logger.exception(f"Failed to start intake for user {auth.user_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to start intake") from e


@router.post("/submit-answer", response_model=SubmitAnswerResponse)
async def submit_answer(
    request: SubmitAnswerRequest,
    services: MemoServices = Depends(get_memo_services),
) -> SubmitAnswerResponse:
    """
    Record one answer.

    Discoveries the answer triggers are appended to the session and counted
    in ``discoveries_triggered``; the full list is on GET /session/{id}.
    """
    try:
        session, added = await services.intakes.submit_answer(
            request.intake_id, request.question_id, request.answer
        )
        return SubmitAnswerResponse(accepted=True, discoveries_triggered=added, status=session.status)
    except DecisionMemoError:
        raise
    except Exception as e:
        logger.exception(f"Failed to record answer for intake {request.intake_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to record answer") from e


@router.post("/questionnaire", response_model=InstantPreviewResponse)
async def submit_questionnaire(
    request: SubmitQuestionnaireRequest,
    services: MemoServices = Depends(get_memo_services),
) -> InstantPreviewResponse:
    """Submit the full questionnaire and return the instant preview synchronously."""
    try:
        session = await services.intakes.submit_questionnaire(request.intake_id, request.answers)
        return InstantPreviewResponse(
            intake_id=session.id,
            status=session.status,
            preview=session.preview or {},
        )
    except DecisionMemoError:
        raise
    except Exception as e:
        logger.exception(f"Failed to submit questionnaire for intake {request.intake_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to submit questionnaire") from e


@router.get("/session/{intake_id}")
async def get_session(
    intake_id: str,
    services: MemoServices = Depends(get_memo_services),
) -> dict[str, Any]:
    """Current status, discoveries and payment summary for an intake."""
    session = await services.intakes.load(intake_id)
    return session_summary(session)


# ============================================================================
# Generation stream and completion probe
# ============================================================================


@router.get("/stream/{intake_id}")
async def stream_generation(
    intake_id: str,
    last_event_id: Optional[str] = Header(None, alias="Last-Event-ID"),
    services: MemoServices = Depends(get_memo_services),
):
    """
    Relay the backend's generation events as SSE.

    One client per intake: a second concurrent request gets 409 and leaves
    the first stream untouched. Disconnecting cancels the upstream request.
    """
    handle = await services.proxy.attach_or_open(intake_id, last_event_id=last_event_id)

    async def _relay():
        try:
            async for chunk in handle.sink:
                yield chunk
        finally:
            services.proxy.release(handle)

    logger.info(f"Client attached to generation stream for intake {intake_id}")
    return StreamingResponse(_relay(), media_type="text/event-stream", headers=SSE_HEADERS)


@router.get("/ready/{intake_id}", response_model=ReadinessResponse)
async def check_ready(
    intake_id: str,
    services: MemoServices = Depends(get_memo_services),
) -> ReadinessResponse:
    """Polling fallback for clients that lost the stream."""
    ready = await services.reconciler.check_ready(intake_id)
    return ReadinessResponse(intake_id=intake_id, ready=ready)


# ============================================================================
# Report access
# ============================================================================


@router.post("/{intake_id}/access-token", response_model=IssueTokenResponse)
async def issue_access_token(
    intake_id: str,
    request: IssueTokenRequest,
    x_client_context: Optional[str] = Header(None, alias="X-Client-Context"),
    auth: AuthContext = Depends(require_auth),
    services: MemoServices = Depends(get_memo_services),
) -> IssueTokenResponse:
    """
    Issue a report access token to the intake owner.

    ``remember_device`` yields a token valid for 7 days; otherwise the token
    lives until its client context is revoked or the intake expires.
    """
    session = await services.intakes.load(intake_id)
    if not auth.owns(session.user_id):
        raise AuthRequired("Only the intake owner can issue access tokens")

    mode = PersistenceMode.REMEMBERED if request.remember_device else PersistenceMode.EPHEMERAL
    token = services.tokens.issue(intake_id, mode, context_id=x_client_context)
    claims = services.tokens.decode(token)
    return IssueTokenResponse(token=token, persistence_mode=mode, expires_at=claims.expires_at)


@router.post("/{intake_id}/access-token/revoke")
async def revoke_access_token(
    intake_id: str,
    token: str = Depends(bearer_token),
    services: MemoServices = Depends(get_memo_services),
) -> dict[str, Any]:
    """Revoke the presented token (ephemeral tokens: its whole client context)."""
    claims = services.tokens.decode(token)
    if claims.intake_id != intake_id:
        raise AuthRequired("Token is not scoped to this intake")

    await services.intakes.revoke_token(intake_id, revocation_key(claims))
    logger.info(f"Revoked {claims.persistence_mode.value} access token for intake {intake_id}")
    return {"revoked": True, "intake_id": intake_id}


@router.get("/artifact/{intake_id}")
async def get_artifact(
    intake_id: str,
    token: str = Depends(bearer_token),
    services: MemoServices = Depends(get_memo_services),
) -> dict[str, Any]:
    """
    Protected report content.

    Returns ``preview_data`` until the memo is delivered, then also the
    generated ``memo_data`` and ``artifact`` delivery metadata.
    """
    claims = services.tokens.decode(token)
    if claims.intake_id != intake_id:
        raise AuthRequired("Token is not scoped to this intake")

    session = await services.intakes.load(intake_id)
    services.tokens.validate(token, revoked=frozenset(session.revoked_token_ids))
    if claims.persistence_mode == PersistenceMode.EPHEMERAL and session.status == IntakeStatus.EXPIRED:
        raise AuthRequired("Intake has expired")

    response: dict[str, Any] = {
        "intake_id": intake_id,
        "status": session.status.value,
        "preview_data": session.preview,
    }
    if session.status == IntakeStatus.DELIVERED:
        response["memo_data"] = await services.generation.fetch_artifact(intake_id)
        response["artifact"] = {
            "delivered_at": session.last_transition_at.isoformat(),
            "generation_attempts": session.generation_attempts,
            "discoveries": len(session.discoveries),
        }
    return response
