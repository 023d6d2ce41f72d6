"""FastAPI application entry point."""

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.api import router as api_router
from app.core.errors import DecisionMemoError
from app.core.logging import get_logger

logger = get_logger(__name__)

app = FastAPI(
    title="Decision Memo Engine",
    description="Intake, payment-gated generation and report delivery for Decision Memos",
    version="0.1.0",
)


@app.exception_handler(DecisionMemoError)
async def decision_memo_error_handler(request: Request, exc: DecisionMemoError) -> JSONResponse:
    """Map pipeline errors to JSON responses."""
    if exc.status_code >= 500:
        logger.warning(f"{request.method} {request.url.path} failed upstream: {exc.message}")
    headers = {"WWW-Authenticate": "Bearer"} if exc.status_code == 401 else None
    return JSONResponse(
        content={"error": exc.code, "detail": exc.message},
        status_code=exc.status_code,
        headers=headers,
    )


@app.get("/health")
async def health_check() -> JSONResponse:
    """Health check endpoint."""
    return JSONResponse(content={"status": "ok"}, status_code=200)


# Include v1 API router
app.include_router(api_router, prefix="/v1", tags=["v1"])
