"""API router for v1 endpoints."""

from fastapi import APIRouter

from app.api import decision_memo, decision_memo_payments, webhooks

router = APIRouter()

# Intake, generation stream, report access
router.include_router(decision_memo.router, tags=["decision_memo"])

# Checkout and generation retry
router.include_router(decision_memo_payments.router, tags=["decision_memo_payments"])

# Provider and backend callbacks (signature-verified, no user auth)
router.include_router(webhooks.router, tags=["webhooks"])
