"""Pytest configuration and fixtures."""

import os

import pytest

from app.core.config import get_settings


@pytest.fixture(scope="session", autouse=True)
def setup_test_env():
    """Set up test environment variables."""
    os.environ["MEMO_ENGINE_ENV"] = "test"
    os.environ["SESSION_BACKEND"] = "memory"
    os.environ["SUPABASE_URL"] = "https://test.supabase.co"
    os.environ["SUPABASE_SERVICE_ROLE_KEY"] = "test-key"
    os.environ["RAZORPAY_KEY_ID"] = "rzp_test_key"
    os.environ["RAZORPAY_KEY_SECRET"] = "rzp-test-secret"
    os.environ["RAZORPAY_WEBHOOK_SECRET"] = "rzp-webhook-secret"
    os.environ["GENERATION_WEBHOOK_SECRET"] = "generation-webhook-secret"
    os.environ["ACCESS_TOKEN_SECRET"] = "test-access-token-secret"
    os.environ["ADMIN_API_KEY"] = "test-admin-key"
    # Loggers read settings at import time; start tests from the test env.
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
