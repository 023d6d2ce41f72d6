"""Configuration management for the Decision Memo engine."""

from functools import lru_cache

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load environment variables from .env file (only if accessible)
try:
    load_dotenv()
except (PermissionError, OSError):
    # In sandboxed environments, .env might not be accessible
    # Environment variables should be set directly
    pass


DEFAULT_REQUIRED_QUESTIONS = ["q1", "q2", "q3", "q4", "q5", "q6", "q7", "q8", "q9", "q10"]


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

    # Environment
    MEMO_ENGINE_ENV: str = Field(default="dev", description="Environment: dev, staging, prod")

    # Session persistence
    SESSION_BACKEND: str = Field(
        default="supabase", description="Intake session store backend: supabase or memory"
    )
    SUPABASE_URL: str | None = Field(default=None, description="Supabase project URL")
    SUPABASE_SERVICE_ROLE_KEY: str | None = Field(default=None, description="Supabase service role key")
    INTAKE_TABLE: str = Field(default="decision_memo_intakes", description="Supabase table for intakes")

    # Generation backend
    GENERATION_API_BASE_URL: str = Field(
        default="http://localhost:8000/api", description="Base URL of the memo generation backend"
    )
    GENERATION_API_KEY: str | None = Field(default=None, description="API key sent to the backend")
    GENERATION_WEBHOOK_SECRET: str | None = Field(
        default=None, description="Shared secret for backend completion webhooks"
    )

    # Payment provider (Razorpay)
    RAZORPAY_KEY_ID: str | None = Field(default=None, description="Public Razorpay key id")
    RAZORPAY_KEY_SECRET: str | None = Field(default=None, description="Razorpay key secret")
    RAZORPAY_WEBHOOK_SECRET: str | None = Field(default=None, description="Razorpay webhook secret")
    RAZORPAY_API_URL: str = Field(default="https://api.razorpay.com/v1", description="Razorpay API base")

    # Pricing (minor currency units)
    MEMO_PRICE_SINGLE: int = Field(default=500_000, description="Single audit price in minor units")
    MEMO_PRICE_ANNUAL: int = Field(default=2_500_000, description="Annual package price in minor units")
    MEMO_CURRENCY: str = Field(default="USD", description="Checkout currency")

    # Scoped access tokens
    ACCESS_TOKEN_SECRET: str = Field(
        default="dev-access-token-secret", description="HS256 secret for report access tokens"
    )

    # Admin / internal tools
    ADMIN_API_KEY: str | None = Field(default=None, description="X-API-Key accepted for internal tools")

    # Questionnaire
    REQUIRED_QUESTION_IDS: list[str] = Field(
        default_factory=lambda: list(DEFAULT_REQUIRED_QUESTIONS),
        description="Question ids that must be answered before the preview",
    )

    # Timeouts
    INTAKE_INACTIVITY_TIMEOUT_SECONDS: int = Field(
        default=72 * 3600, description="Idle time after which a non-terminal intake expires"
    )
    GENERATION_STREAM_TIMEOUT_SECONDS: float = Field(
        default=300.0, description="Ceiling on a single upstream generation stream"
    )
    UPSTREAM_CONNECT_TIMEOUT_SECONDS: float = Field(
        default=10.0, description="Connect timeout for backend requests"
    )
    COMPLETION_CHECK_TIMEOUT_SECONDS: float = Field(
        default=10.0, description="Timeout for the completion existence probe"
    )
    BACKEND_REQUEST_TIMEOUT_SECONDS: float = Field(
        default=30.0, description="Timeout for non-streaming backend requests"
    )
    STREAM_BUFFER_MAX_CHUNKS: int = Field(
        default=512, description="Max chunks queued for a downstream client before backpressure"
    )


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Returns:
        Settings instance

    Raises:
        ValidationError: If environment variables are malformed
    """
    return Settings()
