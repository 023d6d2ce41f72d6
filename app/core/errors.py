"""Error taxonomy for the Decision Memo pipeline.

Domain code raises these; ``app.main`` maps them to HTTP responses.
"""


class DecisionMemoError(Exception):
    """Base class for pipeline errors."""

    code = "decision_memo_error"
    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code


class AuthRequired(DecisionMemoError):
    """Missing, invalid, expired or revoked credential. Caller must re-authenticate."""

    code = "auth_required"
    status_code = 401


class InvalidSignature(DecisionMemoError):
    """Payment or webhook signature mismatch. Never retried."""

    code = "invalid_signature"
    status_code = 400


class Conflict(DecisionMemoError):
    """Illegal transition or duplicate stream. Caller must re-fetch status first."""

    code = "conflict"
    status_code = 409


class TransitionRejected(Conflict):
    """Raised by the state machine when an event is not legal from the current status."""

    def __init__(self, status: str, event: str, reason: str = ""):
        self.status = status
        self.event = event
        super().__init__(reason or f"Event '{event}' is not allowed from status '{status}'")


class SessionExpired(DecisionMemoError):
    """Intake expired through inactivity. Terminal, the user must restart."""

    code = "session_expired"
    status_code = 410


class SessionNotFound(DecisionMemoError):
    code = "session_not_found"
    status_code = 404


class UpstreamUnavailable(DecisionMemoError):
    """Generation backend or payment provider unreachable or erroring."""

    code = "upstream_unavailable"
    status_code = 502
