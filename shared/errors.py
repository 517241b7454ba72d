"""
shared/errors.py
Error taxonomy for the booking engine.

Every failure the engine can report is a DispatchError subclass carrying an
HTTP status, a stable `kind`/`code` pair, a user-facing message and optional
retry hints. main.py renders them as {"error": {...}} so storage details
never leak to clients.
"""

from typing import Any, Dict, Optional


class DispatchError(Exception):
    status_code: int = 500
    kind: str = "Internal"
    code: str = "Internal"
    default_message: str = "An internal error occurred"

    def __init__(self, message: Optional[str] = None, **hints: Any):
        self.message = message or self.default_message
        self.hints: Dict[str, Any] = hints
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"kind": self.kind, "code": self.code, "message": self.message, **self.hints}


# ── Validation / lookup ───────────────────────────────────────

class ValidationError(DispatchError):
    status_code = 422
    kind = "ValidationError"
    code = "InvalidInput"
    default_message = "Invalid input"


class NotFound(DispatchError):
    status_code = 404
    kind = "NotFound"
    code = "NotFound"
    default_message = "Resource not found"


class Forbidden(DispatchError):
    status_code = 403
    kind = "Forbidden"
    code = "Forbidden"
    default_message = "Not authorized for this booking"


class NotAssigned(Forbidden):
    code = "NotAssigned"
    default_message = "This booking is not assigned to you"


# ── Conflicts ─────────────────────────────────────────────────

class Conflict(DispatchError):
    status_code = 409
    kind = "Conflict"


class AlreadyAssigned(Conflict):
    code = "AlreadyAssigned"
    default_message = "Booking has already been accepted by another professional"


class NotAvailable(Conflict):
    code = "NotAvailable"
    default_message = "Professional is not currently available"


class CapabilityMismatch(Conflict):
    code = "CapabilityMismatch"
    default_message = "Professional does not offer this service category"


class InvalidStateTransition(Conflict):
    code = "InvalidStateTransition"
    default_message = "This action is not allowed in the booking's current state"


class AlreadyRated(Conflict):
    code = "AlreadyRated"
    default_message = "This booking has already been rated"


# ── Rate limiting ─────────────────────────────────────────────

class TooSoon(DispatchError):
    status_code = 429
    kind = "RateLimited"
    code = "TooSoon"
    default_message = "Please wait before requesting another code"


# ── Completion verification ───────────────────────────────────

class VerificationFailed(DispatchError):
    status_code = 400
    kind = "VerificationFailed"


class NoSessionIssued(VerificationFailed):
    code = "NoSessionIssued"
    default_message = "No completion code has been issued for this booking"


class InvalidCode(VerificationFailed):
    code = "InvalidCode"
    default_message = "Invalid verification code"


class CodeExpired(VerificationFailed):
    code = "Expired"
    default_message = "Verification code has expired. Request a new code"


class MaxAttemptsExceeded(VerificationFailed):
    code = "MaxAttemptsExceeded"
    default_message = "Maximum verification attempts exceeded. Request a new code"


# ── Upstream ──────────────────────────────────────────────────

class UpstreamTimeout(DispatchError):
    status_code = 504
    kind = "UpstreamTimeout"
    code = "UpstreamTimeout"
    default_message = "A downstream dependency did not respond in time. Please retry"


class DeliveryFailed(DispatchError):
    status_code = 502
    kind = "DeliveryFailed"
    code = "DeliveryFailed"
    default_message = "Could not deliver the verification code. Please retry"


class InternalError(DispatchError):
    pass
