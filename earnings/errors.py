from typing import Any, Optional


class LedgerError(Exception):
    kind = "error"
    default_message = "Request could not be completed"

    def __init__(self, reason: str, message: Optional[str] = None, **details: Any):
        self.reason = reason
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"error": self.message, "code": self.reason, **self.details}


class NotFoundError(LedgerError):
    kind = "not-found"
    default_message = "Not found"


class ForbiddenError(LedgerError):
    kind = "forbidden"
    default_message = "Access denied"


class RateLimitedError(LedgerError):
    kind = "rate-limited"
    default_message = "Too many requests"

    @property
    def retry_after(self) -> Optional[float]:
        return self.details.get("retry_after")


class InvalidStateError(LedgerError):
    kind = "invalid-state"
    default_message = "Operation not allowed in current state"


class LedgerValidationError(LedgerError):
    kind = "validation"
    default_message = "Invalid request"
