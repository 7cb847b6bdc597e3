"""
Lending Error Taxonomy

Domain errors raised synchronously to callers. They subclass ValueError so
code that already guards engine calls with ``except ValueError`` keeps working.
Idempotent repeats are never errors; they are reported through result flags.
"""

from typing import Any, Dict, Optional


class LendingError(ValueError):
    """Base class for all engine errors"""
    
    code = "lending_error"
    
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}
    
    def to_dict(self) -> Dict[str, Any]:
        result = {"error": self.code, "message": self.message}
        if self.details:
            result["details"] = self.details
        return result


class ValidationError(LendingError):
    """Bad amount, missing field or unknown action; nothing was written"""
    code = "validation_error"


class AuthorizationError(LendingError):
    """Actor is not the lender or borrower the operation requires"""
    code = "forbidden"


class NotFoundError(LendingError):
    """Referenced entity does not exist"""
    code = "not_found"


class ConflictError(LendingError):
    """Entity is not in a state that permits the requested transition"""
    
    code = "conflict"
    
    def __init__(self, message: str, current_state: Optional[Dict[str, Any]] = None):
        super().__init__(message, details={"current_state": current_state or {}})
        self.current_state = current_state or {}


class OfferAlreadyResolvedError(ConflictError):
    code = "offer_already_resolved"


class OfferExpiredError(ConflictError):
    code = "offer_expired"


class IneligibleError(LendingError):
    """Borrower does not currently qualify for the requested loan"""
    code = "not_eligible"
