"""Typed failures raised by the circulation core.

Every error carries a stable ``code`` naming the rule that was violated and a
human readable ``message``; outer layers render them, the core never swallows
them.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class CirculationError(Exception):
    """Base class for all circulation failures."""

    code = "circulation_error"

    def __init__(self, message: str, code: Optional[str] = None, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.context: Dict[str, Any] = context

    def to_dict(self) -> dict:
        payload = {"detail": self.message, "code": self.code}
        if self.context:
            payload["context"] = self.context
        return payload


class ConflictError(CirculationError):
    """A state transition rule was violated (book unavailable, loan cap reached...)."""

    code = "conflict"


class InvalidStateError(CirculationError):
    """The loan or reservation is not in the state the operation requires."""

    code = "invalid_state"


class NotFoundError(CirculationError):
    code = "not_found"


class ValidationError(CirculationError):
    """Malformed input, e.g. an accession number with no digits."""

    code = "validation_error"


class FulfillmentError(ConflictError):
    """Fulfilling a reservation could not issue the loan.

    The reservation transition and the issuance are rolled back together, so
    this never leaves a fulfilled reservation without its loan behind.
    """

    code = "fulfillment_failed"
