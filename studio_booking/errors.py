from __future__ import annotations

"""
Domain errors raised by the booking and settlement core.

Each error carries a stable ``code`` and a ``details`` mapping so the HTTP layer can render
a typed payload instead of a raw exception. None of these are transient: callers surface
them to the user rather than retrying.
"""

from typing import Any, Dict, Optional


class DomainError(Exception):
    status_code = 400

    def __init__(self, message: str, code: Optional[str] = None, details: Optional[Dict[str, Any]] = None) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)


class NotFound(DomainError):
    status_code = 404


class Conflict(DomainError):
    """A room or instructor is already taken for an overlapping interval."""

    status_code = 409


class DuplicateRegistration(Conflict):
    pass


class InvalidStateTransition(DomainError):
    status_code = 409


class MissingPricing(DomainError):
    """No pricing tier matched. Never converted into a zero fee."""

    status_code = 422


class EmptyPeriod(DomainError):
    """No eligible sessions in the requested period; informational."""

    status_code = 200


class SettlementLocked(DomainError):
    status_code = 423


class GenerationCancelled(DomainError):
    status_code = 409
