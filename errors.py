"""Exceptions raised by the queue and appointment services.

The HTTP layer in ``main.py`` maps these onto status codes and the
``{"success": false, "error": ...}`` result bodies shown to staff.
"""

from __future__ import annotations

from typing import Dict, List, Optional


class ClinicError(Exception):
    """Base class for every error the services raise on purpose."""


class ValidationError(ClinicError):
    """Malformed or missing input.  Raised before anything is written."""

    def __init__(self, message: str, errors: Optional[Dict[str, str]] = None) -> None:
        super().__init__(message)
        self.errors = errors or {}


class InvalidTransitionError(ValidationError):
    """A status change the appointment or queue state machine does not allow."""


class NotFoundError(ClinicError):
    """The target record does not exist or was already processed."""


class AmbiguousMatchError(NotFoundError):
    """More than one appointment matched a check-in request."""

    def __init__(self, message: str, candidates: List[str]) -> None:
        super().__init__(message)
        self.candidates = candidates


class StoreError(ClinicError):
    """Any failure of the underlying document store."""
