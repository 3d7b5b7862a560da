"""
Error types raised by the pharmacy inventory core.

Filesystem failures are not wrapped: they surface as the built-in ``OSError``
raised by the failing call. Sparse history is never an error; forecasting
results carry an ``insufficient_data`` flag instead.
"""

from typing import Optional


class ValidationError(ValueError):
    """A persisted row does not match its record schema."""

    def __init__(self, resource: str, row_number: Optional[int], reason: str):
        self.resource = resource
        self.row_number = row_number
        self.reason = reason
        location = f"{resource} row {row_number}" if row_number is not None else resource
        super().__init__(f"Invalid record in {location}: {reason}")


class NotFoundError(LookupError):
    """A lookup by id, name or location matched nothing."""

    def __init__(self, message: str, suggestions: Optional[list] = None):
        super().__init__(message)
        self.suggestions = list(suggestions or [])
