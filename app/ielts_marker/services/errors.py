"""Exceptions raised by the marking services.

The pure annotation core (diff markup, span matching, the annotation store)
never raises for expected situations; these cover the boundaries around it.
"""
from __future__ import annotations

from typing import Optional


class MarkerError(Exception):
    """Catch-all parent of marking-related exceptions."""

    pass


class AIServiceError(MarkerError):
    """The inference service failed or returned nothing usable."""

    pass


class FeedbackFormatError(MarkerError):
    """Inference output does not have the shape of a feedback report."""

    pass


class TranscriptionError(AIServiceError):
    """Transcribing a photographed essay page failed."""

    def __init__(self, message: str, page: Optional[int] = None):
        super().__init__(message)
        self.page = page

    def __str__(self) -> str:
        message = super().__str__()
        if self.page is None:
            return message
        return f"Error on page {self.page}: {message}"


class BandValueError(MarkerError, ValueError):
    pass


class UnknownCriterionError(MarkerError, KeyError):
    pass
