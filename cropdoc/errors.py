"""
Error taxonomy for diagnostic sessions.

Only AnalysisError is surfaced to the user (as the session's Error state).
DeepDiveError and PersistenceError degrade in place, AssistantError is
always turned into a fallback chat message before it leaves the assistant.
"""
from typing import Optional

ERROR_HEADLINE = "Analysis Interrupted"
GENERIC_ERROR_DETAILS = "An unexpected error occurred during neural network analysis."


class CropDocError(Exception):
    """Base class for all cropdoc errors"""


class AnalysisError(CropDocError):
    """Transport, parse or schema failure while analysing an image"""

    def __init__(self, message: str = "", details: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.details = details or message or GENERIC_ERROR_DETAILS

    @classmethod
    def from_exception(cls, exc: BaseException) -> "AnalysisError":
        if isinstance(exc, AnalysisError):
            return exc
        text = str(exc).strip()
        return cls(text, details=text or None)


class DeepDiveError(CropDocError):
    """Transport or parse failure during a recommendation lookup"""


class AssistantError(CropDocError):
    """Chat capability failure, recovered inside the assistant client"""


class PersistenceError(CropDocError):
    """History record could not be read or written"""


class InvalidTransitionError(CropDocError):
    """Action is not allowed from the current session status"""


class UnknownHistoryEntryError(CropDocError):
    """No history entry with the requested id"""


class UnknownSessionError(CropDocError):
    """No live session with the requested id"""
