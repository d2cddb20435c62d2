"""
Error Taxonomy

Exceptions raised by the core components. The turn orchestrator is the only
place these are converted into user-visible assistant messages.
"""

from typing import Optional


class TutorChatError(Exception):
    """Base class for all tutor chat errors."""


class StoreWriteFailure(TutorChatError):
    """A create or delete against the remote store failed."""

    def __init__(self, message: str, kind: Optional[str] = None):
        super().__init__(message)
        self.kind = kind


class StoreReadFailure(TutorChatError):
    """A list/fetch against the remote store failed."""


class GenerationFailure(TutorChatError):
    """The text generation service raised or returned an unusable payload."""


class ValidationFailure(TutorChatError):
    """Malformed input rejected before any network call."""
