"""
Per-Conversation Lesson State

Explicit state and transitions for the active lesson of one conversation:

    NO_CONTEXT --resolved--> HAS_CONTEXT
    HAS_CONTEXT --resolved (new coordinate)--> HAS_CONTEXT
    HAS_CONTEXT --request_new_lesson--> NO_CONTEXT

Ask-for-lesson, not-found and suggestion outcomes leave the state unchanged.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from history_tutor_chat.client_state import ClientState
from history_tutor_chat.models import LessonContext


class LessonState(Enum):
    NO_CONTEXT = "no_context"
    HAS_CONTEXT = "has_context"


@dataclass
class ConversationLessonState:
    """Lesson state of one conversation, backed by the client-state port."""
    conversation_id: str
    context: Optional[LessonContext] = None

    @property
    def state(self) -> LessonState:
        return LessonState.HAS_CONTEXT if self.context else LessonState.NO_CONTEXT

    @classmethod
    def load(cls, conversation_id: str, client_state: ClientState) -> "ConversationLessonState":
        return cls(conversation_id=conversation_id, context=client_state.load_context(conversation_id))

    def resolved(self, context: LessonContext, client_state: ClientState):
        """A lesson was resolved (new or carried forward)."""
        self.context = context
        client_state.save_context(self.conversation_id, context)

    def request_new_lesson(self, client_state: ClientState):
        """The user asked to pick a different lesson."""
        self.context = None
        client_state.clear_context(self.conversation_id)
