"""
Chat Data Model

Dataclasses for conversations, messages and knowledge-base lessons.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

TEMP_ID_PREFIX = "temp_"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Role(Enum):
    USER = "user"
    ASSISTANT = "assistant"
    KNOWLEDGE = "knowledge"


class TurnKind(Enum):
    TEXT = "text"
    QUIZ = "quiz"
    FLASHCARD = "flashcard"
    TRUE_FALSE = "true_false"
    IMAGE = "image"


@dataclass(frozen=True)
class LessonRef:
    """A (grade, lesson) coordinate with its display title."""
    grade: int
    lesson: int
    title: str = ""


@dataclass
class Conversation:
    """A persisted chat session container."""
    id: Optional[str]
    title: str
    created_at: datetime = field(default_factory=utc_now)
    last_message_at: datetime = field(default_factory=utc_now)


@dataclass
class Message:
    """One turn within a conversation."""
    conversation_id: str
    role: Role
    content: str
    id: Optional[str] = None
    timestamp: Optional[datetime] = None
    turn_kind: TurnKind = TurnKind.TEXT
    lesson_ref: Optional[LessonRef] = None

    @property
    def is_temporary(self) -> bool:
        return self.id is None or self.id.startswith(TEMP_ID_PREFIX)


@dataclass
class LessonContext:
    """Last successfully resolved lesson for a conversation."""
    grade: int
    lesson: int
    title: str = ""

    def to_dict(self) -> Dict:
        return {"grade": self.grade, "lesson": self.lesson, "title": self.title}

    @classmethod
    def from_dict(cls, data: Dict) -> "LessonContext":
        return cls(
            grade=int(data["grade"]),
            lesson=int(data["lesson"]),
            title=data.get("title") or "",
        )

    def as_ref(self) -> LessonRef:
        return LessonRef(grade=self.grade, lesson=self.lesson, title=self.title)


@dataclass
class TrueFalseItem:
    """A four-statement true/false exercise."""
    options: Dict[str, str]
    answers: Dict[str, str]
    question_number: Optional[str] = None
    material: Optional[str] = None


@dataclass
class LessonDoc:
    """A knowledge-base lesson document."""
    grade: int
    lesson: int
    title: str
    content: str = ""
    category: Optional[str] = "theory"
    true_false_items: List[TrueFalseItem] = field(default_factory=list)
    id: Optional[str] = None

    def as_ref(self) -> LessonRef:
        return LessonRef(grade=self.grade, lesson=self.lesson, title=self.title)

    def as_context(self) -> LessonContext:
        return LessonContext(grade=self.grade, lesson=self.lesson, title=self.title)
