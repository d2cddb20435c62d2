"""
Entity Kinds and Row Serialization

Each entity kind is bound to a fixed table. Every entity has its own explicit
to-row / from-row function; there is no generic field alias table.
"""

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from history_tutor_chat.models import (
    Conversation,
    LessonDoc,
    LessonRef,
    Message,
    Role,
    TrueFalseItem,
    TurnKind,
)


class EntityKind(Enum):
    """Remote collections the client knows about."""
    CONVERSATION = "conversations"
    MESSAGE = "messages"
    KNOWLEDGE_DOC = "knowledge_base"

    @property
    def table(self) -> str:
        return self.value


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO timestamp from the store; naive values are taken as UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


# ==================== Conversation ====================

def conversation_to_row(conversation: Conversation) -> Dict[str, Any]:
    row = {
        "title": conversation.title,
        "created_at": format_timestamp(conversation.created_at),
        "last_message_at": format_timestamp(conversation.last_message_at),
    }
    if conversation.id:
        row["id"] = conversation.id
    return row


def row_to_conversation(row: Dict[str, Any]) -> Conversation:
    created_at = parse_timestamp(row.get("created_at"))
    return Conversation(
        id=str(row["id"]),
        title=row.get("title") or "",
        created_at=created_at,
        last_message_at=parse_timestamp(row.get("last_message_at")) or created_at,
    )


# ==================== Message ====================

def _lesson_ref_to_dict(ref: Optional[LessonRef]) -> Optional[Dict[str, Any]]:
    if ref is None:
        return None
    return {"grade": ref.grade, "lesson": ref.lesson, "title": ref.title}


def _dict_to_lesson_ref(data: Optional[Dict[str, Any]]) -> Optional[LessonRef]:
    if not data:
        return None
    return LessonRef(grade=int(data["grade"]), lesson=int(data["lesson"]), title=data.get("title") or "")


def message_to_row(message: Message) -> Dict[str, Any]:
    """Serialize a message for insertion. Temporary ids are never sent."""
    row = {
        "conversation_id": message.conversation_id,
        "role": message.role.value,
        "content": message.content,
        "timestamp": format_timestamp(message.timestamp),
        "message_type": message.turn_kind.value,
        "lesson_ref": _lesson_ref_to_dict(message.lesson_ref),
    }
    if message.id and not message.is_temporary:
        row["id"] = message.id
    return row


def row_to_message(row: Dict[str, Any]) -> Message:
    return Message(
        id=str(row["id"]),
        conversation_id=str(row["conversation_id"]),
        role=Role(row.get("role") or "assistant"),
        content=row.get("content") or "",
        timestamp=parse_timestamp(row.get("timestamp") or row.get("created_at")),
        turn_kind=TurnKind(row.get("message_type") or "text"),
        lesson_ref=_dict_to_lesson_ref(row.get("lesson_ref")),
    )


# ==================== Knowledge documents ====================

_DIGITS = re.compile(r"(\d+)")


def _coordinate_number(value: Any) -> Optional[int]:
    """Read 3, "3" or "Bài 3" as 3."""
    if value is None:
        return None
    if isinstance(value, int):
        return value
    match = _DIGITS.search(str(value))
    return int(match.group(1)) if match else None


def _first_present(row: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if row.get(key) is not None:
            return row[key]
    return None


def row_to_true_false_item(data: Dict[str, Any]) -> Optional[TrueFalseItem]:
    """Return None for rows without options or answers."""
    options = data.get("options") if isinstance(data, dict) else None
    answers = data.get("answers") if isinstance(data, dict) else None
    if not options or not answers:
        return None
    return TrueFalseItem(
        options={key: options.get(key) or "" for key in ("a", "b", "c", "d")},
        answers={key: answers.get(key) or "" for key in ("a", "b", "c", "d")},
        question_number=data.get("question_number"),
        material=data.get("material"),
    )


def row_to_lesson_doc(row: Dict[str, Any]) -> Optional[LessonDoc]:
    """Rows without a readable coordinate are skipped."""
    grade = _coordinate_number(_first_present(row, "grade", "grade_level"))
    lesson = _coordinate_number(_first_present(row, "lesson", "lesson_number"))
    if grade is None or lesson is None:
        return None

    items: List[TrueFalseItem] = []
    for raw in row.get("true_false_questions") or []:
        item = row_to_true_false_item(raw)
        if item is not None:
            items.append(item)

    return LessonDoc(
        id=str(row["id"]) if row.get("id") is not None else None,
        grade=grade,
        lesson=lesson,
        title=row.get("title") or "",
        content=row.get("content") or "",
        category=row.get("category"),
        true_false_items=items,
    )
