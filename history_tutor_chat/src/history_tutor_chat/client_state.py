"""
Client-Local State

Explicit persistence port for per-conversation client state: the active
lesson context, true/false pagination cursors and the confirmed message
cache. Everything is keyed by conversation id.
"""

import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional

from history_tutor_chat.entities import message_to_row, row_to_message
from history_tutor_chat.models import LessonContext, Message

logger = logging.getLogger(__name__)


def context_key(conversation_id: str) -> str:
    return f"lesson_context_{conversation_id}"


def tf_cursor_key(conversation_id: str, lesson: int, grade: int) -> str:
    return f"tf_cursor_{conversation_id}_{lesson}_{grade}"


def messages_key(conversation_id: str) -> str:
    return f"messages_{conversation_id}"


class ClientState(ABC):
    """
    Key-value backed client state.

    Subclasses only implement raw key access; the typed accessors are shared.
    """

    @abstractmethod
    def _get(self, key: str) -> Optional[Any]:
        ...

    @abstractmethod
    def _set(self, key: str, value: Any):
        ...

    @abstractmethod
    def _keys(self) -> List[str]:
        ...

    @abstractmethod
    def _delete(self, keys: List[str]):
        ...

    # Lesson context

    def load_context(self, conversation_id: str) -> Optional[LessonContext]:
        data = self._get(context_key(conversation_id))
        if not data:
            return None
        try:
            return LessonContext.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"⚠️ [ClientState] Ignoring unreadable lesson context for {conversation_id}: {e}")
            return None

    def save_context(self, conversation_id: str, context: LessonContext):
        self._set(context_key(conversation_id), context.to_dict())

    def clear_context(self, conversation_id: str):
        self._delete([context_key(conversation_id)])

    # True/false cursor

    def load_tf_cursor(self, conversation_id: str, lesson: int, grade: int) -> int:
        value = self._get(tf_cursor_key(conversation_id, lesson, grade))
        try:
            return max(int(value or 0), 0)
        except (TypeError, ValueError):
            return 0

    def save_tf_cursor(self, conversation_id: str, lesson: int, grade: int, cursor: int):
        self._set(tf_cursor_key(conversation_id, lesson, grade), int(cursor))

    # Confirmed messages

    def load_messages(self, conversation_id: str) -> List[Message]:
        rows = self._get(messages_key(conversation_id)) or []
        messages = []
        for row in rows:
            try:
                messages.append(row_to_message(row))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"⚠️ [ClientState] Skipping unreadable cached message: {e}")
        return messages

    def save_messages(self, conversation_id: str, messages: List[Message]):
        rows = [message_to_row(message) for message in messages if not message.is_temporary]
        self._set(messages_key(conversation_id), rows)

    def forget_conversation(self, conversation_id: str):
        """Remove every key belonging to a conversation."""
        cursor_prefix = f"tf_cursor_{conversation_id}_"
        keys = [context_key(conversation_id), messages_key(conversation_id)]
        keys.extend(key for key in self._keys() if key.startswith(cursor_prefix))
        self._delete(keys)


class InMemoryClientState(ClientState):
    def __init__(self):
        self.values: Dict[str, Any] = {}

    def _get(self, key):
        return self.values.get(key)

    def _set(self, key, value):
        self.values[key] = value

    def _keys(self):
        return list(self.values)

    def _delete(self, keys):
        for key in keys:
            self.values.pop(key, None)


class JsonFileClientState(InMemoryClientState):
    """Client state persisted as one JSON document, rewritten atomically."""

    def __init__(self, path: str):
        super().__init__()
        self.path = Path(path)
        if self.path.exists():
            try:
                self.values = json.loads(self.path.read_text(encoding="utf-8")) or {}
            except (OSError, json.JSONDecodeError) as e:
                logger.warning(f"⚠️ [ClientState] Could not read {self.path}, starting empty: {e}")
                self.values = {}

    def _flush(self):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=str(self.path.parent), prefix=".client_state_")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(self.values, handle, ensure_ascii=False)
            os.replace(tmp_path, self.path)
        except OSError:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

    def _set(self, key, value):
        super()._set(key, value)
        self._flush()

    def _delete(self, keys):
        super()._delete(keys)
        self._flush()
