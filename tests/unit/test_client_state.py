"""
Unit Tests for Client-Local State
"""

import pytest
import json
import sys
import os
from datetime import datetime, timezone

# Add project root to path
project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), "../.."))
sys.path.insert(0, os.path.join(project_root, "history_tutor_chat", "src"))

from history_tutor_chat.client_state import (
    InMemoryClientState,
    JsonFileClientState,
    context_key,
    tf_cursor_key,
)
from history_tutor_chat.conversation_state import ConversationLessonState, LessonState
from history_tutor_chat.models import LessonContext, Message, Role


class TestKeys:
    def test_key_format(self):
        assert context_key("c1") == "lesson_context_c1"
        assert tf_cursor_key("c1", 3, 10) == "tf_cursor_c1_3_10"


class TestInMemoryClientState:
    """Typed accessors over the key/value port."""

    @pytest.fixture
    def state(self):
        return InMemoryClientState()

    def test_context_round_trip_and_clear(self, state):
        state.save_context("c1", LessonContext(grade=12, lesson=2, title="Trật tự thế giới"))
        assert state.load_context("c1") == LessonContext(grade=12, lesson=2, title="Trật tự thế giới")

        state.clear_context("c1")
        assert state.load_context("c1") is None

    def test_cursor_defaults_to_zero(self, state):
        assert state.load_tf_cursor("c1", 3, 10) == 0
        state.save_tf_cursor("c1", 3, 10, 6)
        assert state.load_tf_cursor("c1", 3, 10) == 6
        assert state.load_tf_cursor("c1", 3, 11) == 0

    def test_temporary_messages_are_not_saved(self, state):
        now = datetime.now(timezone.utc)
        state.save_messages("c1", [
            Message(conversation_id="c1", role=Role.USER, content="a", id="m1", timestamp=now),
            Message(conversation_id="c1", role=Role.USER, content="b", id="temp_x", timestamp=now),
        ])
        assert [m.id for m in state.load_messages("c1")] == ["m1"]

    def test_forget_conversation_is_exact(self, state):
        state.save_context("c1", LessonContext(grade=10, lesson=1))
        state.save_context("c12", LessonContext(grade=10, lesson=2))
        state.save_tf_cursor("c1", 1, 10, 3)
        state.save_tf_cursor("c12", 1, 10, 3)

        state.forget_conversation("c1")

        assert state.load_context("c1") is None
        assert state.load_tf_cursor("c1", 1, 10) == 0
        assert state.load_context("c12") is not None
        assert state.load_tf_cursor("c12", 1, 10) == 3


class TestJsonFileClientState:
    """State survives a reload from disk."""

    def test_persists_across_instances(self, tmp_path):
        path = tmp_path / "state.json"
        JsonFileClientState(str(path)).save_context("c1", LessonContext(grade=11, lesson=5, title="Chiến tranh"))

        reloaded = JsonFileClientState(str(path))

        assert reloaded.load_context("c1").title == "Chiến tranh"
        assert "lesson_context_c1" in json.loads(path.read_text(encoding="utf-8"))

    def test_corrupt_file_starts_empty(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text("{not json", encoding="utf-8")

        assert JsonFileClientState(str(path)).load_context("c1") is None


class TestConversationLessonState:
    """Lesson state transitions."""

    def test_transitions(self):
        client_state = InMemoryClientState()
        state = ConversationLessonState.load("c1", client_state)
        assert state.state == LessonState.NO_CONTEXT

        state.resolved(LessonContext(grade=10, lesson=3, title="A"), client_state)
        assert state.state == LessonState.HAS_CONTEXT
        assert ConversationLessonState.load("c1", client_state).context.lesson == 3

        state.resolved(LessonContext(grade=10, lesson=4, title="B"), client_state)
        assert client_state.load_context("c1").lesson == 4

        state.request_new_lesson(client_state)
        assert state.state == LessonState.NO_CONTEXT
        assert client_state.load_context("c1") is None
