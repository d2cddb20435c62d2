"""
Unit Tests for the Turn Orchestrator

Each test runs whole turns against in-memory collaborators and a fake
generator that records what it was asked.
"""

import pytest
import sys
import os

# Add project root to path
project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), "../.."))
sys.path.insert(0, os.path.join(project_root, "history_tutor_chat", "src"))

from history_tutor_chat.client_state import InMemoryClientState
from history_tutor_chat.conversation_sync import ConversationSynchronizer
from history_tutor_chat.entities import EntityKind
from history_tutor_chat.errors import GenerationFailure, StoreWriteFailure, ValidationFailure
from history_tutor_chat.generation import ImageGenerator, TextGenerator
from history_tutor_chat.knowledge import InMemoryKnowledgeLookup
from history_tutor_chat.lesson_resolver import AskForLesson, LessonContextResolver, Resolved
from history_tutor_chat.models import LessonContext, LessonDoc, Role, TrueFalseItem, TurnKind
from history_tutor_chat.prompts import GENERATION_APOLOGY, IMAGE_APOLOGY, ask_for_lesson_reply
from history_tutor_chat.store import InMemoryStore
from history_tutor_chat.turn_orchestrator import TurnOrchestrator


class FakeGenerator(TextGenerator):
    def __init__(self, reply="Câu trả lời", error=None):
        self.reply = reply
        self.error = error
        self.calls = []

    async def generate(self, prompt, grounding_context=""):
        self.calls.append((prompt, grounding_context))
        if self.error:
            raise self.error
        return self.reply


class FakeImageGenerator(ImageGenerator):
    def __init__(self, url="https://img.example/1.png", error=None):
        self.url = url
        self.error = error

    async def generate_image(self, prompt):
        if self.error:
            raise self.error
        return self.url


class FailingAssistantStore(InMemoryStore):
    """Accepts user messages, rejects every assistant message."""

    async def create(self, kind, record):
        if kind is EntityKind.MESSAGE and record.role is Role.ASSISTANT:
            raise StoreWriteFailure("messages unavailable", kind=kind.table)
        return await super().create(kind, record)


class RejectTrueFalseStore(InMemoryStore):
    """Rejects assistant replies to true/false turns until allowed."""

    def __init__(self):
        super().__init__()
        self.reject = True

    async def create(self, kind, record):
        if self.reject and kind is EntityKind.MESSAGE and record.role is Role.ASSISTANT \
                and record.turn_kind is TurnKind.TRUE_FALSE and record.lesson_ref is not None:
            raise StoreWriteFailure("insert rejected", kind=kind.table)
        return await super().create(kind, record)


def tf_items(count):
    return [
        TrueFalseItem(
            options={"a": f"Ý a{n}", "b": f"Ý b{n}", "c": f"Ý c{n}", "d": f"Ý d{n}"},
            answers={"a": "Đúng", "b": "Sai", "c": "Đúng", "d": "Sai"},
            question_number=f"Câu {n}",
        )
        for n in range(1, count + 1)
    ]


LESSONS = [
    LessonDoc(grade=12, lesson=2, title="Trật tự thế giới sau Chiến tranh lạnh", content="Sau năm 1991, trật tự hai cực sụp đổ."),
    LessonDoc(grade=10, lesson=3, title="Văn minh Ai Cập cổ đại", content="Sông Nin bồi đắp phù sa."),
    LessonDoc(grade=10, lesson=3, title="Bài tập Ai Cập", category="exercise", true_false_items=tf_items(5)),
]


def build(generator=None, store=None, image_generator=None, client_state=None):
    store = store or InMemoryStore()
    client_state = client_state or InMemoryClientState()
    lookup = InMemoryKnowledgeLookup(LESSONS)
    synchronizer = ConversationSynchronizer(store, client_state)
    orchestrator = TurnOrchestrator(
        store=store,
        synchronizer=synchronizer,
        resolver=LessonContextResolver(lookup),
        lookup=lookup,
        generator=generator or FakeGenerator(),
        client_state=client_state,
        image_generator=image_generator,
    )
    return orchestrator, synchronizer, client_state, store


class TestTurnOrchestrator:
    """Turn sequencing and branches."""

    @pytest.mark.asyncio
    async def test_grounded_turn_on_fresh_conversation(self):
        generator = FakeGenerator()
        orchestrator, sync, client_state, store = build(generator)

        result = await orchestrator.run_turn(None, "Bài 2 Lớp 12")

        conversations = await store.list(EntityKind.CONVERSATION)
        assert [c.id for c in conversations] == [result.conversation_id]
        assert conversations[0].title == "Bài 2 Lớp 12"

        assert isinstance(result.outcome, Resolved)
        assert client_state.load_context(result.conversation_id) == LessonContext(
            grade=12, lesson=2, title="Trật tự thế giới sau Chiến tranh lạnh")

        prompt, grounding = generator.calls[0]
        assert "Sau năm 1991" in grounding
        assert result.reply.content.startswith("# Bài 2 (Lớp 12): Trật tự thế giới sau Chiến tranh lạnh")
        assert result.reply.lesson_ref.lesson == 2

        messages = sync.messages(result.conversation_id)
        assert [m.role for m in messages] == [Role.USER, Role.ASSISTANT]
        assert messages[0].content == "Bài 2 Lớp 12"

    @pytest.mark.asyncio
    async def test_true_false_without_lesson_asks(self):
        generator = FakeGenerator()
        orchestrator, sync, client_state, _ = build(generator)

        result = await orchestrator.run_turn(None, "tạo 3 câu đúng sai")

        assert isinstance(result.outcome, AskForLesson)
        assert result.reply.content == ask_for_lesson_reply()
        assert generator.calls == []
        assert client_state.load_context(result.conversation_id) is None

    @pytest.mark.asyncio
    async def test_true_false_pages_and_wraps(self):
        generator = FakeGenerator()
        orchestrator, _, client_state, _ = build(generator)
        first = await orchestrator.run_turn(None, "Bài 3 Lớp 10")
        cid = first.conversation_id

        batch1 = await orchestrator.run_turn(cid, "tạo câu đúng sai")
        batch2 = await orchestrator.run_turn(cid, "thêm câu đúng sai")
        batch3 = await orchestrator.run_turn(cid, "câu đúng sai nữa")

        assert batch1.reply.turn_kind == TurnKind.TRUE_FALSE
        assert "Câu 1" in batch1.reply.content and "Câu 3" in batch1.reply.content
        assert "(Đã xem 3/5 câu)" in batch1.reply.content
        assert "Câu 4" in batch2.reply.content and "Câu 5" in batch2.reply.content
        assert "(Đã xem 5/5 câu)" in batch2.reply.content
        assert "Câu 1" in batch3.reply.content
        assert client_state.load_tf_cursor(cid, 3, 10) == 3
        # Only the opening turn called the generator
        assert len(generator.calls) == 1

    @pytest.mark.asyncio
    async def test_failed_true_false_reply_keeps_cursor(self):
        store = RejectTrueFalseStore()
        orchestrator, sync, client_state, _ = build(store=store)
        first = await orchestrator.run_turn(None, "Bài 3 Lớp 10")
        cid = first.conversation_id

        failed = await orchestrator.run_turn(cid, "tạo câu đúng sai")

        assert isinstance(failed.error, StoreWriteFailure)
        assert client_state.load_tf_cursor(cid, 3, 10) == 0

        store.reject = False
        retried = await orchestrator.run_turn(cid, "tạo câu đúng sai")

        assert "Câu 1" in retried.reply.content
        assert "(Đã xem 3/5 câu)" in retried.reply.content
        assert client_state.load_tf_cursor(cid, 3, 10) == 3

    @pytest.mark.asyncio
    async def test_lesson_without_true_false_items(self):
        orchestrator, _, _, _ = build()
        first = await orchestrator.run_turn(None, "Bài 2 Lớp 12")

        result = await orchestrator.run_turn(first.conversation_id, "đúng sai")

        assert "chưa có câu đúng-sai" in result.reply.content

    @pytest.mark.asyncio
    async def test_open_ended_cue_skips_grounding(self):
        generator = FakeGenerator()
        orchestrator, _, _, _ = build(generator)
        first = await orchestrator.run_turn(None, "Bài 3 Lớp 10")

        result = await orchestrator.run_turn(first.conversation_id, "Tại sao Ai Cập phát triển sớm?")

        prompt, grounding = generator.calls[-1]
        assert grounding == ""
        assert "Văn minh Ai Cập cổ đại" in prompt
        assert not result.reply.content.startswith("#")

    @pytest.mark.asyncio
    async def test_quiz_carries_lesson_forward(self):
        generator = FakeGenerator()
        orchestrator, _, _, _ = build(generator)
        first = await orchestrator.run_turn(None, "Bài 3 Lớp 10")

        result = await orchestrator.run_turn(first.conversation_id, "tạo trắc nghiệm")

        prompt, grounding = generator.calls[-1]
        assert result.reply.turn_kind == TurnKind.QUIZ
        assert "Sông Nin" in grounding
        assert result.reply.lesson_ref.title == "Văn minh Ai Cập cổ đại"

    @pytest.mark.asyncio
    async def test_not_found_keeps_context(self):
        generator = FakeGenerator()
        orchestrator, _, client_state, _ = build(generator)
        first = await orchestrator.run_turn(None, "Bài 3 Lớp 10")

        result = await orchestrator.run_turn(first.conversation_id, "Bài 9 Lớp 11")

        assert "Bài 9 (Lớp 11)" in result.reply.content
        assert client_state.load_context(first.conversation_id).lesson == 3
        assert len(generator.calls) == 1

    @pytest.mark.asyncio
    async def test_suggestions(self):
        generator = FakeGenerator()
        orchestrator, _, _, _ = build(generator)

        result = await orchestrator.run_turn(None, "Ai Cập cổ đại")

        assert "Văn minh Ai Cập cổ đại" in result.reply.content
        assert generator.calls == []

    @pytest.mark.asyncio
    async def test_new_lesson_request_clears_context(self):
        orchestrator, _, client_state, _ = build()
        first = await orchestrator.run_turn(None, "Bài 3 Lớp 10")

        await orchestrator.run_turn(first.conversation_id, "đổi bài")

        assert client_state.load_context(first.conversation_id) is None

    @pytest.mark.asyncio
    async def test_exam_prep_footer(self):
        orchestrator, _, _, _ = build()

        result = await orchestrator.run_turn(None, "Bài 3 Lớp 10 ôn thi tốt nghiệp")

        assert "Các đề ôn thi của mùa trước" in result.reply.content

    @pytest.mark.asyncio
    async def test_generation_failure_becomes_apology(self):
        orchestrator, sync, _, _ = build(FakeGenerator(error=GenerationFailure("empty")))

        result = await orchestrator.run_turn(None, "Bài 2 Lớp 12")

        assert isinstance(result.error, GenerationFailure)
        assert result.reply.content == GENERATION_APOLOGY
        assert [m.role for m in sync.messages(result.conversation_id)] == [Role.USER, Role.ASSISTANT]

    @pytest.mark.asyncio
    async def test_unexpected_error_becomes_error_turn(self):
        orchestrator, _, _, _ = build(FakeGenerator(error=RuntimeError("socket closed")))

        result = await orchestrator.run_turn(None, "Bài 2 Lớp 12")

        assert "socket closed" in result.reply.content
        assert result.reply.role == Role.ASSISTANT

    @pytest.mark.asyncio
    async def test_error_reply_write_failure_is_swallowed(self):
        orchestrator, sync, _, _ = build(store=FailingAssistantStore())

        result = await orchestrator.run_turn(None, "Bài 2 Lớp 12")

        assert isinstance(result.error, StoreWriteFailure)
        assert result.reply is None
        # The user's own message survives
        assert [m.role for m in sync.messages(result.conversation_id)] == [Role.USER]

    @pytest.mark.asyncio
    async def test_empty_text_is_rejected_before_any_write(self):
        orchestrator, _, _, store = build()

        with pytest.raises(ValidationFailure):
            await orchestrator.run_turn(None, "   ")
        assert await store.list(EntityKind.CONVERSATION) == []

    @pytest.mark.asyncio
    async def test_image_turn(self):
        orchestrator, _, _, _ = build(image_generator=FakeImageGenerator())
        first = await orchestrator.run_turn(None, "Bài 3 Lớp 10")

        result = await orchestrator.run_turn(first.conversation_id, "tạo ảnh minh họa")

        assert result.reply.turn_kind == TurnKind.IMAGE
        assert "https://img.example/1.png" in result.reply.content

    @pytest.mark.asyncio
    async def test_image_failure_is_an_apology(self):
        orchestrator, _, _, _ = build(image_generator=FakeImageGenerator(error=GenerationFailure("quota")))

        result = await orchestrator.run_turn(None, "Bài 3 Lớp 10 tạo ảnh")

        assert result.reply.content == IMAGE_APOLOGY
        assert result.error is None
