"""
Turn Orchestrator

Sequences one user turn end-to-end:

1. Ensure the conversation exists (created lazily on the first message)
2. Persist the user message through the synchronizer
3. Classify the turn kind
4. Resolve the lesson context, short-circuiting on ask / suggest / not found
5. True/false turns page through the lesson's items without generation
6. Otherwise build a grounded or open request and call the generator
7. Persist the assistant reply tagged with the turn kind
8. Any failure in 2-7 becomes a single assistant error message
"""

import logging
from dataclasses import dataclass
from typing import Optional, Tuple

from history_tutor_chat.client_state import ClientState
from history_tutor_chat.conversation_state import ConversationLessonState
from history_tutor_chat.conversation_sync import ConversationSynchronizer
from history_tutor_chat.entities import EntityKind
from history_tutor_chat.errors import GenerationFailure, ValidationFailure
from history_tutor_chat.generation import ImageGenerator, TextGenerator
from history_tutor_chat.knowledge import KnowledgeLookup
from history_tutor_chat.lesson_resolver import (
    AskForLesson,
    CarryForward,
    LessonContextResolver,
    NewLessonRequested,
    NotFound,
    Resolution,
    Resolved,
    Suggestions,
)
from history_tutor_chat.models import Conversation, LessonContext, LessonDoc, Message, Role, TurnKind
from history_tutor_chat.prompts import (
    GENERATION_APOLOGY,
    IMAGE_APOLOGY,
    STUDENT,
    ask_for_lesson_reply,
    build_flashcard_prompt,
    build_grounded_prompt,
    build_image_prompt,
    build_open_prompt,
    build_quiz_prompt,
    error_reply,
    exam_prep_footer,
    grounding_context,
    image_reply,
    lesson_heading,
    lesson_label,
    no_true_false_reply,
    not_found_reply,
    pick_lesson_first_reply,
    suggestions_reply,
    true_false_reply,
)
from history_tutor_chat.store import RemoteStore
from history_tutor_chat.text import classify_turn, is_exam_prep, is_open_ended

logger = logging.getLogger(__name__)

TITLE_LENGTH = 50


@dataclass
class TurnResult:
    """What one turn produced."""
    conversation_id: str
    user_message: Optional[Message] = None
    reply: Optional[Message] = None
    outcome: Optional[Resolution] = None
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class TurnOrchestrator:
    """
    Runs single user turns against the injected collaborators.

    Args:
        store: Remote store, used to create conversations lazily
        synchronizer: Owner of every message write
        resolver: Lesson context resolver
        lookup: Knowledge lookup, used to re-read carried-forward lessons
        generator: Text generation service
        client_state: Port for lesson context and true/false cursors
        image_generator: Optional image generation service
        role: ``student`` or ``teacher``
        tf_batch_size: True/false items per reply
        max_suggestions: Upper bound on suggested lessons
    """

    def __init__(
        self,
        store: RemoteStore,
        synchronizer: ConversationSynchronizer,
        resolver: LessonContextResolver,
        lookup: KnowledgeLookup,
        generator: TextGenerator,
        client_state: ClientState,
        image_generator: Optional[ImageGenerator] = None,
        role: str = STUDENT,
        tf_batch_size: int = 3,
        max_suggestions: int = 5,
    ):
        self.store = store
        self.synchronizer = synchronizer
        self.resolver = resolver
        self.lookup = lookup
        self.generator = generator
        self.client_state = client_state
        self.image_generator = image_generator
        self.role = role
        self.tf_batch_size = tf_batch_size
        self.max_suggestions = max_suggestions

    async def create_conversation(self, title: str) -> str:
        conversation = await self.store.create(EntityKind.CONVERSATION, Conversation(id=None, title=title))
        logger.info(f"✅ [Orchestrator] Created conversation {conversation.id}: {title!r}")
        return conversation.id

    async def run_turn(self, conversation_id: Optional[str], text: str) -> TurnResult:
        """
        Process one user message to completion.

        Raises:
            ValidationFailure: Empty text, before any network call
            StoreWriteFailure: The conversation could not be created
        """
        text = (text or "").strip()
        if not text:
            raise ValidationFailure("Message text is empty")

        if conversation_id is None:
            conversation_id = await self.create_conversation(text[:TITLE_LENGTH])

        result = TurnResult(conversation_id=conversation_id)
        turn_kind = classify_turn(text)

        try:
            result.user_message = await self.synchronizer.append(
                conversation_id,
                Message(conversation_id=conversation_id, role=Role.USER, content=text, turn_kind=turn_kind),
            )
            draft, tf_cursor = await self._compose_reply(conversation_id, text, turn_kind, result)
            result.reply = await self.synchronizer.append(conversation_id, draft)
            if tf_cursor is not None:
                ref = draft.lesson_ref
                self.client_state.save_tf_cursor(conversation_id, ref.lesson, ref.grade, tf_cursor)
        except GenerationFailure as e:
            logger.warning(f"⚠️ [Orchestrator] Generation failed for {conversation_id}: {e}")
            result.error = e
            result.reply = await self._persist_error(conversation_id, GENERATION_APOLOGY, turn_kind)
        except Exception as e:
            logger.error(f"❌ [Orchestrator] Turn failed for {conversation_id}: {e}", exc_info=True)
            result.error = e
            result.reply = await self._persist_error(conversation_id, error_reply(e), turn_kind)

        return result

    async def _persist_error(self, conversation_id: str, content: str, turn_kind: TurnKind) -> Optional[Message]:
        """Best effort: a failing write here is logged and dropped."""
        try:
            return await self.synchronizer.append(
                conversation_id,
                Message(conversation_id=conversation_id, role=Role.ASSISTANT, content=content, turn_kind=turn_kind),
            )
        except Exception as e:
            logger.error(f"❌ [Orchestrator] Could not persist error reply for {conversation_id}: {e}")
            return None

    def _reply(
        self,
        conversation_id: str,
        content: str,
        turn_kind: TurnKind = TurnKind.TEXT,
        lesson: Optional[LessonContext] = None,
    ) -> Message:
        return Message(
            conversation_id=conversation_id,
            role=Role.ASSISTANT,
            content=content,
            turn_kind=turn_kind,
            lesson_ref=lesson.as_ref() if lesson else None,
        )

    async def _compose_reply(
        self,
        conversation_id: str,
        text: str,
        turn_kind: TurnKind,
        result: TurnResult,
    ) -> Tuple[Message, Optional[int]]:
        """Build the reply draft and, for true/false turns, the cursor to save once it is stored."""
        state = ConversationLessonState.load(conversation_id, self.client_state)
        outcome = await self.resolver.resolve(text, state.context)
        result.outcome = outcome
        logger.info(f"🔎 [Orchestrator] {conversation_id}: {type(outcome).__name__} ({turn_kind.value})")

        if isinstance(outcome, NewLessonRequested):
            state.request_new_lesson(self.client_state)
            return self._reply(conversation_id, ask_for_lesson_reply(self.role)), None
        if isinstance(outcome, AskForLesson):
            return self._reply(conversation_id, ask_for_lesson_reply(self.role)), None
        if isinstance(outcome, Suggestions):
            return self._reply(conversation_id, suggestions_reply(outcome.matches[:self.max_suggestions])), None
        if isinstance(outcome, NotFound):
            return self._reply(conversation_id, not_found_reply(outcome.grade, outcome.lesson)), None

        doc: Optional[LessonDoc] = None
        lesson: Optional[LessonContext] = None
        if isinstance(outcome, Resolved):
            doc = outcome.doc
            lesson = doc.as_context()
        elif isinstance(outcome, CarryForward):
            doc = await self.lookup.by_coordinate(outcome.grade, outcome.lesson)
            if doc is None:
                logger.warning(f"⚠️ [Orchestrator] Carried lesson {outcome.lesson} grade {outcome.grade} no longer in knowledge base")
                lesson = state.context
            else:
                lesson = doc.as_context()
        if lesson is not None:
            state.resolved(lesson, self.client_state)

        if turn_kind is TurnKind.TRUE_FALSE:
            return self._true_false_reply(conversation_id, lesson, doc)
        if turn_kind is TurnKind.IMAGE:
            return await self._image_reply(conversation_id, text, lesson), None

        content = await self._generate(text, turn_kind, lesson, doc)
        if is_exam_prep(text):
            content += exam_prep_footer()
        return self._reply(conversation_id, content, turn_kind, lesson), None

    async def _generate(
        self,
        text: str,
        turn_kind: TurnKind,
        lesson: Optional[LessonContext],
        doc: Optional[LessonDoc],
    ) -> str:
        grounding = grounding_context(doc) if doc else ""

        if turn_kind is TurnKind.QUIZ:
            return await self.generator.generate(build_quiz_prompt(lesson, self.role), grounding)
        if turn_kind is TurnKind.FLASHCARD:
            return await self.generator.generate(build_flashcard_prompt(lesson, self.role), grounding)

        if doc is not None and not is_open_ended(text):
            answer = await self.generator.generate(build_grounded_prompt(text, doc, self.role), grounding)
            return f"{lesson_heading(doc.as_context())}\n\n{answer}"

        return await self.generator.generate(build_open_prompt(text, self.role, lesson), "")

    def _true_false_reply(
        self,
        conversation_id: str,
        lesson: Optional[LessonContext],
        doc: Optional[LessonDoc],
    ) -> Tuple[Message, Optional[int]]:
        if lesson is None:
            return self._reply(conversation_id, pick_lesson_first_reply(), TurnKind.TRUE_FALSE), None

        items = doc.true_false_items if doc else []
        if not items:
            return self._reply(conversation_id, no_true_false_reply(lesson), TurnKind.TRUE_FALSE, lesson), None

        total = len(items)
        start = self.client_state.load_tf_cursor(conversation_id, lesson.lesson, lesson.grade) % total
        batch = items[start:start + self.tf_batch_size]
        seen = start + len(batch)
        logger.info(f"📝 [Orchestrator] True/false {start + 1}-{seen} of {total} for lesson {lesson.lesson} grade {lesson.grade}")

        content = true_false_reply(lesson, batch, start, seen, total)
        return self._reply(conversation_id, content, TurnKind.TRUE_FALSE, lesson), seen % total

    async def _image_reply(self, conversation_id: str, text: str, lesson: Optional[LessonContext]) -> Message:
        if self.image_generator is None:
            return self._reply(conversation_id, IMAGE_APOLOGY, TurnKind.IMAGE, lesson)
        try:
            url = await self.image_generator.generate_image(build_image_prompt(text, self.role))
        except Exception as e:
            logger.warning(f"⚠️ [Orchestrator] Image generation failed: {e}")
            return self._reply(conversation_id, IMAGE_APOLOGY, TurnKind.IMAGE, lesson)
        label = lesson_label(lesson) if lesson else text
        return self._reply(conversation_id, image_reply(label, url), TurnKind.IMAGE, lesson)
