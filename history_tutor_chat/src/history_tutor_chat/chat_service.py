"""
Chat Service

The surface the UI talks to: sending messages, selecting, creating and
deleting conversations, and reading the merged message view.

Turns are serialized per conversation; different conversations run
concurrently. Lazy creation of a conversation for a first message is
serialized too, so one session never creates two conversations for it.
"""

import asyncio
import logging
from typing import Dict, List, Optional, Set

from history_tutor_chat.client_state import ClientState
from history_tutor_chat.conversation_sync import ConversationSynchronizer
from history_tutor_chat.entities import EntityKind
from history_tutor_chat.errors import ValidationFailure
from history_tutor_chat.models import Conversation, Message
from history_tutor_chat.store import RemoteStore
from history_tutor_chat.turn_orchestrator import TITLE_LENGTH, TurnOrchestrator, TurnResult

logger = logging.getLogger(__name__)

NEW_CONVERSATION_TITLE = "Cuộc trò chuyện mới"


class ChatService:
    """
    UI-facing operations for one client session.

    Args:
        store: Remote store
        synchronizer: Conversation synchronizer owning the message caches
        orchestrator: Turn orchestrator
        client_state: Client-local state port
        conversation_limit: Maximum conversations listed
    """

    def __init__(
        self,
        store: RemoteStore,
        synchronizer: ConversationSynchronizer,
        orchestrator: TurnOrchestrator,
        client_state: ClientState,
        conversation_limit: int = 50,
    ):
        self.store = store
        self.synchronizer = synchronizer
        self.orchestrator = orchestrator
        self.client_state = client_state
        self.conversation_limit = conversation_limit

        self.current_conversation_id: Optional[str] = None
        self.last_result: Optional[TurnResult] = None
        self._locks: Dict[str, asyncio.Lock] = {}
        self._creation_lock = asyncio.Lock()
        self._background: Set[asyncio.Task] = set()

    def _lock(self, conversation_id: str) -> asyncio.Lock:
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = self._locks[conversation_id] = asyncio.Lock()
        return lock

    # ==================== Messages ====================

    async def send_message(self, conversation_id: Optional[str], text: str) -> Optional[str]:
        """
        Run one turn and return the conversation id it landed in.

        ``None`` targets the session's current conversation, creating one from
        the message when there is none. Returns ``None`` when nothing was sent.
        """
        result = await self.run_message(conversation_id, text)
        return result.conversation_id if result else None

    async def run_message(self, conversation_id: Optional[str], text: str) -> Optional[TurnResult]:
        """Same as ``send_message`` but returns this turn's own result."""
        text = (text or "").strip()
        if not text:
            logger.warning("⚠️ [ChatService] Ignoring empty message")
            return None

        if conversation_id is None:
            async with self._creation_lock:
                if self.current_conversation_id is None:
                    try:
                        self.current_conversation_id = await self.orchestrator.create_conversation(text[:TITLE_LENGTH])
                    except Exception as e:
                        logger.error(f"❌ [ChatService] Could not create conversation: {e}")
                        return None
                conversation_id = self.current_conversation_id

        async with self._lock(conversation_id):
            try:
                result = await self.orchestrator.run_turn(conversation_id, text)
            except ValidationFailure as e:
                logger.warning(f"⚠️ [ChatService] Rejected message: {e}")
                return None
            except Exception as e:
                logger.error(f"❌ [ChatService] Turn for {conversation_id} failed: {e}", exc_info=True)
                result = TurnResult(conversation_id=conversation_id, error=e)
        self.last_result = result
        return result

    def dispatch(self, conversation_id: Optional[str], text: str) -> asyncio.Task:
        """Fire-and-forget ``send_message``; completion shows up in the merged view."""
        task = asyncio.create_task(self.send_message(conversation_id, text))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def get_merged_messages(self, conversation_id: str) -> List[Message]:
        return self.synchronizer.messages(conversation_id)

    def is_syncing(self, conversation_id: str) -> bool:
        return self.synchronizer.is_syncing(conversation_id)

    async def refresh(self, conversation_id: str) -> List[Message]:
        return await self.synchronizer.refresh(conversation_id)

    # ==================== Conversations ====================

    async def list_conversations(self) -> List[Conversation]:
        return await self.store.list(
            EntityKind.CONVERSATION,
            order_by="-last_message_at",
            limit=self.conversation_limit,
        )

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        found = await self.store.list(EntityKind.CONVERSATION, limit=1, filters={"id": conversation_id})
        return found[0] if found else None

    async def select_conversation(self, conversation_id: str) -> List[Message]:
        """Make a conversation current and pull its messages."""
        if not conversation_id:
            raise ValidationFailure("Conversation id is required")
        self.current_conversation_id = conversation_id
        logger.info(f"📂 [ChatService] Selected conversation {conversation_id}")
        return await self.synchronizer.refresh(conversation_id)

    async def new_conversation(self) -> str:
        async with self._creation_lock:
            conversation_id = await self.orchestrator.create_conversation(NEW_CONVERSATION_TITLE)
            self.current_conversation_id = conversation_id
        self.client_state.clear_context(conversation_id)
        return conversation_id

    async def delete_conversation(self, conversation_id: str):
        if not conversation_id:
            raise ValidationFailure("Conversation id is required")
        await self.store.delete(EntityKind.CONVERSATION, conversation_id)
        self.synchronizer.drop(conversation_id)
        self.client_state.forget_conversation(conversation_id)
        self._locks.pop(conversation_id, None)
        if self.current_conversation_id == conversation_id:
            self.current_conversation_id = None
        logger.info(f"🗑️ [ChatService] Deleted conversation {conversation_id}")

    async def close(self):
        """Wait for dispatched turns, then cancel pending re-fetches."""
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        await self.synchronizer.close()
