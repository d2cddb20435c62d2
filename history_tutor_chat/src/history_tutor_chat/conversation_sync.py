"""
Conversation Synchronizer

Keeps, per conversation, an optimistic local message list reconciled against
a remote store whose reads may lag behind its writes.

Rules:
- append: the draft is visible immediately under a temporary id; on success
  it is swapped for the server copy, on failure it is removed.
- reconcile: a fetched batch smaller than the local cache is stale. It is
  discarded, the conversation is flagged as syncing and one delayed re-fetch
  is scheduled. Otherwise the batch is merged by id.
- Display order is always timestamp ascending.

Only ``append`` and ``reconcile`` mutate the cache.
"""

import asyncio
import logging
import uuid
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Set

from history_tutor_chat.client_state import ClientState
from history_tutor_chat.entities import EntityKind
from history_tutor_chat.models import TEMP_ID_PREFIX, Message, utc_now
from history_tutor_chat.store import RemoteStore

logger = logging.getLogger(__name__)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _sort_key(message: Message) -> datetime:
    return message.timestamp or _EPOCH


def sort_by_timestamp(messages: Iterable[Message]) -> List[Message]:
    """Stable timestamp-ascending sort."""
    return sorted(messages, key=_sort_key)


def new_temp_id() -> str:
    return f"{TEMP_ID_PREFIX}{uuid.uuid4().hex}"


class ConversationSynchronizer:
    """
    Optimistic message cache per conversation.

    Args:
        store: Remote store collaborator
        client_state: Optional port the confirmed cache is written through to
        refetch_delay: Base delay (seconds) before re-fetching a lagging view
        max_refetch_delay: Upper bound for the backed-off delay
        max_lag_refetches: Consecutive lag re-fetches before giving up
        fetch_limit: Maximum messages requested per fetch
    """

    def __init__(
        self,
        store: RemoteStore,
        client_state: Optional[ClientState] = None,
        refetch_delay: float = 3.0,
        max_refetch_delay: float = 30.0,
        max_lag_refetches: int = 5,
        fetch_limit: int = 100,
    ):
        self.store = store
        self.client_state = client_state
        self.refetch_delay = refetch_delay
        self.max_refetch_delay = max_refetch_delay
        self.max_lag_refetches = max_lag_refetches
        self.fetch_limit = fetch_limit

        self._caches: Dict[str, Dict[str, Message]] = {}
        self._syncing: Dict[str, bool] = {}
        self._lag_attempts: Dict[str, int] = {}
        self._refetch_tasks: Dict[str, asyncio.Task] = {}
        self._dropped: Set[str] = set()

    # ==================== Views ====================

    def _cache(self, conversation_id: str) -> Dict[str, Message]:
        cache = self._caches.get(conversation_id)
        if cache is None:
            cache = {}
            if self.client_state is not None:
                for message in self.client_state.load_messages(conversation_id):
                    cache[message.id] = message
                if cache:
                    logger.info(f"💾 [Sync] Hydrated {len(cache)} cached messages for {conversation_id}")
            self._caches[conversation_id] = cache
        return cache

    def messages(self, conversation_id: str) -> List[Message]:
        """Current merged view, timestamp ascending."""
        if conversation_id in self._dropped:
            return []
        return sort_by_timestamp(self._cache(conversation_id).values())

    def is_syncing(self, conversation_id: str) -> bool:
        return self._syncing.get(conversation_id, False)

    def _persist(self, conversation_id: str):
        if self.client_state is not None:
            self.client_state.save_messages(conversation_id, self.messages(conversation_id))

    def _next_timestamp(self, cache: Dict[str, Message]) -> datetime:
        """Now, nudged forward so it is strictly after every known message."""
        now = utc_now()
        latest = max((m.timestamp for m in cache.values() if m.timestamp), default=None)
        if latest is not None and now <= latest:
            return latest + timedelta(microseconds=1)
        return now

    # ==================== Writes ====================

    async def append(self, conversation_id: str, draft: Message) -> Message:
        """
        Optimistically add a message, then persist it.

        The temporary entry is in the cache before the first suspension point.
        Raises whatever the store raises, after removing the temporary entry.
        """
        # A dropped conversation gets a throwaway cache so it is never recreated
        cache = {} if conversation_id in self._dropped else self._cache(conversation_id)
        temp_id = new_temp_id()
        timestamp = draft.timestamp or self._next_timestamp(cache)
        optimistic = replace(draft, id=temp_id, conversation_id=conversation_id, timestamp=timestamp)
        cache[temp_id] = optimistic
        logger.debug(f"⚡ [Sync] Optimistic add {temp_id}: {len(cache)} messages")

        try:
            saved = await self.store.create(EntityKind.MESSAGE, optimistic)
        except Exception as e:
            cache.pop(temp_id, None)
            logger.warning(f"🔄 [Sync] Create failed, rolled back {temp_id}: {e}")
            raise

        cache.pop(temp_id, None)
        if conversation_id in self._dropped:
            return saved

        if saved.id in cache:
            logger.debug(f"⚠️ [Sync] {saved.id} already pulled by a fetch, keeping server copy")
        if saved.timestamp is None:
            saved = replace(saved, timestamp=timestamp)
        cache[saved.id] = saved
        self._persist(conversation_id)
        logger.debug(f"✅ [Sync] Replaced {temp_id} with {saved.id}")
        return saved

    def reconcile(self, conversation_id: str, fetched: List[Message]) -> List[Message]:
        """Merge a fetched batch into the local view and return the merged list."""
        if conversation_id in self._dropped:
            return []

        cache = self._cache(conversation_id)
        # A full window is as much as the server will ever return
        local_count = min(len(cache), self.fetch_limit) if self.fetch_limit else len(cache)
        fetched_count = len(fetched)

        if fetched_count < local_count and local_count > 0:
            logger.warning(f"⚠️ [Sync] Server behind ({fetched_count} < {local_count}) for {conversation_id}, keeping local")
            self._syncing[conversation_id] = True
            self._schedule_refetch(conversation_id)
            return self.messages(conversation_id)

        for message in fetched:
            cache[message.id] = message

        self._lag_attempts.pop(conversation_id, None)
        if self._syncing.get(conversation_id):
            logger.info(f"✅ [Sync] Server caught up for {conversation_id}")
        self._syncing[conversation_id] = False
        self._cancel_refetch(conversation_id)
        self._persist(conversation_id)
        return self.messages(conversation_id)

    # ==================== Fetching ====================

    async def refresh(self, conversation_id: str) -> List[Message]:
        """
        Fetch the newest ``fetch_limit`` messages and reconcile.

        A failed fetch changes nothing.
        """
        try:
            newest = await self.store.list(
                EntityKind.MESSAGE,
                order_by="-timestamp",
                limit=self.fetch_limit,
                filters={"conversation_id": conversation_id},
            )
        except Exception as e:
            logger.warning(f"⚠️ [Sync] Fetch failed for {conversation_id}, keeping local view: {e}")
            return self.messages(conversation_id)
        return self.reconcile(conversation_id, list(reversed(newest)))

    def _schedule_refetch(self, conversation_id: str):
        attempt = self._lag_attempts.get(conversation_id, 0)
        if attempt >= self.max_lag_refetches:
            logger.warning(f"⚠️ [Sync] Giving up re-fetching {conversation_id} after {attempt} attempts")
            return

        delay = min(self.refetch_delay * (2 ** attempt), self.max_refetch_delay)
        self._lag_attempts[conversation_id] = attempt + 1
        self._cancel_refetch(conversation_id)

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug(f"[Sync] No running loop, re-fetch for {conversation_id} left to the caller")
            return

        self._refetch_tasks[conversation_id] = loop.create_task(self._delayed_refresh(conversation_id, delay))
        logger.info(f"🔄 [Sync] Re-fetch of {conversation_id} in {delay:.1f}s (attempt {attempt + 1})")

    async def _delayed_refresh(self, conversation_id: str, delay: float):
        await asyncio.sleep(delay)
        if self._refetch_tasks.get(conversation_id) is asyncio.current_task():
            del self._refetch_tasks[conversation_id]
        await self.refresh(conversation_id)

    def _cancel_refetch(self, conversation_id: str):
        task = self._refetch_tasks.pop(conversation_id, None)
        if task is None or task.done():
            return
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        if task is not current:
            task.cancel()

    def has_pending_refetch(self, conversation_id: str) -> bool:
        task = self._refetch_tasks.get(conversation_id)
        return task is not None and not task.done()

    # ==================== Lifecycle ====================

    def drop(self, conversation_id: str):
        """Forget a deleted conversation. Late results for it are ignored."""
        self._cancel_refetch(conversation_id)
        self._caches.pop(conversation_id, None)
        self._syncing.pop(conversation_id, None)
        self._lag_attempts.pop(conversation_id, None)
        self._dropped.add(conversation_id)

    async def close(self):
        """Cancel every pending re-fetch."""
        tasks = list(self._refetch_tasks.values())
        self._refetch_tasks.clear()
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
