"""
Remote Store Client

CRUD access to the conversation and message collections. The Supabase
implementation is used in deployment; the in-memory one backs tests and the
``memory`` deployment target.
"""

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Union

from history_tutor_chat.entities import (
    EntityKind,
    conversation_to_row,
    message_to_row,
    row_to_conversation,
    row_to_lesson_doc,
    row_to_message,
)
from history_tutor_chat.errors import StoreReadFailure, StoreWriteFailure
from history_tutor_chat.models import Conversation, Message

logger = logging.getLogger(__name__)

Record = Union[Conversation, Message]

_ROW_READERS: Dict[EntityKind, Callable[[Dict[str, Any]], Any]] = {
    EntityKind.CONVERSATION: row_to_conversation,
    EntityKind.MESSAGE: row_to_message,
    EntityKind.KNOWLEDGE_DOC: row_to_lesson_doc,
}


def record_to_row(kind: EntityKind, record: Record) -> Dict[str, Any]:
    if kind is EntityKind.CONVERSATION and isinstance(record, Conversation):
        return conversation_to_row(record)
    if kind is EntityKind.MESSAGE and isinstance(record, Message):
        return message_to_row(record)
    raise ValueError(f"Cannot write {type(record).__name__} to {kind.table}")


class RemoteStore(ABC):
    """Contract the core needs from the remote store. Safe for concurrent use."""

    @abstractmethod
    async def list(
        self,
        kind: EntityKind,
        order_by: Optional[str] = None,
        limit: Optional[int] = None,
        filters: Optional[Dict[str, Any]] = None,
    ) -> List[Any]:
        """List records. ``order_by`` takes a leading ``-`` for descending."""

    @abstractmethod
    async def create(self, kind: EntityKind, record: Record) -> Record:
        """Persist a record and return it with its server-assigned id."""

    @abstractmethod
    async def delete(self, kind: EntityKind, record_id: str) -> None:
        """Delete a record. Deleting a conversation removes its messages."""


class SupabaseStore(RemoteStore):
    """
    Supabase-backed store.

    supabase-py's query builder is synchronous, so every ``execute()`` runs in
    a worker thread to keep the event loop free.
    """

    def __init__(self, supabase_client):
        """
        Args:
            supabase_client: Supabase client instance
        """
        self.supabase = supabase_client

    async def list(self, kind, order_by=None, limit=None, filters=None):
        def run():
            query = self.supabase.table(kind.table).select("*")
            for column, value in (filters or {}).items():
                query = query.eq(column, value)
            if order_by:
                query = query.order(order_by.lstrip("-"), desc=order_by.startswith("-"))
            if limit:
                query = query.limit(limit)
            return query.execute()

        try:
            result = await asyncio.to_thread(run)
        except Exception as e:
            logger.warning(f"⚠️ [Store] List {kind.table} failed: {e}")
            raise StoreReadFailure(f"Could not list {kind.table}: {e}") from e

        reader = _ROW_READERS[kind]
        records = [reader(row) for row in (result.data or [])]
        return [record for record in records if record is not None]

    async def create(self, kind, record):
        row = record_to_row(kind, record)

        def run():
            return self.supabase.table(kind.table).insert(row).execute()

        try:
            result = await asyncio.to_thread(run)
        except Exception as e:
            logger.warning(f"⚠️ [Store] Insert into {kind.table} failed: {e}")
            raise StoreWriteFailure(f"Could not create {kind.table} record: {e}", kind=kind.table) from e

        if not result.data:
            raise StoreWriteFailure(f"Insert into {kind.table} returned no row", kind=kind.table)
        return _ROW_READERS[kind](result.data[0])

    async def delete(self, kind, record_id):
        def run():
            if kind is EntityKind.CONVERSATION:
                self.supabase.table(EntityKind.MESSAGE.table).delete().eq("conversation_id", record_id).execute()
            self.supabase.table(kind.table).delete().eq("id", record_id).execute()

        try:
            await asyncio.to_thread(run)
        except Exception as e:
            logger.warning(f"⚠️ [Store] Delete from {kind.table} failed: {e}")
            raise StoreWriteFailure(f"Could not delete {kind.table} record {record_id}: {e}", kind=kind.table) from e


class InMemoryStore(RemoteStore):
    """
    In-process store keeping rows exactly as the remote store would.

    Args:
        latency: Seconds each operation waits before completing, to mimic I/O
    """

    def __init__(self, latency: float = 0.0):
        self.latency = latency
        self.tables: Dict[EntityKind, Dict[str, Dict[str, Any]]] = {kind: {} for kind in EntityKind}

    async def _io(self):
        await asyncio.sleep(self.latency)

    def seed(self, kind: EntityKind, rows: List[Dict[str, Any]]):
        """Insert raw rows directly, bypassing serialization."""
        for row in rows:
            row = dict(row)
            row.setdefault("id", str(uuid.uuid4()))
            self.tables[kind][str(row["id"])] = row

    async def list(self, kind, order_by=None, limit=None, filters=None):
        await self._io()
        rows = [
            row for row in self.tables[kind].values()
            if all(row.get(column) == value for column, value in (filters or {}).items())
        ]
        if order_by:
            column = order_by.lstrip("-")
            present = [row for row in rows if row.get(column) is not None]
            missing = [row for row in rows if row.get(column) is None]
            present.sort(key=lambda row: row[column], reverse=order_by.startswith("-"))
            rows = present + missing
        if limit:
            rows = rows[:limit]
        reader = _ROW_READERS[kind]
        records = [reader(dict(row)) for row in rows]
        return [record for record in records if record is not None]

    async def create(self, kind, record):
        row = record_to_row(kind, record)
        await self._io()
        row.setdefault("id", str(uuid.uuid4()))
        self.tables[kind][row["id"]] = row
        return _ROW_READERS[kind](dict(row))

    async def delete(self, kind, record_id):
        await self._io()
        if kind is EntityKind.CONVERSATION:
            messages = self.tables[EntityKind.MESSAGE]
            for message_id in [mid for mid, row in messages.items() if row.get("conversation_id") == record_id]:
                del messages[message_id]
        self.tables[kind].pop(record_id, None)
