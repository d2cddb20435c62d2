"""
Knowledge Lookup

Resolves a (grade, lesson) coordinate or a free-text title query to lesson
documents from the knowledge base.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Tuple

from history_tutor_chat.entities import EntityKind, row_to_lesson_doc
from history_tutor_chat.models import LessonDoc, TrueFalseItem
from history_tutor_chat.text import normalize_text

logger = logging.getLogger(__name__)

THEORY_CATEGORY = "theory"


def is_theory(doc: LessonDoc) -> bool:
    return not doc.category or doc.category == THEORY_CATEGORY


def merge_lesson_rows(docs: Iterable[LessonDoc]) -> Optional[LessonDoc]:
    """
    Collapse every row sharing a coordinate into the theory document.

    Exercise rows carry the true/false items; the theory row carries the
    content. Returns None when no theory row exists.
    """
    docs = list(docs)
    theory = next((doc for doc in docs if is_theory(doc)), None)
    if theory is None:
        return None

    items: List[TrueFalseItem] = []
    for doc in docs:
        items.extend(doc.true_false_items)

    return LessonDoc(
        id=theory.id,
        grade=theory.grade,
        lesson=theory.lesson,
        title=theory.title,
        content=theory.content,
        category=theory.category,
        true_false_items=items,
    )


def rank_title_matches(docs: Iterable[LessonDoc], query: str) -> List[LessonDoc]:
    """
    Filter theory documents whose normalized title contains the query.

    Ranked by: title starts with the query, earliest match position, grade,
    lesson.
    """
    term = normalize_text(query)
    if not term:
        return []

    ranked: List[Tuple[Tuple[int, int, int, int], LessonDoc]] = []
    for doc in docs:
        if not is_theory(doc):
            continue
        position = normalize_text(doc.title).find(term)
        if position < 0:
            continue
        ranked.append(((0 if position == 0 else 1, position, doc.grade, doc.lesson), doc))

    ranked.sort(key=lambda pair: pair[0])
    return [doc for _, doc in ranked]


class KnowledgeLookup(ABC):
    """Read-only access to lesson documents. Safe for concurrent use."""

    @abstractmethod
    async def by_coordinate(self, grade: int, lesson: int) -> Optional[LessonDoc]:
        """Return the lesson's theory document, or None."""

    @abstractmethod
    async def by_title_substring(self, query: str) -> List[LessonDoc]:
        """Diacritic-insensitive title search, best match first."""


class InMemoryKnowledgeLookup(KnowledgeLookup):
    """Knowledge base held in memory."""

    def __init__(self, docs: Optional[Iterable[LessonDoc]] = None):
        self.docs: List[LessonDoc] = list(docs or [])

    def add(self, doc: LessonDoc):
        self.docs.append(doc)

    async def by_coordinate(self, grade, lesson):
        rows = [doc for doc in self.docs if doc.grade == grade and doc.lesson == lesson]
        return merge_lesson_rows(rows)

    async def by_title_substring(self, query):
        return rank_title_matches(self.docs, query)


class SupabaseKnowledgeLookup(KnowledgeLookup):
    """
    Knowledge base stored in the Supabase ``knowledge_base`` table.

    Only published rows are visible. Title search runs over a locally cached
    title index because the diacritic-insensitive match is done client-side.
    """

    PUBLISHED_FILTER = "published.eq.true,status.eq.published"
    INDEX_COLUMNS = "id, title, grade, lesson, category"

    def __init__(self, supabase_client, index_ttl_seconds: int = 300):
        """
        Args:
            supabase_client: Supabase client instance
            index_ttl_seconds: Time-to-live for the cached title index
        """
        self.supabase = supabase_client
        self.index_ttl = timedelta(seconds=index_ttl_seconds)
        self._index: List[LessonDoc] = []
        self._index_loaded_at: Optional[datetime] = None
        self._index_lock = asyncio.Lock()

    def _table(self):
        return self.supabase.table(EntityKind.KNOWLEDGE_DOC.table)

    async def by_coordinate(self, grade, lesson):
        def run():
            return self._table() \
                .select("*") \
                .eq("grade", int(grade)) \
                .eq("lesson", int(lesson)) \
                .or_(self.PUBLISHED_FILTER) \
                .execute()

        result = await asyncio.to_thread(run)
        docs = [row_to_lesson_doc(row) for row in (result.data or [])]
        doc = merge_lesson_rows(d for d in docs if d is not None)
        logger.debug(f"📚 [Knowledge] Lookup grade={grade} lesson={lesson}: {'found' if doc else 'missing'}")
        return doc

    def _index_expired(self) -> bool:
        if self._index_loaded_at is None:
            return True
        return datetime.now() - self._index_loaded_at > self.index_ttl

    async def _title_index(self) -> List[LessonDoc]:
        async with self._index_lock:
            if self._index_expired():
                def run():
                    return self._table() \
                        .select(self.INDEX_COLUMNS) \
                        .or_(self.PUBLISHED_FILTER) \
                        .order("grade") \
                        .order("lesson") \
                        .execute()

                result = await asyncio.to_thread(run)
                docs = [row_to_lesson_doc(row) for row in (result.data or [])]
                self._index = [doc for doc in docs if doc is not None]
                self._index_loaded_at = datetime.now()
                logger.info(f"📚 [Knowledge] Title index loaded: {len(self._index)} lessons")
            return self._index

    async def by_title_substring(self, query):
        return rank_title_matches(await self._title_index(), query)

    def invalidate(self):
        """Drop the cached title index."""
        self._index_loaded_at = None
