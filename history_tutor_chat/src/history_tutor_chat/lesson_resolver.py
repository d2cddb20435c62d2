"""
Lesson Context Resolution

Decides, for each incoming user message, whether it names a specific
knowledge-base lesson, continues the previous lesson, or is an open-ended
query. Resolution is a pure function of the text, the prior context and the
knowledge lookup: it never persists anything itself.
"""

import logging
import re
from dataclasses import dataclass
from typing import Iterable, Optional, Tuple

from history_tutor_chat.knowledge import KnowledgeLookup
from history_tutor_chat.models import LessonContext, LessonDoc
from history_tutor_chat.text import normalize_text

logger = logging.getLogger(__name__)

VALID_GRADES = range(10, 13)

SPELLED_NUMBERS = {
    "muoi hai": 12,
    "muoi mot": 11,
    "muoi": 10,
    "mot": 1,
    "hai": 2,
    "ba": 3,
    "bon": 4,
    "nam": 5,
    "sau": 6,
    "bay": 7,
    "tam": 8,
    "chin": 9,
}

_SPELLED = "|".join(SPELLED_NUMBERS)


def _number_after(keyword: str, other: str):
    # Spelled numbers only count when nothing but the other keyword follows,
    # so "bài Hai Bà Trưng" is not lesson 2.
    return re.compile(
        r"\b" + keyword + r"\s*:?\s*(?:(\d{1,2})\b|(" + _SPELLED + r")(?=\s*(?:" + other + r"\b|$|[.!?)])))"
    )


_LESSON_PATTERN = _number_after("bai", "lop")
_GRADE_PATTERN = _number_after("lop", "bai")
_BARE_PAIR_PATTERN = re.compile(r"\bbai\s*:?\s*(\d{1,2})\s*[(/]?\s*(\d{1,2})\b")

# Phrases that carry an instruction but no topic of their own.
GENERIC_PHRASES = (
    "giai thich cho toi ve",
    "giai thich cho toi",
    "giai thich",
    "noi dung bai hoc",
    "tao anh minh hoa",
    "tao anh",
    "minh hoa",
    "trac nghiem",
    "flashcards",
    "flashcard",
    "the nho",
    "dung sai",
    "quiz",
)

FILLER_WORDS = frozenset({
    "tao", "cau", "cho", "toi", "minh", "em", "ve", "hay", "giup", "voi",
    "nhe", "di", "xin", "ban", "oi", "mot", "vai", "cac", "nhung",
})

NEW_LESSON_PHRASES = (
    "bai khac",
    "doi bai",
    "chon bai khac",
    "hoc bai moi",
    "sang bai moi",
)


@dataclass(frozen=True)
class Coordinate:
    """A possibly partial (grade, lesson) coordinate found in text."""
    grade: Optional[int] = None
    lesson: Optional[int] = None

    @property
    def is_empty(self) -> bool:
        return self.grade is None and self.lesson is None


def _to_int(match) -> int:
    digits, spelled = match.group(1), match.group(2)
    return int(digits) if digits is not None else SPELLED_NUMBERS[spelled]


def extract_coordinate(text: str, valid_grades: Iterable[int] = VALID_GRADES) -> Coordinate:
    """
    Extract a (grade, lesson) coordinate from free text.

    Accepts "bài X lớp Y" and "lớp Y bài X", an optional colon, and spelled
    out small numbers. Grades outside ``valid_grades`` are rejected. For a
    bare pair such as "bài 3 12" the reading whose second member is a valid
    grade is preferred.
    """
    valid_grades = set(valid_grades)
    normalized = normalize_text(text)
    if not normalized:
        return Coordinate()

    lessons = [_to_int(m) for m in _LESSON_PATTERN.finditer(normalized)]
    grades = [_to_int(m) for m in _GRADE_PATTERN.finditer(normalized)]

    lesson = next((value for value in lessons if value > 0), None)
    grade = next((value for value in grades if value in valid_grades), None)

    if not grades:
        pair = _BARE_PAIR_PATTERN.search(normalized)
        if pair:
            first, second = int(pair.group(1)), int(pair.group(2))
            for candidate_lesson, candidate_grade in ((first, second), (second, first)):
                if candidate_grade in valid_grades and candidate_lesson > 0:
                    lesson, grade = candidate_lesson, candidate_grade
                    break

    return Coordinate(grade=grade, lesson=lesson)


def strip_generic(normalized: str) -> Tuple[str, bool]:
    """
    Remove generic instruction phrases.

    Returns the remaining text, used as the title search term, and whether
    any generic phrase was seen. Filler words are kept so a typed title
    stays a substring of itself.
    """
    remainder = normalized
    found = False
    for phrase in GENERIC_PHRASES:
        pattern = r"\b" + re.escape(phrase) + r"\b"
        if re.search(pattern, remainder):
            found = True
            remainder = re.sub(pattern, " ", remainder)
    return " ".join(remainder.split()), found


def has_topic_words(remainder: str) -> bool:
    """Whether anything but filler words and digits is left."""
    return any(
        word not in FILLER_WORDS and not word.isdigit()
        for word in remainder.split()
    )


def requests_new_lesson(normalized: str) -> bool:
    return any(phrase in normalized for phrase in NEW_LESSON_PHRASES)


# ==================== Outcomes ====================

class Resolution:
    """Base class for resolver outcomes."""


@dataclass(frozen=True)
class Resolved(Resolution):
    grade: int
    lesson: int
    doc: LessonDoc


@dataclass(frozen=True)
class CarryForward(Resolution):
    grade: int
    lesson: int


@dataclass(frozen=True)
class AskForLesson(Resolution):
    pass


@dataclass(frozen=True)
class Suggestions(Resolution):
    query: str
    matches: Tuple[LessonDoc, ...]


@dataclass(frozen=True)
class NotFound(Resolution):
    grade: int
    lesson: int


@dataclass(frozen=True)
class NewLessonRequested(Resolution):
    pass


@dataclass(frozen=True)
class OpenQuery(Resolution):
    pass


class LessonContextResolver:
    """
    Maps raw user text and the prior lesson context to a Resolution.

    Args:
        lookup: Knowledge lookup collaborator
        valid_grades: Supported school grades
        min_search_length: Shortest topic string worth a title search
    """

    def __init__(
        self,
        lookup: KnowledgeLookup,
        valid_grades: Iterable[int] = VALID_GRADES,
        min_search_length: int = 3,
    ):
        self.lookup = lookup
        self.valid_grades = tuple(valid_grades)
        self.min_search_length = min_search_length

    async def resolve(self, raw_text: str, prior_context: Optional[LessonContext]) -> Resolution:
        coordinate = extract_coordinate(raw_text, self.valid_grades)

        if coordinate.is_empty:
            return await self._resolve_without_coordinate(raw_text, prior_context)

        grade = coordinate.grade if coordinate.grade is not None else (prior_context.grade if prior_context else None)
        lesson = coordinate.lesson if coordinate.lesson is not None else (prior_context.lesson if prior_context else None)
        if grade is None or lesson is None:
            logger.info(f"🔎 [Resolver] Partial coordinate {coordinate} with no prior context")
            return AskForLesson()

        doc = await self.lookup.by_coordinate(grade, lesson)
        if doc is None:
            logger.info(f"🔎 [Resolver] Lesson {lesson} grade {grade} not in knowledge base")
            return NotFound(grade=grade, lesson=lesson)

        logger.info(f"✅ [Resolver] Resolved lesson {lesson} grade {grade}: {doc.title}")
        return Resolved(grade=grade, lesson=lesson, doc=doc)

    async def _resolve_without_coordinate(
        self,
        raw_text: str,
        prior_context: Optional[LessonContext],
    ) -> Resolution:
        normalized = normalize_text(raw_text)

        if requests_new_lesson(normalized):
            return NewLessonRequested()

        topic, generic = strip_generic(normalized)

        if generic and not has_topic_words(topic) and prior_context is None:
            return AskForLesson()

        if prior_context is not None:
            return CarryForward(grade=prior_context.grade, lesson=prior_context.lesson)

        if len(topic) >= self.min_search_length:
            matches = await self.lookup.by_title_substring(topic)
            if matches:
                logger.info(f"🔎 [Resolver] {len(matches)} title matches for '{topic}'")
                return Suggestions(query=topic, matches=tuple(matches))

        if generic:
            return AskForLesson()
        return OpenQuery()
