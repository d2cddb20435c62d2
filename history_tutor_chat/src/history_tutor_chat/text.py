"""
Text Normalization and Turn Classification

Pure, synchronous helpers: diacritic-insensitive normalization, the fixed
turn-kind keyword taxonomy and the open-ended cue list.
"""

import re
import unicodedata
from typing import List, Tuple

from history_tutor_chat.models import TurnKind

_COMBINING = re.compile("[\u0300-\u036f]")
_SEPARATORS = re.compile(r"[,\-–]")
_WHITESPACE = re.compile(r"\s+")


def normalize_text(text: str) -> str:
    """Lowercase, strip Vietnamese diacritics and collapse whitespace."""
    if not text or not isinstance(text, str):
        return ""
    lowered = unicodedata.normalize("NFD", text.lower())
    stripped = _COMBINING.sub("", lowered).replace("đ", "d")
    stripped = _SEPARATORS.sub(" ", stripped)
    return _WHITESPACE.sub(" ", stripped).strip()


# Checked in order; the first matching kind wins.
TURN_KIND_KEYWORDS: List[Tuple[TurnKind, Tuple[str, ...]]] = [
    (TurnKind.IMAGE, ("tạo ảnh", "minh họa")),
    (TurnKind.QUIZ, ("trắc nghiệm", "quiz")),
    (TurnKind.FLASHCARD, ("flashcard", "thẻ nhớ")),
    (TurnKind.TRUE_FALSE, ("đúng sai", "đúng-sai", "true false", "true-false")),
]

OPEN_ENDED_CUES = (
    "tại sao",
    "so sánh",
    "đánh giá",
    "phân tích",
    "nguồn nào",
    "hướng dẫn",
    "cách làm",
    "latest",
    "gần đây",
    "ở đâu",
    "tin tức",
    "ai là người",
)

EXAM_PREP_CUE = "ôn thi tốt nghiệp"


def _contains_any(normalized: str, phrases) -> bool:
    return any(normalize_text(phrase) in normalized for phrase in phrases)


def _contains_any_word(normalized: str, phrases) -> bool:
    # "o dau" must not match inside "cho dau"
    return any(
        re.search(r"\b" + re.escape(normalize_text(phrase)) + r"\b", normalized)
        for phrase in phrases
    )


def classify_turn(text: str) -> TurnKind:
    """Classify a user message into a turn kind."""
    normalized = normalize_text(text)
    if not normalized:
        return TurnKind.TEXT
    for kind, keywords in TURN_KIND_KEYWORDS:
        if _contains_any(normalized, keywords):
            return kind
    return TurnKind.TEXT


def is_open_ended(text: str) -> bool:
    """Comparative, opinion or current-events questions force open generation."""
    return _contains_any_word(normalize_text(text), OPEN_ENDED_CUES)


def is_exam_prep(text: str) -> bool:
    return normalize_text(EXAM_PREP_CUE) in normalize_text(text)
