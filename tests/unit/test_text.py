"""
Unit Tests for Text Normalization and Turn Classification
"""

import pytest
import sys
import os

# Add project root to path
project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), "../.."))
sys.path.insert(0, os.path.join(project_root, "history_tutor_chat", "src"))

from history_tutor_chat.models import TurnKind
from history_tutor_chat.text import classify_turn, is_exam_prep, is_open_ended, normalize_text


class TestNormalizeText:
    """Diacritic stripping and whitespace handling."""

    def test_strips_vietnamese_diacritics(self):
        assert normalize_text("Bài 3 Lớp 10") == "bai 3 lop 10"
        assert normalize_text("Chiến tranh thế giới") == "chien tranh the gioi"

    def test_d_with_stroke(self):
        assert normalize_text("Đại Việt") == "dai viet"

    def test_commas_and_hyphens_become_spaces(self):
        assert normalize_text("đúng-sai,  bài   2") == "dung sai bai 2"

    def test_empty_and_non_string(self):
        assert normalize_text("") == ""
        assert normalize_text(None) == ""


class TestClassifyTurn:
    """Fixed keyword taxonomy."""

    @pytest.mark.parametrize("text,kind", [
        ("Tạo 5 câu trắc nghiệm", TurnKind.QUIZ),
        ("cho mình quiz bài này", TurnKind.QUIZ),
        ("Tạo flashcard", TurnKind.FLASHCARD),
        ("làm thẻ nhớ giúp mình", TurnKind.FLASHCARD),
        ("tạo 3 câu đúng sai", TurnKind.TRUE_FALSE),
        ("câu đúng-sai bài 2", TurnKind.TRUE_FALSE),
        ("Tạo ảnh trận Bạch Đằng", TurnKind.IMAGE),
        ("Giải thích cho tôi về Bài 1 Lớp 10", TurnKind.TEXT),
    ])
    def test_keywords(self, text, kind):
        assert classify_turn(text) == kind

    def test_image_wins_over_quiz(self):
        assert classify_turn("minh họa câu trắc nghiệm") == TurnKind.IMAGE

    def test_empty_text_is_plain(self):
        assert classify_turn("   ") == TurnKind.TEXT


class TestCues:
    """Open-ended and exam-prep cues."""

    def test_open_ended_cues(self):
        assert is_open_ended("Tại sao cuộc khởi nghĩa thất bại?")
        assert is_open_ended("So sánh hai cuộc cải cách")
        assert not is_open_ended("Bài 2 Lớp 12")

    def test_cues_match_whole_words_only(self):
        # "cho dau" contains the letters of "o dau" but is not the cue
        assert not is_open_ended("cho dầu mỏ")
        assert is_open_ended("Kinh đô ở đâu?")

    def test_exam_prep(self):
        assert is_exam_prep("Mình muốn ôn thi tốt nghiệp bài 3")
        assert not is_exam_prep("ôn tập bài 3")
