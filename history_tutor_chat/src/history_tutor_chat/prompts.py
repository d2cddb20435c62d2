"""
Prompt Builders and Fixed Replies

Prompt text sent to the generation service and the fixed assistant replies
the orchestrator persists without a generation call. Role-aware: ``student``
or ``teacher``.
"""

from typing import List, Optional, Sequence

from history_tutor_chat.models import LessonContext, LessonDoc, TrueFalseItem

STUDENT = "student"
TEACHER = "teacher"

EXAM_PREP_LINK = "https://drive.google.com/drive/folders/14qqvmyHxovhDpv0XBUfgYwUonmUS7v2H"


def _asker(role: str) -> str:
    return "giáo viên" if role == TEACHER else "học sinh"


def lesson_label(lesson: Optional[LessonContext]) -> str:
    if lesson is None:
        return "Chưa xác định"
    return f"Bài {lesson.lesson} (Lớp {lesson.grade}) - {lesson.title}"


# ==================== Prompts ====================

def build_grounded_prompt(question: str, doc: LessonDoc, role: str = STUDENT) -> str:
    """Explanation grounded only in the lesson content."""
    tone = "thân thiện như bạn bè, gần gũi, dễ hiểu" if role != TEACHER else "chuẩn mực, chuyên nghiệp, rõ ràng"
    return f"""[MODE: STATIC_CONTENT]
[ROLE: {role}]
[CATEGORY: {doc.category or 'theory'}]

Bạn là trợ lý học tập môn Lịch sử. Giải thích tự nhiên, dễ hiểu, có chiều sâu.
Dùng ngôn ngữ {tone}.

Bài học hiện tại: {lesson_label(doc.as_context())}

QUAN TRỌNG: Chỉ sử dụng thông tin CÓ SẴN TRONG nội dung bài học được cung cấp.

Câu hỏi của {_asker(role)}: {question}"""


def build_open_prompt(question: str, role: str = STUDENT, lesson: Optional[LessonContext] = None) -> str:
    """Open question answered from general knowledge with cited sources."""
    context_line = f"\nBài học đang học: {lesson_label(lesson)}\n" if lesson else ""
    return f"""[MODE: OPEN_SEARCH]
[ROLE: {role}]
[CATEGORY: open_search]
{context_line}
Trả lời ngắn gọn, đi thẳng vào trọng tâm. Nếu cần liệt kê, dùng gạch đầu dòng tối đa 5 mục.
Nếu vấn đề có tranh luận, nêu 2 ý chính đối lập.
BẮT BUỘC: Kết thúc bằng mục "Nguồn tham khảo:" với 1-3 nguồn uy tín (tên nguồn và URL).
Từ chối nhẹ nhàng các nội dung 18+, gây hại hoặc phạm pháp.

Câu hỏi của {_asker(role)}: {question}"""


def build_quiz_prompt(lesson: Optional[LessonContext], role: str = STUDENT, count: int = 5) -> str:
    return f"""[MODE: STATIC_CONTENT]
[ROLE: {role}]
[CATEGORY: quiz]

Bài học: {lesson_label(lesson)}

Tạo {count} câu hỏi trắc nghiệm Lịch sử Việt Nam theo bài học này, mức độ dễ đến trung bình.
Mỗi câu có 4 lựa chọn A-D và chỉ 1 đáp án đúng. Mỗi lần tạo một bộ câu hỏi khác hoàn toàn.

Định dạng mỗi câu:

**Câu 1.** Nội dung câu hỏi?

- **A.** ...
- **B.** ...
- **C.** ...
- **D.** ...

**Đáp án:** **A**

_Giải thích:_ Lý do ngắn gọn."""


def build_flashcard_prompt(lesson: Optional[LessonContext], role: str = STUDENT, count: int = 7) -> str:
    return f"""[MODE: STATIC_CONTENT]
[ROLE: {role}]
[CATEGORY: flashcard]

Chọn nguồn từ: {lesson_label(lesson)}

Tạo {count} flashcard lịch sử dễ hiểu, tập trung vào mốc thời gian, diễn biến chính, nhân vật và ý nghĩa sự kiện.

Định dạng mỗi flashcard:

### 📌 Flashcard [số]

**Câu hỏi:** [câu hỏi ngắn gọn]

**Trả lời:** [câu trả lời dễ hiểu]"""


def build_image_prompt(description: str, role: str = STUDENT) -> str:
    requester = "teacher" if role == TEACHER else "student"
    return f"""Description provided by the {requester}: {description}

Generate a cartoon-style historical illustration of Vietnamese history suitable for middle or high school students.
Friendly, colorful, bright pastel palette, simple shapes, expressive characters, culturally and historically accurate.
Do NOT include modern or futuristic elements, horror or overly violent imagery."""


def grounding_context(doc: LessonDoc) -> str:
    return f"Bài: {doc.lesson}\nTiêu đề: {doc.title}\nNội dung: {doc.content}"


def lesson_heading(lesson: LessonContext) -> str:
    return f"# Bài {lesson.lesson} (Lớp {lesson.grade}): {lesson.title}"


def exam_prep_footer() -> str:
    return f"\n\n---\n\n💡 **Mách nhỏ bạn nè:** [Các đề ôn thi của mùa trước 📚]({EXAM_PREP_LINK})"


# ==================== Fixed replies ====================

def ask_for_lesson_reply(role: str = STUDENT) -> str:
    who = "Thầy/Cô muốn nội dung" if role == TEACHER else "Cậu muốn học"
    return f"{who} **Bài số mấy, Lớp mấy**? Ví dụ: `Bài 1 Lớp 10` hoặc nhập tên bài học nhé!"


def suggestions_reply(matches: Sequence[LessonDoc]) -> str:
    lines: List[str] = [f"Mình tìm thấy {len(matches)} bài học phù hợp:", ""]
    for index, doc in enumerate(matches, start=1):
        lines.append(f"{index}. **Bài {doc.lesson} (Lớp {doc.grade})**: {doc.title}")
        lines.append("")
    lines.append('Cậu hãy chọn một bài bằng cách nhập "Bài X Lớp Y" nhé!')
    return "\n".join(lines)


def not_found_reply(grade: int, lesson: int) -> str:
    return (
        f"Xin lỗi, không tìm thấy **Bài {lesson} (Lớp {grade})** trong ngân hàng kiến thức. 😅\n\n"
        "Cậu có thể thử bài khác không?"
    )


def pick_lesson_first_reply() -> str:
    return 'Vui lòng chọn một bài học trước. Ví dụ: "Giải thích cho tôi về Bài 1 Lớp 10"'


def no_true_false_reply(lesson: LessonContext) -> str:
    return (
        f"Xin lỗi, **Bài {lesson.lesson}** chưa có câu đúng-sai trong hệ thống. 📚\n\n"
        "Cậu có thể thử các tính năng khác nhé!"
    )


def true_false_reply(
    lesson: LessonContext,
    items: Sequence[TrueFalseItem],
    start: int,
    seen: int,
    total: int,
) -> str:
    """Format a batch of true/false items; ``start`` is the batch's 0-based offset."""
    parts = [
        f"Đây là {len(items)} câu đúng-sai từ **Bài {lesson.lesson}: {lesson.title}** 📝",
        f"*(Đã xem {seen}/{total} câu)*",
    ]
    blocks = []
    for offset, item in enumerate(items):
        lines = [f"**{item.question_number or f'Câu {start + offset + 1}'}:**"]
        if item.material:
            lines.append(f"*Tư liệu:* {item.material}")
        for key in ("a", "b", "c", "d"):
            lines.append(f"{key}) {item.options.get(key) or '(Chưa có nội dung)'}")
        answers = "\n".join(f"- {key}) {item.answers.get(key) or '?'}" for key in ("a", "b", "c", "d"))
        lines.append(f"**Đáp án:**\n\n{answers}")
        blocks.append("\n\n".join(lines))
    return "\n\n".join(parts) + "\n\n" + "\n\n---\n\n".join(blocks)


def image_reply(label: str, url: str) -> str:
    return (
        f"Đây là ảnh minh họa cho **{label}**:\n\n![Ảnh minh họa]({url})\n\n"
        "💡 Ảnh này giúp cậu dễ hình dung hơn về sự kiện lịch sử!"
    )


IMAGE_APOLOGY = "Xin lỗi, không thể tạo ảnh lúc này. Vui lòng thử lại. 🙏"

GENERATION_APOLOGY = "Xin lỗi, mình chưa thể trả lời câu hỏi này lúc này. Cậu vui lòng thử lại sau nhé! 🙏"


def error_reply(error: Exception) -> str:
    return f"Xin lỗi, có lỗi xảy ra: {error}"
