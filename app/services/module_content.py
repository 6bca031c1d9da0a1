"""
Module content as a tagged union.

Each module stores its content as JSON next to a ``type`` discriminant. This
module turns that blob into one frozen dataclass per type, validates it on
write, and grades answered questions.

    content_section → ContentSection(text, questions)
    video_section   → VideoSection(video_url, require_full_watch, questions)
    question        → SingleQuestion(question)
    final_quiz      → FinalQuiz(questions, passing_score)

Stored JSON keeps the camelCase keys the learner UI reads
(``videoUrl``, ``correctIndex``, ``passingScore``).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, ClassVar, Union

from app.core.exceptions import ValidationError
from app.models.catalog import DEFAULT_PASSING_SCORE, MODULE_TYPES

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════════
# Variants
# ═════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Question:
    id: str
    question: str
    options: tuple[str, ...]
    correct_index: int
    explanation: str | None = None

    def to_dict(self) -> dict:
        d = {
            "id": self.id,
            "question": self.question,
            "options": list(self.options),
            "correctIndex": self.correct_index,
        }
        if self.explanation:
            d["explanation"] = self.explanation
        return d


@dataclass(frozen=True)
class ContentSection:
    type: ClassVar[str] = "content_section"
    text: str = ""
    questions: tuple[Question, ...] = ()

    def to_dict(self) -> dict:
        return {"text": self.text, "questions": [q.to_dict() for q in self.questions]}


@dataclass(frozen=True)
class VideoSection:
    type: ClassVar[str] = "video_section"
    video_url: str = ""
    require_full_watch: bool = False
    questions: tuple[Question, ...] = ()

    def to_dict(self) -> dict:
        return {
            "videoUrl": self.video_url,
            "requireFullWatch": self.require_full_watch,
            "questions": [q.to_dict() for q in self.questions],
        }


@dataclass(frozen=True)
class SingleQuestion:
    type: ClassVar[str] = "question"
    question: Question

    @property
    def questions(self) -> tuple[Question, ...]:
        return (self.question,)

    def to_dict(self) -> dict:
        return {"questions": [self.question.to_dict()]}


@dataclass(frozen=True)
class FinalQuiz:
    type: ClassVar[str] = "final_quiz"
    questions: tuple[Question, ...] = ()
    passing_score: int | None = None

    def to_dict(self) -> dict:
        d: dict[str, Any] = {"questions": [q.to_dict() for q in self.questions]}
        if self.passing_score is not None:
            d["passingScore"] = self.passing_score
        return d


ModuleContent = Union[ContentSection, VideoSection, SingleQuestion, FinalQuiz]


@dataclass(frozen=True)
class QuizOutcome:
    """Graded answers for one module."""

    questions_answered: list[dict] = field(default_factory=list)
    correct_count: int = 0
    total_count: int = 0
    score: int = 0
    passed: bool = False

    def to_dict(self) -> dict:
        return {
            "questions_answered": self.questions_answered,
            "correct_count": self.correct_count,
            "total_count": self.total_count,
            "score": self.score,
            "passed": self.passed,
        }


# ═════════════════════════════════════════════════════════════════════════════
# Parsing
# ═════════════════════════════════════════════════════════════════════════════

def _parse_question(raw: Any, position: int) -> Question:
    if not isinstance(raw, dict):
        raise ValidationError(f"Question {position + 1} must be an object")

    text = str(raw.get("question") or "").strip()
    if not text:
        raise ValidationError(
            f"Question {position + 1} text is required",
            details={f"questions[{position}].question": "required"},
        )

    options = raw.get("options") or []
    if not isinstance(options, list) or len(options) < 2:
        raise ValidationError(
            f"Question {position + 1} needs at least two options",
            details={f"questions[{position}].options": "min 2"},
        )
    cleaned = tuple(str(o).strip() for o in options)
    if any(not o for o in cleaned):
        raise ValidationError(
            f"Question {position + 1} has an empty option",
            details={f"questions[{position}].options": "option text is required"},
        )

    correct = raw.get("correctIndex", raw.get("correct_index"))
    if isinstance(correct, bool) or not isinstance(correct, int) or not 0 <= correct < len(cleaned):
        raise ValidationError(
            f"Question {position + 1} correctIndex must point at one of its options",
            details={f"questions[{position}].correctIndex": "out of range"},
        )

    qid = raw.get("id")
    return Question(
        id=str(qid) if qid not in (None, "") else f"q{position + 1}",
        question=text,
        options=cleaned,
        correct_index=correct,
        explanation=(raw.get("explanation") or None),
    )


def _parse_questions(raw_list: Any) -> tuple[Question, ...]:
    if raw_list in (None, ""):
        return ()
    if not isinstance(raw_list, list):
        raise ValidationError("questions must be a list")
    questions = tuple(_parse_question(q, i) for i, q in enumerate(raw_list))
    ids = [q.id for q in questions]
    if len(ids) != len(set(ids)):
        raise ValidationError("Question ids must be unique within a module")
    return questions


def parse_content(module_type: str, raw: dict | None) -> ModuleContent:
    """Validate a raw content blob for ``module_type`` and return its variant.

    Raises:
        ValidationError: unknown type or malformed content.
    """
    if module_type not in MODULE_TYPES:
        raise ValidationError(
            f"Invalid module type: {module_type}",
            details={"type": f"must be one of {sorted(MODULE_TYPES)}"},
        )
    raw = raw or {}
    if not isinstance(raw, dict):
        raise ValidationError("content must be an object")

    if module_type == "content_section":
        return ContentSection(
            text=str(raw.get("text") or ""),
            questions=_parse_questions(raw.get("questions")),
        )

    if module_type == "video_section":
        url = str(raw.get("videoUrl") or raw.get("video_url") or "").strip()
        if not url:
            raise ValidationError("videoUrl is required", details={"videoUrl": "required"})
        return VideoSection(
            video_url=url,
            require_full_watch=bool(raw.get("requireFullWatch", False)),
            questions=_parse_questions(raw.get("questions")),
        )

    if module_type == "question":
        if raw.get("question") and isinstance(raw["question"], dict):
            questions = (_parse_question(raw["question"], 0),)
        else:
            questions = _parse_questions(raw.get("questions"))
        if len(questions) != 1:
            raise ValidationError("A question module holds exactly one question")
        return SingleQuestion(question=questions[0])

    questions = _parse_questions(raw.get("questions"))
    if not questions:
        raise ValidationError("A final quiz needs at least one question", details={"questions": "required"})
    passing = raw.get("passingScore", raw.get("passing_score"))
    if passing is not None:
        if isinstance(passing, bool) or not isinstance(passing, int) or not 0 <= passing <= 100:
            raise ValidationError("passingScore must be an integer between 0 and 100")
    return FinalQuiz(questions=questions, passing_score=passing)


def load_content(module) -> ModuleContent:
    """Parse a stored Module row. Stored rows were validated on write."""
    return parse_content(module.type, module.content or {})


# ═════════════════════════════════════════════════════════════════════════════
# Grading
# ═════════════════════════════════════════════════════════════════════════════

def grade_quiz(
    content: ModuleContent,
    answers: dict,
    *,
    passing_score: int | None = None,
) -> QuizOutcome:
    """Grade ``answers`` ({question_id: selected_index}) against ``content``.

    A question counts as correct only when the selected index equals its
    ``correctIndex``; unanswered questions count as wrong. The threshold is
    the quiz's own passingScore, else ``passing_score``, else 80.
    """
    questions = content.questions
    if not questions:
        raise ValidationError("Module has no questions to grade")

    normalized = {str(k): v for k, v in (answers or {}).items()}
    answered = []
    correct = 0
    for q in questions:
        selected = normalized.get(q.id)
        is_correct = selected is not None and not isinstance(selected, bool) and selected == q.correct_index
        if is_correct:
            correct += 1
        answered.append({"questionId": q.id, "selectedIndex": selected, "correct": is_correct})

    total = len(questions)
    # Percentage rounded half-up
    score = (correct * 200 + total) // (2 * total)

    threshold = DEFAULT_PASSING_SCORE
    if passing_score is not None:
        threshold = passing_score
    if isinstance(content, FinalQuiz) and content.passing_score is not None:
        threshold = content.passing_score

    return QuizOutcome(
        questions_answered=answered,
        correct_count=correct,
        total_count=total,
        score=score,
        passed=score >= threshold,
    )
