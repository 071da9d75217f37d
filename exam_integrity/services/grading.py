"""Deterministic scoring of a submission's committed answers."""

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from exam_integrity.models import Question, QuestionType


@dataclass
class QuestionResult:
    question_id: int
    answered: bool
    is_correct: bool
    marks_awarded: float


@dataclass
class GradeResult:
    score: float
    max_score: float
    ungraded_questions: int = 0
    details: List[QuestionResult] = field(default_factory=list)

    @property
    def percentage(self) -> float:
        if not self.max_score:
            return 0.0
        return round(self.score / self.max_score * 100, 2)


def _normalize(value) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text.lower() if text else None


def compute_score(
    answers: Dict[str, object],
    questions: Iterable[Question],
    negative_marking_percentage: float = 0,
) -> GradeResult:
    """Score ``answers`` (question id -> answer) against the exam's answer key.

    Objective questions are compared case-insensitively against
    ``correct_answer``; a wrong non-blank answer deducts the configured
    percentage of the question's marks. Descriptive questions are not scored
    and do not count towards the maximum. The total never goes below zero.
    """
    result = GradeResult(score=0.0, max_score=0.0)
    penalty_ratio = max(0.0, min(float(negative_marking_percentage or 0), 100.0)) / 100

    for question in sorted(questions, key=lambda q: q.id):
        if question.question_type not in QuestionType.OBJECTIVE:
            result.ungraded_questions += 1
            continue

        given = _normalize(answers.get(str(question.id)))
        expected = _normalize(question.correct_answer)
        answered = given is not None
        is_correct = answered and expected is not None and given == expected

        if is_correct:
            marks = float(question.marks)
        elif answered:
            marks = -float(question.marks) * penalty_ratio
        else:
            marks = 0.0

        result.max_score += float(question.marks)
        result.score += marks
        result.details.append(
            QuestionResult(
                question_id=question.id,
                answered=answered,
                is_correct=is_correct,
                marks_awarded=marks,
            )
        )

    result.score = round(max(result.score, 0.0), 4)
    result.max_score = round(result.max_score, 4)
    return result
