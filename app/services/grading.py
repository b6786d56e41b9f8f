"""All-or-nothing grading of multiple-choice answers.

A selection is correct only when it contains exactly the options flagged
correct: no partial credit, and option order never matters. Both sides
are normalized to a sorted tuple (ids compared as strings) and compared
element by element.

Everything here is pure, so grading the same answer twice always gives
the same result. The engine relies on that when it regrades at finalize.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from fractions import Fraction
from uuid import UUID

from app.models.exam import Question


@dataclass(frozen=True, slots=True)
class Grade:
    is_correct: bool
    points_earned: int


def normalize_option_ids(option_ids: Iterable[UUID]) -> tuple[UUID, ...]:
    return tuple(sorted(set(option_ids), key=str))


def correct_option_ids(question: Question) -> tuple[UUID, ...]:
    return normalize_option_ids(o.id for o in question.options if o.is_correct)


def is_exact_match(correct: Iterable[UUID], selected: Iterable[UUID]) -> bool:
    # An empty selection matches only a question with no correct options.
    return normalize_option_ids(correct) == normalize_option_ids(selected)


def grade_answer(question: Question, selected: Iterable[UUID]) -> Grade:
    if is_exact_match(correct_option_ids(question), selected):
        return Grade(is_correct=True, points_earned=question.points)
    return Grade(is_correct=False, points_earned=0)


def compute_score(earned_points: int, total_points: int) -> int:
    """Percentage score 0-100, rounded half-to-even.

    Exact rational arithmetic, so 12.5% rounds to 12 and 37.5% to 38
    without float error. An exam worth no points scores 0.
    """
    if total_points <= 0:
        return 0
    return round(Fraction(earned_points * 100, total_points))
