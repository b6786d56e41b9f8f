"""Read-only catalog projections consumed by the grading engine.

Only what grading needs is carried: ids, points, and which options are
correct. Question and option text stay in the catalog tables.
"""

from __future__ import annotations

from dataclasses import dataclass
from uuid import UUID, uuid4


@dataclass(frozen=True, slots=True)
class Exam:
    id: UUID
    title: str
    is_active: bool = True

    @staticmethod
    def new(*, title: str, is_active: bool = True) -> Exam:
        return Exam(id=uuid4(), title=title, is_active=is_active)


@dataclass(frozen=True, slots=True)
class QuestionOption:
    id: UUID
    question_id: UUID
    is_correct: bool = False
    position: int = 0


@dataclass(frozen=True, slots=True)
class Question:
    id: UUID
    exam_id: UUID
    points: int = 1
    position: int = 0
    options: tuple[QuestionOption, ...] = ()

    @staticmethod
    def new(
        *,
        exam_id: UUID,
        points: int = 1,
        position: int = 0,
        correct: int | tuple[int, ...] = (),
        option_count: int = 4,
    ) -> Question:
        """Build a question with `option_count` options.

        `correct` holds the positions of the options flagged correct.
        """
        question_id = uuid4()
        correct_positions = (correct,) if isinstance(correct, int) else correct
        options = tuple(
            QuestionOption(
                id=uuid4(),
                question_id=question_id,
                is_correct=pos in correct_positions,
                position=pos,
            )
            for pos in range(option_count)
        )
        return Question(
            id=question_id,
            exam_id=exam_id,
            points=points,
            position=position,
            options=options,
        )

    def option_at(self, position: int) -> QuestionOption:
        for option in self.options:
            if option.position == position:
                return option
        raise IndexError(position)
