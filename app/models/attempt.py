from __future__ import annotations

import enum
from dataclasses import dataclass
from uuid import UUID, uuid4


class AttemptStatus(str, enum.Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"

    @classmethod
    def parse(cls, raw: str) -> AttemptStatus:
        """Map a stored status string onto the enum.

        Older rows may carry "started" or "terminado"; anything else is
        rejected rather than guessed at.
        """
        value = raw.strip().lower()
        if value in _LEGACY_STATUSES:
            return _LEGACY_STATUSES[value]
        try:
            return cls(value)
        except ValueError:
            raise ValueError(f"unknown attempt status {raw!r}") from None

    def spellings(self) -> tuple[str, ...]:
        """Every stored string that parses to this status."""
        legacy = tuple(k for k, v in _LEGACY_STATUSES.items() if v is self)
        return (self.value, *legacy)


_LEGACY_STATUSES = {
    "started": AttemptStatus.IN_PROGRESS,
    "terminado": AttemptStatus.COMPLETED,
}


@dataclass(frozen=True, slots=True)
class Attempt:
    id: UUID
    exam_id: UUID
    student_id: UUID
    started_at: int
    status: AttemptStatus = AttemptStatus.IN_PROGRESS
    completed_at: int | None = None
    score: int | None = None
    total_points: int | None = None
    earned_points: int | None = None
    time_spent: int | None = None  # seconds
    ip_address: str | None = None
    user_agent: str | None = None
    created_at: int = 0
    updated_at: int = 0

    @staticmethod
    def new(
        *,
        exam_id: UUID,
        student_id: UUID,
        started_at: int,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> Attempt:
        return Attempt(
            id=uuid4(),
            exam_id=exam_id,
            student_id=student_id,
            started_at=started_at,
            ip_address=ip_address,
            user_agent=user_agent,
            created_at=started_at,
            updated_at=started_at,
        )

    @property
    def is_completed(self) -> bool:
        return self.status is AttemptStatus.COMPLETED


@dataclass(frozen=True, slots=True)
class Answer:
    """One student's response to one question within one attempt.

    `selected_option_ids` is kept sorted so two answers selecting the
    same options compare equal.
    """

    id: UUID
    attempt_id: UUID
    question_id: UUID
    selected_option_ids: tuple[UUID, ...]
    is_correct: bool = False
    points_earned: int = 0
    created_at: int = 0
    updated_at: int = 0

    @staticmethod
    def new(
        *,
        attempt_id: UUID,
        question_id: UUID,
        selected_option_ids: tuple[UUID, ...],
        is_correct: bool,
        points_earned: int,
        now: int,
    ) -> Answer:
        return Answer(
            id=uuid4(),
            attempt_id=attempt_id,
            question_id=question_id,
            selected_option_ids=selected_option_ids,
            is_correct=is_correct,
            points_earned=points_earned,
            created_at=now,
            updated_at=now,
        )


@dataclass(frozen=True, slots=True)
class AttemptSummary:
    """What finish() reports back once an attempt is scored."""

    id: UUID
    completed_at: int
    status: AttemptStatus
    score: int
    total_points: int
    earned_points: int
