from __future__ import annotations

import threading
from dataclasses import replace
from typing import Protocol
from uuid import UUID

from app.models.attempt import Answer, Attempt, AttemptStatus, AttemptSummary


class AttemptRepo(Protocol):
    async def get(
        self, attempt_id: UUID, *, for_update: bool = False
    ) -> Attempt | None: ...
    async def add(self, attempt: Attempt) -> None: ...
    async def list_answers(self, attempt_id: UUID) -> list[Answer]: ...
    async def save_answers(
        self, attempt_id: UUID, answers: list[Answer], *, now: int
    ) -> bool: ...
    async def complete(
        self, summary: AttemptSummary, *, time_spent: int, answers: list[Answer]
    ) -> bool: ...
    async def list_by_exam(self, exam_id: UUID) -> list[Attempt]: ...
    async def list_by_student(self, student_id: UUID) -> list[Attempt]: ...
    async def delete(self, attempt_id: UUID) -> bool: ...


class InMemoryAttemptRepo:
    """Attempts and answers held in dicts; every read and write takes one lock.

    save_answers() and complete() check the in_progress precondition and
    apply their writes under the same lock, which gives them the same
    all-or-nothing, at-most-one-transition behavior as the conditional
    UPDATEs in PgAttemptRepo.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._attempts: dict[UUID, Attempt] = {}
        # keyed by (attempt_id, question_id): one answer per question
        self._answers: dict[tuple[UUID, UUID], Answer] = {}

    async def get(
        self, attempt_id: UUID, *, for_update: bool = False
    ) -> Attempt | None:
        with self._lock:
            return self._attempts.get(attempt_id)

    async def add(self, attempt: Attempt) -> None:
        with self._lock:
            if attempt.id in self._attempts:
                raise ValueError("attempt already exists")
            self._attempts[attempt.id] = attempt

    async def list_answers(self, attempt_id: UUID) -> list[Answer]:
        with self._lock:
            return [a for a in self._answers.values() if a.attempt_id == attempt_id]

    async def save_answers(
        self, attempt_id: UUID, answers: list[Answer], *, now: int
    ) -> bool:
        """Upsert a batch of answers. False if the attempt left in_progress."""
        with self._lock:
            attempt = self._attempts.get(attempt_id)
            if attempt is None or attempt.status is not AttemptStatus.IN_PROGRESS:
                return False

            staged: dict[tuple[UUID, UUID], Answer] = {}
            for answer in answers:
                key = (answer.attempt_id, answer.question_id)
                existing = self._answers.get(key)
                if existing is not None:
                    # The stored row keeps its identity, like ON CONFLICT DO UPDATE.
                    answer = replace(
                        answer, id=existing.id, created_at=existing.created_at
                    )
                staged[key] = answer

            self._answers.update(staged)
            self._attempts[attempt_id] = replace(attempt, updated_at=now)
            return True

    async def complete(
        self, summary: AttemptSummary, *, time_spent: int, answers: list[Answer]
    ) -> bool:
        """Move the attempt to completed. False if it was not in_progress."""
        with self._lock:
            attempt = self._attempts.get(summary.id)
            if attempt is None or attempt.status is not AttemptStatus.IN_PROGRESS:
                return False

            self._attempts[summary.id] = replace(
                attempt,
                status=AttemptStatus.COMPLETED,
                completed_at=summary.completed_at,
                score=summary.score,
                total_points=summary.total_points,
                earned_points=summary.earned_points,
                time_spent=time_spent,
                updated_at=summary.completed_at,
            )
            for answer in answers:
                self._answers[(answer.attempt_id, answer.question_id)] = answer
            return True

    async def list_by_exam(self, exam_id: UUID) -> list[Attempt]:
        with self._lock:
            found = [a for a in self._attempts.values() if a.exam_id == exam_id]
        return sorted(found, key=lambda a: a.started_at)

    async def list_by_student(self, student_id: UUID) -> list[Attempt]:
        with self._lock:
            found = [
                a for a in self._attempts.values() if a.student_id == student_id
            ]
        return sorted(found, key=lambda a: a.started_at)

    async def delete(self, attempt_id: UUID) -> bool:
        with self._lock:
            if self._attempts.pop(attempt_id, None) is None:
                return False
            for key in [k for k in self._answers if k[0] == attempt_id]:
                del self._answers[key]
            return True

    def clear(self) -> None:
        with self._lock:
            self._attempts.clear()
            self._answers.clear()
