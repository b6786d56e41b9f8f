"""PostgreSQL implementation of AttemptRepo.

All writes run inside the caller's session, so a request's answer batch
or finalize commits as one transaction (see app.db.engine.session_scope).

The in_progress precondition is enforced by the UPDATE itself
(``WHERE status IN ('in_progress', 'started')``). A writer that lost a
race sees ``rowcount == 0`` and gets False back instead of overwriting a
completed attempt.
"""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import delete, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.tables import AnswerRow, AttemptRow
from app.models.attempt import Answer, Attempt, AttemptStatus, AttemptSummary
from app.services.errors import PersistenceError

_IN_PROGRESS = AttemptStatus.IN_PROGRESS.spellings()


class PgAttemptRepo:
    """Satisfies the AttemptRepo Protocol using PostgreSQL."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(
        self, attempt_id: UUID, *, for_update: bool = False
    ) -> Attempt | None:
        stmt = select(AttemptRow).where(AttemptRow.id == attempt_id)
        if for_update:
            # The row may already sit in the session from an unlocked read;
            # reload its columns once the lock is held.
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        try:
            row = (await self._session.execute(stmt)).scalar_one_or_none()
        except SQLAlchemyError as exc:
            raise PersistenceError("failed to load attempt") from exc
        if row is None:
            return None
        return _row_to_attempt(row)

    async def add(self, attempt: Attempt) -> None:
        row = AttemptRow(
            id=attempt.id,
            exam_id=attempt.exam_id,
            student_id=attempt.student_id,
            status=attempt.status.value,
            started_at=attempt.started_at,
            ip_address=attempt.ip_address,
            user_agent=attempt.user_agent,
            created_at=attempt.created_at,
            updated_at=attempt.updated_at,
        )
        self._session.add(row)
        try:
            await self._session.flush()
        except SQLAlchemyError as exc:
            raise PersistenceError("failed to insert attempt") from exc

    async def list_answers(self, attempt_id: UUID) -> list[Answer]:
        stmt = select(AnswerRow).where(AnswerRow.attempt_id == attempt_id)
        try:
            rows = (await self._session.execute(stmt)).scalars().all()
        except SQLAlchemyError as exc:
            raise PersistenceError("failed to load answers") from exc
        return [_row_to_answer(row) for row in rows]

    async def save_answers(
        self, attempt_id: UUID, answers: list[Answer], *, now: int
    ) -> bool:
        touch = (
            update(AttemptRow)
            .where(AttemptRow.id == attempt_id)
            .where(AttemptRow.status.in_(_IN_PROGRESS))
            .values(updated_at=now)
        )
        try:
            result = await self._session.execute(touch)
            if result.rowcount == 0:
                return False
            if not answers:
                return True

            stmt = pg_insert(AnswerRow).values(
                [
                    {
                        "id": a.id,
                        "attempt_id": a.attempt_id,
                        "question_id": a.question_id,
                        "selected_option_ids": list(a.selected_option_ids),
                        "is_correct": a.is_correct,
                        "points_earned": a.points_earned,
                        "created_at": a.created_at,
                        "updated_at": a.updated_at,
                    }
                    for a in answers
                ]
            )
            stmt = stmt.on_conflict_do_update(
                constraint="uq_exam_answers_attempt_question",
                set_={
                    "selected_option_ids": stmt.excluded.selected_option_ids,
                    "is_correct": stmt.excluded.is_correct,
                    "points_earned": stmt.excluded.points_earned,
                    "updated_at": stmt.excluded.updated_at,
                },
            )
            await self._session.execute(stmt)
        except SQLAlchemyError as exc:
            raise PersistenceError("failed to save answers") from exc
        return True

    async def complete(
        self, summary: AttemptSummary, *, time_spent: int, answers: list[Answer]
    ) -> bool:
        stmt = (
            update(AttemptRow)
            .where(AttemptRow.id == summary.id)
            .where(AttemptRow.status.in_(_IN_PROGRESS))
            .values(
                status=AttemptStatus.COMPLETED.value,
                completed_at=summary.completed_at,
                score=summary.score,
                total_points=summary.total_points,
                earned_points=summary.earned_points,
                time_spent=time_spent,
                updated_at=summary.completed_at,
            )
        )
        try:
            result = await self._session.execute(stmt)
            if result.rowcount == 0:
                return False
            if answers:
                # ORM bulk UPDATE by primary key
                await self._session.execute(
                    update(AnswerRow),
                    [
                        {
                            "id": a.id,
                            "is_correct": a.is_correct,
                            "points_earned": a.points_earned,
                            "updated_at": a.updated_at,
                        }
                        for a in answers
                    ],
                )
        except SQLAlchemyError as exc:
            raise PersistenceError("failed to finalize attempt") from exc
        return True

    async def list_by_exam(self, exam_id: UUID) -> list[Attempt]:
        stmt = (
            select(AttemptRow)
            .where(AttemptRow.exam_id == exam_id)
            .order_by(AttemptRow.started_at)
        )
        return await self._list(stmt)

    async def list_by_student(self, student_id: UUID) -> list[Attempt]:
        stmt = (
            select(AttemptRow)
            .where(AttemptRow.student_id == student_id)
            .order_by(AttemptRow.started_at)
        )
        return await self._list(stmt)

    async def delete(self, attempt_id: UUID) -> bool:
        # exam_answers rows go with it (ON DELETE CASCADE)
        stmt = delete(AttemptRow).where(AttemptRow.id == attempt_id)
        try:
            result = await self._session.execute(stmt)
        except SQLAlchemyError as exc:
            raise PersistenceError("failed to delete attempt") from exc
        return result.rowcount > 0

    async def _list(self, stmt) -> list[Attempt]:
        try:
            rows = (await self._session.execute(stmt)).scalars().all()
        except SQLAlchemyError as exc:
            raise PersistenceError("failed to list attempts") from exc
        return [_row_to_attempt(row) for row in rows]


def _row_to_attempt(row: AttemptRow) -> Attempt:
    return Attempt(
        id=row.id,
        exam_id=row.exam_id,
        student_id=row.student_id,
        started_at=row.started_at,
        status=AttemptStatus.parse(row.status),
        completed_at=row.completed_at,
        score=row.score,
        total_points=row.total_points,
        earned_points=row.earned_points,
        time_spent=row.time_spent,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_answer(row: AnswerRow) -> Answer:
    return Answer(
        id=row.id,
        attempt_id=row.attempt_id,
        question_id=row.question_id,
        selected_option_ids=tuple(sorted(row.selected_option_ids or (), key=str)),
        is_correct=row.is_correct,
        points_earned=row.points_earned,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )
