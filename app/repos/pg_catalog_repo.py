"""PostgreSQL implementation of CatalogRepo.

Questions and their options come back in two queries (questions, then
options via selectinload) regardless of how many questions the exam has.
"""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.db.tables import ExamRow, QuestionRow
from app.models.exam import Exam, Question, QuestionOption
from app.services.errors import PersistenceError


class PgCatalogRepo:
    """Satisfies the CatalogRepo Protocol using PostgreSQL."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_exam(self, exam_id: UUID) -> Exam | None:
        stmt = select(ExamRow).where(ExamRow.id == exam_id)
        try:
            row = (await self._session.execute(stmt)).scalar_one_or_none()
        except SQLAlchemyError as exc:
            raise PersistenceError("failed to load exam") from exc
        if row is None:
            return None
        return Exam(id=row.id, title=row.title, is_active=row.is_active)

    async def list_questions(self, exam_id: UUID) -> list[Question]:
        stmt = (
            select(QuestionRow)
            .where(QuestionRow.exam_id == exam_id)
            .options(selectinload(QuestionRow.options))
            .order_by(QuestionRow.position, QuestionRow.id)
        )
        try:
            rows = (await self._session.execute(stmt)).scalars().all()
        except SQLAlchemyError as exc:
            raise PersistenceError("failed to load exam questions") from exc
        return [_row_to_question(row) for row in rows]


def _row_to_question(row: QuestionRow) -> Question:
    return Question(
        id=row.id,
        exam_id=row.exam_id,
        points=row.points,
        position=row.position,
        options=tuple(
            QuestionOption(
                id=opt.id,
                question_id=opt.question_id,
                is_correct=opt.is_correct,
                position=opt.position,
            )
            for opt in row.options
        ),
    )
