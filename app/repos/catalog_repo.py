from __future__ import annotations

from typing import Protocol
from uuid import UUID

from app.models.exam import Exam, Question


class CatalogRepo(Protocol):
    async def get_exam(self, exam_id: UUID) -> Exam | None: ...
    async def list_questions(self, exam_id: UUID) -> list[Question]: ...


class InMemoryCatalogRepo:
    """Catalog seeded in-process (dev runs without DATABASE_URL, tests)."""

    def __init__(self) -> None:
        self._exams: dict[UUID, Exam] = {}
        self._questions: dict[UUID, list[Question]] = {}

    async def get_exam(self, exam_id: UUID) -> Exam | None:
        return self._exams.get(exam_id)

    async def list_questions(self, exam_id: UUID) -> list[Question]:
        questions = self._questions.get(exam_id, [])
        return sorted(questions, key=lambda q: q.position)

    def add_exam(self, exam: Exam, questions: list[Question] | None = None) -> None:
        if exam.id in self._exams:
            raise ValueError("exam already exists")
        self._exams[exam.id] = exam
        self._questions[exam.id] = []
        for question in questions or []:
            self.add_question(question)

    def add_question(self, question: Question) -> None:
        if question.exam_id not in self._exams:
            raise KeyError("exam not found")
        self._questions[question.exam_id].append(question)

    def clear(self) -> None:
        self._exams.clear()
        self._questions.clear()
