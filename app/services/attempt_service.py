"""Exam attempt lifecycle: start, submit answers, finish.

An attempt moves one way only::

    in_progress ──finish()──▶ completed

submit_answers() keeps the attempt in_progress; nothing touches it once
completed. The in_progress check done here on load is advisory; the
authoritative one is the repo's conditional write (save_answers /
complete return False when the attempt left in_progress in between), so
two concurrent finish() calls can never both score the attempt.
"""

from __future__ import annotations

import datetime
import logging
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, replace
from uuid import UUID

from app.core.metrics import (
    ANSWERS_GRADED,
    ATTEMPT_SCORE,
    ATTEMPTS_FINISHED,
    ATTEMPTS_STARTED,
    TRANSITION_CONFLICTS,
)
from app.models.attempt import Answer, Attempt, AttemptStatus, AttemptSummary
from app.repos.attempt_repo import AttemptRepo
from app.repos.catalog_repo import CatalogRepo
from app.repos.user_repo import UserRepo
from app.services.errors import (
    AttemptValidationError,
    InvalidStateError,
    NotFoundError,
)
from app.services.grading import (
    compute_score,
    grade_answer,
    normalize_option_ids,
)

logger = logging.getLogger(__name__)


def _now() -> int:
    return int(datetime.datetime.now(datetime.UTC).timestamp())


@dataclass(frozen=True, slots=True)
class AnswerSubmission:
    question_id: UUID
    selected_option_ids: tuple[UUID, ...] = ()


class AttemptService:
    def __init__(
        self,
        users: UserRepo,
        catalog: CatalogRepo,
        attempts: AttemptRepo,
        *,
        strict_question_ids: bool = False,
        clock: Callable[[], int] = _now,
    ) -> None:
        self._users = users
        self._catalog = catalog
        self._attempts = attempts
        self._strict_question_ids = strict_question_ids
        self._clock = clock

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(
        self,
        exam_id: UUID,
        student_id: UUID,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> Attempt:
        if exam_id is None or student_id is None:
            raise AttemptValidationError("exam_id and student_id are required")

        if await self._users.get_by_id(student_id) is None:
            raise NotFoundError(f"student {student_id} not found")
        if await self._catalog.get_exam(exam_id) is None:
            raise NotFoundError(f"exam {exam_id} not found")

        attempt = Attempt.new(
            exam_id=exam_id,
            student_id=student_id,
            started_at=self._clock(),
            ip_address=ip_address,
            user_agent=user_agent,
        )
        await self._attempts.add(attempt)

        ATTEMPTS_STARTED.inc()
        logger.info(
            "Attempt started attempt=%s exam=%s student=%s",
            attempt.id,
            exam_id,
            student_id,
            extra={"attempt_id": str(attempt.id), "exam_id": str(exam_id)},
        )
        return attempt

    async def submit_answers(
        self, attempt_id: UUID, answers: Sequence[AnswerSubmission]
    ) -> int:
        """Grade and upsert a batch of answers; returns how many were written.

        Answers for questions outside the attempt's exam are skipped, or
        rejected with NotFoundError when strict_question_ids is set. If a
        question appears twice in the batch the later entry wins.
        """
        _validate_submissions(answers)
        attempt = await self._load_in_progress(attempt_id)

        questions = {
            q.id: q for q in await self._catalog.list_questions(attempt.exam_id)
        }
        existing = {
            a.question_id: a for a in await self._attempts.list_answers(attempt_id)
        }
        now = self._clock()

        batch: dict[UUID, Answer] = {}
        for submission in answers:
            question = questions.get(submission.question_id)
            if question is None:
                if self._strict_question_ids:
                    raise NotFoundError(
                        f"question {submission.question_id} is not part of "
                        f"exam {attempt.exam_id}"
                    )
                logger.warning(
                    "Skipping answer for unknown question=%s attempt=%s",
                    submission.question_id,
                    attempt_id,
                    extra={"attempt_id": str(attempt_id)},
                )
                continue

            selected = normalize_option_ids(submission.selected_option_ids)
            grade = grade_answer(question, selected)

            current = batch.get(question.id) or existing.get(question.id)
            if current is not None:
                batch[question.id] = replace(
                    current,
                    selected_option_ids=selected,
                    is_correct=grade.is_correct,
                    points_earned=grade.points_earned,
                    updated_at=now,
                )
            else:
                batch[question.id] = Answer.new(
                    attempt_id=attempt_id,
                    question_id=question.id,
                    selected_option_ids=selected,
                    is_correct=grade.is_correct,
                    points_earned=grade.points_earned,
                    now=now,
                )

        saved = await self._attempts.save_answers(
            attempt_id, list(batch.values()), now=now
        )
        if not saved:
            TRANSITION_CONFLICTS.labels(operation="submit").inc()
            raise InvalidStateError(f"attempt {attempt_id} is not in progress")

        _count("submit", [a.is_correct for a in batch.values()])
        logger.info(
            "Answers saved attempt=%s count=%d",
            attempt_id,
            len(batch),
            extra={"attempt_id": str(attempt_id)},
        )
        return len(batch)

    async def finish(self, attempt_id: UUID) -> AttemptSummary:
        """Regrade every answer against the exam's full question set and score.

        Unanswered questions still count toward total_points. Stored
        is_correct flags are not trusted; each answer is graded again.
        """
        attempt = await self._load_in_progress(attempt_id)

        questions = await self._catalog.list_questions(attempt.exam_id)
        answers = {
            a.question_id: a for a in await self._attempts.list_answers(attempt_id)
        }
        now = self._clock()

        total_points = 0
        earned_points = 0
        changed: list[Answer] = []
        results: list[bool] = []
        for question in questions:
            total_points += question.points
            answer = answers.get(question.id)
            if answer is None:
                continue

            grade = grade_answer(question, answer.selected_option_ids)
            results.append(grade.is_correct)
            earned_points += grade.points_earned
            if (answer.is_correct, answer.points_earned) != (
                grade.is_correct,
                grade.points_earned,
            ):
                changed.append(
                    replace(
                        answer,
                        is_correct=grade.is_correct,
                        points_earned=grade.points_earned,
                        updated_at=now,
                    )
                )

        summary = AttemptSummary(
            id=attempt_id,
            completed_at=now,
            status=AttemptStatus.COMPLETED,
            score=compute_score(earned_points, total_points),
            total_points=total_points,
            earned_points=earned_points,
        )
        completed = await self._attempts.complete(
            summary,
            time_spent=max(now - attempt.started_at, 0),
            answers=changed,
        )
        if not completed:
            TRANSITION_CONFLICTS.labels(operation="finish").inc()
            raise InvalidStateError(f"attempt {attempt_id} is already completed")

        _count("finish", results)
        ATTEMPTS_FINISHED.inc()
        ATTEMPT_SCORE.observe(summary.score)
        logger.info(
            "Attempt finished attempt=%s score=%d earned=%d total=%d",
            attempt_id,
            summary.score,
            earned_points,
            total_points,
            extra={"attempt_id": str(attempt_id), "exam_id": str(attempt.exam_id)},
        )
        return summary

    # ------------------------------------------------------------------
    # Reads and admin
    # ------------------------------------------------------------------

    async def get_attempt(self, attempt_id: UUID) -> Attempt:
        attempt = await self._attempts.get(attempt_id)
        if attempt is None:
            raise NotFoundError(f"attempt {attempt_id} not found")
        return attempt

    async def list_answers(self, attempt_id: UUID) -> list[Answer]:
        await self.get_attempt(attempt_id)
        return await self._attempts.list_answers(attempt_id)

    async def get_answer(self, attempt_id: UUID, answer_id: UUID) -> Answer:
        for answer in await self.list_answers(attempt_id):
            if answer.id == answer_id:
                return answer
        raise NotFoundError(f"answer {answer_id} not found in attempt {attempt_id}")

    async def list_by_exam(self, exam_id: UUID) -> list[Attempt]:
        return await self._attempts.list_by_exam(exam_id)

    async def list_by_student(self, student_id: UUID) -> list[Attempt]:
        return await self._attempts.list_by_student(student_id)

    async def delete_attempt(self, attempt_id: UUID) -> None:
        if not await self._attempts.delete(attempt_id):
            raise NotFoundError(f"attempt {attempt_id} not found")
        logger.info(
            "Attempt deleted attempt=%s",
            attempt_id,
            extra={"attempt_id": str(attempt_id)},
        )

    async def _load_in_progress(self, attempt_id: UUID) -> Attempt:
        if attempt_id is None:
            raise AttemptValidationError("attempt_id is required")
        attempt = await self._attempts.get(attempt_id, for_update=True)
        if attempt is None:
            raise InvalidStateError(f"attempt {attempt_id} not found")
        if attempt.is_completed:
            raise InvalidStateError(f"attempt {attempt_id} is already completed")
        return attempt


def _validate_submissions(answers: Sequence[AnswerSubmission]) -> None:
    if answers is None:
        raise AttemptValidationError("answers are required")
    for submission in answers:
        if submission.question_id is None:
            raise AttemptValidationError("question_id is required")
        if submission.selected_option_ids is None:
            raise AttemptValidationError("selected_option_ids is required")


def _count(stage: str, results: Iterable[bool]) -> None:
    # Only called once the graded answers are saved.
    for is_correct in results:
        ANSWERS_GRADED.labels(
            stage=stage, result="correct" if is_correct else "incorrect"
        ).inc()
