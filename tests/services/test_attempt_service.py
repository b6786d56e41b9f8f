from __future__ import annotations

import asyncio
from dataclasses import replace
from uuid import UUID, uuid4

import pytest
from prometheus_client import REGISTRY

from app.models.attempt import Answer, Attempt, AttemptStatus, AttemptSummary
from app.models.exam import Exam, Question
from app.models.user import User
from app.repos.attempt_repo import InMemoryAttemptRepo
from app.repos.catalog_repo import InMemoryCatalogRepo
from app.repos.user_repo import InMemoryUserRepo
from app.services.attempt_service import AnswerSubmission, AttemptService
from app.services.errors import (
    AttemptValidationError,
    InvalidStateError,
    NotFoundError,
    PersistenceError,
)
from tests.conftest import SampleExam, build_sample_exam


class _Clock:
    def __init__(self, start: int = 1_000) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now


class _Env:
    def __init__(self, attempts: InMemoryAttemptRepo | None = None, **kwargs) -> None:
        self.users = InMemoryUserRepo()
        self.catalog = InMemoryCatalogRepo()
        self.attempts = attempts or InMemoryAttemptRepo()
        self.clock = _Clock()
        self.service = AttemptService(
            self.users, self.catalog, self.attempts, clock=self.clock, **kwargs
        )
        self.sample: SampleExam = build_sample_exam()
        self.catalog.add_exam(self.sample.exam, [self.sample.q1, self.sample.q2])
        self.student = User.new(email="student@example.com", roles=("student",))
        self.users.add(self.student)

    def start(self) -> Attempt:
        return asyncio.run(self.service.start(self.sample.exam.id, self.student.id))

    def submit(self, attempt_id: UUID, *answers: AnswerSubmission) -> int:
        return asyncio.run(self.service.submit_answers(attempt_id, list(answers)))

    def finish(self, attempt_id: UUID) -> AttemptSummary:
        return asyncio.run(self.service.finish(attempt_id))

    def answers(self, attempt_id: UUID) -> list[Answer]:
        return asyncio.run(self.attempts.list_answers(attempt_id))

    def pick(self, question: Question, *letters: str) -> AnswerSubmission:
        return AnswerSubmission(
            question_id=question.id,
            selected_option_ids=tuple(self.sample.option(question, x) for x in letters),
        )


@pytest.fixture
def env() -> _Env:
    return _Env()


# ---- start ----


def test_start_creates_in_progress_attempt(env: _Env) -> None:
    attempt = env.start()
    assert attempt.status is AttemptStatus.IN_PROGRESS
    assert attempt.started_at == 1_000
    assert attempt.completed_at is None
    assert attempt.score is None
    assert env.answers(attempt.id) == []


def test_start_records_client_details(env: _Env) -> None:
    attempt = asyncio.run(
        env.service.start(
            env.sample.exam.id,
            env.student.id,
            ip_address="10.0.0.7",
            user_agent="pytest",
        )
    )
    assert (attempt.ip_address, attempt.user_agent) == ("10.0.0.7", "pytest")


def test_start_same_exam_twice_gives_distinct_attempts(env: _Env) -> None:
    assert env.start().id != env.start().id


def test_start_unknown_exam_raises_not_found(env: _Env) -> None:
    with pytest.raises(NotFoundError):
        asyncio.run(env.service.start(uuid4(), env.student.id))


def test_start_unknown_student_raises_not_found(env: _Env) -> None:
    with pytest.raises(NotFoundError):
        asyncio.run(env.service.start(env.sample.exam.id, uuid4()))


def test_start_requires_ids(env: _Env) -> None:
    with pytest.raises(AttemptValidationError):
        asyncio.run(env.service.start(None, env.student.id))  # type: ignore[arg-type]


# ---- submit ----


def test_submit_grades_each_answer(env: _Env) -> None:
    attempt = env.start()
    s = env.sample
    written = env.submit(attempt.id, env.pick(s.q1, "A"), env.pick(s.q2, "B"))
    assert written == 2

    by_question = {a.question_id: a for a in env.answers(attempt.id)}
    assert by_question[s.q1.id].is_correct is True
    assert by_question[s.q1.id].points_earned == 2
    assert by_question[s.q2.id].is_correct is False
    assert by_question[s.q2.id].points_earned == 0


def test_resubmission_replaces_previous_answer(env: _Env) -> None:
    attempt = env.start()
    q1 = env.sample.q1
    env.submit(attempt.id, env.pick(q1, "B"))
    first = env.answers(attempt.id)[0]

    env.clock.now += 30
    env.submit(attempt.id, env.pick(q1, "A"))

    answers = env.answers(attempt.id)
    assert len(answers) == 1
    assert answers[0].id == first.id
    assert answers[0].created_at == first.created_at
    assert answers[0].updated_at == first.updated_at + 30
    assert answers[0].is_correct is True


def test_duplicate_question_in_one_batch_last_wins(env: _Env) -> None:
    attempt = env.start()
    q1 = env.sample.q1
    written = env.submit(attempt.id, env.pick(q1, "A"), env.pick(q1, "C"))
    assert written == 1

    answers = env.answers(attempt.id)
    assert len(answers) == 1
    assert answers[0].selected_option_ids == (env.sample.option(q1, "C"),)
    assert answers[0].is_correct is False


def test_submit_bumps_attempt_updated_at(env: _Env) -> None:
    attempt = env.start()
    env.clock.now += 12
    env.submit(attempt.id, env.pick(env.sample.q1, "A"))
    stored = asyncio.run(env.service.get_attempt(attempt.id))
    assert stored.updated_at == attempt.started_at + 12


def test_unknown_question_is_skipped_by_default(env: _Env) -> None:
    attempt = env.start()
    stray = AnswerSubmission(question_id=uuid4(), selected_option_ids=(uuid4(),))
    written = env.submit(attempt.id, stray, env.pick(env.sample.q1, "A"))
    assert written == 1
    assert [a.question_id for a in env.answers(attempt.id)] == [env.sample.q1.id]


def test_unknown_question_rejected_in_strict_mode() -> None:
    env = _Env(strict_question_ids=True)
    attempt = env.start()
    stray = AnswerSubmission(question_id=uuid4(), selected_option_ids=())
    with pytest.raises(NotFoundError):
        env.submit(attempt.id, env.pick(env.sample.q1, "A"), stray)
    # Nothing from the rejected batch is written.
    assert env.answers(attempt.id) == []


def test_question_from_another_exam_is_not_accepted(env: _Env) -> None:
    other_exam = Exam.new(title="Other")
    other_q = Question.new(exam_id=other_exam.id, correct=0)
    env.catalog.add_exam(other_exam, [other_q])

    attempt = env.start()
    env.submit(attempt.id, env.pick(other_q, "A"))
    assert env.answers(attempt.id) == []


def test_empty_batch_is_accepted(env: _Env) -> None:
    attempt = env.start()
    assert env.submit(attempt.id) == 0


def test_submit_to_missing_attempt_raises_invalid_state(env: _Env) -> None:
    with pytest.raises(InvalidStateError):
        env.submit(uuid4(), env.pick(env.sample.q1, "A"))


def test_submit_rejects_missing_selection(env: _Env) -> None:
    attempt = env.start()
    bad = AnswerSubmission(
        question_id=env.sample.q1.id,
        selected_option_ids=None,  # type: ignore[arg-type]
    )
    with pytest.raises(AttemptValidationError):
        env.submit(attempt.id, bad)


def test_submit_after_finish_raises_invalid_state(env: _Env) -> None:
    attempt = env.start()
    env.finish(attempt.id)
    with pytest.raises(InvalidStateError):
        env.submit(attempt.id, env.pick(env.sample.q1, "A"))
    assert env.answers(attempt.id) == []


# ---- finish ----


def test_finish_scores_example_exam(env: _Env) -> None:
    attempt = env.start()
    s = env.sample
    env.submit(attempt.id, env.pick(s.q1, "A"), env.pick(s.q2, "B"))

    env.clock.now += 95
    summary = env.finish(attempt.id)

    assert summary.status is AttemptStatus.COMPLETED
    assert summary.total_points == 5
    assert summary.earned_points == 2
    assert summary.score == 40
    assert summary.completed_at == attempt.started_at + 95

    stored = asyncio.run(env.service.get_attempt(attempt.id))
    assert stored.status is AttemptStatus.COMPLETED
    assert stored.score == 40
    assert stored.time_spent == 95


def test_finish_with_all_correct_scores_100(env: _Env) -> None:
    attempt = env.start()
    s = env.sample
    env.submit(attempt.id, env.pick(s.q1, "A"), env.pick(s.q2, "C", "B"))
    assert env.finish(attempt.id).score == 100


def test_unanswered_questions_still_count_toward_total() -> None:
    env = _Env()
    exam = Exam.new(title="Ten points")
    questions = [
        Question.new(exam_id=exam.id, points=p, position=i, correct=0)
        for i, p in enumerate((4, 6))
    ]
    env.catalog.add_exam(exam, questions)
    attempt = asyncio.run(env.service.start(exam.id, env.student.id))

    summary = env.finish(attempt.id)
    assert summary.total_points == 10
    assert summary.earned_points == 0
    assert summary.score == 0


def test_exam_without_questions_scores_zero(env: _Env) -> None:
    exam = Exam.new(title="Empty")
    env.catalog.add_exam(exam)
    attempt = asyncio.run(env.service.start(exam.id, env.student.id))
    summary = env.finish(attempt.id)
    assert (summary.total_points, summary.earned_points, summary.score) == (0, 0, 0)


def test_finish_twice_raises_and_keeps_score(env: _Env) -> None:
    attempt = env.start()
    env.submit(attempt.id, env.pick(env.sample.q1, "A"))
    first = env.finish(attempt.id)

    env.clock.now += 60
    with pytest.raises(InvalidStateError):
        env.finish(attempt.id)

    stored = asyncio.run(env.service.get_attempt(attempt.id))
    assert stored.score == first.score
    assert stored.completed_at == first.completed_at


def test_finish_missing_attempt_raises_invalid_state(env: _Env) -> None:
    with pytest.raises(InvalidStateError):
        env.finish(uuid4())


def test_finish_regrades_instead_of_trusting_stored_flags(env: _Env) -> None:
    attempt = env.start()
    q1 = env.sample.q1
    env.submit(attempt.id, env.pick(q1, "B"))

    # Tamper with the stored grade.
    key = (attempt.id, q1.id)
    env.attempts._answers[key] = replace(
        env.attempts._answers[key], is_correct=True, points_earned=2
    )

    env.clock.now += 5
    summary = env.finish(attempt.id)
    assert summary.earned_points == 0
    assert summary.score == 0

    answer = env.answers(attempt.id)[0]
    assert answer.is_correct is False
    assert answer.points_earned == 0
    assert answer.updated_at == env.clock.now


def test_finish_leaves_unchanged_grades_untouched(env: _Env) -> None:
    attempt = env.start()
    env.submit(attempt.id, env.pick(env.sample.q1, "A"))
    before = env.answers(attempt.id)[0]

    env.clock.now += 50
    env.finish(attempt.id)
    assert env.answers(attempt.id)[0] == before


def test_time_spent_is_never_negative(env: _Env) -> None:
    attempt = env.start()
    env.clock.now -= 10
    env.finish(attempt.id)
    stored = asyncio.run(env.service.get_attempt(attempt.id))
    assert stored.time_spent == 0


# ---- concurrency ----


class _StaleSnapshotRepo(InMemoryAttemptRepo):
    """Always hands out the attempt as in_progress, like a read that raced
    another request's commit."""

    async def get(self, attempt_id, *, for_update=False):
        attempt = await super().get(attempt_id)
        if attempt is None:
            return None
        return replace(attempt, status=AttemptStatus.IN_PROGRESS)


def test_conditional_complete_rejects_second_finish() -> None:
    env = _Env(attempts=_StaleSnapshotRepo())
    attempt = env.start()
    env.submit(attempt.id, env.pick(env.sample.q1, "A"))
    first = env.finish(attempt.id)

    env.clock.now += 100
    with pytest.raises(InvalidStateError):
        env.finish(attempt.id)

    stored = asyncio.run(env.attempts.get(attempt.id))
    assert stored.completed_at == first.completed_at
    assert stored.score == first.score


def test_conditional_save_rejects_submit_after_finish() -> None:
    env = _Env(attempts=_StaleSnapshotRepo())
    attempt = env.start()
    env.finish(attempt.id)
    with pytest.raises(InvalidStateError):
        env.submit(attempt.id, env.pick(env.sample.q1, "A"))
    assert env.answers(attempt.id) == []


def test_concurrent_finish_scores_once(env: _Env) -> None:
    attempt = env.start()
    env.submit(attempt.id, env.pick(env.sample.q1, "A"))

    async def _race() -> list:
        return await asyncio.gather(
            env.service.finish(attempt.id),
            env.service.finish(attempt.id),
            return_exceptions=True,
        )

    results = asyncio.run(_race())
    summaries = [r for r in results if isinstance(r, AttemptSummary)]
    conflicts = [r for r in results if isinstance(r, InvalidStateError)]
    assert len(summaries) == 1
    assert len(conflicts) == 1


# ---- persistence failures ----


class _FailingRepo(InMemoryAttemptRepo):
    async def save_answers(self, attempt_id, answers, *, now):
        raise PersistenceError("connection reset")

    async def complete(self, summary, *, time_spent, answers):
        raise PersistenceError("connection reset")


def test_persistence_failure_on_submit_propagates() -> None:
    env = _Env(attempts=_FailingRepo())
    attempt = env.start()
    with pytest.raises(PersistenceError):
        env.submit(attempt.id, env.pick(env.sample.q1, "A"))
    assert env.answers(attempt.id) == []


def test_persistence_failure_on_finish_leaves_attempt_in_progress() -> None:
    env = _Env(attempts=_FailingRepo())
    attempt = env.start()
    with pytest.raises(PersistenceError):
        env.finish(attempt.id)
    stored = asyncio.run(env.attempts.get(attempt.id))
    assert stored.status is AttemptStatus.IN_PROGRESS
    assert stored.score is None


# ---- reads and admin ----


def test_get_missing_attempt_raises_not_found(env: _Env) -> None:
    with pytest.raises(NotFoundError):
        asyncio.run(env.service.get_attempt(uuid4()))


def test_list_answers_for_missing_attempt_raises_not_found(env: _Env) -> None:
    with pytest.raises(NotFoundError):
        asyncio.run(env.service.list_answers(uuid4()))


def test_list_by_exam_and_student(env: _Env) -> None:
    a1 = env.start()
    env.clock.now += 1
    a2 = env.start()

    by_exam = asyncio.run(env.service.list_by_exam(env.sample.exam.id))
    by_student = asyncio.run(env.service.list_by_student(env.student.id))
    assert [a.id for a in by_exam] == [a1.id, a2.id]
    assert [a.id for a in by_student] == [a1.id, a2.id]
    assert asyncio.run(env.service.list_by_student(uuid4())) == []


def test_delete_attempt_removes_answers(env: _Env) -> None:
    attempt = env.start()
    env.submit(attempt.id, env.pick(env.sample.q1, "A"))

    asyncio.run(env.service.delete_attempt(attempt.id))
    assert env.answers(attempt.id) == []
    with pytest.raises(NotFoundError):
        asyncio.run(env.service.get_attempt(attempt.id))


def test_delete_missing_attempt_raises_not_found(env: _Env) -> None:
    with pytest.raises(NotFoundError):
        asyncio.run(env.service.delete_attempt(uuid4()))


# ---- graded-answers counter ----


def _graded(stage: str, result: str) -> float:
    value = REGISTRY.get_sample_value(
        "exam_answers_graded_total", {"stage": stage, "result": result}
    )
    return value if value is not None else 0.0


def test_rejected_strict_batch_counts_nothing() -> None:
    env = _Env(strict_question_ids=True)
    attempt = env.start()
    before = _graded("submit", "correct")

    stray = AnswerSubmission(question_id=uuid4(), selected_option_ids=())
    with pytest.raises(NotFoundError):
        env.submit(attempt.id, env.pick(env.sample.q1, "A"), stray)

    assert _graded("submit", "correct") == before


def test_batch_lost_to_finish_counts_nothing() -> None:
    env = _Env(attempts=_StaleSnapshotRepo())
    attempt = env.start()
    env.finish(attempt.id)
    before = _graded("submit", "correct")

    with pytest.raises(InvalidStateError):
        env.submit(attempt.id, env.pick(env.sample.q1, "A"))

    assert _graded("submit", "correct") == before


def test_failed_finish_counts_nothing() -> None:
    env = _Env(attempts=_FailingRepo())
    attempt = env.start()
    env.attempts._answers[(attempt.id, env.sample.q1.id)] = Answer.new(
        attempt_id=attempt.id,
        question_id=env.sample.q1.id,
        selected_option_ids=(env.sample.option(env.sample.q1, "A"),),
        is_correct=True,
        points_earned=2,
        now=1_000,
    )
    before = _graded("finish", "correct")

    with pytest.raises(PersistenceError):
        env.finish(attempt.id)

    assert _graded("finish", "correct") == before


def test_saved_batch_and_finish_are_counted_per_stage(env: _Env) -> None:
    attempt = env.start()
    s = env.sample
    submit_correct = _graded("submit", "correct")
    submit_wrong = _graded("submit", "incorrect")
    finish_correct = _graded("finish", "correct")

    # q1 is sent twice; only the saved (last) entry is counted.
    env.submit(
        attempt.id, env.pick(s.q1, "B"), env.pick(s.q1, "A"), env.pick(s.q2, "B")
    )
    assert _graded("submit", "correct") - submit_correct == 1
    assert _graded("submit", "incorrect") - submit_wrong == 1

    env.finish(attempt.id)
    assert _graded("finish", "correct") - finish_correct == 1
    assert _graded("submit", "correct") - submit_correct == 1


def test_get_answer_is_scoped_to_its_attempt(env: _Env) -> None:
    first = env.start()
    second = env.start()
    env.submit(first.id, env.pick(env.sample.q1, "A"))
    answer = env.answers(first.id)[0]

    assert asyncio.run(env.service.get_answer(first.id, answer.id)) == answer
    with pytest.raises(NotFoundError):
        asyncio.run(env.service.get_answer(second.id, answer.id))
    with pytest.raises(NotFoundError):
        asyncio.run(env.service.get_answer(uuid4(), answer.id))
