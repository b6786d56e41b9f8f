from __future__ import annotations

import os

# Settings are read once at import time: pin the test environment first.
os.environ["APP_ENV"] = "test"
os.environ["DATABASE_URL"] = ""
os.environ["JWT_PUBLIC_KEY"] = ""

from dataclasses import dataclass  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from app.api.dependencies import attempt_repo, catalog_repo, user_repo  # noqa: E402
from app.main import app  # noqa: E402
from app.models.exam import Exam, Question  # noqa: E402
from app.models.user import User  # noqa: E402
from app.services import token_service  # noqa: E402


@pytest.fixture(autouse=True)
def reset_repos() -> None:
    """Clear the in-memory repos between tests."""
    user_repo.clear()
    catalog_repo.clear()
    attempt_repo.clear()


@pytest.fixture
def client() -> TestClient:
    return TestClient(app)


def mint_token(
    username: str = "test-user",
    roles: list[str] | None = None,
) -> str:
    """Create a valid ES256 JWT for testing."""
    return token_service.create_access_token(sub=username, roles=roles)


def auth(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


# ---------------------------------------------------------------------------
# Catalog helpers
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SampleExam:
    """Two questions: q1 worth 2 points (correct: A), q2 worth 3 (correct: B, C)."""

    exam: Exam
    q1: Question
    q2: Question

    def option(self, question: Question, letter: str):
        return question.option_at("ABCD".index(letter)).id


def build_sample_exam() -> SampleExam:
    exam = Exam.new(title="Networking basics")
    q1 = Question.new(exam_id=exam.id, points=2, position=0, correct=0)
    q2 = Question.new(exam_id=exam.id, points=3, position=1, correct=(1, 2))
    return SampleExam(exam=exam, q1=q1, q2=q2)


def seed_user(roles: tuple[str, ...] = ("student",), email: str = "") -> User:
    user = User.new(email=email or "student@example.com", roles=roles)
    user_repo.add(user)
    return user


@pytest.fixture
def sample_exam() -> SampleExam:
    sample = build_sample_exam()
    catalog_repo.add_exam(sample.exam, [sample.q1, sample.q2])
    return sample


@pytest.fixture
def student() -> User:
    return seed_user()


@pytest.fixture
def student_token(student: User) -> str:
    return mint_token(username=str(student.id), roles=["student"])


@pytest.fixture
def admin_token() -> str:
    admin = seed_user(roles=("admin",), email="admin@example.com")
    return mint_token(username=str(admin.id), roles=["admin"])
