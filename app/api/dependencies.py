from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from typing import Annotated

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer

from app.core.config import SETTINGS
from app.db import engine as db
from app.models.exam import Exam, Question
from app.models.principal import ROLE_STUDENT, Principal
from app.models.user import User
from app.repos.attempt_repo import InMemoryAttemptRepo
from app.repos.catalog_repo import InMemoryCatalogRepo
from app.repos.pg_attempt_repo import PgAttemptRepo
from app.repos.pg_catalog_repo import PgCatalogRepo
from app.repos.pg_user_repo import PgUserRepo
from app.repos.user_repo import InMemoryUserRepo
from app.services import token_service
from app.services.attempt_service import AttemptService

logger = logging.getLogger(__name__)

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/oauth/token")

# --- In-memory repos, used when DATABASE_URL is not configured ---
user_repo = InMemoryUserRepo()
catalog_repo = InMemoryCatalogRepo()
attempt_repo = InMemoryAttemptRepo()

_DEV_STUDENT_EMAIL = "student@example.com"


def seed_dev_data() -> tuple[User, Exam] | None:
    """Seed a student and a sample exam for local runs. Skip if already present.

    The ids are logged at INFO; mint a token with the student id as `sub`.
    """
    if user_repo.get_by_email(_DEV_STUDENT_EMAIL) is not None:
        return None

    student = User.new(
        email=_DEV_STUDENT_EMAIL, name="Dev Student", roles=(ROLE_STUDENT,)
    )
    user_repo.add(student)

    exam = Exam.new(title="Sample exam")
    catalog_repo.add_exam(
        exam,
        [
            Question.new(exam_id=exam.id, points=2, position=0, correct=0),
            Question.new(exam_id=exam.id, points=3, position=1, correct=(1, 2)),
        ],
    )
    logger.info("Seeded dev data student=%s exam=%s", student.id, exam.id)
    return student, exam


def require_user(
    raw_token: Annotated[str, Depends(oauth2_scheme)],
) -> Principal:
    """Extract and validate the JWT bearer token. Returns a Principal."""
    try:
        claims = token_service.decode_access_token(raw_token)
    except jwt.ExpiredSignatureError:
        logger.warning("Expired token rejected")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token expired",
            headers={"WWW-Authenticate": "Bearer"},
        ) from None
    except jwt.InvalidTokenError as e:
        logger.warning("Invalid token rejected: %s", e)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
            headers={"WWW-Authenticate": "Bearer"},
        ) from None

    principal = Principal(
        user_id=claims["sub"],
        roles=frozenset(claims.get("roles", [])),
    )
    logger.debug(
        "Token validated for user=%s roles=%s",
        principal.user_id,
        principal.roles,
    )
    return principal


def require_role(role: str):
    """Dependency factory: demand a specific role.

    Usage: Depends(require_role("admin"))
    """

    def _guard(
        principal: Annotated[Principal, Depends(require_user)],
    ) -> Principal:
        if not principal.has_role(role):
            logger.warning(
                "Access denied: user=%s missing role=%s",
                principal.user_id,
                role,
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions",
            )
        return principal

    return _guard


def require_any_role(roles: set[str]):
    """Dependency factory: demand at least one of the given roles.

    Usage: Depends(require_any_role({"admin", "student"}))
    """

    def _guard(
        principal: Annotated[Principal, Depends(require_user)],
    ) -> Principal:
        if not principal.has_any_role(roles):
            logger.warning(
                "Access denied: user=%s has none of roles=%s",
                principal.user_id,
                roles,
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions",
            )
        return principal

    return _guard


async def get_attempt_service() -> AsyncGenerator[AttemptService, None]:
    """Request-scoped AttemptService.

    With a database, every repo shares one session, so everything the
    request writes commits together or rolls back together.
    """
    if db.async_session_factory is None:
        yield AttemptService(
            user_repo,
            catalog_repo,
            attempt_repo,
            strict_question_ids=SETTINGS.strict_question_ids,
        )
        return

    async with db.session_scope() as session:
        yield AttemptService(
            PgUserRepo(session),
            PgCatalogRepo(session),
            PgAttemptRepo(session),
            strict_question_ids=SETTINGS.strict_question_ids,
        )
