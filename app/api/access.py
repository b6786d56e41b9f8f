"""Ownership checks for attempt resources.

Plain functions rather than FastAPI dependencies: they need the
Principal and the loaded resource, so endpoints call them after the
lookup.
"""

from __future__ import annotations

import logging
from uuid import UUID

from fastapi import HTTPException, status

from app.models.principal import Principal

logger = logging.getLogger(__name__)


def check_self_or_admin(principal: Principal, student_id: UUID) -> None:
    """Raise 403 unless the principal is that student or an admin."""
    if principal.is_admin() or principal.owns(student_id):
        return
    logger.warning(
        "Access denied: user=%s acting on student=%s",
        principal.user_id,
        student_id,
    )
    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail="Insufficient permissions",
    )


def caller_id(principal: Principal) -> UUID:
    # Attempts are keyed by user id, so a non-UUID subject cannot own one.
    caller = principal.subject_uuid()
    if caller is None:
        logger.warning("Token subject is not a user id: %r", principal.user_id)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token subject",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return caller
