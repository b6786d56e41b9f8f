from __future__ import annotations

from dataclasses import dataclass
from uuid import UUID

ROLE_ADMIN = "admin"
ROLE_STUDENT = "student"


@dataclass(frozen=True, slots=True)
class Principal:
    """Authenticated identity extracted from a validated JWT.

    user_id: subject (`sub`) from the token, a user UUID as a string
    roles: platform roles (admin, student)
    """

    user_id: str
    roles: frozenset[str]

    def has_role(self, role: str) -> bool:
        return role in self.roles

    def has_any_role(self, roles: set[str]) -> bool:
        return bool(self.roles & roles)

    def is_admin(self) -> bool:
        return ROLE_ADMIN in self.roles

    def subject_uuid(self) -> UUID | None:
        try:
            return UUID(self.user_id)
        except ValueError:
            return None

    def owns(self, student_id: UUID) -> bool:
        return self.subject_uuid() == student_id
