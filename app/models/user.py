from __future__ import annotations

from dataclasses import dataclass
from uuid import UUID, uuid4


@dataclass(frozen=True, slots=True)
class User:
    id: UUID
    email: str
    name: str = ""
    roles: tuple[str, ...] = ()  # immutable
    is_active: bool = True

    @staticmethod
    def new(*, email: str, name: str = "", roles: tuple[str, ...] = ()) -> User:
        return User(
            id=uuid4(),
            email=email.strip().lower(),
            name=name,
            roles=roles,
            is_active=True,
        )
