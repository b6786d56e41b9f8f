from __future__ import annotations

from typing import Protocol
from uuid import UUID

from app.models.user import User


class UserRepo(Protocol):
    async def get_by_id(self, user_id: UUID) -> User | None: ...


class InMemoryUserRepo:
    def __init__(self) -> None:
        self._by_id: dict[UUID, User] = {}

    async def get_by_id(self, user_id: UUID) -> User | None:
        return self._by_id.get(user_id)

    def get_by_email(self, email: str) -> User | None:
        email = email.strip().lower()
        for user in self._by_id.values():
            if user.email == email:
                return user
        return None

    def add(self, user: User) -> None:
        if user.id in self._by_id:
            raise ValueError("user already exists")
        self._by_id[user.id] = user

    def clear(self) -> None:
        self._by_id.clear()
