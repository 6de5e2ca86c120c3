from __future__ import annotations

import threading
import uuid
from typing import Dict, Optional

from authguard.storage.errors import ConstraintViolation
from authguard.storage.models import LOCK_FIELDS, User


class MemoryStore:
    """In-memory user and credential store.

    Implements the ``UserStore`` protocol the lockout manager depends on.
    """

    def __init__(self) -> None:
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self._data_lock = threading.Lock()

    # user / auth
    def create_user(
        self,
        email: str,
        *,
        role: str = "user",
        is_active: bool = True,
        meta: Optional[Dict] = None,
    ) -> User:
        normalized = email.strip().lower()
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=normalized,
                role=role,
                is_active=is_active,
                meta=meta.copy() if meta else {},
            )
            self.users[user.id] = user
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == normalized), None)

    def get_user_by_unlock_token(self, token: str) -> Optional[User]:
        if not token:
            return None
        with self._data_lock:
            return next((u for u in self.users.values() if u.unlock_token == token), None)

    def update_user(self, user_id: str, **fields) -> User:
        """Apply lock-state changes to a user; other fields are rejected."""
        unknown = set(fields) - LOCK_FIELDS
        if unknown:
            raise ConstraintViolation("unsupported user fields", {"fields": sorted(unknown)})
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise ConstraintViolation("user not found", {"user_id": user_id})
            for name, value in fields.items():
                setattr(user, name, value)
            return user

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found for credentials", {"user_id": user_id})
            self.credentials[user_id] = (password_hash, password_algo)

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

