from __future__ import annotations

from typing import Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from sessionguard.logging import get_logger
from sessionguard.service.errors import (
    ConflictError,
    InvalidCredentialsError,
    InvalidRequestError,
)
from sessionguard.storage.errors import ConstraintViolation
from sessionguard.storage.models import User

_ALGO = "argon2id"
_MIN_PASSWORD_LENGTH = 8


class PasswordVerifier:
    """argon2id password storage behind the login and register endpoints."""

    def __init__(self, store) -> None:
        self.store = store
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = get_logger(__name__)

    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), _ALGO

    def register(self, email: str, password: str) -> User:
        if not email or "@" not in email:
            raise InvalidRequestError("a valid email is required")
        if len(password or "") < _MIN_PASSWORD_LENGTH:
            raise InvalidRequestError(
                f"password must be at least {_MIN_PASSWORD_LENGTH} characters"
            )
        try:
            user = self.store.create_user(email)
        except ConstraintViolation as exc:
            raise ConflictError("an account with that email already exists") from exc
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(user.id, pwd_hash, algo)
        self.logger.info("user_registered", user_id=user.id)
        return user

    def authenticate(self, email: str, password: str) -> User:
        """Return the user for a matching email and password."""
        if not email or not password:
            raise InvalidRequestError("email and password are required")
        user = self.store.get_user_by_email(email)
        if not user or not user.is_active:
            raise InvalidCredentialsError("invalid email or password")
        record = self.store.get_password_record(user.id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user.id)
            raise InvalidCredentialsError("invalid email or password")
        stored_hash, algo = record
        if algo != _ALGO:
            self.logger.warning("password_algo_mismatch", user_id=user.id, algo=algo)
            raise InvalidCredentialsError("invalid email or password")
        try:
            self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            raise InvalidCredentialsError("invalid email or password")
        return user
