from __future__ import annotations

import re
import unicodedata
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

# Compact JWTs and 64-char refresh secrets fit comfortably
MAX_TOKEN_LENGTH = 2048

_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = unicodedata.normalize("NFKC", value.strip().lower())
    if not 3 <= len(normalized) <= 254:
        raise ValueError("invalid email address length")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain or len(local) > 64:
        raise ValueError("invalid email address")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    labels = domain.split(".")
    if len(labels) < 2 or any(
        len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label) for label in labels
    ):
        raise ValueError("invalid email address format")
    return normalized


class ErrorBody(BaseModel):
    """Error response body; ``error`` is a stable machine-readable code."""

    error: str
    message: str


class LoginRequest(BaseModel):
    email: str = Field(..., max_length=254)
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class RegisterRequest(BaseModel):
    email: str = Field(..., max_length=254)
    password: str = Field(..., min_length=8, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)


class RefreshRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=MAX_TOKEN_LENGTH)


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=MAX_TOKEN_LENGTH)
    access_token: Optional[str] = Field(default=None, max_length=MAX_TOKEN_LENGTH)


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int


class StatusResponse(BaseModel):
    auth_methods: List[str]
    api_version: str
