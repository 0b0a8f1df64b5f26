from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

# Upper bound on free-text inputs before any domain validation runs
MAX_INPUT_LENGTH = 1024


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="ignore"
    )


class SignupRequest(_CamelModel):
    # Missing fields default to "" so the "All fields are required" message
    # comes from the service rather than a schema error.
    first_name: str = Field("", max_length=MAX_INPUT_LENGTH)
    last_name: str = Field("", max_length=MAX_INPUT_LENGTH)
    email: str = Field("", max_length=MAX_INPUT_LENGTH)
    password: str = Field("", max_length=MAX_INPUT_LENGTH)
    confirm_password: str = Field("", max_length=MAX_INPUT_LENGTH)


class LoginRequest(_CamelModel):
    email: str = Field("", max_length=MAX_INPUT_LENGTH)
    password: str = Field("", max_length=MAX_INPUT_LENGTH)


class ProfileUpdateRequest(_CamelModel):
    first_name: Optional[str] = Field(None, max_length=MAX_INPUT_LENGTH)
    last_name: Optional[str] = Field(None, max_length=MAX_INPUT_LENGTH)


class PublicUser(_CamelModel):
    id: str
    first_name: str
    last_name: str
    email: str
    is_active: bool
    last_login: Optional[str] = None
    created_at: str
    updated_at: str


class MinimalUser(_CamelModel):
    first_name: str
    last_name: str
    email: str


class AuthResponse(_CamelModel):
    success: bool = True
    message: str
    user: PublicUser
    token: str


class MessageResponse(_CamelModel):
    success: bool = True
    message: str


class ProfileResponse(_CamelModel):
    success: bool = True
    message: Optional[str] = None
    user: PublicUser


class ValidateResponse(_CamelModel):
    success: bool = True
    message: str = "Token is valid"
    user: MinimalUser


class ErrorResponse(_CamelModel):
    success: bool = False
    message: str
    code: str
    errors: Optional[List[str]] = None
    detail: Optional[dict] = None
