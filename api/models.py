"""
API request and response models for Community Poll Hub REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Response models never carry password hashes or confirmation token digests.
"""

from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from auth.models import User

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class RoleEnum(str, Enum):
    voter = "voter"
    organizer = "organizer"
    admin = "admin"


# ---------------------------------------------------------------------------
# Auth requests / responses
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    username: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=255)


class LoginResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str
    expires_at: str
    username: str
    role: str


class RegisterRequest(BaseModel):
    username: str = Field(max_length=255)
    email: str = Field(max_length=255)
    password: str = Field(max_length=255)
    password_confirmation: str = Field(max_length=255)


class MeResponse(BaseModel):
    """Identity of the current session. role is the login-time snapshot."""

    model_config = ConfigDict(frozen=True)

    user_id: int
    username: str
    email: str
    role: str
    pending_email: Optional[str] = None


# ---------------------------------------------------------------------------
# Profile updates (PATCH /profile) -- one body shape per update_type
# ---------------------------------------------------------------------------


class ProfileUpdate(BaseModel):
    update_type: Literal["profile"]
    username: str = Field(max_length=255)


class PasswordUpdate(BaseModel):
    update_type: Literal["password"]
    current_password: str = Field(max_length=255)
    new_password: str = Field(max_length=255)
    new_password_confirmation: str = Field(max_length=255)


class EmailUpdate(BaseModel):
    update_type: Literal["email"]
    new_email: str = Field(max_length=255)


ProfilePatch = Annotated[Union[ProfileUpdate, PasswordUpdate, EmailUpdate], Field(discriminator="update_type")]


class EmailChangeResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    new_email: str
    expires_at: str


# ---------------------------------------------------------------------------
# User management
# ---------------------------------------------------------------------------


class UserPatch(BaseModel):
    """Body for PATCH /users/{id}. Omitted fields are left unchanged; blank password too.

    Passwords are kept byte-for-byte; username and email are trimmed by the service.
    """

    username: Optional[str] = Field(default=None, max_length=255)
    email: Optional[str] = Field(default=None, max_length=255)
    role: Optional[RoleEnum] = None
    password: Optional[str] = Field(default=None, max_length=255)


class UserResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    username: str
    email: str
    role: str
    pending_email: Optional[str] = None
    created_at: str

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            username=user.username,
            email=user.email,
            role=user.role.label,
            pending_email=user.new_email,
            created_at=user.created_at or "",
        )


class UserEditResponse(BaseModel):
    """GET /users/{id}/edit -- the record plus the fields the caller may change."""

    model_config = ConfigDict(frozen=True)

    user: UserResponse
    permitted_attributes: list[str]


class DashboardResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_count: int
    users_by_role: dict[str, int]


# ---------------------------------------------------------------------------
# Generic envelopes
# ---------------------------------------------------------------------------


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[Union[str, dict[str, list[str]]]] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
