from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from sessionguard.service.errors import ErrorCode


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


class ErrorBody(BaseModel):
    """Error body with a stable code and the client's logout hints."""

    model_config = ConfigDict(populate_by_name=True)

    code: str
    message: str
    requires_logout: bool = Field(False, alias="requiresLogout")
    session_expired: bool = Field(False, alias="sessionExpired")
    timestamp: str = Field(default_factory=_timestamp)

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in ErrorCode.ALL:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(ErrorCode.ALL))}"
            )
        return value


class ErrorResponse(BaseModel):
    error: ErrorBody


class LogoutResponse(BaseModel):
    message: str = "Logged out successfully"
    timestamp: str = Field(default_factory=_timestamp)


class IdentityResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    subject_id: str = Field(..., alias="subjectId")
    email: Optional[str] = None
    display_name: Optional[str] = Field(None, alias="displayName")
    session_created: bool = Field(False, alias="sessionCreated")


class HealthResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    status: str = "ok"
    store: str
    cached_sessions: int = Field(..., alias="cachedSessions")
    pending_writes: int = Field(..., alias="pendingWrites")
