from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Upper bound for free-text credentials; the login flows apply their own rules
MAX_CREDENTIAL_LENGTH = 256


def _strip(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    return value.strip()


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class PhoneRequest(_CamelModel):
    """Body of send-otp and resend-otp."""

    phone_number: Optional[str] = Field(None, alias="phoneNumber", max_length=32)

    @field_validator("phone_number")
    @classmethod
    def _strip_phone(cls, value: Optional[str]) -> Optional[str]:
        return _strip(value)


class VerifyOtpRequest(PhoneRequest):
    otp: Optional[str] = Field(None, max_length=32)

    @field_validator("otp")
    @classmethod
    def _strip_otp(cls, value: Optional[str]) -> Optional[str]:
        return _strip(value)


class FacultyLoginRequest(_CamelModel):
    username: Optional[str] = Field(None, max_length=MAX_CREDENTIAL_LENGTH)
    password: Optional[str] = Field(None, max_length=MAX_CREDENTIAL_LENGTH)


class OtpSentResponse(_CamelModel):
    message: str
    expires_in: str = Field(..., serialization_alias="expiresIn")
    attempts_remaining: int = Field(..., serialization_alias="attemptsRemaining")


class LoginUser(BaseModel):
    role: str


class LoginResponse(BaseModel):
    message: str = "Login successful"
    token: str
    user: LoginUser


class ProfileResponse(BaseModel):
    success: bool = True
    profile: Dict[str, Any]


class ContextItem(BaseModel):
    student_id: str
    org_id: int
    org_name: str
    full_name: Optional[str] = None
    role: str


class ContextsResponse(BaseModel):
    contexts: List[ContextItem]


class ScopeResponse(BaseModel):
    success: bool = True
    subject_id: str
    org_id: int
    via_parent: bool


class AttachmentInfo(BaseModel):
    filename: Optional[str] = None
    content_type: Optional[str] = None
    size: int


class AttachmentUploadResponse(_CamelModel):
    success: bool = True
    files: List[AttachmentInfo]
    count: int
    total_bytes: int = Field(..., serialization_alias="totalBytes")


class ErrorResponse(BaseModel):
    error: str


class RateLimitErrorResponse(ErrorResponse):
    type: str
    limit: int
    retry_after: int = Field(..., serialization_alias="retryAfter")
    current: Optional[int] = None


class SuccessFlagErrorResponse(BaseModel):
    success: bool = False
    message: str
