"""
API request and response models for ComplianceAuth REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py and
audit/models.py, which own the internal domain representation. Route handlers
map between the two.

Nothing here ever carries a password hash, an MFA secret outside the one-time
enrollment response, or a detailed authentication failure reason.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class RoleEnum(str, Enum):
    admin = "admin"
    user = "user"


class StatusEnum(str, Enum):
    active = "active"
    inactive = "inactive"
    locked = "locked"
    pending = "pending"


class CategoryEnum(str, Enum):
    AUTH = "AUTH"
    SECURITY = "SECURITY"
    ADMIN = "ADMIN"
    DATA = "DATA"


# ---------------------------------------------------------------------------
# Shared
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


# ---------------------------------------------------------------------------
# Login, MFA step and refresh
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    username: str = Field(min_length=1, max_length=255)
    # Not stripped: whitespace is part of a password.
    password: str = Field(min_length=1, max_length=1024)

    @field_validator("username", mode="before")
    @classmethod
    def strip_username(cls, value):
        return value.strip() if isinstance(value, str) else value


class TokenResponse(BaseModel):
    """Successful login, MFA step or refresh. Tokens are also set as httpOnly cookies."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    refresh_expires_in: int
    session_id: str
    identity_id: int
    role: str
    require_password_change: bool = False


class MfaChallengeResponse(BaseModel):
    """202 body for POST /auth/login when a second factor is required."""

    model_config = ConfigDict(frozen=True)

    mfa_required: bool = True
    session_id: str
    expires_at: str
    methods: list[str]


class MfaVerifyRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    session_id: str = Field(min_length=1, max_length=128)
    code: str = Field(min_length=6, max_length=16)


class RefreshRequest(BaseModel):
    """Optional body for POST /auth/refresh; the refresh cookie is used when absent."""

    model_config = ConfigDict(str_strip_whitespace=True)

    refresh_token: Optional[str] = Field(default=None, max_length=4096)


# ---------------------------------------------------------------------------
# Self-service
# ---------------------------------------------------------------------------


class MeResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    identity_id: int
    username: str
    role: str
    session_id: str
    mfa_enabled: bool
    must_change_password: bool
    password_expires_at: Optional[str] = None


class SessionResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    created_at: str
    last_seen_at: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    mfa_pending: bool = False
    current: bool = False


class LogoutAllResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    revoked: int


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(min_length=1, max_length=1024)
    new_password: str = Field(min_length=1, max_length=1024)


class MfaCodeRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    code: str = Field(min_length=6, max_length=16)


class MfaEnrollResponse(BaseModel):
    """Shown once. The secret is never returned again."""

    model_config = ConfigDict(frozen=True)

    secret: str
    provisioning_uri: str


class BackupCodesResponse(BaseModel):
    """Shown once. Only keyed digests are stored."""

    model_config = ConfigDict(frozen=True)

    backup_codes: list[str]


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------


class IdentityCreate(BaseModel):
    """Request body for POST /api/v1/admin/identities."""

    username: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=1024)
    role: RoleEnum = RoleEnum.user
    status: StatusEnum = StatusEnum.active
    allowed_origins: list[str] = Field(default_factory=list, max_length=50)
    must_change_password: bool = True

    @field_validator("username", mode="before")
    @classmethod
    def strip_username(cls, value):
        return value.strip() if isinstance(value, str) else value


class IdentityPatch(BaseModel):
    """Request body for PATCH /api/v1/admin/identities/{id}. Omitted fields are unchanged."""

    role: Optional[RoleEnum] = None
    status: Optional[StatusEnum] = None
    allowed_origins: Optional[list[str]] = Field(default=None, max_length=50)
    must_change_password: Optional[bool] = None


class IdentityResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    username: str
    role: str
    status: str
    failed_attempts: int
    locked_until: Optional[str] = None
    mfa_enabled: bool
    must_change_password: bool
    password_expires_at: Optional[str] = None
    allowed_origins: list[str] = Field(default_factory=list)
    created_at: str = ""
    last_login: Optional[str] = None


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------


class AuditEntryResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    seq: int
    action: str
    category: str
    created_at: str
    actor_id: Optional[int] = None
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    details: dict = Field(default_factory=dict)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    prev_hash: str
    self_hash: str


class AuditPageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    total: int
    limit: int
    offset: int
    entries: list[AuditEntryResponse]


class ChainVerificationResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    valid: bool
    checked: int
    first_invalid: Optional[int] = None
    first_invalid_seq: Optional[int] = None
    reason: Optional[str] = None
