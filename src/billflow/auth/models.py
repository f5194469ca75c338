"""Pydantic models for authentication."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, EmailStr, Field, field_validator


class UserRole(str, Enum):
    """User role enumeration, highest privilege first."""

    ADMIN = "admin"
    MANAGER = "manager"
    ACCOUNTANT = "accountant"
    EMPLOYEE = "employee"


class AuthMode(str, Enum):
    """Form shown by the auth page."""

    SIGNIN = "signin"
    SIGNUP = "signup"
    FORGOT_PASSWORD = "forgot-password"
    MFA_SETUP = "mfa-setup"
    MFA_VERIFY = "mfa-verify"
    ACCEPT_INVITE = "accept-invite"


class FactorType(str, Enum):
    """Second-factor kinds the backend can report."""

    TOTP = "totp"
    SMS = "sms"


class FactorStatus(str, Enum):
    """Factor states offered for login-time verification."""

    VERIFIED = "verified"
    UNVERIFIED = "unverified"


class FactorScope(str, Enum):
    """Which identity a factor listing refers to."""

    VERIFIED = "verified"  # fully authenticated identity
    PENDING = "pending"  # password-valid sign-in awaiting a second factor


class Identity(BaseModel):
    """Authenticated user as reported by the identity backend."""

    id: str
    email: str
    display_name: str | None = None
    role: UserRole = UserRole.EMPLOYEE
    is_active: bool = True
    permissions: list[str] = Field(default_factory=list)
    merchant_id: str | None = None
    created_at: datetime | None = None
    last_sign_in: datetime | None = None

    class Config:
        from_attributes = True


class Factor(BaseModel):
    """A second-factor enrollment."""

    id: str
    factor_type: FactorType
    # Kept as a plain string: backends report states beyond verified/unverified.
    status: str
    phone_number: str | None = None
    friendly_name: str | None = None

    @property
    def is_verified(self) -> bool:
        return self.status == FactorStatus.VERIFIED.value

    @property
    def label(self) -> str:
        """Human readable name for factor pickers."""
        if self.factor_type == FactorType.TOTP:
            return self.friendly_name or "Authenticator App (TOTP)"
        return f"SMS ({self.phone_number})"

    class Config:
        from_attributes = True


class MerchantInfo(BaseModel):
    """Organization record provisioned alongside a new account."""

    company_name: str = Field(..., min_length=1)
    first_name: str = ""
    last_name: str = ""
    account_slug: str | None = Field(None, min_length=3, pattern=r"^[a-z0-9-]+$")
    default_currency: str = "USD"
    timezone: str = "UTC"


class SignUpProfile(BaseModel):
    """Profile data submitted with a sign-up."""

    display_name: str
    merchant: MerchantInfo


class SignUpRequest(BaseModel):
    """Request model for creating an account."""

    email: EmailStr
    password: str = Field(..., min_length=8)
    profile: SignUpProfile


class InviteAcceptance(BaseModel):
    """Request model for joining a merchant through an emailed invitation."""

    token: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=8)
    display_name: str = Field(..., min_length=1)

    @field_validator("display_name", mode="before")
    @classmethod
    def strip_display_name(cls, v):
        return v.strip() if isinstance(v, str) else v


class PasswordSignIn(BaseModel):
    """Outcome of a password check at the backend.

    Exactly one of ``user`` and ``mfa_challenge`` is set: a trusted session
    or a marker saying the password was valid but a second factor is owed.
    """

    user: Identity | None = None
    mfa_challenge: str | None = None

    @property
    def mfa_required(self) -> bool:
        return self.mfa_challenge is not None


class SignInResult(BaseModel):
    """What ``SessionManager.sign_in`` hands back to the UI."""

    user: Identity | None = None
    mfa_required: bool = False


class TotpEnrollment(BaseModel):
    """Response model for TOTP enrollment."""

    factor_id: str
    secret: str  # Base32 encoded secret
    qr_payload: str  # otpauth:// URI for QR code
    qr_code_base64: str | None = None  # Base64 encoded PNG QR code
