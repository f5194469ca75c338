"""Authentication and MFA orchestration for BillFlow."""

from .adapter import CredentialServiceAdapter
from .controller import AuthForm, AuthPageController, password_strength, strength_label
from .errors import (
    AdapterUnavailable,
    AuthenticationError,
    AuthError,
    BackendError,
    MfaFinalizationError,
    NoFactorAvailable,
    ReauthRequired,
    RegistrationError,
    UnsupportedFactorType,
)
from .factors import FactorRegistry, list_usable_factors, normalize_factors, select_default
from .guard import AccessDecision, check_access
from .models import (
    AuthMode,
    Factor,
    FactorScope,
    FactorStatus,
    FactorType,
    Identity,
    InviteAcceptance,
    MerchantInfo,
    PasswordSignIn,
    SignInResult,
    SignUpProfile,
    TotpEnrollment,
    UserRole,
)
from .session import IdentitySession, SessionManager, SessionStore
from .verification import MfaVerificationFlow, VerificationOutcome

__all__ = [
    "AccessDecision",
    "AdapterUnavailable",
    "AuthError",
    "AuthForm",
    "AuthMode",
    "AuthPageController",
    "AuthenticationError",
    "BackendError",
    "CredentialServiceAdapter",
    "Factor",
    "FactorRegistry",
    "FactorScope",
    "FactorStatus",
    "FactorType",
    "Identity",
    "IdentitySession",
    "InviteAcceptance",
    "MerchantInfo",
    "MfaFinalizationError",
    "MfaVerificationFlow",
    "NoFactorAvailable",
    "PasswordSignIn",
    "ReauthRequired",
    "RegistrationError",
    "SessionManager",
    "SessionStore",
    "SignInResult",
    "SignUpProfile",
    "TotpEnrollment",
    "UnsupportedFactorType",
    "UserRole",
    "VerificationOutcome",
    "check_access",
    "list_usable_factors",
    "normalize_factors",
    "password_strength",
    "select_default",
    "strength_label",
]
