"""Boundary to the hosted identity backend.

Implementations raise :class:`~billflow.auth.errors.BackendError` for every
failure; nothing above this layer inspects backend-specific error shapes.
"""

from abc import ABC, abstractmethod
from typing import Any

from .models import FactorScope, Identity, PasswordSignIn, SignUpProfile, TotpEnrollment


class CredentialServiceAdapter(ABC):
    """Async operations offered by an identity backend."""

    @abstractmethod
    async def sign_up(self, email: str, password: str, profile: SignUpProfile) -> Identity:
        """Create an account and provision its merchant record."""

    @abstractmethod
    async def accept_invite(self, token: str, email: str, password: str, display_name: str) -> Identity | None:
        """Create an account from an invitation token; the user is not signed in."""

    @abstractmethod
    async def sign_in_with_password(self, email: str, password: str) -> PasswordSignIn:
        """Check a password; returns a session or an MFA challenge."""

    @abstractmethod
    async def get_session(self) -> Identity | None:
        """Return the user of the current trusted session, if any."""

    @abstractmethod
    async def finalize_session(self) -> Identity:
        """Upgrade a challenged sign-in after its factor was verified."""

    @abstractmethod
    async def list_factors(self, scope: FactorScope) -> list[Any]:
        """List raw factor records for the trusted or the pending identity."""

    @abstractmethod
    async def enroll_totp(self) -> TotpEnrollment:
        """Start TOTP enrollment for the trusted identity."""

    @abstractmethod
    async def verify_totp(self, factor_id: str, code: str) -> bool:
        """Check a TOTP code against a factor."""

    @abstractmethod
    async def sign_out(self) -> None:
        """Drop the current session, trusted or pending."""

    @abstractmethod
    async def request_password_reset(self, email: str) -> None:
        """Send password reset instructions."""

    async def close(self) -> None:
        """Release any held resources."""
