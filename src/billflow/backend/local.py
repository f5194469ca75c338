"""In-process credential adapter backed by :class:`AuthStore`.

Behaves like the hosted backend from the client's point of view: a password
sign-in for a user with a verified factor yields an ``aal1`` challenge token,
and only after a factor code is accepted can the session be finalized to
``aal2``.
"""

from __future__ import annotations

import logging
from typing import Any

from ..auth.adapter import CredentialServiceAdapter
from ..auth.errors import BackendError
from ..auth.models import FactorScope, Identity, PasswordSignIn, SignUpProfile, TotpEnrollment, UserRole
from .store import AuthStore, DuplicateAccountError, InvitationError
from .tokens import create_access_token, decode_token

logger = logging.getLogger(__name__)

MAX_FAILED_ATTEMPTS = 5
LOCKOUT_MINUTES = 15
INVITING_ROLES = (UserRole.ADMIN, UserRole.MANAGER)


class LocalCredentialAdapter(CredentialServiceAdapter):
    """Credential adapter over a local SQLite identity store."""

    def __init__(self, store: AuthStore, jwt_secret: str):
        self.store = store
        self.jwt_secret = jwt_secret
        self.access_token: str | None = None
        self._challenge_verified = False

    def _claims(self) -> dict | None:
        if not self.access_token:
            return None
        return decode_token(self.access_token, self.jwt_secret)

    async def _current(self) -> tuple[dict, Identity] | None:
        """Claims and user of a still-valid session."""
        claims = self._claims()
        if not claims:
            return None
        session = await self.store.get_session(claims["sid"])
        if not session:
            return None
        user = await self.store.get_user(claims["sub"])
        if not user or not user.is_active:
            return None
        return {**claims, "aal": session["aal"]}, user

    async def _is_trusted(self, claims: dict, user: Identity) -> bool:
        if claims["aal"] == "aal2":
            return True
        return not await self.store.has_verified_factor(user.id)

    async def sign_up(self, email: str, password: str, profile: SignUpProfile) -> Identity:
        try:
            return await self.store.create_user(email, password, profile)
        except DuplicateAccountError as e:
            raise BackendError(str(e), status=422, code="user_already_exists") from e

    async def invite_user(self, email: str, role: UserRole = UserRole.EMPLOYEE) -> str:
        """Invite someone into the signed-in user's merchant; returns the token to mail them."""
        current = await self._current()
        if current is None or not await self._is_trusted(*current):
            raise BackendError("Sign in to invite team members", status=401, code="session_not_found")
        _, user = current
        if user.role not in INVITING_ROLES:
            raise BackendError("Only admins and managers can invite team members", status=403, code="insufficient_role")
        try:
            token = await self.store.create_invitation(user.id, email, role)
        except DuplicateAccountError as e:
            raise BackendError(str(e), status=422, code="user_already_exists") from e
        except InvitationError as e:
            raise BackendError(str(e), status=400, code="invalid_invitation") from e
        logger.info("User %s invited %s as %s", user.id, email, UserRole(role).value)
        return token

    async def accept_invite(self, token: str, email: str, password: str, display_name: str) -> Identity | None:
        try:
            return await self.store.accept_invitation(token, email, password, display_name)
        except DuplicateAccountError as e:
            raise BackendError(str(e), status=422, code="user_already_exists") from e
        except InvitationError as e:
            raise BackendError(str(e), status=400, code="invalid_invitation") from e

    async def sign_in_with_password(self, email: str, password: str) -> PasswordSignIn:
        if await self.store.get_recent_failed_attempts(email, LOCKOUT_MINUTES) >= MAX_FAILED_ATTEMPTS:
            await self.store.record_login_attempt(email, False, "rate_limited")
            raise BackendError(
                f"Too many failed attempts. Try again in {LOCKOUT_MINUTES} minutes.",
                status=429,
                code="over_request_rate_limit",
            )

        user = await self.store.get_user_by_email(email)
        if not user or not user.is_active or not await self.store.verify_password(user.id, password):
            reason = "user_not_found" if not user else "invalid_password"
            await self.store.record_login_attempt(email, False, reason)
            raise BackendError("Invalid login credentials", status=400, code="invalid_credentials")

        await self.store.record_login_attempt(email, True)
        session_id = await self.store.create_session(user.id, aal="aal1")
        self.access_token = create_access_token(user.id, session_id, "aal1", self.jwt_secret)
        self._challenge_verified = False

        if await self.store.has_verified_factor(user.id):
            return PasswordSignIn(mfa_challenge=self.access_token)
        return PasswordSignIn(user=user)

    async def get_session(self) -> Identity | None:
        current = await self._current()
        if current is None:
            return None
        claims, user = current
        return user if await self._is_trusted(claims, user) else None

    async def finalize_session(self) -> Identity:
        current = await self._current()
        if current is None:
            raise BackendError("Session not found", status=401, code="session_not_found")
        claims, user = current
        if claims["aal"] != "aal2":
            if not self._challenge_verified:
                raise BackendError("No verified MFA challenge to finalize", status=400, code="mfa_not_verified")
            await self.store.set_session_aal(claims["sid"], "aal2")
        self.access_token = create_access_token(user.id, claims["sid"], "aal2", self.jwt_secret)
        self._challenge_verified = False
        return user

    async def list_factors(self, scope: FactorScope) -> list[Any]:
        current = await self._current()
        if current is None:
            raise BackendError("Session not found", status=401, code="session_not_found")
        claims, user = current
        trusted = await self._is_trusted(claims, user)
        if FactorScope(scope) == FactorScope.VERIFIED and not trusted:
            raise BackendError("AAL2 session required", status=403, code="insufficient_aal")
        return await self.store.list_factors(user.id)

    async def enroll_totp(self) -> TotpEnrollment:
        current = await self._current()
        if current is None or not await self._is_trusted(*current):
            raise BackendError("AAL2 required to enroll a new factor", status=403, code="reauth_required")
        _, user = current
        factor, secret, uri = await self.store.create_totp_factor(user.id)
        return TotpEnrollment(
            factor_id=factor.id,
            secret=secret,
            qr_payload=uri,
            qr_code_base64=self.store.totp.generate_qr_code_base64(uri),
        )

    async def verify_totp(self, factor_id: str, code: str) -> bool:
        current = await self._current()
        if current is None:
            raise BackendError("Session not found", status=401, code="session_not_found")
        claims, user = current
        trusted = await self._is_trusted(claims, user)
        ok = await self.store.verify_factor_code(user.id, factor_id, code)
        if not ok or claims["aal"] == "aal2":
            return ok
        if trusted:
            # First factor enrolled: the session is upgraded straight away.
            await self.store.set_session_aal(claims["sid"], "aal2")
            self.access_token = create_access_token(user.id, claims["sid"], "aal2", self.jwt_secret)
        else:
            self._challenge_verified = True
        return ok

    async def sign_out(self) -> None:
        claims = self._claims()
        self.access_token = None
        self._challenge_verified = False
        if claims:
            await self.store.invalidate_session(claims["sid"])

    async def request_password_reset(self, email: str) -> None:
        # No mail transport locally; existence of the address is not revealed.
        user = await self.store.get_user_by_email(email)
        logger.info("Password reset requested for %s (known=%s)", email, user is not None)

    async def close(self) -> None:
        await self.store.close()
