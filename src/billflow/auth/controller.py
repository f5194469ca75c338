"""
Auth page controller.

Decides which form is visible and forwards submissions to the session
manager, factor registry and verification flow. It keeps no authority of
its own over whether MFA is required: that always comes from the session.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass

from pydantic import ValidationError

from .errors import AuthError, NoFactorAvailable, ReauthRequired, UnsupportedFactorType
from .factors import FactorRegistry
from .models import AuthMode, FactorType, MerchantInfo
from .session import IdentitySession, SessionManager
from .verification import MfaVerificationFlow, VerificationOutcome

logger = logging.getLogger(__name__)

_SYMBOLS = re.compile(r"[!@#$%^&*(),.?\":{}|<>]")
STRENGTH_LABELS = ["Weak", "Weak", "Fair", "Good", "Strong", "Very Strong"]
MIN_SIGNUP_STRENGTH = 3


def password_strength(password: str) -> int:
    """Score a password from 0 to 5."""
    if not password:
        return 0
    score = 0
    if len(password) >= 8:
        score += 1
    if re.search(r"[A-Z]", password):
        score += 1
    if re.search(r"[a-z]", password):
        score += 1
    if re.search(r"\d", password):
        score += 1
    if _SYMBOLS.search(password):
        score += 1
    return score


def strength_label(score: int) -> str:
    return STRENGTH_LABELS[max(0, min(score, 5))]


@dataclass
class AuthForm:
    """Transient input fields of the auth page."""

    email: str = ""
    password: str = ""
    confirm_password: str = ""
    display_name: str = ""
    company_name: str = ""
    first_name: str = ""
    last_name: str = ""

    @property
    def password_strength(self) -> int:
        return password_strength(self.password)

    def clear_passwords(self) -> None:
        self.password = ""
        self.confirm_password = ""


class AuthPageController:
    """Routes between sign-in, sign-up, reset and MFA forms."""

    def __init__(
        self,
        session: SessionManager,
        registry: FactorRegistry,
        navigate: Callable[[str], None],
        redirect_to: str = "/dashboard",
        initial_mode: AuthMode = AuthMode.SIGNIN,
    ):
        self.session = session
        self.registry = registry
        self.navigate = navigate
        self.redirect_to = redirect_to
        self.mode = initial_mode
        self.form = AuthForm()
        self.loading = False
        self.error: str | None = None
        self.success: str | None = None
        self.qr_code: str | None = None
        self.totp_secret: str | None = None
        self.enrolling_factor_id: str | None = None
        self.navigated = False
        self.verification = MfaVerificationFlow(
            session.adapter, self._handle_mfa_verified, call_timeout=session.call_timeout
        )
        self._unsubscribe = session.subscribe(self._on_session_change)

    # Rendering

    @property
    def visible_form(self) -> AuthMode | None:
        """Form to render; None once the user has been redirected."""
        if self.navigated:
            return None
        if self.session.snapshot.mfa_required:
            return AuthMode.MFA_VERIFY
        return self.mode

    @property
    def available_factors(self):
        return self.registry.usable(self.session.snapshot.pending_mfa_factors)

    @property
    def supported_factors(self):
        """Available factors that can complete a sign-in here."""
        return [f for f in self.available_factors if f.factor_type == FactorType.TOTP]

    def set_mode(self, mode: AuthMode) -> None:
        """Explicit navigation between forms."""
        self.mode = mode
        self.form.clear_passwords()
        self.error = None
        self.success = None

    def close(self) -> None:
        self._unsubscribe()

    def _on_session_change(self, snapshot: IdentitySession) -> None:
        if not snapshot.is_authenticated:
            # Cached factors belong to the user who just left.
            self.registry.clear()
        if snapshot.is_authenticated and not self.navigated and self.mode != AuthMode.MFA_SETUP:
            self._redirect()

    def _redirect(self) -> None:
        if self.navigated:
            return
        self.navigated = True
        logger.info("Authenticated; redirecting to %s", self.redirect_to)
        self.navigate(self.redirect_to)

    def _begin(self) -> bool:
        if self.loading:
            return False
        self.loading = True
        self.error = None
        self.success = None
        return True

    # Sign in / sign up / reset

    async def handle_sign_in(self) -> None:
        if not self._begin():
            return
        try:
            result = await self.session.sign_in(self.form.email, self.form.password)
            if result.mfa_required:
                self.mode = AuthMode.MFA_VERIFY
                self.success = "MFA required. Please enter your verification code."
            elif result.user:
                self.success = "Successfully signed in! Redirecting..."
        except AuthError as e:
            logger.info("Sign in failed: %s", e.message)
            self.error = e.message or "Failed to sign in. Please check your credentials."
        finally:
            self.loading = False

    async def handle_sign_up(self) -> None:
        if not self._begin():
            return
        try:
            form = self.form
            if form.password != form.confirm_password:
                self.error = "Passwords do not match"
                return
            if form.password_strength < MIN_SIGNUP_STRENGTH:
                self.error = "Password is too weak. Please use a stronger password."
                return
            try:
                merchant = MerchantInfo(
                    company_name=form.company_name,
                    first_name=form.first_name,
                    last_name=form.last_name,
                )
            except ValidationError:
                self.error = "Company name is required."
                return
            display_name = form.display_name or f"{form.first_name} {form.last_name}".strip()
            await self.session.sign_up(form.email, form.password, display_name, merchant)
        except AuthError as e:
            logger.info("Sign up failed: %s", e.message)
            self.error = e.message or "Failed to create account. Please try again."
        else:
            self.set_mode(AuthMode.SIGNIN)
            self.success = (
                "Account created successfully! Please check your email to confirm your account before signing in."
            )
        finally:
            self.loading = False

    async def handle_forgot_password(self) -> None:
        if not self._begin():
            return
        try:
            await self.session.request_password_reset(self.form.email)
            self.success = "Password reset instructions have been sent to your email."
        except AuthError as e:
            logger.info("Password reset failed: %s", e.message)
            self.error = "Failed to send reset email"
        finally:
            self.loading = False

    async def handle_accept_invite(self, token: str | None, email: str | None) -> None:
        """Create the invited account, then sign it in with the new password."""
        if not token or not email:
            self.error = "Invalid invitation link. Please check your email for the correct link."
            return
        if not self._begin():
            return
        form = self.form
        try:
            if not form.display_name.strip():
                self.error = "Display name is required"
                return
            if len(form.password) < 8:
                self.error = "Password must be at least 8 characters"
                return
            if form.password != form.confirm_password:
                self.error = "Passwords do not match"
                return
            try:
                await self.session.accept_invite(token, email, form.password, form.display_name)
            except AuthError as e:
                logger.info("Accepting invitation failed: %s", e.message)
                self.error = e.message or "Failed to accept invitation"
                return

            try:
                result = await self.session.sign_in(email, form.password)
            except AuthError as e:
                logger.warning("Sign in after accepting invitation failed: %s", e.message)
                self.set_mode(AuthMode.SIGNIN)
                form.email = email
                self.success = "Account created successfully! Please sign in."
                return
            form.clear_passwords()
            if result.mfa_required:
                self.mode = AuthMode.MFA_VERIFY
                self.success = "MFA required. Please enter your verification code."
            else:
                self.success = "Welcome to BillFlow! Redirecting..."
        finally:
            self.loading = False

    # MFA verification

    async def _handle_mfa_verified(self) -> bool:
        return await self.session.sign_in_with_mfa()

    async def handle_mfa_verify(self, code: str, factor_id: str | None = None) -> bool:
        """Submit a verification code for the pending sign-in."""
        if not self._begin():
            return False
        try:
            ok = await self.verification.verify(self.available_factors, code, factor_id)
        except NoFactorAvailable as e:
            await self._abandon_mfa(e.message)
            return False
        except UnsupportedFactorType as e:
            if not self.supported_factors:
                await self._abandon_mfa(e.message)
            else:
                self.error = f"{e.message}. Use your authenticator app instead."
            return False
        except AuthError as e:
            self.error = e.message
            return False
        finally:
            self.loading = False

        if ok:
            self.success = "MFA verified successfully! Redirecting..."
        elif self.verification.outcome == VerificationOutcome.SESSION_REFRESH_FAILED:
            await self._abandon_mfa(self.verification.error_message)
        else:
            self.error = self.verification.error_message
        return ok

    async def handle_mfa_cancel(self) -> None:
        await self._abandon_mfa("MFA verification cancelled.")

    async def _abandon_mfa(self, message: str) -> None:
        await self.session.cancel_mfa()
        self.registry.clear()
        self.set_mode(AuthMode.SIGNIN)
        self.error = message

    # MFA enrollment

    async def handle_mfa_setup(self) -> None:
        """Start authenticator enrollment for the signed-in user."""
        if not self._begin():
            return
        try:
            enrollment = await self.registry.enroll_totp()
        except ReauthRequired as e:
            self.error = e.message
        except AuthError as e:
            self.error = e.message or "Failed to set up totp MFA."
        else:
            self.qr_code = enrollment.qr_payload
            self.totp_secret = enrollment.secret
            self.enrolling_factor_id = enrollment.factor_id
            self.success = "Scan the QR code with your authenticator app and enter the code to verify."
        finally:
            self.loading = False

    async def handle_mfa_setup_verify(self, code: str) -> bool:
        """Confirm enrollment with the first code from the app."""
        if self.enrolling_factor_id is None:
            self.error = "Start authenticator setup first."
            return False
        if len(code.strip()) < 6:
            self.error = "Enter the 6-digit code from your authenticator app."
            return False
        if not self._begin():
            return False
        try:
            ok = await self.registry.verify_enrollment(self.enrolling_factor_id, code.strip())
        except AuthError as e:
            self.error = e.message
            return False
        finally:
            self.loading = False
        if ok:
            self.qr_code = None
            self.totp_secret = None
            self.enrolling_factor_id = None
            self.success = "Two-factor authentication enabled successfully"
            self._redirect()
        else:
            self.error = "That code did not work. Check the time on your device and try again."
        return ok

    def skip_mfa_setup(self) -> None:
        self._redirect()
