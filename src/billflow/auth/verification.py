"""MFA verification flow: one code, one factor, one outcome."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from enum import Enum

from .adapter import CredentialServiceAdapter
from .errors import AdapterUnavailable, BackendError, NoFactorAvailable, UnsupportedFactorType
from .factors import select_default
from .models import Factor, FactorType

logger = logging.getLogger(__name__)

MIN_CODE_LENGTH = 6


class VerificationOutcome(Enum):
    """Result of the most recent submission."""

    VERIFIED = "verified"
    CODE_TOO_SHORT = "code_too_short"
    INVALID_CODE = "invalid_code"
    SESSION_REFRESH_FAILED = "session_refresh_failed"


MESSAGES = {
    VerificationOutcome.VERIFIED: "MFA verified successfully!",
    VerificationOutcome.CODE_TOO_SHORT: "Enter the 6-digit code from your authenticator app.",
    VerificationOutcome.INVALID_CODE: "That code did not work. Check the time on your device and try again.",
    VerificationOutcome.SESSION_REFRESH_FAILED: (
        "Verification succeeded, but we could not refresh your session. Please sign in again."
    ),
}

CompletionCallback = Callable[[], Awaitable[bool]]


class MfaVerificationFlow:
    """
    Verifies a second-factor code without touching the session itself.

    The caller supplies ``on_verified``, normally bound to
    ``SessionManager.sign_in_with_mfa``. It runs once per accepted code and
    its boolean result decides between ``VERIFIED`` and
    ``SESSION_REFRESH_FAILED``.
    """

    def __init__(
        self,
        adapter: CredentialServiceAdapter,
        on_verified: CompletionCallback,
        call_timeout: float | None = None,
    ):
        self.adapter = adapter
        self.on_verified = on_verified
        self.call_timeout = call_timeout
        self.outcome: VerificationOutcome | None = None
        self.submitting = False

    @property
    def message(self) -> str | None:
        return MESSAGES[self.outcome] if self.outcome else None

    @property
    def error_message(self) -> str | None:
        if self.outcome in (None, VerificationOutcome.VERIFIED):
            return None
        return MESSAGES[self.outcome]

    def select_factor(self, available: Sequence[Factor], explicit_choice: Factor | str | None = None) -> Factor:
        """Explicit choice if it is among ``available``, else the default."""
        if not available:
            raise NoFactorAvailable(
                "No registered MFA factors were found for this account. Contact an administrator for a recovery option."
            )
        if explicit_choice is not None:
            choice_id = explicit_choice.id if isinstance(explicit_choice, Factor) else explicit_choice
            for factor in available:
                if factor.id == choice_id:
                    return factor
            logger.info("Requested factor %s is not available; using default", choice_id)
        factor = select_default(available)
        logger.debug("Auto-selected factor %s", factor.id)
        return factor

    async def submit_code(self, factor: Factor, code: str) -> bool:
        """Verify ``code`` for ``factor`` and run the completion callback."""
        code = code.strip()
        if len(code) < MIN_CODE_LENGTH:
            self.outcome = VerificationOutcome.CODE_TOO_SHORT
            return False
        if factor.factor_type != FactorType.TOTP:
            raise UnsupportedFactorType(factor.factor_type.value)

        logger.info("Submitting code for factor %s (%s)", factor.id, factor.factor_type.value)
        self.submitting = True
        try:
            try:
                accepted = await asyncio.wait_for(
                    self.adapter.verify_totp(factor.id, code), timeout=self.call_timeout
                )
            except asyncio.TimeoutError as e:
                raise AdapterUnavailable("The identity service did not respond in time") from e
            except BackendError as e:
                if e.is_transient:
                    raise AdapterUnavailable(e.message) from e
                logger.info("Code rejected for factor %s: %s", factor.id, e.message)
                accepted = False

            if not accepted:
                self.outcome = VerificationOutcome.INVALID_CODE
                return False

            if await self.on_verified():
                self.outcome = VerificationOutcome.VERIFIED
                return True
            self.outcome = VerificationOutcome.SESSION_REFRESH_FAILED
            return False
        finally:
            self.submitting = False

    async def verify(
        self,
        available: Sequence[Factor],
        code: str,
        explicit_choice: Factor | str | None = None,
    ) -> bool:
        """Select a factor and submit ``code`` for it."""
        factor = self.select_factor(available, explicit_choice)
        return await self.submit_code(factor, code)
