"""Factor registry: which second factors can be used right now."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Sequence
from typing import Any

from pydantic import ValidationError

from .adapter import CredentialServiceAdapter
from .errors import AdapterUnavailable, AuthError, BackendError, ReauthRequired
from .models import Factor, FactorScope, FactorStatus, FactorType, TotpEnrollment

logger = logging.getLogger(__name__)

USABLE_STATUSES = frozenset({FactorStatus.VERIFIED.value, FactorStatus.UNVERIFIED.value})


def normalize_factors(raw: Iterable[Any] | None) -> list[Factor]:
    """Turn backend factor records into an ordered, de-duplicated list.

    Accepts ``Factor`` instances, plain dicts, or the grouped shape some
    backends return (``{"all": [...], "totp": [...]}``). Records that fail
    validation are dropped with a warning; the first occurrence of an id wins.
    """
    if raw is None:
        return []
    if isinstance(raw, dict):
        raw = raw.get("all") or [*raw.get("totp", []), *raw.get("phone", [])]

    factors: list[Factor] = []
    seen: set[str] = set()
    for item in raw:
        if isinstance(item, Factor):
            factor = item
        else:
            try:
                factor = Factor.model_validate(item)
            except ValidationError as e:
                logger.warning("Ignoring malformed factor record: %s", e.errors()[0].get("msg"))
                continue
        if factor.id in seen:
            continue
        seen.add(factor.id)
        factors.append(factor)
    return factors


def list_usable_factors(verified_factors: Sequence[Factor], pending_factors: Sequence[Factor]) -> list[Factor]:
    """Factors offered for the current verification attempt.

    ``pending_factors`` are only consulted when ``verified_factors`` is
    empty. The two lists are never merged.
    """
    source = verified_factors if len(verified_factors) > 0 else pending_factors
    return [f for f in source if f.status in USABLE_STATUSES]


def select_default(factors: Sequence[Factor]) -> Factor | None:
    """First factor of the ordered list, or None."""
    return factors[0] if factors else None


class FactorRegistry:
    """Caches the factors of the trusted identity and drives TOTP enrollment."""

    def __init__(self, adapter: CredentialServiceAdapter, call_timeout: float | None = None):
        self.adapter = adapter
        self.call_timeout = call_timeout
        self._verified: list[Factor] = []
        self.loading = False

    @property
    def verified_factors(self) -> list[Factor]:
        """Factors tied to the fully authenticated identity (cached)."""
        return list(self._verified)

    @property
    def is_totp_enabled(self) -> bool:
        return any(f.factor_type == FactorType.TOTP and f.is_verified for f in self._verified)

    def usable(self, pending_factors: Sequence[Factor]) -> list[Factor]:
        """Usable factors given the session's pending list."""
        return list_usable_factors(self._verified, pending_factors)

    async def _call(self, coro):
        try:
            return await asyncio.wait_for(coro, timeout=self.call_timeout)
        except asyncio.TimeoutError as e:
            raise AdapterUnavailable("The identity service did not respond in time") from e

    async def refresh(self) -> list[Factor]:
        """Re-fetch the trusted identity's factors.

        A non-transient backend failure (typically: no trusted session yet)
        leaves the cache empty.
        """
        self.loading = True
        try:
            raw = await self._call(self.adapter.list_factors(FactorScope.VERIFIED))
        except BackendError as e:
            if e.is_transient:
                raise AdapterUnavailable(e.message) from e
            logger.debug("No trusted factors available: %s", e.message)
            raw = []
        finally:
            self.loading = False
        self._verified = normalize_factors(raw)
        return self.verified_factors

    def clear(self) -> None:
        self._verified = []

    async def enroll_totp(self) -> TotpEnrollment:
        """Start TOTP enrollment for the signed-in user."""
        try:
            enrollment = await self._call(self.adapter.enroll_totp())
        except BackendError as e:
            if e.is_transient:
                raise AdapterUnavailable(e.message) from e
            if e.status in (401, 403) or e.code == "reauth_required":
                raise ReauthRequired(
                    "Please complete MFA on sign-in before enabling a new authenticator. "
                    "Sign out and back in to continue."
                ) from e
            raise AuthError(e.message) from e
        logger.info("Started TOTP enrollment for factor %s", enrollment.factor_id)
        return enrollment

    async def verify_enrollment(self, factor_id: str, code: str) -> bool:
        """Check the first code of a new factor; refreshes the cache on success."""
        try:
            ok = await self._call(self.adapter.verify_totp(factor_id, code))
        except BackendError as e:
            if e.is_transient:
                raise AdapterUnavailable(e.message) from e
            logger.info("Enrollment code rejected for factor %s: %s", factor_id, e.message)
            return False
        if ok:
            await self.refresh()
        return ok
