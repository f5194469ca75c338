"""
Session manager: the single authority over the identity session.

The session is held as one of five explicit states:

    Hydrating      - startup, waiting for any existing backend session
    Anonymous      - nobody signed in
    Authenticated  - a trusted user
    MfaPending     - password accepted, a second factor is outstanding
    MfaFinalizing  - the code was accepted, upgrading to a trusted session

UI components read :class:`IdentitySession` snapshots (via ``snapshot`` or a
subscription) and call the manager's methods; they never mutate state.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from pydantic import ValidationError

from .adapter import CredentialServiceAdapter
from .errors import (
    AdapterUnavailable,
    AuthenticationError,
    BackendError,
    MfaFinalizationError,
    RegistrationError,
)
from .factors import normalize_factors
from .models import (
    Factor,
    FactorScope,
    Identity,
    InviteAcceptance,
    MerchantInfo,
    SignInResult,
    SignUpProfile,
    SignUpRequest,
)

logger = logging.getLogger(__name__)


def _validated(model, **fields):
    """Build a request model, reporting the first invalid field."""
    try:
        return model(**fields)
    except ValidationError as e:
        error = e.errors()[0]
        field_name = ".".join(str(part) for part in error["loc"])
        raise RegistrationError(f"Invalid {field_name}: {error['msg']}") from e


@dataclass(frozen=True)
class Hydrating:
    pass


@dataclass(frozen=True)
class Anonymous:
    pass


@dataclass(frozen=True)
class Authenticated:
    user: Identity


@dataclass(frozen=True)
class MfaPending:
    challenge: str
    factors: tuple[Factor, ...] = ()


@dataclass(frozen=True)
class MfaFinalizing:
    challenge: str
    factors: tuple[Factor, ...] = ()


SessionState = Hydrating | Anonymous | Authenticated | MfaPending | MfaFinalizing


@dataclass(frozen=True)
class IdentitySession:
    """Read-only projection of the current session state."""

    state: SessionState = field(default_factory=Hydrating)

    @property
    def user(self) -> Identity | None:
        return self.state.user if isinstance(self.state, Authenticated) else None

    @property
    def loading(self) -> bool:
        return isinstance(self.state, Hydrating)

    @property
    def mfa_required(self) -> bool:
        return isinstance(self.state, (MfaPending, MfaFinalizing))

    @property
    def pending_mfa_challenge(self) -> str | None:
        return self.state.challenge if self.mfa_required else None

    @property
    def pending_mfa_factors(self) -> list[Factor]:
        return list(self.state.factors) if self.mfa_required else []

    @property
    def is_authenticated(self) -> bool:
        return isinstance(self.state, Authenticated)


Listener = Callable[[IdentitySession], None]


class SessionStore:
    """Holds the current session and notifies subscribers on every change."""

    def __init__(self):
        self._current = IdentitySession()
        self._listeners: list[Listener] = []

    @property
    def current(self) -> IdentitySession:
        return self._current

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener; returns a function that removes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _publish(self, state: SessionState) -> None:
        self._current = IdentitySession(state)
        for listener in list(self._listeners):
            listener(self._current)


class SessionManager:
    """Owns the identity session and every transition of it."""

    def __init__(
        self,
        adapter: CredentialServiceAdapter,
        store: SessionStore | None = None,
        call_timeout: float | None = None,
    ):
        self.adapter = adapter
        self.store = store or SessionStore()
        self.call_timeout = call_timeout

    @property
    def snapshot(self) -> IdentitySession:
        return self.store.current

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        return self.store.subscribe(listener)

    def _transition(self, state: SessionState) -> None:
        previous = type(self.store.current.state).__name__
        logger.info("Session %s -> %s", previous, type(state).__name__)
        self.store._publish(state)

    async def _call(self, call: Awaitable):
        """Run an adapter call under the configured deadline."""
        try:
            return await asyncio.wait_for(call, timeout=self.call_timeout)
        except asyncio.TimeoutError as e:
            raise BackendError("The identity service did not respond in time", code="unavailable") from e

    # Startup

    async def hydrate(self) -> IdentitySession:
        """Restore any existing backend session."""
        self._transition(Hydrating())
        try:
            user = await self._call(self.adapter.get_session())
        except BackendError as e:
            logger.warning("Could not restore session: %s", e.message)
            user = None
        self._transition(Authenticated(user) if user else Anonymous())
        return self.snapshot

    # Sign up / sign in

    async def sign_up(
        self,
        email: str,
        password: str,
        display_name: str,
        merchant_info: MerchantInfo,
    ) -> Identity:
        """Create an account. Does not sign the new user in."""
        request = _validated(
            SignUpRequest,
            email=email,
            password=password,
            profile=SignUpProfile(display_name=display_name, merchant=merchant_info),
        )
        try:
            user = await self._call(self.adapter.sign_up(request.email, request.password, request.profile))
        except BackendError as e:
            if e.is_transient:
                raise AdapterUnavailable(e.message) from e
            raise RegistrationError(e.message) from e
        if user is None:
            raise RegistrationError("Account creation failed - no user returned")
        logger.info("Registered account %s", user.id)
        return user

    async def accept_invite(self, token: str, email: str, password: str, display_name: str) -> Identity | None:
        """Create an account from an invitation. Does not sign the new user in."""
        request = _validated(
            InviteAcceptance, token=token, email=email, password=password, display_name=display_name
        )
        try:
            user = await self._call(
                self.adapter.accept_invite(request.token, request.email, request.password, request.display_name)
            )
        except BackendError as e:
            if e.is_transient:
                raise AdapterUnavailable(e.message) from e
            raise RegistrationError(e.message or "Failed to accept invitation") from e
        logger.info("Invitation accepted for %s", request.email)
        return user

    async def sign_in(self, email: str, password: str) -> SignInResult:
        """Check a password; either trusts the user or opens an MFA challenge.

        The pending factors are fetched before any state changes, so a
        failure here leaves the session exactly as it was.
        """
        try:
            outcome = await self._call(self.adapter.sign_in_with_password(email, password))
        except BackendError as e:
            if e.is_transient:
                raise AdapterUnavailable(e.message) from e
            raise AuthenticationError(e.message or "Invalid email or password") from e

        if outcome.mfa_required:
            try:
                raw = await self._call(self.adapter.list_factors(FactorScope.PENDING))
            except BackendError as e:
                if e.is_transient:
                    raise AdapterUnavailable(e.message) from e
                logger.warning("Could not list pending factors: %s", e.message)
                raw = []
            factors = normalize_factors(raw)
            self._transition(MfaPending(outcome.mfa_challenge, tuple(factors)))
            return SignInResult(user=None, mfa_required=True)

        if outcome.user is None:
            raise AuthenticationError("Failed to sign in. Please check your credentials.")
        self._transition(Authenticated(outcome.user))
        return SignInResult(user=outcome.user, mfa_required=False)

    # Second phase

    async def finalize_mfa(self) -> Identity:
        """Establish the trusted session after a successful code check.

        The finalize call can fail even though the code was just accepted,
        because the backend propagates the upgraded session lazily. On
        failure the current session is queried once; a present user counts
        as success. The two calls never overlap.
        """
        state = self.snapshot.state
        if not isinstance(state, MfaPending):
            raise MfaFinalizationError("No sign-in is waiting for verification. Please sign in again.")

        self._transition(MfaFinalizing(state.challenge, state.factors))
        try:
            user = await self._establish_session()
        except BaseException:
            # Cancelled or crashed mid-upgrade: the challenge is still open.
            self._transition(MfaPending(state.challenge, state.factors))
            raise

        if user is None:
            self._transition(MfaPending(state.challenge, state.factors))
            raise MfaFinalizationError("Failed to complete login after MFA verification. Please try signing in again.")

        self._transition(Authenticated(user))
        return user

    async def _establish_session(self) -> Identity | None:
        try:
            user = await self._call(self.adapter.finalize_session())
        except BackendError as e:
            logger.warning("Finalize after MFA failed (%s); inspecting session", e.message)
            user = None
        if user is not None:
            return user

        try:
            user = await self._call(self.adapter.get_session())
        except BackendError as e:
            logger.error("Unable to inspect session after finalize failure: %s", e.message)
            return None
        if user is not None:
            logger.warning("Finalize fallback succeeded via session inspection")
        return user

    async def sign_in_with_mfa(self) -> bool:
        """Boolean form of :meth:`finalize_mfa` for completion callbacks."""
        try:
            await self.finalize_mfa()
        except MfaFinalizationError as e:
            logger.error("MFA finalization failed: %s", e.message)
            return False
        return True

    # Teardown

    async def cancel_mfa(self) -> None:
        """Abandon the pending challenge and return to anonymous.

        The backend sign-out is best effort: failures are logged only.
        """
        try:
            await self._call(self.adapter.sign_out())
        except BackendError as e:
            logger.error("MFA cancel sign-out error: %s", e.message)
        self._transition(Anonymous())

    async def sign_out(self) -> None:
        """Sign out unconditionally."""
        try:
            await self._call(self.adapter.sign_out())
        except BackendError as e:
            logger.error("Sign-out error: %s", e.message)
        self._transition(Anonymous())

    async def request_password_reset(self, email: str) -> None:
        try:
            await self._call(self.adapter.request_password_reset(email))
        except BackendError as e:
            if e.is_transient:
                raise AdapterUnavailable(e.message) from e
            raise AuthenticationError(e.message) from e
