"""
Pytest configuration and shared fixtures for BillFlow auth tests.
"""

import tempfile
from collections.abc import AsyncGenerator, Generator
from pathlib import Path

import pytest

from billflow.auth.adapter import CredentialServiceAdapter
from billflow.auth.errors import BackendError
from billflow.auth.models import (
    Factor,
    FactorScope,
    FactorType,
    Identity,
    PasswordSignIn,
    SignUpProfile,
    TotpEnrollment,
)


def make_factor(factor_id: str, factor_type: str = "totp", status: str = "verified", phone: str | None = None) -> Factor:
    """Build a Factor for tests."""
    return Factor(id=factor_id, factor_type=FactorType(factor_type), status=status, phone_number=phone)


class FakeAdapter(CredentialServiceAdapter):
    """Scriptable in-memory identity backend.

    Each account has a password, an identity and a list of factors; each
    TOTP factor accepts exactly one code, once.
    """

    def __init__(self):
        self.accounts: dict[str, dict] = {}
        self.codes: dict[str, str] = {}
        self.used_codes: set[tuple[str, str]] = set()
        self.current_user: Identity | None = None
        self.pending: dict | None = None
        self.code_verified = False
        self.challenge_count = 0
        self.calls: list[str] = []
        self.invitations: dict[str, str] = {}

        # Failure knobs
        self.unavailable = False
        self.sign_up_error: BackendError | None = None
        self.finalize_error: BackendError | None = None
        self.session_appears_after_failed_finalize = False
        self.session_error: BackendError | None = None
        self.sign_out_error: BackendError | None = None
        self.pending_factors_error: BackendError | None = None
        self.verify_error: BackendError | None = None

    def add_account(self, email: str, password: str, factors=(), **fields) -> Identity:
        user = Identity(id=f"user-{len(self.accounts) + 1}", email=email, **fields)
        self.accounts[email] = {"password": password, "user": user, "factors": list(factors)}
        for factor in factors:
            if factor.factor_type == FactorType.TOTP:
                self.codes.setdefault(factor.id, "123456")
        return user

    def _check_available(self) -> None:
        if self.unavailable:
            raise BackendError("Failed to fetch")

    async def sign_up(self, email: str, password: str, profile: SignUpProfile) -> Identity:
        self.calls.append("sign_up")
        self._check_available()
        if self.sign_up_error:
            raise self.sign_up_error
        if email in self.accounts:
            raise BackendError("User already registered", status=422, code="user_already_exists")
        return self.add_account(email, password, display_name=profile.display_name)

    async def accept_invite(self, token: str, email: str, password: str, display_name: str) -> Identity | None:
        self.calls.append("accept_invite")
        self._check_available()
        if self.invitations.get(token) != email:
            raise BackendError("Invitation is invalid or has expired", status=400, code="invalid_invitation")
        if email in self.accounts:
            raise BackendError("User already registered", status=422, code="user_already_exists")
        del self.invitations[token]
        return self.add_account(email, password, display_name=display_name)

    async def sign_in_with_password(self, email: str, password: str) -> PasswordSignIn:
        self.calls.append("sign_in_with_password")
        self._check_available()
        account = self.accounts.get(email)
        if not account or account["password"] != password:
            raise BackendError("Invalid login credentials", status=400, code="invalid_credentials")
        if any(f.is_verified for f in account["factors"]):
            self.challenge_count += 1
            self.pending = account
            self.code_verified = False
            return PasswordSignIn(mfa_challenge=f"challenge-{self.challenge_count}")
        self.current_user = account["user"]
        return PasswordSignIn(user=account["user"])

    async def get_session(self) -> Identity | None:
        self.calls.append("get_session")
        self._check_available()
        if self.session_error:
            raise self.session_error
        return self.current_user

    async def finalize_session(self) -> Identity:
        self.calls.append("finalize_session")
        self._check_available()
        if self.finalize_error:
            if self.session_appears_after_failed_finalize and self.pending:
                self.current_user = self.pending["user"]
            raise self.finalize_error
        if not self.pending or not self.code_verified:
            raise BackendError("No verified MFA challenge", status=400)
        self.current_user = self.pending["user"]
        self.pending = None
        return self.current_user

    async def list_factors(self, scope: FactorScope) -> list:
        self.calls.append(f"list_factors:{FactorScope(scope).value}")
        self._check_available()
        if FactorScope(scope) == FactorScope.PENDING:
            if self.pending_factors_error:
                raise self.pending_factors_error
            return [f.model_dump() for f in (self.pending or {}).get("factors", [])]
        if self.current_user is None:
            raise BackendError("AAL2 session required", status=403)
        return self.accounts[self.current_user.email]["factors"]

    async def enroll_totp(self) -> TotpEnrollment:
        self.calls.append("enroll_totp")
        self._check_available()
        if self.current_user is None:
            raise BackendError("AAL2 required", status=403, code="reauth_required")
        factor = make_factor(f"enrolled-{len(self.codes) + 1}", status="unverified")
        self.accounts[self.current_user.email]["factors"].append(factor)
        self.codes[factor.id] = "654321"
        return TotpEnrollment(factor_id=factor.id, secret="JBSWY3DPEHPK3PXP", qr_payload="otpauth://totp/BillFlow")

    async def verify_totp(self, factor_id: str, code: str) -> bool:
        self.calls.append("verify_totp")
        self._check_available()
        if self.verify_error:
            raise self.verify_error
        if (factor_id, code) in self.used_codes or self.codes.get(factor_id) != code:
            return False
        self.used_codes.add((factor_id, code))
        for account in self.accounts.values():
            account["factors"] = [
                f.model_copy(update={"status": "verified"}) if f.id == factor_id else f for f in account["factors"]
            ]
        if self.pending:
            self.code_verified = True
        return True

    async def sign_out(self) -> None:
        self.calls.append("sign_out")
        self.current_user = None
        self.pending = None
        self.code_verified = False
        if self.sign_out_error:
            raise self.sign_out_error

    async def request_password_reset(self, email: str) -> None:
        self.calls.append("request_password_reset")
        self._check_available()


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def adapter() -> FakeAdapter:
    """Fake backend with one plain account and one TOTP-protected account."""
    fake = FakeAdapter()
    fake.add_account("plain@example.com", "Passw0rd!")
    fake.add_account("mfa@example.com", "Passw0rd!", factors=[make_factor("totp-1")])
    return fake


@pytest.fixture
def session_manager(adapter):
    """SessionManager over the fake adapter."""
    from billflow.auth.session import SessionManager

    return SessionManager(adapter, call_timeout=1.0)


@pytest.fixture
def fast_passwords():
    """Use cheap bcrypt rounds for the duration of a test."""
    from billflow.backend import password

    previous = password._password_manager
    password.set_password_manager(password.PasswordManager(rounds=4))
    yield
    password._password_manager = previous


@pytest.fixture
async def auth_store(temp_dir: Path, fast_passwords) -> AsyncGenerator:
    """Create and initialize a local auth store."""
    from billflow.backend import AuthStore

    store = AuthStore(db_path=temp_dir / "auth.sqlite")
    await store.initialize()
    yield store
    await store.close()
