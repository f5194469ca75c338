"""Tests for the local identity backend."""

import base64

import pyotp
import pytest
from cryptography.fernet import Fernet

from billflow.auth.controller import AuthPageController
from billflow.auth.errors import AuthenticationError, BackendError
from billflow.auth.factors import FactorRegistry
from billflow.auth.models import FactorScope, MerchantInfo, SignUpProfile, UserRole
from billflow.auth.session import SessionManager
from billflow.backend import (
    AuthStore,
    DuplicateAccountError,
    InvitationError,
    LocalCredentialAdapter,
    PasswordManager,
    TotpManager,
)
from billflow.backend.password import get_password_manager
from billflow.backend.store import slugify
from billflow.backend.tokens import create_access_token, decode_token

TEST_SECRET = "local-backend-test-secret-0123456789"

# Middle of a 30 second step, so neighbouring codes are unambiguous.
FIXED_TIME = 1_700_000_025.0


def code_at(secret: str, when: float) -> str:
    return pyotp.TOTP(secret).generate_otp(int(when // 30))


def _profile(company="Acme Ltd", slug=None) -> SignUpProfile:
    return SignUpProfile(display_name="Ada Lovelace", merchant=MerchantInfo(company_name=company, account_slug=slug))


def _merchant(store: AuthStore, merchant_id: str) -> dict:
    row = store.conn.execute("SELECT * FROM merchant_accounts WHERE id = ?", (merchant_id,)).fetchone()
    return dict(row)


class TestPasswordManager:
    """Tests for PasswordManager."""

    def test_initialization(self):
        """Test password manager default cost."""
        assert PasswordManager().rounds == 12

    def test_hash_and_verify(self):
        """Test hashing then verifying."""
        pm = PasswordManager(rounds=4)
        hashed = pm.hash("test_password_123")

        assert hashed.startswith("$2b$")
        assert pm.verify("test_password_123", hashed) is True
        assert pm.verify("wrong_password", hashed) is False

    def test_verify_invalid_hash(self):
        """Test verifying against a malformed hash."""
        assert PasswordManager(rounds=4).verify("password", "invalid_hash") is False

    def test_singleton(self):
        """Test the shared password manager."""
        assert get_password_manager() is get_password_manager()


class TestTotpManager:
    """Tests for TotpManager."""

    @pytest.fixture
    def totp(self):
        return TotpManager(Fernet.generate_key(), clock=lambda: FIXED_TIME)

    def test_generate_secret(self, totp):
        """Test secret generation."""
        secret = totp.generate_secret()

        assert isinstance(secret, str)
        assert len(secret) == 32

    def test_provisioning_uri(self, totp):
        """Test provisioning URI generation."""
        secret = totp.generate_secret()
        uri = totp.get_provisioning_uri(secret, "ada@example.com")

        assert uri.startswith("otpauth://totp/")
        assert "BillFlow" in uri
        assert secret in uri

    def test_qr_code_is_png(self, totp):
        """Test QR rendering returns a base64 PNG."""
        encoded = totp.generate_qr_code_base64("otpauth://totp/BillFlow:ada?secret=JBSWY3DPEHPK3PXP")

        assert base64.b64decode(encoded)[:8] == b"\x89PNG\r\n\x1a\n"

    def test_encrypt_decrypt(self, totp):
        """Test secret encryption round trip."""
        encrypted = totp.encrypt_secret("JBSWY3DPEHPK3PXP")

        assert encrypted != b"JBSWY3DPEHPK3PXP"
        assert totp.decrypt_secret(encrypted) == "JBSWY3DPEHPK3PXP"

    def test_match_step_current_and_drift(self, totp):
        """Test codes within the drift window match their own step."""
        secret = totp.generate_secret()
        step = int(FIXED_TIME // 30)

        assert totp.match_step(secret, code_at(secret, FIXED_TIME)) == step
        assert totp.match_step(secret, code_at(secret, FIXED_TIME - 30)) == step - 1
        assert totp.match_step(secret, code_at(secret, FIXED_TIME + 30)) == step + 1
        assert totp.match_step(secret, code_at(secret, FIXED_TIME + 90)) is None

    def test_match_step_rejects_non_digits(self, totp):
        assert totp.match_step(totp.generate_secret(), "abcdef") is None


class TestTokens:
    """Tests for access tokens."""

    def test_round_trip_claims(self):
        token = create_access_token("u1", "s1", "aal1", TEST_SECRET)
        claims = decode_token(token, TEST_SECRET)

        assert claims["sub"] == "u1"
        assert claims["sid"] == "s1"
        assert claims["aal"] == "aal1"

    def test_wrong_secret(self):
        assert decode_token(create_access_token("u1", "s1", "aal1", TEST_SECRET), "other") is None

    def test_expired(self):
        assert decode_token(create_access_token("u1", "s1", "aal1", TEST_SECRET, expires_hours=-1), TEST_SECRET) is None


class TestAuthStore:
    """Tests for AuthStore."""

    def test_slugify(self):
        assert slugify("Acme Ltd.") == "acme-ltd"
        assert slugify("!!!") == "merchant"

    @pytest.mark.asyncio
    async def test_create_user_with_merchant(self, auth_store):
        """Test user creation provisions the merchant account."""
        user = await auth_store.create_user("Ada@Example.com", "Str0ng!pass", _profile())

        assert user.email == "ada@example.com"
        assert user.display_name == "Ada Lovelace"
        assert user.role == UserRole.ADMIN
        merchant = _merchant(auth_store, user.merchant_id)
        assert merchant["owner_user_id"] == user.id
        assert merchant["account_slug"] == "acme-ltd"
        assert merchant["default_currency"] == "USD"

    @pytest.mark.asyncio
    async def test_duplicate_email(self, auth_store):
        await auth_store.create_user("ada@example.com", "Str0ng!pass", _profile())

        with pytest.raises(DuplicateAccountError):
            await auth_store.create_user("ADA@example.com", "Str0ng!pass", _profile("Other"))

    @pytest.mark.asyncio
    async def test_slug_collision(self, auth_store):
        """Derived slugs get a suffix; explicit slugs are refused."""
        await auth_store.create_user("a@example.com", "Str0ng!pass", _profile())
        second = await auth_store.create_user("b@example.com", "Str0ng!pass", _profile())

        merchant = _merchant(auth_store, second.merchant_id)
        assert merchant["account_slug"].startswith("acme-ltd-")

        with pytest.raises(DuplicateAccountError):
            await auth_store.create_user("c@example.com", "Str0ng!pass", _profile(slug="acme-ltd"))

    @pytest.mark.asyncio
    async def test_password_check(self, auth_store):
        user = await auth_store.create_user("ada@example.com", "Str0ng!pass", _profile())

        assert await auth_store.verify_password(user.id, "Str0ng!pass") is True
        assert await auth_store.verify_password(user.id, "str0ng!pass") is False
        assert await auth_store.verify_password("missing", "x") is False

    @pytest.mark.asyncio
    async def test_factor_verification_is_single_use(self, auth_store):
        """Test a code is accepted once and the factor becomes verified."""
        auth_store.totp.clock = lambda: FIXED_TIME
        user = await auth_store.create_user("ada@example.com", "Str0ng!pass", _profile())
        factor, secret, uri = await auth_store.create_totp_factor(user.id)

        assert factor.status == "unverified"
        assert uri.startswith("otpauth://totp/")
        assert await auth_store.has_verified_factor(user.id) is False

        code = code_at(secret, FIXED_TIME)
        assert await auth_store.verify_factor_code(user.id, factor.id, code) is True
        assert await auth_store.verify_factor_code(user.id, factor.id, code) is False
        assert await auth_store.has_verified_factor(user.id) is True

        # An older step is refused too
        earlier = code_at(secret, FIXED_TIME - 30)
        assert await auth_store.verify_factor_code(user.id, factor.id, earlier) is False

        auth_store.totp.clock = lambda: FIXED_TIME + 30
        assert await auth_store.verify_factor_code(user.id, factor.id, code_at(secret, FIXED_TIME + 30)) is True

    @pytest.mark.asyncio
    async def test_only_one_pending_enrollment(self, auth_store):
        user = await auth_store.create_user("ada@example.com", "Str0ng!pass", _profile())
        await auth_store.create_totp_factor(user.id)
        second, _, _ = await auth_store.create_totp_factor(user.id)

        assert [f.id for f in await auth_store.list_factors(user.id)] == [second.id]

    @pytest.mark.asyncio
    async def test_sessions(self, auth_store):
        user = await auth_store.create_user("ada@example.com", "Str0ng!pass", _profile())
        session_id = await auth_store.create_session(user.id)

        assert (await auth_store.get_session(session_id))["aal"] == "aal1"
        assert await auth_store.set_session_aal(session_id, "aal2") is True
        assert (await auth_store.get_session(session_id))["aal"] == "aal2"
        assert (await auth_store.get_user(user.id)).last_sign_in is not None

        assert await auth_store.invalidate_session(session_id) is True
        assert await auth_store.get_session(session_id) is None

    @pytest.mark.asyncio
    async def test_expired_session(self, auth_store):
        user = await auth_store.create_user("ada@example.com", "Str0ng!pass", _profile())
        session_id = await auth_store.create_session(user.id, expires_hours=-1)

        assert await auth_store.get_session(session_id) is None

    @pytest.mark.asyncio
    async def test_login_attempts(self, auth_store):
        await auth_store.record_login_attempt("ada@example.com", False, "invalid_password")
        await auth_store.record_login_attempt("ADA@example.com", False, "invalid_password")
        await auth_store.record_login_attempt("ada@example.com", True)

        assert await auth_store.get_recent_failed_attempts("ada@example.com") == 2

    @pytest.mark.asyncio
    async def test_invitation_joins_inviting_merchant(self, auth_store):
        owner = await auth_store.create_user("ada@example.com", "Str0ng!pass", _profile())
        token = await auth_store.create_invitation(owner.id, "Grace@Example.com", UserRole.ACCOUNTANT)

        member = await auth_store.accept_invitation(token, "grace@example.com", "Str0ng!pass", "Grace Hopper")

        assert member.merchant_id == owner.merchant_id
        assert member.role == UserRole.ACCOUNTANT
        assert member.display_name == "Grace Hopper"
        assert await auth_store.verify_password(member.id, "Str0ng!pass") is True
        stored = auth_store.conn.execute("SELECT token_hash FROM invitations").fetchone()
        assert stored["token_hash"] != token

    @pytest.mark.asyncio
    async def test_invitation_is_single_use(self, auth_store):
        owner = await auth_store.create_user("ada@example.com", "Str0ng!pass", _profile())
        token = await auth_store.create_invitation(owner.id, "grace@example.com")
        await auth_store.accept_invitation(token, "grace@example.com", "Str0ng!pass", "Grace")

        with pytest.raises(InvitationError):
            await auth_store.accept_invitation(token, "grace@example.com", "Str0ng!pass", "Grace")

    @pytest.mark.asyncio
    async def test_invitation_rejections(self, auth_store):
        owner = await auth_store.create_user("ada@example.com", "Str0ng!pass", _profile())
        token = await auth_store.create_invitation(owner.id, "grace@example.com")
        expired = await auth_store.create_invitation(owner.id, "alan@example.com", expires_hours=-1)

        with pytest.raises(InvitationError):
            await auth_store.accept_invitation(token, "someone@example.com", "Str0ng!pass", "Grace")
        with pytest.raises(InvitationError):
            await auth_store.accept_invitation(expired, "alan@example.com", "Str0ng!pass", "Alan")
        with pytest.raises(DuplicateAccountError):
            await auth_store.create_invitation(owner.id, "ada@example.com")

    @pytest.mark.asyncio
    async def test_reinvite_replaces_open_invitation(self, auth_store):
        owner = await auth_store.create_user("ada@example.com", "Str0ng!pass", _profile())
        first = await auth_store.create_invitation(owner.id, "grace@example.com")
        second = await auth_store.create_invitation(owner.id, "grace@example.com")

        with pytest.raises(InvitationError):
            await auth_store.accept_invitation(first, "grace@example.com", "Str0ng!pass", "Grace")
        member = await auth_store.accept_invitation(second, "grace@example.com", "Str0ng!pass", "Grace")
        assert member.email == "grace@example.com"

    @pytest.mark.asyncio
    async def test_encryption_key_persists(self, temp_dir, fast_passwords):
        """Test secrets stay readable after reopening the store."""
        store = AuthStore(db_path=temp_dir / "auth.sqlite")
        await store.initialize()
        encrypted = store.totp.encrypt_secret("JBSWY3DPEHPK3PXP")
        await store.close()

        reopened = AuthStore(db_path=temp_dir / "auth.sqlite")
        await reopened.initialize()
        assert reopened.totp.decrypt_secret(encrypted) == "JBSWY3DPEHPK3PXP"
        await reopened.close()


@pytest.fixture
async def local_adapter(auth_store):
    auth_store.totp.clock = lambda: FIXED_TIME
    adapter = LocalCredentialAdapter(auth_store, jwt_secret=TEST_SECRET)
    await adapter.sign_up("ada@example.com", "Str0ng!pass", _profile())
    return adapter


async def _enroll(adapter) -> str:
    """Sign in, enroll and confirm a TOTP factor; returns the secret."""
    await adapter.sign_in_with_password("ada@example.com", "Str0ng!pass")
    enrollment = await adapter.enroll_totp()
    assert await adapter.verify_totp(enrollment.factor_id, code_at(enrollment.secret, FIXED_TIME)) is True
    await adapter.sign_out()
    return enrollment.secret


class TestLocalCredentialAdapter:
    """Tests for LocalCredentialAdapter."""

    @pytest.mark.asyncio
    async def test_sign_in_without_factor(self, local_adapter):
        result = await local_adapter.sign_in_with_password("ada@example.com", "Str0ng!pass")

        assert result.mfa_required is False
        assert result.user.email == "ada@example.com"
        assert (await local_adapter.get_session()).email == "ada@example.com"

    @pytest.mark.asyncio
    async def test_duplicate_sign_up(self, local_adapter):
        with pytest.raises(BackendError) as exc:
            await local_adapter.sign_up("ada@example.com", "Str0ng!pass", _profile("Other"))

        assert exc.value.status == 422
        assert exc.value.is_transient is False

    @pytest.mark.asyncio
    async def test_bad_password(self, local_adapter):
        with pytest.raises(BackendError) as exc:
            await local_adapter.sign_in_with_password("ada@example.com", "nope")

        assert exc.value.code == "invalid_credentials"
        assert await local_adapter.get_session() is None

    @pytest.mark.asyncio
    async def test_lockout(self, local_adapter):
        """Test repeated failures lock the account out."""
        for _ in range(5):
            with pytest.raises(BackendError):
                await local_adapter.sign_in_with_password("ada@example.com", "nope")

        with pytest.raises(BackendError) as exc:
            await local_adapter.sign_in_with_password("ada@example.com", "Str0ng!pass")

        assert exc.value.status == 429

    @pytest.mark.asyncio
    async def test_enrollment_upgrades_session(self, local_adapter):
        await local_adapter.sign_in_with_password("ada@example.com", "Str0ng!pass")
        enrollment = await local_adapter.enroll_totp()

        assert enrollment.qr_payload.startswith("otpauth://totp/")
        assert enrollment.qr_code_base64
        assert await local_adapter.verify_totp(enrollment.factor_id, code_at(enrollment.secret, FIXED_TIME))
        assert decode_token(local_adapter.access_token, TEST_SECRET)["aal"] == "aal2"
        assert (await local_adapter.get_session()).email == "ada@example.com"

    @pytest.mark.asyncio
    async def test_enroll_requires_session(self, local_adapter):
        with pytest.raises(BackendError) as exc:
            await local_adapter.enroll_totp()

        assert exc.value.code == "reauth_required"

    @pytest.mark.asyncio
    async def test_challenge_then_finalize(self, local_adapter, auth_store):
        secret = await _enroll(local_adapter)
        auth_store.totp.clock = lambda: FIXED_TIME + 30

        result = await local_adapter.sign_in_with_password("ada@example.com", "Str0ng!pass")
        assert result.mfa_required is True
        assert await local_adapter.get_session() is None

        with pytest.raises(BackendError):
            await local_adapter.list_factors(FactorScope.VERIFIED)
        pending = await local_adapter.list_factors(FactorScope.PENDING)
        assert len(pending) == 1

        with pytest.raises(BackendError):
            await local_adapter.finalize_session()

        assert await local_adapter.verify_totp(pending[0].id, code_at(secret, FIXED_TIME + 30)) is True
        user = await local_adapter.finalize_session()

        assert user.email == "ada@example.com"
        assert (await local_adapter.get_session()).email == "ada@example.com"

    @pytest.mark.asyncio
    async def test_replayed_code_rejected_on_next_sign_in(self, local_adapter):
        secret = await _enroll(local_adapter)

        await local_adapter.sign_in_with_password("ada@example.com", "Str0ng!pass")
        pending = await local_adapter.list_factors(FactorScope.PENDING)

        assert await local_adapter.verify_totp(pending[0].id, code_at(secret, FIXED_TIME)) is False

    @pytest.mark.asyncio
    async def test_sign_out_invalidates_token(self, local_adapter):
        await local_adapter.sign_in_with_password("ada@example.com", "Str0ng!pass")
        token = local_adapter.access_token

        await local_adapter.sign_out()
        local_adapter.access_token = token

        assert await local_adapter.get_session() is None

    @pytest.mark.asyncio
    async def test_invite_requires_trusted_admin(self, local_adapter):
        with pytest.raises(BackendError) as exc:
            await local_adapter.invite_user("grace@example.com")
        assert exc.value.status == 401

        await local_adapter.sign_in_with_password("ada@example.com", "Str0ng!pass")
        token = await local_adapter.invite_user("grace@example.com", UserRole.EMPLOYEE)
        await local_adapter.sign_out()

        await local_adapter.accept_invite(token, "grace@example.com", "Str0ng!pass", "Grace")
        await local_adapter.sign_in_with_password("grace@example.com", "Str0ng!pass")
        with pytest.raises(BackendError) as exc:
            await local_adapter.invite_user("alan@example.com")
        assert exc.value.code == "insufficient_role"

    @pytest.mark.asyncio
    async def test_accept_invite_errors(self, local_adapter):
        with pytest.raises(BackendError) as exc:
            await local_adapter.accept_invite("not-a-token", "grace@example.com", "Str0ng!pass", "Grace")

        assert exc.value.code == "invalid_invitation"
        assert exc.value.is_transient is False


class TestLocalOrchestration:
    """The session manager and auth page driven against the local backend."""

    @pytest.mark.asyncio
    async def test_sign_in_with_mfa_end_to_end(self, local_adapter, auth_store):
        secret = await _enroll(local_adapter)
        auth_store.totp.clock = lambda: FIXED_TIME + 30
        redirects = []
        manager = SessionManager(local_adapter, call_timeout=5.0)
        page = AuthPageController(manager, FactorRegistry(local_adapter), navigate=redirects.append)
        await manager.hydrate()

        page.form.email = "ada@example.com"
        page.form.password = "Str0ng!pass"
        await page.handle_sign_in()

        assert page.visible_form.value == "mfa-verify"
        assert manager.snapshot.user is None
        assert len(page.available_factors) == 1

        assert await page.handle_mfa_verify(code_at(secret, FIXED_TIME)) is False
        assert redirects == []

        assert await page.handle_mfa_verify(code_at(secret, FIXED_TIME + 30)) is True
        assert redirects == ["/dashboard"]
        assert manager.snapshot.user.email == "ada@example.com"

    @pytest.mark.asyncio
    async def test_wrong_password_surfaces_authentication_error(self, local_adapter):
        manager = SessionManager(local_adapter)

        with pytest.raises(AuthenticationError) as exc:
            await manager.sign_in("ada@example.com", "nope")

        assert exc.value.message == "Invalid login credentials"
