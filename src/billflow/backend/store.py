"""Identity store for the local backend, using SQLite."""

import hashlib
import json
import os
import re
import secrets
import sqlite3
from datetime import datetime, timedelta
from pathlib import Path
from uuid import uuid4

from ..auth.models import Factor, FactorStatus, FactorType, Identity, SignUpProfile, UserRole
from .password import get_password_manager
from .totp import TotpManager


class DuplicateAccountError(ValueError):
    """Email or merchant slug already registered."""


class InvitationError(ValueError):
    """Invitation token unknown, already used, expired or issued to another address."""


def _token_hash(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


def slugify(name: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")
    return slug or "merchant"


class AuthStore:
    """SQLite-based storage for users, merchants, factors and sessions."""

    SCHEMA = """
    CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY,
        email TEXT UNIQUE NOT NULL,
        password_hash TEXT NOT NULL,
        display_name TEXT,
        role TEXT NOT NULL DEFAULT 'employee',
        permissions_json TEXT NOT NULL DEFAULT '[]',
        is_active INTEGER DEFAULT 1,
        merchant_id TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        last_login TEXT
    );

    CREATE TABLE IF NOT EXISTS merchant_accounts (
        id TEXT PRIMARY KEY,
        owner_user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        company_name TEXT NOT NULL,
        account_slug TEXT UNIQUE NOT NULL,
        default_currency TEXT NOT NULL,
        timezone TEXT NOT NULL,
        created_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS invitations (
        token_hash TEXT PRIMARY KEY,
        email TEXT NOT NULL,
        merchant_id TEXT NOT NULL REFERENCES merchant_accounts(id) ON DELETE CASCADE,
        role TEXT NOT NULL,
        invited_by TEXT REFERENCES users(id) ON DELETE SET NULL,
        created_at TEXT NOT NULL,
        expires_at TEXT NOT NULL,
        accepted_at TEXT
    );

    CREATE TABLE IF NOT EXISTS factors (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        factor_type TEXT NOT NULL,
        status TEXT NOT NULL,
        secret_encrypted BLOB,
        phone_number TEXT,
        friendly_name TEXT,
        last_used_step INTEGER,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS sessions (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        aal TEXT NOT NULL DEFAULT 'aal1',
        created_at TEXT NOT NULL,
        expires_at TEXT NOT NULL,
        is_valid INTEGER DEFAULT 1
    );

    CREATE TABLE IF NOT EXISTS login_attempts (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL,
        attempt_time TEXT NOT NULL,
        successful INTEGER DEFAULT 0,
        failure_reason TEXT
    );

    CREATE INDEX IF NOT EXISTS idx_users_email ON users(email);
    CREATE INDEX IF NOT EXISTS idx_factors_user_id ON factors(user_id);
    CREATE INDEX IF NOT EXISTS idx_sessions_user_id ON sessions(user_id);
    CREATE INDEX IF NOT EXISTS idx_login_attempts_time ON login_attempts(attempt_time);
    CREATE INDEX IF NOT EXISTS idx_invitations_email ON invitations(email);
    """

    def __init__(self, db_path: Path, totp_issuer: str = "BillFlow"):
        """Initialize the auth store."""
        self.db_path = Path(db_path)
        self.totp_issuer = totp_issuer
        self.conn: sqlite3.Connection | None = None
        self._totp: TotpManager | None = None
        self._credential_key_path = self.db_path.parent / ".credential_key"

    async def initialize(self) -> None:
        """Create the database and load the secret encryption key."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        await self._init_encryption_key()

        self.conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA foreign_keys = ON")
        self.conn.execute("PRAGMA journal_mode = WAL")
        self.conn.executescript(self.SCHEMA)
        self.conn.commit()

    async def _init_encryption_key(self) -> None:
        """Initialize or load the encryption key for TOTP secrets."""
        if self._credential_key_path.exists():
            with open(self._credential_key_path, "rb") as f:
                key_data = f.read()
        else:
            from cryptography.fernet import Fernet

            key_data = Fernet.generate_key()
            with open(self._credential_key_path, "wb") as f:
                f.write(key_data)
            os.chmod(self._credential_key_path, 0o600)

        self._totp = TotpManager(key_data, issuer=self.totp_issuer)

    @property
    def totp(self) -> TotpManager:
        if self._totp is None:
            raise RuntimeError("AuthStore not initialized")
        return self._totp

    async def close(self) -> None:
        if self.conn:
            self.conn.close()
            self.conn = None

    def _identity_from_row(self, row: sqlite3.Row) -> Identity:
        return Identity(
            id=row["id"],
            email=row["email"],
            display_name=row["display_name"],
            role=UserRole(row["role"]),
            is_active=bool(row["is_active"]),
            permissions=json.loads(row["permissions_json"]),
            merchant_id=row["merchant_id"],
            created_at=datetime.fromisoformat(row["created_at"]),
            last_sign_in=datetime.fromisoformat(row["last_login"]) if row["last_login"] else None,
        )

    def _factor_from_row(self, row: sqlite3.Row) -> Factor:
        return Factor(
            id=row["id"],
            factor_type=FactorType(row["factor_type"]),
            status=row["status"],
            phone_number=row["phone_number"],
            friendly_name=row["friendly_name"],
        )

    # User operations

    async def create_user(
        self,
        email: str,
        password: str,
        profile: SignUpProfile,
        role: UserRole = UserRole.ADMIN,
    ) -> Identity:
        """Create a user together with the merchant account they own."""
        email = email.lower()
        if await self.get_user_by_email(email):
            raise DuplicateAccountError("User already registered")

        merchant = profile.merchant
        slug = merchant.account_slug or slugify(merchant.company_name)
        cursor = self.conn.cursor()
        cursor.execute("SELECT 1 FROM merchant_accounts WHERE account_slug = ?", (slug,))
        if cursor.fetchone():
            if merchant.account_slug:
                raise DuplicateAccountError("This account slug is already taken")
            slug = f"{slug}-{uuid4().hex[:6]}"

        now = datetime.utcnow().isoformat()
        merchant_id = str(uuid4())
        user_id = self._insert_user(cursor, email, password, profile.display_name, role, merchant_id, now)
        cursor.execute(
            """
            INSERT INTO merchant_accounts
                (id, owner_user_id, company_name, account_slug, default_currency, timezone, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                merchant_id,
                user_id,
                merchant.company_name,
                slug,
                merchant.default_currency,
                merchant.timezone,
                now,
            ),
        )
        self.conn.commit()
        return await self.get_user(user_id)

    async def get_user(self, user_id: str) -> Identity | None:
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM users WHERE id = ?", (user_id,))
        row = cursor.fetchone()
        return self._identity_from_row(row) if row else None

    async def get_user_by_email(self, email: str) -> Identity | None:
        cursor = self.conn.cursor()
        cursor.execute("SELECT id FROM users WHERE email = ?", (email.lower(),))
        row = cursor.fetchone()
        return await self.get_user(row["id"]) if row else None

    async def verify_password(self, user_id: str, password: str) -> bool:
        cursor = self.conn.cursor()
        cursor.execute("SELECT password_hash FROM users WHERE id = ?", (user_id,))
        row = cursor.fetchone()
        if not row:
            return False
        return get_password_manager().verify(password, row["password_hash"])

    def _insert_user(
        self,
        cursor: sqlite3.Cursor,
        email: str,
        password: str,
        display_name: str | None,
        role: UserRole,
        merchant_id: str,
        now: str,
    ) -> str:
        user_id = str(uuid4())
        cursor.execute(
            """
            INSERT INTO users (id, email, password_hash, display_name, role, merchant_id, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (user_id, email, get_password_manager().hash(password), display_name, role.value, merchant_id, now, now),
        )
        return user_id

    # Invitations

    async def create_invitation(
        self,
        inviter_id: str,
        email: str,
        role: UserRole = UserRole.EMPLOYEE,
        expires_hours: int = 72,
    ) -> str:
        """Invite an address to the inviter's merchant account; returns the token.

        Only a hash of the token is stored. A new invitation for the same
        address replaces any unaccepted one.
        """
        inviter = await self.get_user(inviter_id)
        if not inviter or not inviter.merchant_id:
            raise InvitationError("Inviter has no merchant account")
        email = email.lower()
        if await self.get_user_by_email(email):
            raise DuplicateAccountError("User already registered")

        token = secrets.token_urlsafe(32)
        now = datetime.utcnow()
        cursor = self.conn.cursor()
        cursor.execute("DELETE FROM invitations WHERE email = ? AND accepted_at IS NULL", (email,))
        cursor.execute(
            """
            INSERT INTO invitations (token_hash, email, merchant_id, role, invited_by, created_at, expires_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                _token_hash(token),
                email,
                inviter.merchant_id,
                UserRole(role).value,
                inviter_id,
                now.isoformat(),
                (now + timedelta(hours=expires_hours)).isoformat(),
            ),
        )
        self.conn.commit()
        return token

    async def accept_invitation(self, token: str, email: str, password: str, display_name: str) -> Identity:
        """Create the invited user inside the inviting merchant account."""
        email = email.lower()
        now = datetime.utcnow().isoformat()
        cursor = self.conn.cursor()
        cursor.execute(
            "SELECT * FROM invitations WHERE token_hash = ? AND accepted_at IS NULL AND expires_at > ?",
            (_token_hash(token), now),
        )
        invitation = cursor.fetchone()
        if not invitation or invitation["email"] != email:
            raise InvitationError("Invitation is invalid or has expired")
        if await self.get_user_by_email(email):
            raise DuplicateAccountError("User already registered")

        user_id = self._insert_user(
            cursor, email, password, display_name, UserRole(invitation["role"]), invitation["merchant_id"], now
        )
        cursor.execute(
            "UPDATE invitations SET accepted_at = ? WHERE token_hash = ?", (now, invitation["token_hash"])
        )
        self.conn.commit()
        return await self.get_user(user_id)

    # Factor operations

    async def list_factors(self, user_id: str) -> list[Factor]:
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM factors WHERE user_id = ? ORDER BY created_at, id", (user_id,))
        return [self._factor_from_row(row) for row in cursor.fetchall()]

    async def has_verified_factor(self, user_id: str) -> bool:
        cursor = self.conn.cursor()
        cursor.execute(
            "SELECT COUNT(*) FROM factors WHERE user_id = ? AND status = ?",
            (user_id, FactorStatus.VERIFIED.value),
        )
        return cursor.fetchone()[0] > 0

    async def create_totp_factor(self, user_id: str, friendly_name: str | None = None) -> tuple[Factor, str, str]:
        """Add an unverified TOTP factor. Returns (factor, secret, provisioning uri)."""
        user = await self.get_user(user_id)
        if not user:
            raise ValueError("User not found")

        secret = self.totp.generate_secret()
        uri = self.totp.get_provisioning_uri(secret, user.email)
        now = datetime.utcnow().isoformat()
        factor_id = str(uuid4())

        cursor = self.conn.cursor()
        # Only one enrollment in progress per user
        cursor.execute(
            "DELETE FROM factors WHERE user_id = ? AND factor_type = ? AND status = ?",
            (user_id, FactorType.TOTP.value, FactorStatus.UNVERIFIED.value),
        )
        cursor.execute(
            """
            INSERT INTO factors (id, user_id, factor_type, status, secret_encrypted, friendly_name, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                factor_id,
                user_id,
                FactorType.TOTP.value,
                FactorStatus.UNVERIFIED.value,
                self.totp.encrypt_secret(secret),
                friendly_name,
                now,
                now,
            ),
        )
        self.conn.commit()

        cursor.execute("SELECT * FROM factors WHERE id = ?", (factor_id,))
        return self._factor_from_row(cursor.fetchone()), secret, uri

    async def verify_factor_code(self, user_id: str, factor_id: str, code: str) -> bool:
        """Check a TOTP code; marks the factor verified on first success.

        A code is accepted at most once: the matched time step must be newer
        than the last step accepted for this factor.
        """
        cursor = self.conn.cursor()
        cursor.execute(
            "SELECT * FROM factors WHERE id = ? AND user_id = ? AND factor_type = ?",
            (factor_id, user_id, FactorType.TOTP.value),
        )
        row = cursor.fetchone()
        if not row or not row["secret_encrypted"]:
            return False

        secret = self.totp.decrypt_secret(row["secret_encrypted"])
        step = self.totp.match_step(secret, code)
        if step is None:
            return False
        if row["last_used_step"] is not None and step <= row["last_used_step"]:
            return False

        cursor.execute(
            "UPDATE factors SET last_used_step = ?, status = ?, updated_at = ? WHERE id = ?",
            (step, FactorStatus.VERIFIED.value, datetime.utcnow().isoformat(), factor_id),
        )
        self.conn.commit()
        return True

    # Session operations

    async def create_session(self, user_id: str, aal: str = "aal1", expires_hours: int = 24) -> str:
        """Create a session; returns its id."""
        now = datetime.utcnow()
        session_id = str(uuid4())
        cursor = self.conn.cursor()
        cursor.execute(
            "INSERT INTO sessions (id, user_id, aal, created_at, expires_at) VALUES (?, ?, ?, ?, ?)",
            (session_id, user_id, aal, now.isoformat(), (now + timedelta(hours=expires_hours)).isoformat()),
        )
        cursor.execute("UPDATE users SET last_login = ? WHERE id = ?", (now.isoformat(), user_id))
        self.conn.commit()
        return session_id

    async def get_session(self, session_id: str) -> dict | None:
        """Valid, unexpired session row as a dict."""
        cursor = self.conn.cursor()
        cursor.execute(
            "SELECT * FROM sessions WHERE id = ? AND is_valid = 1 AND expires_at > ?",
            (session_id, datetime.utcnow().isoformat()),
        )
        row = cursor.fetchone()
        return dict(row) if row else None

    async def set_session_aal(self, session_id: str, aal: str) -> bool:
        cursor = self.conn.cursor()
        cursor.execute("UPDATE sessions SET aal = ? WHERE id = ? AND is_valid = 1", (aal, session_id))
        self.conn.commit()
        return cursor.rowcount > 0

    async def invalidate_session(self, session_id: str) -> bool:
        cursor = self.conn.cursor()
        cursor.execute("UPDATE sessions SET is_valid = 0 WHERE id = ?", (session_id,))
        self.conn.commit()
        return cursor.rowcount > 0

    # Login attempt tracking

    async def record_login_attempt(self, email: str, successful: bool = False, failure_reason: str | None = None) -> None:
        cursor = self.conn.cursor()
        cursor.execute(
            """
            INSERT INTO login_attempts (id, email, attempt_time, successful, failure_reason)
            VALUES (?, ?, ?, ?, ?)
            """,
            (str(uuid4()), email.lower(), datetime.utcnow().isoformat(), int(successful), failure_reason),
        )
        self.conn.commit()

    async def get_recent_failed_attempts(self, email: str, minutes: int = 15) -> int:
        cutoff = (datetime.utcnow() - timedelta(minutes=minutes)).isoformat()
        cursor = self.conn.cursor()
        cursor.execute(
            "SELECT COUNT(*) FROM login_attempts WHERE email = ? AND attempt_time > ? AND successful = 0",
            (email.lower(), cutoff),
        )
        return cursor.fetchone()[0]
