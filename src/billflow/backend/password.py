"""Password hashing and verification using bcrypt directly."""

import bcrypt


class PasswordManager:
    """Manages password hashing and verification."""

    def __init__(self, rounds: int = 12):
        self.rounds = rounds

    def hash(self, password: str) -> str:
        """Hash a password using bcrypt."""
        salt = bcrypt.gensalt(rounds=self.rounds)
        return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")

    def verify(self, password: str, hashed: str) -> bool:
        """Verify a password against its hash; malformed hashes never match."""
        try:
            return bcrypt.checkpw(password.encode("utf-8"), hashed.encode("utf-8"))
        except ValueError:
            return False


_password_manager: PasswordManager | None = None


def get_password_manager() -> PasswordManager:
    """Get the shared password manager instance."""
    global _password_manager
    if _password_manager is None:
        _password_manager = PasswordManager()
    return _password_manager


def set_password_manager(manager: PasswordManager) -> None:
    """Swap the shared instance (tests use fewer bcrypt rounds)."""
    global _password_manager
    _password_manager = manager
