"""Local identity backend for development and tests."""

from .local import LocalCredentialAdapter
from .password import PasswordManager, get_password_manager
from .store import AuthStore, DuplicateAccountError, InvitationError
from .totp import TotpManager

__all__ = [
    "AuthStore",
    "DuplicateAccountError",
    "InvitationError",
    "LocalCredentialAdapter",
    "PasswordManager",
    "TotpManager",
    "get_password_manager",
]
