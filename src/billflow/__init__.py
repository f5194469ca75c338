"""
BillFlow authentication

Session and multi-factor orchestration between the BillFlow UI and its
identity backend.

Quick Start:
    from billflow import AuthPageController, FactorRegistry, SessionManager
    from billflow.config import create_adapter

    adapter = await create_adapter()
    session = SessionManager(adapter)
    await session.hydrate()

    page = AuthPageController(session, FactorRegistry(adapter), navigate=print)
    page.form.email, page.form.password = "ada@example.com", "S3cure!pass"
    await page.handle_sign_in()
    if page.visible_form == AuthMode.MFA_VERIFY:
        await page.handle_mfa_verify("123456")
"""

__version__ = "0.1.0"

from billflow.auth import (
    AuthMode,
    AuthPageController,
    CredentialServiceAdapter,
    FactorRegistry,
    IdentitySession,
    MfaVerificationFlow,
    SessionManager,
)
from billflow.config import AuthSettings, get_settings

__all__ = [
    "AuthMode",
    "AuthPageController",
    "AuthSettings",
    "CredentialServiceAdapter",
    "FactorRegistry",
    "IdentitySession",
    "MfaVerificationFlow",
    "SessionManager",
    "get_settings",
]
