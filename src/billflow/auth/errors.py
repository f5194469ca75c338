"""Error taxonomy surfaced by the authentication layer.

Adapters raise :class:`BackendError`; the session manager, factor registry
and verification flow convert it into one of the :class:`AuthError`
subclasses before anything reaches the UI.
"""


class AuthError(Exception):
    """Base class for errors the UI is expected to handle."""

    recoverable = True

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class AuthenticationError(AuthError):
    """Bad credentials. The user can simply try again."""


class RegistrationError(AuthError):
    """Sign-up failed at some provisioning step."""


class MfaFinalizationError(AuthError):
    """The code was accepted but no trusted session could be established.

    Fatal for the current attempt: the user has to restart sign-in.
    """

    recoverable = False


class NoFactorAvailable(AuthError):
    """No usable second factor exists for this sign-in."""

    recoverable = False


class UnsupportedFactorType(AuthError):
    """The selected factor type cannot be verified by this client."""

    recoverable = False

    def __init__(self, factor_type: str):
        super().__init__(f"{factor_type} verification is not supported for sign-in")
        self.factor_type = factor_type


class AdapterUnavailable(AuthError):
    """The identity backend could not be reached. Retrying is safe."""


class ReauthRequired(AuthError):
    """Enrollment needs a fully verified session."""


class BackendError(Exception):
    """Raw failure reported by a credential service adapter."""

    def __init__(self, message: str, status: int | None = None, code: str | None = None):
        super().__init__(message)
        self.message = message
        self.status = status
        self.code = code

    @property
    def is_transient(self) -> bool:
        """Network failures and server-side errors."""
        return self.status is None or self.status >= 500 or self.code == "unavailable"

    def __repr__(self) -> str:
        return f"BackendError({self.message!r}, status={self.status}, code={self.code!r})"
