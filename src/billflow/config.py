"""Environment configuration for the auth layer."""

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

DEFAULT_DB_PATH = "~/.billflow/auth.sqlite"
BACKENDS = ("local", "http")


class ConfigurationError(ValueError):
    """A BILLFLOW_* setting is missing or malformed."""


def _parse_timeout(raw: str) -> float | None:
    try:
        seconds = float(raw)
    except ValueError:
        raise ConfigurationError(f"BILLFLOW_CALL_TIMEOUT must be a number of seconds, got {raw!r}") from None
    if seconds < 0:
        raise ConfigurationError(f"BILLFLOW_CALL_TIMEOUT must not be negative, got {raw!r}")
    # 0 disables the deadline
    return seconds or None


@dataclass(frozen=True)
class AuthSettings:
    """Settings read from ``BILLFLOW_*`` environment variables."""

    backend: str = "local"  # local | http
    supabase_url: str = ""
    supabase_anon_key: str = ""
    db_path: Path = Path(DEFAULT_DB_PATH).expanduser()
    jwt_secret: str = "dev-only-jwt-secret-change-in-production"
    call_timeout: float | None = 15.0
    redirect_to: str = "/dashboard"
    totp_issuer: str = "BillFlow"

    @classmethod
    def from_env(cls, env_file: str | Path | None = None) -> "AuthSettings":
        """Build settings from the environment, loading a .env file first."""
        env_path = Path(env_file) if env_file else Path.cwd() / ".env"
        if env_path.exists():
            load_dotenv(env_path)

        backend = os.environ.get("BILLFLOW_BACKEND", "local").lower()
        if backend not in BACKENDS:
            raise ConfigurationError(f"BILLFLOW_BACKEND must be one of {', '.join(BACKENDS)}, got {backend!r}")
        return cls(
            backend=backend,
            supabase_url=os.environ.get("BILLFLOW_SUPABASE_URL", ""),
            supabase_anon_key=os.environ.get("BILLFLOW_SUPABASE_ANON_KEY", ""),
            db_path=Path(os.environ.get("BILLFLOW_AUTH_DB", DEFAULT_DB_PATH)).expanduser(),
            jwt_secret=os.environ.get("BILLFLOW_JWT_SECRET", "dev-only-jwt-secret-change-in-production"),
            call_timeout=_parse_timeout(os.environ.get("BILLFLOW_CALL_TIMEOUT", "15")),
            redirect_to=os.environ.get("BILLFLOW_REDIRECT_TO", "/dashboard"),
            totp_issuer=os.environ.get("BILLFLOW_TOTP_ISSUER", "BillFlow"),
        )


_settings: AuthSettings | None = None


def get_settings() -> AuthSettings:
    """Get the settings instance, loading it on first use."""
    global _settings
    if _settings is None:
        _settings = AuthSettings.from_env()
    return _settings


async def create_adapter(settings: AuthSettings | None = None):
    """Build and initialize the credential adapter the settings select."""
    settings = settings or get_settings()
    if settings.backend == "http":
        from .auth.http_adapter import HttpCredentialAdapter

        if not settings.supabase_url or not settings.supabase_anon_key:
            raise ConfigurationError(
                "BILLFLOW_SUPABASE_URL and BILLFLOW_SUPABASE_ANON_KEY are required for the http backend"
            )
        return HttpCredentialAdapter(settings.supabase_url, settings.supabase_anon_key)

    from .backend import AuthStore, LocalCredentialAdapter

    store = AuthStore(settings.db_path, totp_issuer=settings.totp_issuer)
    await store.initialize()
    return LocalCredentialAdapter(store, settings.jwt_secret)
