"""Credential adapter for a Supabase/GoTrue-compatible REST backend."""

from __future__ import annotations

from datetime import datetime
from typing import Any

import httpx
import jwt

from .adapter import CredentialServiceAdapter
from .errors import BackendError
from .models import FactorScope, Identity, PasswordSignIn, SignUpProfile, TotpEnrollment, UserRole


def _error_from_response(response: httpx.Response) -> BackendError:
    """Build a BackendError from a GoTrue / PostgREST error body."""
    try:
        body = response.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}
    message = (
        body.get("error_description")
        or body.get("msg")
        or body.get("message")
        or body.get("error")
        or f"HTTP {response.status_code}"
    )
    code = body.get("error_code") or body.get("code") or body.get("error")
    return BackendError(message, status=response.status_code, code=str(code) if code else None)


def _parse_datetime(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def identity_from_user(user: dict[str, Any]) -> Identity:
    """Convert a GoTrue user object to an Identity."""
    meta = user.get("user_metadata") or {}
    app_meta = user.get("app_metadata") or {}
    role = app_meta.get("role") or meta.get("role") or UserRole.EMPLOYEE.value
    return Identity(
        id=user["id"],
        email=user.get("email", ""),
        display_name=meta.get("display_name"),
        role=role if role in UserRole._value2member_map_ else UserRole.EMPLOYEE,
        is_active=meta.get("is_active", True) not in (0, False),
        permissions=app_meta.get("permissions") or [],
        merchant_id=app_meta.get("merchant_id") or meta.get("merchant_id"),
        created_at=_parse_datetime(user.get("created_at")),
        last_sign_in=_parse_datetime(user.get("last_sign_in_at")),
    )


def token_aal(access_token: str) -> str:
    """Authenticator assurance level claimed by an access token.

    The signature is not checked here; the backend checks it on every call.
    """
    try:
        claims = jwt.decode(access_token, options={"verify_signature": False})
    except jwt.InvalidTokenError:
        return "aal1"
    return claims.get("aal", "aal1")


def functions_url_for(base_url: str) -> str:
    """Edge function host for a project URL: `abc.supabase.co` -> `abc.functions.supabase.co`."""
    url = httpx.URL(base_url)
    project, _, domain = url.host.partition(".")
    return f"{url.scheme}://{project}.functions.{domain}"


def _verified_factors(user: dict[str, Any]) -> list[dict[str, Any]]:
    return [f for f in user.get("factors") or [] if f.get("status") == "verified"]


class HttpCredentialAdapter(CredentialServiceAdapter):
    """Talks to ``/auth/v1`` and ``/rest/v1`` of a hosted backend."""

    def __init__(
        self,
        base_url: str,
        anon_key: str,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
        functions_url: str | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.functions_url = (functions_url or functions_url_for(self.base_url)).rstrip("/")
        self.anon_key = anon_key
        self.client = client or httpx.AsyncClient(timeout=timeout)
        self._access_token: str | None = None
        self._refresh_token: str | None = None
        self._pending_user: dict[str, Any] | None = None
        self._upgraded: dict[str, Any] | None = None

    def _headers(self, token: str | None = None) -> dict[str, str]:
        return {
            "apikey": self.anon_key,
            "Authorization": f"Bearer {token or self._access_token or self.anon_key}",
            "Content-Type": "application/json",
        }

    async def _request(self, method: str, path: str, token: str | None = None, **kwargs) -> Any:
        headers = {**self._headers(token), **kwargs.pop("headers", {})}
        url = path if path.startswith("http") else f"{self.base_url}{path}"
        try:
            response = await self.client.request(method, url, headers=headers, **kwargs)
        except httpx.HTTPError as e:
            raise BackendError(f"Identity service unreachable: {e}") from e
        if response.status_code >= 400:
            raise _error_from_response(response)
        if not response.content:
            return None
        return response.json()

    def _store_tokens(self, payload: dict[str, Any]) -> None:
        self._access_token = payload.get("access_token")
        self._refresh_token = payload.get("refresh_token")

    def _clear(self) -> None:
        self._access_token = None
        self._refresh_token = None
        self._pending_user = None
        self._upgraded = None

    async def sign_up(self, email: str, password: str, profile: SignUpProfile) -> Identity:
        merchant = profile.merchant
        payload = await self._request(
            "POST",
            "/auth/v1/signup",
            json={
                "email": email,
                "password": password,
                "data": {
                    "display_name": profile.display_name,
                    "first_name": merchant.first_name,
                    "last_name": merchant.last_name,
                    "company_name": merchant.company_name,
                },
            },
        )
        user = payload.get("user", payload)
        if not user or "id" not in user:
            raise BackendError("Account creation failed - no user returned", status=400)

        await self._request(
            "POST",
            "/rest/v1/merchant_accounts",
            token=payload.get("access_token"),
            headers={"Prefer": "return=representation"},
            json={
                "owner_user_id": user["id"],
                "company_name": merchant.company_name,
                "account_slug": merchant.account_slug,
                "default_currency": merchant.default_currency,
                "timezone": merchant.timezone,
            },
        )
        return identity_from_user(user)

    async def accept_invite(self, token: str, email: str, password: str, display_name: str) -> Identity | None:
        payload = await self._request(
            "POST",
            f"{self.functions_url}/user-invitation",
            params={"action": "accept-invite"},
            json={"token": token, "email": email, "userData": {"displayName": display_name, "password": password}},
        )
        user = (payload or {}).get("user")
        return identity_from_user(user) if user and "id" in user else None

    async def sign_in_with_password(self, email: str, password: str) -> PasswordSignIn:
        payload = await self._request(
            "POST", "/auth/v1/token", params={"grant_type": "password"}, json={"email": email, "password": password}
        )
        self._clear()
        self._store_tokens(payload)
        user = payload.get("user") or {}
        if _verified_factors(user) and token_aal(self._access_token or "") != "aal2":
            self._pending_user = user
            return PasswordSignIn(mfa_challenge=self._access_token)
        return PasswordSignIn(user=identity_from_user(user))

    async def get_session(self) -> Identity | None:
        if not self._access_token or self._pending_user is not None:
            return None
        try:
            user = await self._request("GET", "/auth/v1/user")
        except BackendError as e:
            if e.status == 401:
                self._clear()
                return None
            raise
        return identity_from_user(user)

    async def finalize_session(self) -> Identity:
        if self._upgraded is None:
            raise BackendError("No verified MFA challenge to finalize", status=400, code="mfa_not_verified")
        self._store_tokens(self._upgraded)
        self._upgraded = None
        self._pending_user = None
        user = await self._request("GET", "/auth/v1/user")
        return identity_from_user(user)

    async def list_factors(self, scope: FactorScope) -> list[Any]:
        if FactorScope(scope) == FactorScope.PENDING:
            return list((self._pending_user or {}).get("factors") or [])
        if not self._access_token or self._pending_user is not None:
            raise BackendError("No trusted session", status=401)
        user = await self._request("GET", "/auth/v1/user")
        return list(user.get("factors") or [])

    async def enroll_totp(self) -> TotpEnrollment:
        if self._pending_user is not None:
            raise BackendError("AAL2 required to enroll a new factor", status=403, code="reauth_required")
        payload = await self._request("POST", "/auth/v1/factors", json={"factor_type": "totp"})
        totp = payload.get("totp") or {}
        return TotpEnrollment(
            factor_id=payload["id"],
            secret=totp.get("secret", ""),
            qr_payload=totp.get("uri", ""),
            qr_code_base64=None,
        )

    async def verify_totp(self, factor_id: str, code: str) -> bool:
        challenge = await self._request("POST", f"/auth/v1/factors/{factor_id}/challenge")
        try:
            payload = await self._request(
                "POST",
                f"/auth/v1/factors/{factor_id}/verify",
                json={"challenge_id": challenge["id"], "code": code},
            )
        except BackendError as e:
            if e.status in (400, 422):
                return False
            raise
        if self._pending_user is not None:
            self._upgraded = payload
        elif payload and payload.get("access_token"):
            self._store_tokens(payload)
        return True

    async def sign_out(self) -> None:
        token = self._access_token
        self._clear()
        if token:
            await self._request("POST", "/auth/v1/logout", token=token)

    async def request_password_reset(self, email: str) -> None:
        await self._request("POST", "/auth/v1/recover", json={"email": email})

    async def close(self) -> None:
        await self.client.aclose()
