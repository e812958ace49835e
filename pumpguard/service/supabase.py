"""Supabase adapters: GoTrue for identity, PostgREST for profile rows.

Only the endpoints the session lifecycle needs are implemented. Every
non-2xx reply and transport failure leaves this module as an ``AuthError``
subclass via ``pumpguard.service.boundary``.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, Optional

import httpx

from pumpguard.logging import get_logger, hash_identity
from pumpguard.service.boundary import translate_error, translate_response
from pumpguard.service.errors import UnauthenticatedError, UnknownAuthError
from pumpguard.service.identity import AuthEventCallback, AuthEventHub, Unsubscribe
from pumpguard.storage.models import AuthEventKind, ProviderSession

logger = get_logger(__name__)


class _SupabaseHTTP:
    def __init__(
        self,
        base_url: str,
        anon_key: Optional[str],
        *,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.anon_key = anon_key
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client for API calls."""
        if self._client is None:
            headers = {"Content-Type": "application/json"}
            if self.anon_key:
                headers["apikey"] = self.anon_key
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout, connect=10.0),
                headers=headers,
                transport=self._transport,
            )
        return self._client

    async def _request(
        self,
        method: str,
        path: str,
        *,
        token: Optional[str] = None,
        params: Optional[Dict[str, str]] = None,
        json: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Any:
        client = await self._get_client()
        request_headers = dict(headers or {})
        bearer = token or self.anon_key
        if bearer:
            request_headers["Authorization"] = f"Bearer {bearer}"
        try:
            response = await client.request(
                method, path, params=params, json=json, headers=request_headers
            )
        except httpx.HTTPError as exc:
            logger.error(
                "supabase_transport_error",
                method=method,
                path=path,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise translate_error(exc) from exc
        if response.status_code >= 400:
            error = translate_response(response)
            logger.warning(
                "supabase_request_failed",
                method=method,
                path=path,
                status_code=response.status_code,
                error_code=error.error_code,
            )
            raise error
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise UnknownAuthError(
                "Malformed response from the authentication service.",
                original_message=response.text[:200],
            ) from exc

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class GoTrueIdentityProvider(_SupabaseHTTP):
    """Password-grant identity provider with an in-memory ambient session.

    Mirrors the client library's behaviour the coordinator depends on:
    state changes are announced to subscribers (SIGNED_IN, TOKEN_REFRESHED,
    USER_UPDATED, PASSWORD_RECOVERY, SIGNED_OUT), and a refresh rejected by
    the server drops the session and announces SIGNED_OUT.
    """

    def __init__(
        self,
        base_url: str,
        anon_key: Optional[str],
        *,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__(base_url, anon_key, timeout=timeout, transport=transport)
        self._session: Optional[ProviderSession] = None
        self.events = AuthEventHub()

    @staticmethod
    def _session_from_payload(payload: Any) -> ProviderSession:
        if not isinstance(payload, dict):
            raise UnknownAuthError("Malformed session response.", original_message=str(payload)[:200])
        user = payload.get("user") or {}
        access_token = payload.get("access_token")
        if not access_token or not user.get("id"):
            raise UnknownAuthError(
                "Malformed session response.", original_message="missing access_token or user.id"
            )
        return ProviderSession(
            user_id=str(user["id"]),
            email=user.get("email"),
            access_token=access_token,
            refresh_token=payload.get("refresh_token"),
            expires_at=payload.get("expires_at"),
        )

    def current_access_token(self) -> Optional[str]:
        return self._session.access_token if self._session else None

    def subscribe(self, callback: AuthEventCallback) -> Unsubscribe:
        return self.events.subscribe(callback)

    async def authenticate(self, email: str, password: str) -> ProviderSession:
        payload = await self._request(
            "POST",
            "/auth/v1/token",
            params={"grant_type": "password"},
            json={"email": email, "password": password},
        )
        session = self._session_from_payload(payload)
        self._session = session
        logger.info("gotrue_signed_in", user_id=session.user_id)
        self.events.emit(AuthEventKind.SIGNED_IN, session)
        return session

    async def get_ambient_session(self) -> Optional[ProviderSession]:
        return self._session

    async def refresh_credential(self) -> ProviderSession:
        current = self._session
        if current is None or not current.refresh_token:
            raise UnauthenticatedError("No session to refresh.")
        try:
            payload = await self._request(
                "POST",
                "/auth/v1/token",
                params={"grant_type": "refresh_token"},
                json={"refresh_token": current.refresh_token},
            )
        except UnauthenticatedError:
            logger.warning("gotrue_refresh_rejected", user_id=current.user_id)
            self._session = None
            self.events.emit(AuthEventKind.SIGNED_OUT, None)
            raise
        session = self._session_from_payload(payload)
        self._session = session
        self.events.emit(AuthEventKind.TOKEN_REFRESHED, session)
        return session

    async def sign_out(self) -> None:
        token = self.current_access_token()
        self._session = None
        try:
            if token:
                await self._request("POST", "/auth/v1/logout", token=token)
        finally:
            self.events.emit(AuthEventKind.SIGNED_OUT, None)

    async def update_credential(self, new_password: str) -> None:
        token = self.current_access_token()
        if not token:
            raise UnauthenticatedError()
        await self._request("PUT", "/auth/v1/user", token=token, json={"password": new_password})
        self.events.emit(AuthEventKind.USER_UPDATED, self._session)

    async def request_password_reset(self, email: str, redirect_to: str) -> None:
        await self._request(
            "POST",
            "/auth/v1/recover",
            params={"redirect_to": redirect_to},
            json={"email": email},
        )
        logger.info("gotrue_reset_requested", email_hash=hash_identity(email))

    async def verify_recovery_token(self, token: str) -> ProviderSession:
        payload = await self._request(
            "POST", "/auth/v1/verify", json={"type": "recovery", "token_hash": token}
        )
        session = self._session_from_payload(payload)
        self._session = session
        self.events.emit(AuthEventKind.PASSWORD_RECOVERY, session)
        return session


class PostgrestProfileStore(_SupabaseHTTP):
    """Profile rows over PostgREST, authorised with the caller's access token."""

    def __init__(
        self,
        base_url: str,
        anon_key: Optional[str],
        *,
        token_source: Callable[[], Optional[str]],
        table: str = "profiles",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__(base_url, anon_key, timeout=timeout, transport=transport)
        self.token_source = token_source
        self.table = table

    async def read_profile(self, user_id: str) -> Dict[str, Any]:
        row = await self._request(
            "GET",
            f"/rest/v1/{self.table}",
            token=self.token_source(),
            params={"id": f"eq.{user_id}", "select": "*"},
            headers={"Accept": "application/vnd.pgrst.object+json"},
        )
        if not isinstance(row, dict):
            raise UnknownAuthError("Profile not found.", original_message=f"user_id={user_id}")
        return row

    async def write_profile(self, user_id: str, partial: Dict[str, Any]) -> None:
        if not partial:
            return
        await self._request(
            "PATCH",
            f"/rest/v1/{self.table}",
            token=self.token_source(),
            params={"id": f"eq.{user_id}"},
            json=partial,
            headers={"Prefer": "return=minimal"},
        )


__all__ = ["GoTrueIdentityProvider", "PostgrestProfileStore"]
