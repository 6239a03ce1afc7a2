"""OAuth 2.0 authorization-code (PKCE) sign-in and refresh-token lifecycle.

:class:`OAuthLifecycle` is the only place that builds :class:`Credential`
records.  Sign-in hands an :class:`AuthorizationRequest` to an injected
:class:`AuthorizationPrompt` (browser + paste, local callback server, test
double) and exchanges the returned code; :meth:`OAuthLifecycle.ensure_fresh`
keeps a credential usable by refreshing it once it has expired.
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import logging
import secrets
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol
from urllib.parse import parse_qs, urlencode, urlsplit

import httpx
import jwt

from almanac.config import OAuthSettings
from almanac.errors import (
    AuthFailedError,
    ConfigMissingError,
    TokenExchangeFailedError,
    TokenRefreshFailedError,
    response_error_message,
    safe_error_message,
)
from almanac.models import Credential

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

DEFAULT_EXPIRES_IN_SECONDS = 3600
MIN_CREDENTIAL_LIFETIME_SECONDS = 30
_PKCE_VERIFIER_BYTES = 64
_STATE_BYTES = 24


def utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class OAuthClientConfig:
    """A registered OAuth client."""

    client_id: str
    redirect_uri: str
    authorize_url: str
    token_url: str
    scopes: tuple[str, ...]
    client_secret: str | None = None

    @classmethod
    def from_settings(cls, settings: OAuthSettings) -> OAuthClientConfig | None:
        """Return ``None`` when no client id is configured."""
        if not settings.client_id:
            return None
        return cls(
            client_id=settings.client_id,
            client_secret=settings.client_secret,
            redirect_uri=settings.redirect_uri,
            authorize_url=settings.authorize_url,
            token_url=settings.token_url,
            scopes=tuple(settings.scopes),
        )

    def __repr__(self) -> str:
        return (
            f"OAuthClientConfig(client_id={self.client_id!r}, "
            f"client_secret={'<REDACTED>' if self.client_secret else None}, "
            f"redirect_uri={self.redirect_uri!r})"
        )


@dataclass(frozen=True)
class PKCEPair:
    verifier: str
    challenge: str


def generate_pkce_pair() -> PKCEPair:
    """Generate a PKCE code verifier and its S256 challenge (RFC 7636)."""
    verifier = base64.urlsafe_b64encode(secrets.token_bytes(_PKCE_VERIFIER_BYTES))
    verifier_str = verifier.decode("ascii").rstrip("=")
    digest = hashlib.sha256(verifier_str.encode("ascii")).digest()
    challenge = base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")
    return PKCEPair(verifier=verifier_str, challenge=challenge)


@dataclass(frozen=True)
class AuthorizationRequest:
    """What the consent step needs to show the user."""

    url: str
    state: str
    redirect_uri: str


class AuthorizationPrompt(Protocol):
    """Interactive consent step.

    ``begin`` returns either the bare authorization code or the full redirect
    URL the provider sent the browser to.  Raising any exception cancels
    sign-in.
    """

    async def begin(self, request: AuthorizationRequest) -> str: ...


def parse_authorization_response(raw: str, *, expected_state: str) -> str:
    """Extract the authorization code from a prompt's answer.

    Raises:
        AuthFailedError: when the answer is empty, carries an ``error``
            parameter, has a mismatched ``state`` or no ``code``.
    """
    answer = (raw or "").strip()
    if not answer:
        raise AuthFailedError("No authorization code was returned")

    if "code=" not in answer and "error=" not in answer:
        return answer

    query = urlsplit(answer).query if "?" in answer else answer
    params = parse_qs(query)
    error = params.get("error", [None])[0]
    if error:
        raise AuthFailedError(f"Authorization was denied: {safe_error_message(error)}")

    state = params.get("state", [None])[0]
    if state is not None and not secrets.compare_digest(state, expected_state):
        raise AuthFailedError("Authorization response state does not match the request")

    code = params.get("code", [None])[0]
    if not code or not code.strip():
        raise AuthFailedError("Authorization response did not include a code")
    return code.strip()


def id_token_claims(id_token: str) -> dict[str, Any]:
    """Decode id token claims without verifying the signature.

    The token comes straight from the token endpoint over TLS, so only the
    claims are needed here.
    """
    try:
        claims = jwt.decode(id_token, options={"verify_signature": False})
    except jwt.PyJWTError as exc:
        raise AuthFailedError(f"Could not decode id token: {exc}") from exc
    if not isinstance(claims, dict):
        raise AuthFailedError("Id token claims are not an object")
    return claims


def account_email(id_token: str | None) -> str:
    if not id_token:
        raise AuthFailedError("Token response did not include an id_token")
    email = id_token_claims(id_token).get("email")
    if not isinstance(email, str) or not email.strip():
        raise AuthFailedError("Id token has no email claim")
    return email.strip()


def _coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return DEFAULT_EXPIRES_IN_SECONDS
    if isinstance(value, int | float):
        return int(value) if value > 0 else DEFAULT_EXPIRES_IN_SECONDS
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip()) or DEFAULT_EXPIRES_IN_SECONDS
    return DEFAULT_EXPIRES_IN_SECONDS


def _non_empty_str(payload: dict[str, Any], key: str) -> str | None:
    value = payload.get(key)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


class OAuthLifecycle:
    """Sign-in and refresh against one OAuth client.

    Parameters
    ----------
    config:
        Client registration, or ``None`` when unconfigured (every operation
        then raises :class:`ConfigMissingError`).
    http_client:
        Shared ``httpx.AsyncClient`` used for token requests.
    clock:
        Returns the current aware UTC time.
    expiry_margin:
        Seconds subtracted from ``expires_in`` so a credential is refreshed
        before the provider rejects it.
    """

    def __init__(
        self,
        config: OAuthClientConfig | None,
        http_client: httpx.AsyncClient,
        *,
        clock: Clock = utc_now,
        expiry_margin: int = 60,
    ) -> None:
        self._config = config
        self._http_client = http_client
        self._clock = clock
        self._expiry_margin = expiry_margin
        self._refresh_locks: dict[str, asyncio.Lock] = {}
        self._latest: dict[str, Credential] = {}

    @property
    def configured(self) -> bool:
        return self._config is not None

    def _require_config(self) -> OAuthClientConfig:
        if self._config is None:
            raise ConfigMissingError(
                "OAuth client is not configured; set [almanac.oauth].client_id "
                "or GOOGLE_CLIENT_ID"
            )
        return self._config

    # ------------------------------------------------------------------
    # Sign-in
    # ------------------------------------------------------------------

    def build_authorization_url(self, pkce: PKCEPair, state: str) -> str:
        config = self._require_config()
        params = {
            "response_type": "code",
            "client_id": config.client_id,
            "redirect_uri": config.redirect_uri,
            "scope": " ".join(config.scopes),
            "code_challenge": pkce.challenge,
            "code_challenge_method": "S256",
            "access_type": "offline",
            "prompt": "consent",
            "state": state,
        }
        return f"{config.authorize_url}?{urlencode(params)}"

    async def sign_in(self, prompt: AuthorizationPrompt) -> tuple[str, Credential]:
        """Run the full consent + code exchange. Returns ``(account_id, credential)``."""
        config = self._require_config()
        pkce = generate_pkce_pair()
        state = secrets.token_urlsafe(_STATE_BYTES)
        request = AuthorizationRequest(
            url=self.build_authorization_url(pkce, state),
            state=state,
            redirect_uri=config.redirect_uri,
        )

        try:
            raw_answer = await prompt.begin(request)
        except AuthFailedError:
            raise
        except Exception as exc:
            raise AuthFailedError(
                f"Authorization was cancelled or failed: {safe_error_message(exc)}"
            ) from exc

        code = parse_authorization_response(raw_answer, expected_state=state)
        credential = await self.exchange_code(code, pkce.verifier)
        logger.info("Signed in account %s", credential.account_id)
        return credential.account_id, credential

    async def exchange_code(self, code: str, code_verifier: str) -> Credential:
        config = self._require_config()
        form = {
            "grant_type": "authorization_code",
            "code": code,
            "client_id": config.client_id,
            "code_verifier": code_verifier,
            "redirect_uri": config.redirect_uri,
        }
        if config.client_secret:
            form["client_secret"] = config.client_secret

        payload = await self._post_token_form(form, TokenExchangeFailedError, "exchange")

        access_token = _non_empty_str(payload, "access_token")
        if access_token is None:
            raise TokenExchangeFailedError("Token response is missing a non-empty access_token")
        refresh_token = _non_empty_str(payload, "refresh_token")
        if refresh_token is None:
            raise TokenExchangeFailedError(
                "Token response is missing a refresh_token; revoke access and sign in again"
            )
        id_token = _non_empty_str(payload, "id_token")

        return Credential(
            account_id=account_email(id_token),
            access_token=access_token,
            refresh_token=refresh_token,
            id_token=id_token,
            expiry=self._expiry_from(payload),
        )

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    async def ensure_fresh(self, credential: Credential) -> Credential:
        """Return *credential* itself while fresh, otherwise a refreshed copy.

        Concurrent calls for the same account share one refresh.
        """
        if credential.is_fresh(self._clock()):
            return credential

        lock = self._refresh_locks.setdefault(credential.account_id, asyncio.Lock())
        async with lock:
            latest = self._latest.get(credential.account_id)
            if (
                latest is not None
                and latest.refresh_token == credential.refresh_token
                and latest.is_fresh(self._clock())
            ):
                return latest

            refreshed = await self.refresh(credential)
            self._latest[credential.account_id] = refreshed
            return refreshed

    async def refresh(self, credential: Credential) -> Credential:
        """Exchange the refresh token; keep the old refresh/id token if none is returned."""
        config = self._require_config()
        form = {
            "grant_type": "refresh_token",
            "refresh_token": credential.refresh_token,
            "client_id": config.client_id,
        }
        if config.client_secret:
            form["client_secret"] = config.client_secret

        payload = await self._post_token_form(form, TokenRefreshFailedError, "refresh")

        access_token = _non_empty_str(payload, "access_token")
        if access_token is None:
            raise TokenRefreshFailedError("Token response is missing a non-empty access_token")

        refreshed = Credential(
            account_id=credential.account_id,
            access_token=access_token,
            refresh_token=_non_empty_str(payload, "refresh_token") or credential.refresh_token,
            id_token=_non_empty_str(payload, "id_token") or credential.id_token,
            expiry=self._expiry_from(payload),
        )
        logger.info(
            "Refreshed credential for %s (expires %s)",
            credential.account_id,
            refreshed.expiry.isoformat(),
        )
        return refreshed

    def forget(self, account_id: str) -> None:
        """Drop refresh bookkeeping for a disconnected account."""
        self._latest.pop(account_id, None)
        self._refresh_locks.pop(account_id, None)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _expiry_from(self, payload: dict[str, Any]) -> datetime:
        expires_in = _coerce_expires_in_seconds(payload.get("expires_in"))
        lifetime = max(expires_in - self._expiry_margin, MIN_CREDENTIAL_LIFETIME_SECONDS)
        return self._clock() + timedelta(seconds=lifetime)

    async def _post_token_form(
        self,
        form: dict[str, str],
        error_cls: type[TokenExchangeFailedError] | type[TokenRefreshFailedError],
        action: str,
    ) -> dict[str, Any]:
        config = self._require_config()
        try:
            response = await self._http_client.post(
                config.token_url,
                data=form,
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise error_cls(
                f"OAuth token {action} request failed: {safe_error_message(exc)}"
            ) from exc

        if response.status_code < 200 or response.status_code >= 300:
            raise error_cls(
                f"OAuth token {action} failed ({response.status_code}): "
                f"{response_error_message(response)}",
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise error_cls("OAuth token endpoint returned invalid JSON") from exc

        if not isinstance(payload, dict):
            raise error_cls("OAuth token endpoint returned a non-object JSON payload")
        return payload
