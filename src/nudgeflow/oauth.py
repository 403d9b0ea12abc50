"""Summary: OAuth helper utilities for mailbox provider integrations.

Importance: Builds authorization URLs and performs code exchange and refresh
calls against the Google and Microsoft token endpoints without extra dependencies.
Alternatives: Use provider SDKs for OAuth flows.
"""

from __future__ import annotations

import json
import logging
import secrets
import socket
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from nudgeflow.config import AppConfig
from nudgeflow.errors import OAuthError


logger = logging.getLogger(__name__)

GOOGLE_SCOPES = (
    "https://www.googleapis.com/auth/gmail.send https://www.googleapis.com/auth/userinfo.email"
)
MICROSOFT_SCOPES = (
    "offline_access https://graph.microsoft.com/Mail.Send https://graph.microsoft.com/User.Read"
)


@dataclass(frozen=True)
class OAuthTokenResult:
    """Summary: Normalized OAuth token response data.

    Importance: Provides a consistent token representation for storage and refresh logic.
    Alternatives: Store the raw provider response without normalization.
    """

    access_token: str
    refresh_token: str | None
    expires_at: datetime | None
    token_type: str | None
    raw: dict[str, Any]

    @staticmethod
    def from_response(payload: dict[str, Any], now: datetime | None = None) -> "OAuthTokenResult":
        """Summary: Build an OAuthTokenResult from a provider payload.

        Importance: Normalizes expiry and optional fields across providers.
        Alternatives: Use provider-specific token response classes.
        """

        if "access_token" not in payload:
            raise OAuthError("Token response did not include an access token")
        expires_in = payload.get("expires_in")
        expires_at = None
        if isinstance(expires_in, (int, float)) or (isinstance(expires_in, str) and expires_in.isdigit()):
            expires_at = (now or datetime.now()) + timedelta(seconds=int(expires_in))
        return OAuthTokenResult(
            access_token=payload["access_token"],
            refresh_token=payload.get("refresh_token"),
            expires_at=expires_at,
            token_type=payload.get("token_type"),
            raw=payload,
        )


def create_state_token() -> str:
    """Summary: Generate a CSRF state token.

    Importance: Protects OAuth flows from CSRF attacks.
    Alternatives: Use server-side session storage with pre-generated tokens.
    """

    return secrets.token_urlsafe(24)


def build_google_auth_url(config: AppConfig, state: str) -> str:
    """Summary: Build a Google OAuth authorization URL.

    Importance: Requests offline access so reminders can be sent while the owner is away.
    Alternatives: Use a different OAuth helper library.
    """

    _ensure_oauth_config(config.google_client_id, config.google_client_secret, "gmail")
    params = {
        "client_id": config.google_client_id,
        "redirect_uri": config.oauth_redirect_uri,
        "response_type": "code",
        "access_type": "offline",
        "prompt": "consent",
        "scope": GOOGLE_SCOPES,
        "state": state,
    }
    return "https://accounts.google.com/o/oauth2/v2/auth?" + urllib.parse.urlencode(params)


def build_microsoft_auth_url(config: AppConfig, state: str) -> str:
    """Summary: Build a Microsoft OAuth authorization URL.

    Importance: Enables sending through Outlook / Microsoft 365 mailboxes.
    Alternatives: Use Microsoft Graph SDK helpers.
    """

    _ensure_oauth_config(config.microsoft_client_id, config.microsoft_client_secret, "outlook")
    params = {
        "client_id": config.microsoft_client_id,
        "redirect_uri": config.oauth_redirect_uri,
        "response_type": "code",
        "response_mode": "query",
        "scope": MICROSOFT_SCOPES,
        "state": state,
    }
    return "https://login.microsoftonline.com/common/oauth2/v2.0/authorize?" + urllib.parse.urlencode(params)


def exchange_oauth_code(config: AppConfig, provider: str, code: str) -> OAuthTokenResult:
    """Summary: Exchange an OAuth authorization code for tokens.

    Importance: Completes OAuth flows by retrieving access and refresh tokens.
    Alternatives: Use provider SDKs or external auth services.
    """

    token_url = _token_url(config, provider)
    payload = _token_payload(config, provider, code)
    response = _post_form(token_url, payload, config.http_timeout_seconds)
    return OAuthTokenResult.from_response(response)


def refresh_oauth_token(config: AppConfig, provider: str, refresh_token: str) -> OAuthTokenResult:
    """Summary: Obtain a new access token using a refresh token.

    Importance: Keeps connections usable after the short-lived access token expires.
    Alternatives: Ask the owner to reconnect whenever the token expires.
    """

    token_url = _token_url(config, provider)
    payload = _refresh_payload(config, provider, refresh_token)
    response = _post_form(token_url, payload, config.http_timeout_seconds)
    return OAuthTokenResult.from_response(response)


def _token_url(config: AppConfig, provider: str) -> str:
    if provider == "gmail":
        return config.google_token_url
    if provider == "outlook":
        return config.microsoft_token_url
    raise ValueError(f"Unknown OAuth provider: {provider}")


def _token_payload(config: AppConfig, provider: str, code: str) -> dict[str, str]:
    """Summary: Build token request parameters for OAuth code exchange.

    Importance: Ensures provider-specific payloads include required fields.
    Alternatives: Assemble payloads inline inside the exchange function.
    """

    if provider == "gmail":
        _ensure_oauth_config(config.google_client_id, config.google_client_secret, provider)
        return {
            "client_id": config.google_client_id,
            "client_secret": config.google_client_secret,
            "code": code,
            "grant_type": "authorization_code",
            "redirect_uri": config.oauth_redirect_uri,
        }
    if provider == "outlook":
        _ensure_oauth_config(config.microsoft_client_id, config.microsoft_client_secret, provider)
        return {
            "client_id": config.microsoft_client_id,
            "client_secret": config.microsoft_client_secret,
            "code": code,
            "grant_type": "authorization_code",
            "redirect_uri": config.oauth_redirect_uri,
            "scope": MICROSOFT_SCOPES,
        }
    raise ValueError(f"Unknown OAuth provider: {provider}")


def _refresh_payload(config: AppConfig, provider: str, refresh_token: str) -> dict[str, str]:
    """Summary: Build refresh_token grant parameters.

    Importance: Microsoft requires the scope to be repeated on refresh.
    Alternatives: Share one payload builder with a grant-type switch.
    """

    if provider == "gmail":
        _ensure_oauth_config(config.google_client_id, config.google_client_secret, provider)
        return {
            "client_id": config.google_client_id,
            "client_secret": config.google_client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }
    if provider == "outlook":
        _ensure_oauth_config(config.microsoft_client_id, config.microsoft_client_secret, provider)
        return {
            "client_id": config.microsoft_client_id,
            "client_secret": config.microsoft_client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
            "scope": MICROSOFT_SCOPES,
        }
    raise ValueError(f"Unknown OAuth provider: {provider}")


def _ensure_oauth_config(client_id: str, client_secret: str, provider: str) -> None:
    if not client_id or not client_secret:
        raise ValueError(f"Missing OAuth client credentials for {provider}")


def _post_form(url: str, payload: dict[str, str], timeout: float) -> dict[str, Any]:
    """Summary: Send a form-encoded POST request and parse JSON.

    Importance: Maps token endpoint failures onto transient and permanent OAuthError.
    Alternatives: Use requests or a provider SDK.
    """

    data = urllib.parse.urlencode(payload).encode("utf-8")
    request = urllib.request.Request(
        url,
        data=data,
        headers={"Content-Type": "application/x-www-form-urlencoded"},
        method="POST",
    )
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            raw = response.read().decode("utf-8")
    except urllib.error.HTTPError as exc:
        error_body = exc.read().decode("utf-8", errors="ignore")
        error_code = _error_code(error_body)
        transient = exc.code == 429 or exc.code >= 500
        logger.warning("Token endpoint returned %s (%s).", exc.code, error_code or "no error code")
        raise OAuthError(
            f"Token request failed: {error_body or exc.reason}",
            error_code=error_code,
            status=exc.code,
            transient=transient,
        ) from exc
    except (urllib.error.URLError, TimeoutError, socket.timeout) as exc:
        raise OAuthError(f"Token endpoint unreachable: {exc}", transient=True) from exc
    return json.loads(raw)


def _error_code(body: str) -> str | None:
    try:
        parsed = json.loads(body)
    except ValueError:
        return None
    if isinstance(parsed, dict):
        error = parsed.get("error")
        if isinstance(error, str):
            return error
        if isinstance(error, dict):
            return error.get("code")
    return None
