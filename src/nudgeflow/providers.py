"""Summary: Mailbox provider capability and its Gmail, Outlook and mock variants.

Importance: Encapsulates OAuth authorization, identity lookup and sending for each
mailbox service behind one capability selected by the connection's provider tag.
Alternatives: Rely solely on provider SDKs with vendor lock-in.
"""

from __future__ import annotations

import base64
import json
import logging
import socket
import threading
import urllib.error
import urllib.request
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from email.message import EmailMessage
from typing import Any

from nudgeflow.config import AppConfig
from nudgeflow.errors import PermanentDeliveryError, TransientDeliveryError
from nudgeflow.models import REASON_AUTH, REASON_PERMANENT, OutgoingMessage
from nudgeflow.oauth import (
    OAuthTokenResult,
    build_google_auth_url,
    build_microsoft_auth_url,
    exchange_oauth_code,
    refresh_oauth_token,
)


logger = logging.getLogger(__name__)

PROVIDER_GMAIL = "gmail"
PROVIDER_OUTLOOK = "outlook"
PROVIDER_MOCK = "mock"

PROVIDER_CATALOG = [
    {
        "provider": PROVIDER_GMAIL,
        "name": "Gmail",
        "description": "Connect your Gmail account to send payment reminders",
    },
    {
        "provider": PROVIDER_OUTLOOK,
        "name": "Outlook",
        "description": "Connect your Outlook account to send payment reminders",
    },
]


class MailProvider(ABC):
    """Summary: Abstract interface every mailbox provider variant implements.

    Importance: Lets the dispatcher and token manager stay provider-agnostic.
    Alternatives: Branch on the provider name at every call site.
    """

    name: str

    @abstractmethod
    def auth_url(self, state: str) -> str:
        """Return the consent URL the owner is redirected to."""

    @abstractmethod
    def exchange_code(self, code: str) -> OAuthTokenResult:
        """Exchange an authorization code for tokens."""

    @abstractmethod
    def refresh(self, refresh_token: str) -> OAuthTokenResult:
        """Summary: Obtain a new access token.

        Importance: Raises OAuthError with ``transient`` set for outages so
        callers can keep the connection.
        Alternatives: Return None on failure.
        """

    @abstractmethod
    def send(self, access_token: str, sender: str, message: OutgoingMessage) -> str | None:
        """Summary: Send one message as ``sender``.

        Importance: Raises TransientDeliveryError or PermanentDeliveryError so
        the dispatcher can decide between retrying and failing.
        Alternatives: Return a status code for the caller to interpret.
        """

    @abstractmethod
    def fetch_identity(self, access_token: str) -> str:
        """Return the mailbox address the token belongs to."""


class GmailProvider(MailProvider):
    """Summary: Sends mail through the Gmail API using OAuth tokens.

    Importance: Reminders leave from the owner's own Gmail address.
    Alternatives: Use SMTP with XOAUTH2.
    """

    name = PROVIDER_GMAIL

    def __init__(self, config: AppConfig) -> None:
        self._config = config
        self._base_url = config.google_api_base_url.rstrip("/")

    def auth_url(self, state: str) -> str:
        return build_google_auth_url(self._config, state)

    def exchange_code(self, code: str) -> OAuthTokenResult:
        return exchange_oauth_code(self._config, self.name, code)

    def refresh(self, refresh_token: str) -> OAuthTokenResult:
        return refresh_oauth_token(self._config, self.name, refresh_token)

    def send(self, access_token: str, sender: str, message: OutgoingMessage) -> str | None:
        """Summary: Send a message via users.messages.send.

        Importance: Gmail expects the full MIME message as base64url in ``raw``.
        Alternatives: Create a draft first and send it separately.
        """

        raw = build_mime_message(sender, message)
        payload = {"raw": base64.urlsafe_b64encode(raw).decode("ascii")}
        url = f"{self._base_url}/users/me/messages/send"
        response = _api_request(url, access_token, self._config.http_timeout_seconds, payload)
        logger.info("Sent message via Gmail to %s.", message.to)
        return (response or {}).get("id")

    def fetch_identity(self, access_token: str) -> str:
        response = _api_request(
            self._config.google_userinfo_url, access_token, self._config.http_timeout_seconds
        )
        email = (response or {}).get("email")
        if not email:
            raise ValueError("Failed to retrieve email from Gmail account")
        return email


class OutlookProvider(MailProvider):
    """Summary: Sends mail through Microsoft Graph using OAuth tokens.

    Importance: Reminders leave from the owner's Outlook / Microsoft 365 mailbox.
    Alternatives: Use SMTP AUTH against Exchange Online.
    """

    name = PROVIDER_OUTLOOK

    def __init__(self, config: AppConfig) -> None:
        self._config = config
        self._base_url = config.microsoft_graph_base_url.rstrip("/")

    def auth_url(self, state: str) -> str:
        return build_microsoft_auth_url(self._config, state)

    def exchange_code(self, code: str) -> OAuthTokenResult:
        return exchange_oauth_code(self._config, self.name, code)

    def refresh(self, refresh_token: str) -> OAuthTokenResult:
        return refresh_oauth_token(self._config, self.name, refresh_token)

    def send(self, access_token: str, sender: str, message: OutgoingMessage) -> str | None:
        payload = build_graph_message(message)
        url = f"{self._base_url}/me/sendMail"
        _api_request(url, access_token, self._config.http_timeout_seconds, payload)
        logger.info("Sent message via Outlook to %s.", message.to)
        return None

    def fetch_identity(self, access_token: str) -> str:
        response = _api_request(
            f"{self._base_url}/me", access_token, self._config.http_timeout_seconds
        ) or {}
        email = response.get("mail") or response.get("userPrincipalName")
        if not email:
            raise ValueError("Failed to retrieve email from Outlook account")
        return email


@dataclass
class SentMessage:
    """A message captured by the mock provider."""

    access_token: str
    sender: str
    message: OutgoingMessage


@dataclass
class MockMailProvider(MailProvider):
    """Summary: In-memory provider for local runs and tests.

    Importance: Exercises the full dispatch path without network access.
    Alternatives: Stub urllib in every test.

    ``send_failures`` and ``refresh_results`` are consumed in order; each item
    is either an exception to raise or (for refreshes) a token result.
    """

    name: str = PROVIDER_MOCK
    identity: str = "owner@example.com"
    sent: list[SentMessage] = field(default_factory=list)
    send_failures: deque = field(default_factory=deque)
    refresh_results: deque = field(default_factory=deque)
    refresh_calls: int = 0
    send_delay_event: threading.Event | None = None
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def auth_url(self, state: str) -> str:
        return f"https://mock.invalid/authorize?state={state}"

    def exchange_code(self, code: str) -> OAuthTokenResult:
        return OAuthTokenResult.from_response(
            {"access_token": f"access-{code}", "refresh_token": f"refresh-{code}", "expires_in": 3600}
        )

    def refresh(self, refresh_token: str) -> OAuthTokenResult:
        with self._lock:
            self.refresh_calls += 1
            outcome = self.refresh_results.popleft() if self.refresh_results else None
        if isinstance(outcome, Exception):
            raise outcome
        if outcome is None:
            outcome = OAuthTokenResult.from_response(
                {"access_token": f"refreshed-{self.refresh_calls}", "expires_in": 3600}
            )
        return outcome

    def send(self, access_token: str, sender: str, message: OutgoingMessage) -> str | None:
        if self.send_delay_event is not None:
            self.send_delay_event.wait(timeout=5)
        with self._lock:
            failure = self.send_failures.popleft() if self.send_failures else None
            if failure is None:
                self.sent.append(SentMessage(access_token=access_token, sender=sender, message=message))
                return f"mock-{len(self.sent)}"
        raise failure

    def fetch_identity(self, access_token: str) -> str:
        return self.identity


class ProviderRegistry:
    """Summary: Resolves a provider variant from a connection's provider tag.

    Importance: One place maps stored tags to provider implementations.
    Alternatives: Use inheritance and a provider field on each connection object.
    """

    def __init__(self, config: AppConfig, providers: dict[str, MailProvider] | None = None) -> None:
        self._providers: dict[str, MailProvider] = {
            PROVIDER_GMAIL: GmailProvider(config),
            PROVIDER_OUTLOOK: OutlookProvider(config),
        }
        if providers:
            self._providers.update(providers)

    def get(self, tag: str) -> MailProvider:
        try:
            return self._providers[tag]
        except KeyError:
            raise ValueError(f"Unsupported email provider: {tag}") from None

    def tags(self) -> list[str]:
        return sorted(self._providers)


def build_mime_message(sender: str, message: OutgoingMessage) -> bytes:
    """Summary: Build a multipart/alternative MIME message.

    Importance: Recipients get HTML with a plain-text fallback.
    Alternatives: Send HTML only.
    """

    mime = EmailMessage()
    mime["To"] = message.to
    mime["From"] = sender
    mime["Subject"] = message.subject
    mime.set_content(message.text)
    mime.add_alternative(message.html, subtype="html")
    return mime.as_bytes()


def build_graph_message(message: OutgoingMessage) -> dict[str, Any]:
    """Build the Microsoft Graph sendMail request body."""

    return {
        "message": {
            "subject": message.subject,
            "body": {"contentType": "HTML", "content": message.html},
            "toRecipients": [{"emailAddress": {"address": message.to}}],
        },
        "saveToSentItems": True,
    }


def classify_http_failure(status: int, body: str) -> Exception:
    """Summary: Map a provider HTTP failure onto a delivery error.

    Importance: Rate limits and outages are retried; bad recipients and revoked
    grants fail immediately.
    Alternatives: Retry every failure until the attempt budget runs out.
    """

    lowered = body.lower()
    if status == 429 or status >= 500:
        return TransientDeliveryError(f"Provider returned {status}: {body[:200]}")
    if status == 403 and "ratelimitexceeded" in lowered.replace("_", ""):
        return TransientDeliveryError(f"Provider rate limited the request: {body[:200]}")
    if status in (401, 403):
        return PermanentDeliveryError(f"Provider rejected the grant ({status})", reason=REASON_AUTH)
    return PermanentDeliveryError(f"Provider rejected the message ({status}): {body[:200]}", reason=REASON_PERMANENT)


def _api_request(
    url: str,
    access_token: str,
    timeout: float,
    payload: dict[str, Any] | None = None,
) -> dict[str, Any] | None:
    """Summary: Call a provider REST endpoint with a bearer token.

    Importance: Applies the configured timeout and error classification to every call.
    Alternatives: Use a third-party HTTP client or SDK.
    """

    headers = {"Authorization": f"Bearer {access_token}"}
    data = None
    method = "GET"
    if payload is not None:
        data = json.dumps(payload).encode("utf-8")
        headers["Content-Type"] = "application/json"
        method = "POST"
    request = urllib.request.Request(url, data=data, headers=headers, method=method)
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            raw = response.read().decode("utf-8")
    except urllib.error.HTTPError as exc:
        error_body = exc.read().decode("utf-8", errors="ignore")
        raise classify_http_failure(exc.code, error_body) from exc
    except (urllib.error.URLError, TimeoutError, socket.timeout) as exc:
        raise TransientDeliveryError(f"Provider unreachable: {exc}") from exc
    if not raw.strip():
        return None
    return json.loads(raw)
