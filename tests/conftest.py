"""Summary: Shared fixtures for NudgeFlow tests.

Importance: Gives every test an isolated database, a controllable clock and an
in-memory mailbox provider.
Alternatives: Build configuration and services inline in every test module.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Callable

import pytest

from nudgeflow.app import AppContext, build_context, default_account_id
from nudgeflow.config import AppConfig
from nudgeflow.models import Invoice, MailboxConnection
from nudgeflow.oauth import OAuthTokenResult
from nudgeflow.providers import MockMailProvider


class FakeClock:
    """Callable clock that only moves when a test moves it."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now = self.now + timedelta(**delta)


def build_config(db_path: Path, **overrides: object) -> AppConfig:
    values: dict[str, object] = {
        "db_path": str(db_path),
        "api_host": "127.0.0.1",
        "api_port": 8000,
        "api_key": "",
        "default_account_name": "Test Owner",
        "default_account_email": "owner@example.com",
        "default_company_name": "Acme Studio",
        "google_client_id": "google-client",
        "google_client_secret": "google-secret",
        "microsoft_client_id": "ms-client",
        "microsoft_client_secret": "ms-secret",
        "oauth_redirect_uri": "http://localhost:8000/oauth/callback",
        "google_token_url": "https://oauth2.googleapis.com/token",
        "microsoft_token_url": "https://login.microsoftonline.com/common/oauth2/v2.0/token",
        "google_api_base_url": "https://gmail.googleapis.com/gmail/v1",
        "google_userinfo_url": "https://www.googleapis.com/oauth2/v2/userinfo",
        "microsoft_graph_base_url": "https://graph.microsoft.com/v1.0",
        "token_secret": "secret",
        "sweep_enabled": False,
        "sweep_interval_seconds": 60.0,
        "dispatch_concurrency": 4,
        "max_send_attempts": 5,
        "http_timeout_seconds": 5.0,
        "token_refresh_margin_seconds": 60,
        "claim_ttl_seconds": 300,
        "business_hours_start": 9,
        "business_hours_end": 17,
        "upcoming_window_days": 7,
        "footer_html": "<p>Powered by Flow</p>",
        "footer_text": "\n--\nPowered by Flow",
    }
    values.update(overrides)
    return AppConfig(**values)


@pytest.fixture
def config(tmp_path: Path) -> AppConfig:
    return build_config(tmp_path / "nudgeflow.db")


@pytest.fixture
def clock() -> FakeClock:
    # Wednesday, one week after the invoices' default due date.
    return FakeClock(datetime(2025, 1, 8, 10, 0))


@pytest.fixture
def mock_provider() -> MockMailProvider:
    return MockMailProvider()


@pytest.fixture
def context(config: AppConfig, clock: FakeClock, mock_provider: MockMailProvider) -> AppContext:
    return build_context(config, providers={"mock": mock_provider}, clock=clock)


@pytest.fixture
def account_id(context: AppContext) -> int:
    return default_account_id(context)


@pytest.fixture
def make_invoice(context: AppContext, account_id: int) -> Callable[..., Invoice]:
    """Summary: Factory creating a customer and an invoice for the default account.

    Importance: Most scheduling tests only vary the due date or recipient.
    Alternatives: Insert rows with raw SQL in each test.
    """

    counter = {"value": 0}

    def _make(
        due_date: datetime = datetime(2025, 1, 1),
        email: str = "billing@client.example",
        status: str = "pending",
        amount: str = "1250.00",
    ) -> Invoice:
        counter["value"] += 1
        store = context.store
        customer_id = store.add_customer(account_id, "Client Co", email)
        invoice_id = store.add_invoice(
            account_id,
            customer_id,
            f"INV-{counter['value']:03d}",
            Decimal(amount),
            due_date,
            status=status,
        )
        invoice = store.get_invoice(invoice_id)
        assert invoice is not None
        return invoice

    return _make


@pytest.fixture
def connect_mailbox(context: AppContext, account_id: int) -> Callable[..., MailboxConnection]:
    def _connect(
        access_token: str = "access-token",
        refresh_token: str | None = "refresh-token",
        expires_at: datetime | None = None,
    ) -> MailboxConnection:
        tokens = OAuthTokenResult(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
            token_type="Bearer",
            raw={},
        )
        return context.connections.add_connection(account_id, "mock", "owner@example.com", tokens)

    return _connect
