"""Summary: FastAPI application for NudgeFlow.

Importance: Exposes reminder, branding and mailbox endpoints for UI clients
and billing webhooks, and runs the sweeper alongside the server.
Alternatives: Use a CLI-only workflow or a different web framework.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, AsyncIterator

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import HTMLResponse, JSONResponse
from pydantic import BaseModel

from nudgeflow.app import AppContext, build_context, default_account_id
from nudgeflow.config import AppConfig
from nudgeflow.errors import (
    DeliveryError,
    NotFoundError,
    OAuthError,
    PolicyValidationError,
    ReauthorizationRequired,
    UpgradeRequired,
)
from nudgeflow.models import MailboxConnection, ReminderPolicy, ScheduleEntry
from nudgeflow.oauth import create_state_token


logger = logging.getLogger(__name__)


class PolicyUpdateRequest(BaseModel):
    """Summary: Request payload for reminder policy updates.

    Importance: Only fields present in the payload are changed.
    Alternatives: Require the full policy on every update.
    """

    first_offset_days: int | None = None
    second_offset_days: int | None = None
    final_offset_days: int | None = None
    auto_enabled: bool | None = None
    business_hours_only: bool | None = None
    weekdays_only: bool | None = None


class FooterPreferenceRequest(BaseModel):
    hide_footer: bool


class SubscriptionChangedRequest(BaseModel):
    """Summary: Billing webhook payload for subscription tier changes.

    Importance: The only billing event the reminder core reacts to.
    Alternatives: Poll the billing provider for plan changes.
    """

    account_id: int
    tier: str


class EmailTestRequest(BaseModel):
    to: str | None = None


def create_app(config: AppConfig, context: AppContext | None = None) -> FastAPI:
    """Summary: Create a FastAPI app wired to NudgeFlow services.

    Importance: Ensures the API layer shares the same configuration, storage
    and sweeper; the sweeper runs for the lifetime of the app when enabled.
    Alternatives: Instantiate services globally outside the factory.
    """

    if not logging.getLogger().handlers:
        logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    context = context or build_context(config)
    services = context.services_for_account(default_account_id(context))

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        if config.sweep_enabled:
            context.sweeper.start()
        try:
            yield
        finally:
            if config.sweep_enabled:
                context.sweeper.stop()

    app = FastAPI(title="NudgeFlow API", version="0.1.0", lifespan=lifespan)
    app.state.oauth_states = {}

    @app.exception_handler(NotFoundError)
    async def not_found(_: Request, exc: NotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(UpgradeRequired)
    async def upgrade_required(_: Request, exc: UpgradeRequired) -> JSONResponse:
        return JSONResponse(status_code=403, content={"detail": str(exc)})

    @app.exception_handler(ReauthorizationRequired)
    async def reauthorization_required(_: Request, exc: ReauthorizationRequired) -> JSONResponse:
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(DeliveryError)
    async def delivery_failed(_: Request, exc: DeliveryError) -> JSONResponse:
        return JSONResponse(status_code=502, content={"detail": str(exc)})

    @app.exception_handler(ValueError)
    async def invalid_value(_: Request, exc: ValueError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    def _register_state(provider: str, state: str) -> None:
        app.state.oauth_states[state] = {"provider": provider, "created_at": datetime.now()}

    def _consume_state(state: str) -> str:
        """Summary: Validate and consume an OAuth state token.

        Importance: Reduces CSRF risks in OAuth flows; each state works once.
        Alternatives: Use a dedicated session store for state.
        """

        record = app.state.oauth_states.pop(state, None)
        if not record:
            raise HTTPException(status_code=400, detail="Invalid OAuth state")
        if datetime.now() - record["created_at"] > timedelta(minutes=10):
            raise HTTPException(status_code=400, detail="OAuth state expired")
        return record["provider"]

    def require_api_key(x_api_key: str | None = Header(default=None)) -> None:
        """Summary: Enforce API key authentication when configured.

        Importance: Adds a minimal security layer for local and private deployments.
        Alternatives: Use OAuth or session-based authentication.
        """

        if not config.api_key:
            return
        if x_api_key != config.api_key:
            raise HTTPException(status_code=401, detail="Invalid API key")

    protected = [Depends(require_api_key)]

    @app.get("/health")
    def health() -> dict[str, Any]:
        return {"status": "ok", "sweeper_running": context.sweeper.running}

    @app.get("/reminders/upcoming", dependencies=protected)
    def upcoming(within_days: int | None = None) -> list[dict[str, Any]]:
        """Summary: List reminders that will fire within the window.

        Importance: Feeds the "upcoming nudges" list in the dashboard.
        Alternatives: Let the UI compute fire times itself.
        """

        entries = services.reminders.schedule_upcoming(within_days)
        return [_entry_payload(entry, context) for entry in entries]

    @app.post("/invoices/{invoice_id}/reconcile", dependencies=protected)
    def reconcile_invoice(invoice_id: int) -> dict[str, object]:
        return services.reminders.on_invoice_changed(invoice_id).to_dict()

    @app.get("/invoices/{invoice_id}/reminders", dependencies=protected)
    def invoice_reminders(invoice_id: int) -> list[dict[str, Any]]:
        return [
            _entry_payload(entry, context)
            for entry in services.reminders.list_reminders(invoice_id)
        ]

    @app.delete("/invoices/{invoice_id}/reminders", dependencies=protected)
    def cancel_invoice_reminders(invoice_id: int) -> dict[str, object]:
        return services.reminders.on_invoice_deleted(invoice_id).to_dict()

    @app.post("/invoices/{invoice_id}/send-now", dependencies=protected)
    def send_now(invoice_id: int) -> dict[str, object]:
        outcome = services.reminders.send_now(invoice_id)
        if not outcome.claimed:
            raise HTTPException(status_code=409, detail="Reminder is already being delivered")
        return outcome.to_dict()

    @app.get("/reminder-policy", dependencies=protected)
    def get_policy() -> dict[str, Any]:
        return _policy_payload(services.policies.get_policy())

    @app.put("/reminder-policy", dependencies=protected)
    def update_policy(payload: PolicyUpdateRequest) -> dict[str, Any]:
        """Summary: Update the reminder policy and re-plan existing invoices.

        Importance: A changed offset moves scheduled reminders immediately.
        Alternatives: Apply the new policy only to future invoices.
        """

        try:
            policy = services.policies.update_policy(**payload.model_dump(exclude_unset=True))
        except PolicyValidationError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        results = services.reminders.reconcile_account()
        response = _policy_payload(policy)
        response["reconciled_invoices"] = len(results)
        return response

    @app.get("/email/footer-config", dependencies=protected)
    def footer_config() -> dict[str, Any]:
        footer = services.branding.get_footer_config(services.account_id)
        return {
            "should_include_footer": footer.should_include_footer,
            "can_toggle_footer": footer.can_toggle_footer,
            "current_setting": footer.current_setting,
            "tier": footer.tier,
        }

    @app.put("/email/footer-preference", dependencies=protected)
    def footer_preference(payload: FooterPreferenceRequest) -> dict[str, Any]:
        message = services.branding.set_footer_preference(services.account_id, payload.hide_footer)
        return {"success": True, "message": message}

    @app.post("/webhooks/subscription-changed", dependencies=protected)
    def subscription_changed(payload: SubscriptionChangedRequest) -> dict[str, Any]:
        footer = services.branding.on_subscription_tier_changed(payload.account_id, payload.tier)
        return {
            "account_id": payload.account_id,
            "tier": footer.tier,
            "should_include_footer": footer.should_include_footer,
        }

    @app.get("/email/providers", dependencies=protected)
    def email_providers() -> list[dict[str, str]]:
        return services.email.available_providers()

    @app.get("/email/connections", dependencies=protected)
    def email_connections() -> list[dict[str, Any]]:
        return [_connection_payload(connection) for connection in services.email.list_connections()]

    @app.delete("/email/connections/{connection_id}", dependencies=protected)
    def disconnect(connection_id: int) -> dict[str, Any]:
        return {"id": connection_id, "deactivated": services.email.disconnect(connection_id)}

    @app.post("/email/test", dependencies=protected)
    def test_email(payload: EmailTestRequest) -> dict[str, Any]:
        recipient = services.email.send_test_email(payload.to)
        return {"success": True, "message": f"Test email sent to {recipient}"}

    @app.get("/oauth/callback", response_class=HTMLResponse)
    def oauth_callback(code: str, state: str) -> str:
        """Summary: Handle the OAuth redirect and store the new connection.

        Importance: Completes the mailbox connection without the owner
        copying codes around.
        Alternatives: Ask the owner to paste the code into the CLI.
        """

        provider = _consume_state(state)
        try:
            connection = services.email.complete_oauth(provider, code)
        except OAuthError as exc:
            raise HTTPException(status_code=400, detail=f"OAuth exchange failed: {exc}") from exc
        return (
            "<h1>Email connected</h1>"
            f"<p>{connection.address} is now connected. You can close this window.</p>"
        )

    @app.get("/oauth/{provider}", dependencies=protected)
    def oauth_start(provider: str) -> dict[str, str]:
        state = create_state_token()
        url = services.email.authorization_url(provider, state)
        _register_state(provider, state)
        return {"url": url, "state": state}

    @app.get("/activities", dependencies=protected)
    def activities(limit: int = Query(default=50, ge=1, le=500)) -> list[dict[str, Any]]:
        return [
            {
                "id": activity.id,
                "type": activity.type,
                "description": activity.description,
                "invoice_id": activity.invoice_id,
                "customer_id": activity.customer_id,
                "created_at": activity.created_at.isoformat(),
            }
            for activity in services.activities.list_recent(services.account_id, limit=limit)
        ]

    @app.post("/sweep", dependencies=protected)
    def sweep() -> dict[str, int]:
        return context.sweeper.run_once().to_dict()

    return app


def _entry_payload(entry: ScheduleEntry, context: AppContext) -> dict[str, Any]:
    invoice = context.store.get_invoice(entry.invoice_id)
    customer = context.store.get_customer(invoice.customer_id) if invoice else None
    return {
        "id": entry.id,
        "invoice_id": entry.invoice_id,
        "invoice_number": invoice.number if invoice else None,
        "customer_name": customer.name if customer else None,
        "kind": entry.kind,
        "fire_at": entry.fire_at.isoformat(),
        "state": entry.state,
        "attempts": entry.attempts,
        "last_error": entry.last_error,
        "failure_reason": entry.failure_reason,
        "sent_at": entry.sent_at.isoformat() if entry.sent_at else None,
    }


def _policy_payload(policy: ReminderPolicy) -> dict[str, Any]:
    return {
        "first_offset_days": policy.first_offset_days,
        "second_offset_days": policy.second_offset_days,
        "final_offset_days": policy.final_offset_days,
        "auto_enabled": policy.auto_enabled,
        "business_hours_only": policy.business_hours_only,
        "weekdays_only": policy.weekdays_only,
    }


def _connection_payload(connection: MailboxConnection) -> dict[str, Any]:
    return {
        "id": connection.id,
        "provider": connection.provider,
        "address": connection.address,
        "active": connection.active,
        "expires_at": connection.expires_at.isoformat() if connection.expires_at else None,
        "last_tested_at": connection.last_tested_at.isoformat() if connection.last_tested_at else None,
        "created_at": connection.created_at.isoformat() if connection.created_at else None,
    }
