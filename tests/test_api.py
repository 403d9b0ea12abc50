"""Summary: API integration tests.

Importance: Validates FastAPI endpoints against core reminder workflows.
Alternatives: Use manual curl testing only.
"""

from __future__ import annotations

from fastapi.testclient import TestClient

from nudgeflow.errors import PermanentDeliveryError, TransientDeliveryError

from nudgeflow.api import create_app
from nudgeflow.app import build_context

from conftest import build_config


def _client(config, context) -> TestClient:
    return TestClient(create_app(config, context=context))


def test_health(config, context) -> None:
    response = _client(config, context).get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "sweeper_running": False}


def test_api_key_is_enforced(tmp_path, clock, mock_provider) -> None:
    """Summary: Verify protected endpoints require the configured API key.

    Importance: Prevents other local processes from triggering sends.
    Alternatives: Rely on network isolation only.
    """

    config = build_config(tmp_path / "api.db", api_key="k3y")
    context = build_context(config, providers={"mock": mock_provider}, clock=clock)
    client = _client(config, context)

    assert client.get("/reminder-policy").status_code == 401
    assert client.get("/reminder-policy", headers={"x-api-key": "k3y"}).status_code == 200
    assert client.get("/health").status_code == 200


def test_reconcile_and_list_upcoming(config, context, make_invoice) -> None:
    """Summary: Reconciling over HTTP plans reminders that show up as upcoming.

    Importance: Confirms the invoice hook and dashboard list share one schedule.
    Alternatives: Validate only the service layer.
    """

    invoice = make_invoice()
    client = _client(config, context)

    reconcile = client.post(f"/invoices/{invoice.id}/reconcile")
    upcoming = client.get("/reminders/upcoming", params={"within_days": 7})

    assert reconcile.status_code == 200
    assert len(reconcile.json()["created"]) == 3
    payload = upcoming.json()
    assert [item["kind"] for item in payload] == ["first", "second"]
    assert payload[0]["invoice_number"] == invoice.number
    assert payload[0]["customer_name"] == "Client Co"
    assert payload[0]["fire_at"] == "2025-01-08T09:00:00"


def test_send_now_and_errors(config, context, make_invoice, connect_mailbox, mock_provider) -> None:
    connect_mailbox()
    invoice = make_invoice()
    paid = make_invoice(status="paid")
    client = _client(config, context)

    sent = client.post(f"/invoices/{invoice.id}/send-now")

    assert sent.status_code == 200
    assert sent.json()["state"] == "sent"
    assert len(mock_provider.sent) == 1
    assert client.post(f"/invoices/{paid.id}/send-now").status_code == 400
    assert client.post("/invoices/999/send-now").status_code == 404


def test_cancel_invoice_reminders(config, context, make_invoice) -> None:
    invoice = make_invoice()
    client = _client(config, context)
    client.post(f"/invoices/{invoice.id}/reconcile")

    response = client.delete(f"/invoices/{invoice.id}/reminders")

    assert len(response.json()["cancelled"]) == 3


def test_policy_update_reconciles_existing_invoices(config, context, make_invoice) -> None:
    invoice = make_invoice()
    client = _client(config, context)
    client.post(f"/invoices/{invoice.id}/reconcile")

    rejected = client.put("/reminder-policy", json={"first_offset_days": -2})
    updated = client.put("/reminder-policy", json={"first_offset_days": 3})

    assert rejected.status_code == 400
    assert updated.status_code == 200
    body = updated.json()
    assert body["first_offset_days"] == 3
    assert body["second_offset_days"] == 14
    assert body["reconciled_invoices"] == 1
    first = context.store.list_entries_for_invoice(invoice.id)[0]
    assert first.fire_at.day == 6


def test_footer_settings_follow_subscription(config, context, account_id) -> None:
    """Summary: Footer toggling is refused on free and allowed after an upgrade webhook.

    Importance: Billing events are the only way a tier changes.
    Alternatives: Let the UI set the tier directly.
    """

    client = _client(config, context)

    assert client.get("/email/footer-config").json()["can_toggle_footer"] is False
    assert client.put("/email/footer-preference", json={"hide_footer": True}).status_code == 403

    webhook = client.post(
        "/webhooks/subscription-changed", json={"account_id": account_id, "tier": "pro"}
    )
    assert webhook.status_code == 200
    hidden = client.put("/email/footer-preference", json={"hide_footer": True})
    assert hidden.json() == {"success": True, "message": "Footer hidden from future emails"}
    assert client.get("/email/footer-config").json()["should_include_footer"] is False

    bad_tier = client.post(
        "/webhooks/subscription-changed", json={"account_id": account_id, "tier": "gold"}
    )
    assert bad_tier.status_code == 400


def test_oauth_flow_connects_mailbox(config, context) -> None:
    client = _client(config, context)

    start = client.get("/oauth/mock")
    state = start.json()["state"]
    callback = client.get("/oauth/callback", params={"code": "abc", "state": state})
    replay = client.get("/oauth/callback", params={"code": "abc", "state": state})

    assert start.json()["url"].endswith(f"state={state}")
    assert callback.status_code == 200
    assert "Email connected" in callback.text
    assert replay.status_code == 400
    connections = client.get("/email/connections").json()
    assert len(connections) == 1
    assert connections[0]["active"] is True
    assert "access_token" not in connections[0]

    disconnect = client.delete(f"/email/connections/{connections[0]['id']}")
    assert disconnect.json()["deactivated"] is True


def test_unknown_oauth_provider_is_rejected(config, context) -> None:
    assert _client(config, context).get("/oauth/yahoo").status_code == 400


def test_test_email_and_activities(config, context, connect_mailbox, mock_provider) -> None:
    client = _client(config, context)
    assert client.post("/email/test", json={}).status_code == 404

    connect_mailbox()
    response = client.post("/email/test", json={"to": "me@example.com"})

    assert response.status_code == 200
    assert mock_provider.sent[0].message.to == "me@example.com"
    assert client.get("/activities", params={"limit": 0}).status_code == 422
    assert client.get("/email/providers").json()[0]["provider"] == "gmail"


def test_sweep_endpoint(config, context, make_invoice, connect_mailbox, mock_provider) -> None:
    connect_mailbox()
    invoice = make_invoice()
    client = _client(config, context)
    client.post(f"/invoices/{invoice.id}/reconcile")

    report = client.post("/sweep").json()

    assert report["sent"] == 1
    activities = client.get("/activities").json()
    assert activities[0]["type"] == "nudge_sent"


def test_invoice_reminders_expose_failure_reasons(
    config, context, make_invoice, connect_mailbox, mock_provider
) -> None:
    """Summary: Failed reminders report which category of failure stopped them.

    Importance: The owner needs to tell a missing mailbox from a bad address
    or a revoked grant to know what to fix.
    Alternatives: Show only the free-text activity log.
    """

    client = _client(config, context)
    no_connection, bad_address, flaky, revoked = (make_invoice() for _ in range(4))

    client.post(f"/invoices/{no_connection.id}/send-now")
    connect_mailbox()
    mock_provider.send_failures.append(PermanentDeliveryError("400 invalid recipient"))
    client.post(f"/invoices/{bad_address.id}/send-now")
    mock_provider.send_failures.extend(TransientDeliveryError("503") for _ in range(5))
    for _ in range(5):
        client.post(f"/invoices/{flaky.id}/send-now")
    mock_provider.send_failures.append(PermanentDeliveryError("401", reason="auth"))
    client.post(f"/invoices/{revoked.id}/send-now")

    reasons = {}
    for invoice in (no_connection, bad_address, flaky, revoked):
        response = client.get(f"/invoices/{invoice.id}/reminders")
        assert response.status_code == 200
        [entry] = response.json()
        assert entry["state"] == "failed"
        assert entry["sent_at"] is None
        reasons[invoice.id] = entry["failure_reason"]

    assert reasons == {
        no_connection.id: "no_connection",
        bad_address.id: "permanent_delivery",
        flaky.id: "retry_exhausted",
        revoked.id: "auth",
    }
    assert client.get("/invoices/999/reminders").status_code == 404


def test_invoice_reminders_include_sent_history(
    config, context, make_invoice, connect_mailbox
) -> None:
    connect_mailbox()
    invoice = make_invoice()
    client = _client(config, context)
    client.post(f"/invoices/{invoice.id}/reconcile")
    client.post("/sweep")

    entries = client.get(f"/invoices/{invoice.id}/reminders").json()

    assert [entry["state"] for entry in entries] == ["sent", "scheduled", "scheduled"]
    assert entries[0]["sent_at"] == "2025-01-08T10:00:00"
    assert entries[0]["failure_reason"] is None
