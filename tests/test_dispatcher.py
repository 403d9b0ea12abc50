"""Summary: Tests for the delivery state machine.

Importance: Guarantees each reminder is sent at most once and that every
failure lands in the right terminal state with a reason.
Alternatives: Test delivery only end to end against live mailboxes.
"""

from __future__ import annotations

import threading
import time
from datetime import datetime, timedelta

from nudgeflow.errors import OAuthError, PermanentDeliveryError, TransientDeliveryError
from nudgeflow.models import (
    ACTIVITY_CONNECTION_DEACTIVATED,
    ACTIVITY_NUDGE_FAILED,
    ACTIVITY_NUDGE_SENT,
    KIND_FIRST,
    REASON_AUTH,
    REASON_CONFIGURATION,
    REASON_NO_CONNECTION,
    REASON_PERMANENT,
    REASON_RETRY_EXHAUSTED,
    STATE_CANCELLED,
    STATE_FAILED,
    STATE_SCHEDULED,
    STATE_SENT,
    EmailTemplate,
)


def _first_entry(context, make_invoice, account_id, **invoice_args):
    invoice = make_invoice(**invoice_args)
    context.scheduler.reconcile(invoice, context.store.get_reminder_policy(account_id))
    return invoice, context.store.list_entries_for_invoice(invoice.id)[0]


def _activity_types(context, account_id) -> list[str]:
    return [activity.type for activity in context.activities.list_recent(account_id)]


def test_dispatch_sends_rendered_reminder(
    context, make_invoice, account_id, connect_mailbox, mock_provider, clock
) -> None:
    """Summary: A due reminder is rendered, branded and sent from the owner's mailbox.

    Importance: The core happy path of the whole product.
    Alternatives: Assert only on the stored state.
    """

    connect_mailbox()
    invoice, entry = _first_entry(context, make_invoice, account_id)

    outcome = context.dispatcher.dispatch(entry)

    assert outcome.sent
    assert len(mock_provider.sent) == 1
    sent = mock_provider.sent[0]
    assert sent.sender == "owner@example.com"
    assert sent.access_token == "access-token"
    assert sent.message.to == "billing@client.example"
    assert sent.message.subject == f"Payment Reminder: Invoice {invoice.number}"
    assert "$1,250.00" in sent.message.text
    assert "Powered by Flow" in sent.message.html
    stored = context.store.get_schedule_entry(entry.id)
    assert stored.state == STATE_SENT
    assert stored.sent_at == clock()
    assert stored.attempts == 1
    assert stored.claim_token is None
    assert ACTIVITY_NUDGE_SENT in _activity_types(context, account_id)


def test_second_dispatch_of_same_entry_is_a_no_op(
    context, make_invoice, account_id, connect_mailbox, mock_provider
) -> None:
    connect_mailbox()
    _, entry = _first_entry(context, make_invoice, account_id)

    first = context.dispatcher.dispatch(entry)
    second = context.dispatcher.dispatch(entry)

    assert first.sent
    assert second.claimed is False
    assert len(mock_provider.sent) == 1


def test_concurrent_dispatch_sends_once(
    context, make_invoice, account_id, connect_mailbox, mock_provider
) -> None:
    """Summary: A dispatch racing an in-flight one loses the claim.

    Importance: Overlapping sweep ticks must never double-send a reminder.
    Alternatives: Serialize all sends through one worker.
    """

    connect_mailbox()
    _, entry = _first_entry(context, make_invoice, account_id)
    release = threading.Event()
    mock_provider.send_delay_event = release
    outcomes = []
    worker = threading.Thread(target=lambda: outcomes.append(context.dispatcher.dispatch(entry)))
    worker.start()

    deadline = time.monotonic() + 5
    while context.store.get_schedule_entry(entry.id).claim_token is None:
        assert time.monotonic() < deadline
        time.sleep(0.01)
    competing = context.dispatcher.dispatch(entry)
    release.set()
    worker.join(timeout=5)

    assert competing.claimed is False
    assert outcomes[0].sent
    assert len(mock_provider.sent) == 1


def test_invoice_paid_before_send_cancels_entry(
    context, make_invoice, account_id, connect_mailbox, mock_provider, clock
) -> None:
    connect_mailbox()
    invoice, entry = _first_entry(context, make_invoice, account_id)
    context.store.update_invoice_status(invoice.id, "paid", paid_date=clock())

    outcome = context.dispatcher.dispatch(entry)

    assert outcome.state == STATE_CANCELLED
    assert mock_provider.sent == []
    assert context.store.get_schedule_entry(entry.id).state == STATE_CANCELLED


def test_missing_connection_fails_with_reason(context, make_invoice, account_id) -> None:
    _, entry = _first_entry(context, make_invoice, account_id)

    outcome = context.dispatcher.dispatch(entry)

    assert outcome.state == STATE_FAILED
    assert outcome.reason == REASON_NO_CONNECTION
    stored = context.store.get_schedule_entry(entry.id)
    assert stored.failure_reason == REASON_NO_CONNECTION
    assert ACTIVITY_NUDGE_FAILED in _activity_types(context, account_id)


def test_transient_failures_retry_until_attempts_are_exhausted(
    context, make_invoice, account_id, connect_mailbox, mock_provider
) -> None:
    """Summary: Transient send failures keep the entry scheduled up to five attempts.

    Importance: Rate limits should be retried, but never forever.
    Alternatives: Retry with unbounded exponential backoff.
    """

    connect_mailbox()
    _, entry = _first_entry(context, make_invoice, account_id)
    mock_provider.send_failures.extend(TransientDeliveryError("503 from provider") for _ in range(5))

    for attempt in range(1, 5):
        outcome = context.dispatcher.dispatch(entry)
        assert outcome.state == STATE_SCHEDULED
        stored = context.store.get_schedule_entry(entry.id)
        assert stored.attempts == attempt
        assert stored.claim_token is None
        assert stored.last_error == "503 from provider"

    final = context.dispatcher.dispatch(entry)

    assert final.state == STATE_FAILED
    assert final.reason == REASON_RETRY_EXHAUSTED
    stored = context.store.get_schedule_entry(entry.id)
    assert stored.attempts == 5
    assert stored.last_error.startswith("Max retries (5) exceeded")
    assert mock_provider.sent == []


def test_permanent_failure_is_not_retried(
    context, make_invoice, account_id, connect_mailbox, mock_provider
) -> None:
    connection = connect_mailbox()
    _, entry = _first_entry(context, make_invoice, account_id)
    mock_provider.send_failures.append(PermanentDeliveryError("400 invalid recipient"))

    outcome = context.dispatcher.dispatch(entry)

    assert outcome.state == STATE_FAILED
    assert outcome.reason == REASON_PERMANENT
    assert context.store.get_schedule_entry(entry.id).attempts == 1
    assert context.connections.load(connection.id).active is True


def test_rejected_grant_during_send_deactivates_connection(
    context, make_invoice, account_id, connect_mailbox, mock_provider
) -> None:
    """Summary: A 401 from the provider fails the entry and deactivates the mailbox.

    Importance: The connections list must show that a reconnect is required
    instead of reporting a healthy mailbox that rejects every send.
    Alternatives: Only mark the entry as failed.
    """

    connection = connect_mailbox()
    _, entry = _first_entry(context, make_invoice, account_id)
    mock_provider.send_failures.append(PermanentDeliveryError("401", reason=REASON_AUTH))

    outcome = context.dispatcher.dispatch(entry)

    assert outcome.state == STATE_FAILED
    assert outcome.reason == REASON_AUTH
    assert context.connections.load(connection.id).active is False
    assert ACTIVITY_CONNECTION_DEACTIVATED in _activity_types(context, account_id)


def test_revoked_refresh_token_deactivates_connection(
    context, make_invoice, account_id, connect_mailbox, mock_provider, clock
) -> None:
    """Summary: An invalid_grant refresh fails the entry and deactivates the mailbox.

    Importance: The owner must reconnect; until then no reminder is retried
    against a dead grant.
    Alternatives: Keep retrying with the stale token.
    """

    connection = connect_mailbox(expires_at=clock() - timedelta(minutes=1))
    invoice, entry = _first_entry(context, make_invoice, account_id)
    mock_provider.refresh_results.append(OAuthError("revoked", error_code="invalid_grant", status=400))

    outcome = context.dispatcher.dispatch(entry)

    assert outcome.state == STATE_FAILED
    assert outcome.reason == REASON_AUTH
    assert context.connections.load(connection.id).active is False
    assert ACTIVITY_CONNECTION_DEACTIVATED in _activity_types(context, account_id)

    result = context.scheduler.reconcile(invoice, context.store.get_reminder_policy(account_id))
    assert result.created == []
    firsts = [e for e in context.store.list_entries_for_invoice(invoice.id) if e.kind == KIND_FIRST]
    assert len(firsts) == 1


def test_transient_refresh_failure_keeps_connection(
    context, make_invoice, account_id, connect_mailbox, mock_provider, clock
) -> None:
    connection = connect_mailbox(expires_at=clock() - timedelta(minutes=1))
    _, entry = _first_entry(context, make_invoice, account_id)
    mock_provider.refresh_results.append(OAuthError("token endpoint down", status=503, transient=True))

    outcome = context.dispatcher.dispatch(entry)

    assert outcome.state == STATE_SCHEDULED
    assert context.connections.load(connection.id).active is True
    assert context.store.get_schedule_entry(entry.id).attempts == 1


def test_missing_template_is_configuration_failure(
    context, make_invoice, account_id, connect_mailbox
) -> None:
    connect_mailbox()
    _, entry = _first_entry(context, make_invoice, account_id)
    context.store.delete_template(KIND_FIRST)

    outcome = context.dispatcher.dispatch(entry)

    assert outcome.state == STATE_FAILED
    assert outcome.reason == REASON_CONFIGURATION


def test_customer_without_email_fails_permanently(
    context, make_invoice, account_id, connect_mailbox, mock_provider
) -> None:
    connect_mailbox()
    _, entry = _first_entry(context, make_invoice, account_id, email="")

    outcome = context.dispatcher.dispatch(entry)

    assert outcome.reason == REASON_PERMANENT
    assert mock_provider.sent == []


def test_unknown_merge_fields_are_sent_verbatim(
    context, make_invoice, account_id, connect_mailbox, mock_provider
) -> None:
    connect_mailbox()
    context.store.save_template(
        EmailTemplate(kind=KIND_FIRST, subject="Invoice {{invoiceNumber}}", body="Ref {{poNumber}}"),
        account_id=account_id,
    )
    _, entry = _first_entry(context, make_invoice, account_id)

    context.dispatcher.dispatch(entry)

    message = mock_provider.sent[0].message
    assert message.subject == "Invoice INV-001"
    assert message.text.startswith("Ref {{poNumber}}")


def test_paid_tier_with_hidden_footer_sends_without_branding(
    context, make_invoice, account_id, connect_mailbox, mock_provider
) -> None:
    connect_mailbox()
    context.branding.on_subscription_tier_changed(account_id, "pro")
    context.branding.set_footer_preference(account_id, True)
    _, entry = _first_entry(context, make_invoice, account_id)

    context.dispatcher.dispatch(entry)

    message = mock_provider.sent[0].message
    assert "Powered by Flow" not in message.html
    assert "Powered by Flow" not in message.text


def test_stale_lease_can_be_reclaimed(
    context, make_invoice, account_id, connect_mailbox, mock_provider, clock
) -> None:
    """Summary: A lease abandoned by a crashed worker expires after the TTL.

    Importance: A crash mid-send must not strand a reminder forever.
    Alternatives: Require manual intervention for stuck entries.
    """

    connect_mailbox()
    _, entry = _first_entry(context, make_invoice, account_id)
    assert context.store.claim_schedule_entry(entry.id, "crashed-worker", clock(), clock())

    assert context.dispatcher.dispatch(entry).claimed is False

    clock.advance(minutes=10)
    outcome = context.dispatcher.dispatch(entry)

    assert outcome.sent
    assert len(mock_provider.sent) == 1
    assert isinstance(context.store.get_schedule_entry(entry.id).sent_at, datetime)
