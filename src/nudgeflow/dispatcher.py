"""Summary: Delivery of due schedule entries through the owner's mailbox.

Importance: Drives each entry from Scheduled to Sent, Cancelled or Failed with
compare-and-swap transitions, so a reminder is never sent twice.
Alternatives: Send inline from the sweep without a per-entry state machine.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from nudgeflow.activity import ActivityRecorder
from nudgeflow.branding import BrandingService
from nudgeflow.connections import MailboxConnectionService
from nudgeflow.errors import (
    PermanentDeliveryError,
    ReauthorizationRequired,
    TransientDeliveryError,
)
from nudgeflow.models import (
    ACTIVITY_NUDGE_CANCELLED,
    ACTIVITY_NUDGE_FAILED,
    ACTIVITY_NUDGE_SENT,
    REASON_AUTH,
    REASON_CONFIGURATION,
    REASON_NO_CONNECTION,
    REASON_PERMANENT,
    REASON_RETRY_EXHAUSTED,
    STATE_CANCELLED,
    STATE_FAILED,
    STATE_SCHEDULED,
    STATE_SENT,
    Invoice,
    ScheduleEntry,
)
from nudgeflow.providers import ProviderRegistry
from nudgeflow.storage.base import ReminderStore
from nudgeflow.templates import build_message
from nudgeflow.token_manager import TokenLifecycleManager


logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 5

_REASON_LABELS = {
    REASON_NO_CONNECTION: "no email account is connected",
    REASON_AUTH: "the email connection needs to be re-authorized",
    REASON_PERMANENT: "the provider rejected the message",
    REASON_RETRY_EXHAUSTED: "delivery kept failing",
    REASON_CONFIGURATION: "the reminder is misconfigured",
}


@dataclass(frozen=True)
class DispatchOutcome:
    """Summary: What a single dispatch did to an entry.

    Importance: ``claimed`` is False when another worker already held the
    entry; ``state`` is the entry's state after this dispatch.
    Alternatives: Return a bare boolean.
    """

    entry_id: int
    state: str | None
    reason: str | None = None
    detail: str | None = None
    claimed: bool = True

    @property
    def sent(self) -> bool:
        return self.claimed and self.state == STATE_SENT

    def to_dict(self) -> dict[str, object]:
        return {
            "entry_id": self.entry_id,
            "state": self.state,
            "reason": self.reason,
            "detail": self.detail,
            "claimed": self.claimed,
        }


class DeliveryDispatcher:
    """Summary: Renders, brands, authorizes and sends one schedule entry.

    Importance: Every transition is conditional on the entry still being
    Scheduled and on this dispatcher holding its lease.
    Alternatives: Lock the whole schedule table during a sweep.
    """

    def __init__(
        self,
        store: ReminderStore,
        connections: MailboxConnectionService,
        tokens: TokenLifecycleManager,
        providers: ProviderRegistry,
        branding: BrandingService,
        activities: ActivityRecorder,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        claim_ttl_seconds: int = 300,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._store = store
        self._connections = connections
        self._tokens = tokens
        self._providers = providers
        self._branding = branding
        self._activities = activities
        self._max_attempts = max(1, max_attempts)
        self._claim_ttl = timedelta(seconds=claim_ttl_seconds)
        self._clock = clock

    def dispatch(self, entry: ScheduleEntry) -> DispatchOutcome:
        """Summary: Claim an entry and attempt delivery.

        Importance: A lost claim is a no-op, which is what turns a double
        sweep tick into a single send.
        Alternatives: Check the state, then send, then update.
        """

        token = uuid.uuid4().hex
        now = self._clock()
        if not self._store.claim_schedule_entry(entry.id, token, now, now - self._claim_ttl):
            logger.debug("Entry %s is not claimable; skipping.", entry.id)
            return DispatchOutcome(entry_id=entry.id, state=None, claimed=False)
        current = self._store.get_schedule_entry(entry.id) or entry
        try:
            return self._deliver(current, token)
        except Exception as exc:
            logger.exception("Unexpected error dispatching entry %s.", entry.id)
            invoice = self._store.get_invoice(current.invoice_id)
            return self._retry_or_fail(current, token, invoice, f"Unexpected error: {exc}")

    def _deliver(self, entry: ScheduleEntry, token: str) -> DispatchOutcome:
        invoice = self._store.get_invoice(entry.invoice_id)
        if invoice is None or invoice.is_paid:
            return self._cancel(entry, token, invoice)
        account = self._store.get_account(invoice.account_id)
        if account is None:
            return self._fail(entry, token, invoice, REASON_CONFIGURATION, "Account not found")

        connection = self._connections.get_active(account.id)
        if connection is None:
            return self._fail(
                entry, token, invoice, REASON_NO_CONNECTION, "No active email connection"
            )
        try:
            access_token = self._tokens.get_valid_token(connection)
        except ReauthorizationRequired as exc:
            return self._fail(entry, token, invoice, REASON_AUTH, str(exc))
        except TransientDeliveryError as exc:
            return self._retry_or_fail(entry, token, invoice, str(exc))

        template = self._store.get_template(entry.kind, account.id)
        if template is None:
            return self._fail(
                entry, token, invoice, REASON_CONFIGURATION, f"No template for {entry.kind} reminder"
            )
        customer = self._store.get_customer(invoice.customer_id)
        if customer is None or "@" not in (customer.email or ""):
            return self._fail(
                entry, token, invoice, REASON_PERMANENT, "Customer has no valid email address"
            )
        try:
            provider = self._providers.get(connection.provider)
        except ValueError as exc:
            return self._fail(entry, token, invoice, REASON_CONFIGURATION, str(exc))

        message = self._branding.apply(
            account.id, build_message(template, invoice, customer, account)
        )
        try:
            provider.send(access_token, connection.address, message)
        except TransientDeliveryError as exc:
            return self._retry_or_fail(entry, token, invoice, str(exc))
        except PermanentDeliveryError as exc:
            if exc.reason == REASON_AUTH:
                self._tokens.revoke(connection, "provider rejected the grant while sending")
            return self._fail(entry, token, invoice, exc.reason, str(exc), count_attempt=True)

        sent_at = self._clock()
        if not self._store.complete_schedule_entry(
            entry.id, token, STATE_SENT, sent_at=sent_at, count_attempt=True
        ):
            logger.warning("Entry %s changed state while its reminder was being sent.", entry.id)
        self._activities.record(
            invoice.account_id,
            ACTIVITY_NUDGE_SENT,
            f"Sent {entry.kind} reminder for invoice {invoice.number} to {customer.email}",
            invoice_id=invoice.id,
            customer_id=customer.id,
        )
        logger.info("Sent %s reminder for invoice %s.", entry.kind, invoice.number)
        return DispatchOutcome(entry_id=entry.id, state=STATE_SENT)

    def _cancel(self, entry: ScheduleEntry, token: str, invoice: Invoice | None) -> DispatchOutcome:
        detail = "Invoice was paid" if invoice is not None else "Invoice no longer exists"
        outcome = self._finish(entry, token, STATE_CANCELLED, None, detail)
        if outcome.state == STATE_CANCELLED and invoice is not None:
            self._activities.record(
                invoice.account_id,
                ACTIVITY_NUDGE_CANCELLED,
                f"Cancelled {entry.kind} reminder for invoice {invoice.number}: invoice was paid",
                invoice_id=invoice.id,
                customer_id=invoice.customer_id,
            )
        return outcome

    def _fail(
        self,
        entry: ScheduleEntry,
        token: str,
        invoice: Invoice | None,
        reason: str,
        detail: str,
        count_attempt: bool = False,
    ) -> DispatchOutcome:
        outcome = self._finish(entry, token, STATE_FAILED, reason, detail, count_attempt)
        logger.warning("Reminder entry %s failed (%s): %s", entry.id, reason, detail)
        if outcome.state == STATE_FAILED and invoice is not None:
            label = _REASON_LABELS.get(reason, reason)
            self._activities.record(
                invoice.account_id,
                ACTIVITY_NUDGE_FAILED,
                f"{entry.kind.title()} reminder for invoice {invoice.number} failed: {label}",
                invoice_id=invoice.id,
                customer_id=invoice.customer_id,
            )
        return outcome

    def _retry_or_fail(
        self,
        entry: ScheduleEntry,
        token: str,
        invoice: Invoice | None,
        error: str,
    ) -> DispatchOutcome:
        """Summary: Handle a transient failure against the attempt budget.

        Importance: The entry stays Scheduled for the next sweep until the
        budget runs out, then fails with ``retry_exhausted``.
        Alternatives: Retry immediately in a loop with backoff.
        """

        attempts = entry.attempts + 1
        if attempts >= self._max_attempts:
            detail = f"Max retries ({self._max_attempts}) exceeded: {error}"
            return self._fail(
                entry, token, invoice, REASON_RETRY_EXHAUSTED, detail, count_attempt=True
            )
        if not self._store.release_schedule_entry(entry.id, token, error):
            logger.warning("Entry %s changed state before it could be released.", entry.id)
            current = self._store.get_schedule_entry(entry.id)
            return DispatchOutcome(entry.id, current.state if current else None, detail=error)
        logger.info(
            "Transient failure for entry %s (attempt %s/%s): %s",
            entry.id,
            attempts,
            self._max_attempts,
            error,
        )
        return DispatchOutcome(entry_id=entry.id, state=STATE_SCHEDULED, detail=error)

    def _finish(
        self,
        entry: ScheduleEntry,
        token: str,
        state: str,
        reason: str | None,
        detail: str | None,
        count_attempt: bool = False,
    ) -> DispatchOutcome:
        updated = self._store.complete_schedule_entry(
            entry.id,
            token,
            state,
            failure_reason=reason,
            last_error=detail,
            count_attempt=count_attempt,
        )
        if not updated:
            current = self._store.get_schedule_entry(entry.id)
            logger.warning("Entry %s changed state during dispatch; leaving it alone.", entry.id)
            return DispatchOutcome(entry.id, current.state if current else None, reason, detail)
        return DispatchOutcome(entry.id, state, reason, detail)
