"""Summary: Account-scoped application services for NudgeFlow.

Importance: Orchestrates scheduling, manual sends, policy updates and mailbox
setup on behalf of one account.
Alternatives: Build a full service layer with dependency injection framework.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Callable

from nudgeflow.branding import BrandingService
from nudgeflow.connections import MailboxConnectionService
from nudgeflow.dispatcher import DeliveryDispatcher, DispatchOutcome
from nudgeflow.errors import NotFoundError, PolicyValidationError
from nudgeflow.models import (
    REMINDER_KINDS,
    STATE_SCHEDULED,
    STATE_SENT,
    Invoice,
    MailboxConnection,
    OutgoingMessage,
    ReminderPolicy,
    ScheduleEntry,
)
from nudgeflow.providers import PROVIDER_CATALOG, ProviderRegistry
from nudgeflow.scheduler import ReconcileResult, ReminderScheduler
from nudgeflow.storage.base import ReminderStore
from nudgeflow.templates import text_to_html
from nudgeflow.token_manager import TokenLifecycleManager


logger = logging.getLogger(__name__)

_POLICY_OFFSETS = ("first_offset_days", "second_offset_days", "final_offset_days")
_POLICY_FLAGS = ("auto_enabled", "business_hours_only", "weekdays_only")


@dataclass(frozen=True)
class ReminderService:
    """Summary: Reacts to invoice changes and exposes reminder operations.

    Importance: Every invoice lookup is checked against the owning account.
    Alternatives: Let callers talk to the scheduler and dispatcher directly.
    """

    store: ReminderStore
    scheduler: ReminderScheduler
    dispatcher: DeliveryDispatcher
    account_id: int
    upcoming_window_days: int = 7
    clock: Callable[[], datetime] = datetime.now

    def on_invoice_changed(self, invoice_id: int) -> ReconcileResult:
        invoice = self._get_invoice(invoice_id)
        policy = self.store.get_reminder_policy(self.account_id)
        return self.scheduler.reconcile(invoice, policy)

    def on_invoice_deleted(self, invoice_id: int) -> ReconcileResult:
        invoice = self.store.get_invoice(invoice_id)
        if invoice is not None and invoice.account_id != self.account_id:
            raise NotFoundError(f"Invoice {invoice_id} not found")
        return self.scheduler.cancel_all(invoice_id, "invoice was deleted", invoice)

    def reconcile_account(self) -> list[ReconcileResult]:
        """Summary: Reconcile every invoice of the account.

        Importance: Applies a changed policy to existing schedules.
        Alternatives: Only apply policy changes to invoices created afterwards.
        """

        policy = self.store.get_reminder_policy(self.account_id)
        results = []
        for invoice_id in self.store.list_invoice_ids(self.account_id):
            invoice = self.store.get_invoice(invoice_id)
            if invoice is not None:
                results.append(self.scheduler.reconcile(invoice, policy))
        return results

    def schedule_upcoming(self, within_days: int | None = None) -> list[ScheduleEntry]:
        days = self.upcoming_window_days if within_days is None else within_days
        if days < 0:
            raise ValueError("within_days must not be negative")
        return self.store.list_upcoming_entries(self.account_id, self.clock() + timedelta(days=days))

    def list_reminders(self, invoice_id: int) -> list[ScheduleEntry]:
        """Every entry of the invoice, including sent, cancelled and failed history."""

        invoice = self._get_invoice(invoice_id)
        return self.store.list_entries_for_invoice(invoice.id)

    def send_now(self, invoice_id: int) -> DispatchOutcome:
        """Summary: Deliver the invoice's next reminder immediately.

        Importance: Skips the timing rules but not the dispatch state machine,
        so a concurrent sweep still cannot send the same entry twice.
        Alternatives: Send an ad hoc email outside the schedule.
        """

        invoice = self._get_invoice(invoice_id)
        if invoice.is_paid:
            raise ValueError(f"Invoice {invoice.number} is already paid")
        entry = self._next_scheduled(invoice) or self._create_next_entry(invoice)
        logger.info("Sending %s reminder for invoice %s now.", entry.kind, invoice.number)
        return self.dispatcher.dispatch(entry)

    def _next_scheduled(self, invoice: Invoice) -> ScheduleEntry | None:
        scheduled = [
            entry
            for entry in self.store.list_entries_for_invoice(invoice.id)
            if entry.state == STATE_SCHEDULED
        ]
        if not scheduled:
            return None
        return min(scheduled, key=lambda entry: (entry.fire_at, entry.id))

    def _create_next_entry(self, invoice: Invoice) -> ScheduleEntry:
        entries = self.store.list_entries_for_invoice(invoice.id)
        sent_kinds = {entry.kind for entry in entries if entry.state == STATE_SENT}
        for kind in REMINDER_KINDS:
            if kind in sent_kinds:
                continue
            entry_id = self.store.create_schedule_entry(invoice.id, kind, self.clock())
            if entry_id is None:
                existing = self._next_scheduled(invoice)
                if existing is not None:
                    return existing
                continue
            created = self.store.get_schedule_entry(entry_id)
            if created is not None:
                return created
        raise ValueError(f"All reminders for invoice {invoice.number} have already been sent")

    def _get_invoice(self, invoice_id: int) -> Invoice:
        invoice = self.store.get_invoice(invoice_id)
        if invoice is None or invoice.account_id != self.account_id:
            raise NotFoundError(f"Invoice {invoice_id} not found")
        return invoice


@dataclass(frozen=True)
class PolicyService:
    """Summary: Reads and validates the account's reminder policy.

    Importance: Malformed offsets are rejected here so the scheduler can
    assume a valid policy.
    Alternatives: Validate inside the scheduler on every reconcile.
    """

    store: ReminderStore
    account_id: int

    def get_policy(self) -> ReminderPolicy:
        return self.store.get_reminder_policy(self.account_id)

    def update_policy(self, **changes: object) -> ReminderPolicy:
        unknown = set(changes) - set(_POLICY_OFFSETS) - set(_POLICY_FLAGS)
        if unknown:
            raise PolicyValidationError(f"Unknown policy fields: {', '.join(sorted(unknown))}")
        for name in _POLICY_OFFSETS:
            if name in changes:
                validate_offset(name, changes[name])
        for name in _POLICY_FLAGS:
            if name in changes and not isinstance(changes[name], bool):
                raise PolicyValidationError(f"{name} must be true or false")
        policy = replace(self.get_policy(), **changes)
        self.store.save_reminder_policy(policy)
        logger.info("Updated reminder policy for account %s.", self.account_id)
        return policy


def validate_offset(name: str, value: object) -> None:
    if value is None:
        return
    if isinstance(value, bool) or not isinstance(value, int):
        raise PolicyValidationError(f"{name} must be a whole number of days")
    if value < 0:
        raise PolicyValidationError(f"{name} must not be negative")


@dataclass(frozen=True)
class EmailSetupService:
    """Summary: Mailbox onboarding and connection checks for one account.

    Importance: Wraps the OAuth flow, disconnects and test sends behind one API.
    Alternatives: Expose the provider registry to the HTTP layer.
    """

    store: ReminderStore
    connections: MailboxConnectionService
    tokens: TokenLifecycleManager
    providers: ProviderRegistry
    branding: BrandingService
    account_id: int

    def available_providers(self) -> list[dict[str, str]]:
        return [dict(item) for item in PROVIDER_CATALOG]

    def authorization_url(self, provider_tag: str, state: str) -> str:
        return self.providers.get(provider_tag).auth_url(state)

    def complete_oauth(self, provider_tag: str, code: str) -> MailboxConnection:
        return self.connections.connect(self.account_id, provider_tag, code)

    def list_connections(self) -> list[MailboxConnection]:
        return self.connections.list_connections(self.account_id)

    def disconnect(self, connection_id: int) -> bool:
        return self.connections.disconnect(self.account_id, connection_id)

    def send_test_email(self, to: str | None = None) -> str:
        """Summary: Send a branded test message through the active mailbox.

        Importance: Lets the owner confirm the connection before reminders go out.
        Alternatives: Only validate the token without sending.
        """

        account = self.store.get_account(self.account_id)
        if account is None:
            raise NotFoundError(f"Account {self.account_id} not found")
        connection = self.connections.get_active(self.account_id)
        if connection is None:
            raise NotFoundError("No active email connection")
        access_token = self.tokens.get_valid_token(connection)
        recipient = to or connection.address
        text = (
            "This is a test email from Flow to confirm your email integration is working.\n\n"
            f"Your {connection.provider.title()} account {connection.address} is ready to send "
            "payment reminders."
        )
        message = OutgoingMessage(
            to=recipient,
            subject="Test Email from Flow",
            html=text_to_html(text),
            text=text,
        )
        provider = self.providers.get(connection.provider)
        provider.send(access_token, connection.address, self.branding.apply(account.id, message))
        self.connections.mark_tested(connection.id)
        logger.info("Sent test email through connection %s to %s.", connection.id, recipient)
        return recipient
