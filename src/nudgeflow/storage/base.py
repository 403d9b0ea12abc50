"""Summary: Repository interface the reminder core depends on.

Importance: The scheduler, dispatcher, sweep and services talk to storage only
through this interface, so the backing database can change without them.
Alternatives: Depend on the SQLite implementation directly everywhere.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from nudgeflow.models import (
    INVOICE_PENDING,
    TIER_FREE,
    Account,
    Activity,
    Customer,
    EmailTemplate,
    Invoice,
    ReminderPolicy,
    ScheduleEntry,
)


@dataclass(frozen=True)
class StoredConnection:
    """Summary: Mailbox connection record with encoded tokens.

    Importance: Keeps the codec boundary explicit; only the connection service
    turns these into usable tokens.
    Alternatives: Decode tokens inside the storage layer.
    """

    id: int
    account_id: int
    provider: str
    address: str
    access_token: str
    refresh_token: str | None
    expires_at: datetime | None
    active: bool
    last_tested_at: datetime | None
    created_at: datetime | None


class ReminderStore(ABC):
    """Summary: Abstract persistence for accounts, schedules, connections and activity.

    Importance: Every state transition on a schedule entry goes through the
    conditional ``claim``/``complete``/``release``/``cancel`` methods.
    Alternatives: Let each component issue its own queries.
    """

    @abstractmethod
    def initialize(self) -> None:
        """Create the schema and seed default templates."""

    @abstractmethod
    def create_account(
        self,
        display_name: str,
        email: str,
        company_name: str = "",
        tier: str = TIER_FREE,
    ) -> int:
        """Create an account and return its id."""

    @abstractmethod
    def ensure_account(self, display_name: str, email: str, company_name: str = "") -> int:
        """Return the account id for an email, creating it when missing."""

    @abstractmethod
    def get_account(self, account_id: int) -> Account | None:
        """Load an account by id."""

    @abstractmethod
    def update_account_tier(self, account_id: int, tier: str) -> bool:
        """Summary: Change the tier, clearing the footer preference when moving to free.

        Importance: Both columns must change in one atomic write.
        Alternatives: Two separate updates under an application lock.
        """

    @abstractmethod
    def set_hide_footer(self, account_id: int, hide: bool) -> bool:
        """Store the footer preference only while the tier allows it."""

    @abstractmethod
    def add_customer(self, account_id: int, name: str, email: str) -> int:
        """Create a customer and return its id."""

    @abstractmethod
    def get_customer(self, customer_id: int) -> Customer | None:
        """Load a customer by id."""

    @abstractmethod
    def add_invoice(
        self,
        account_id: int,
        customer_id: int,
        number: str,
        amount: Decimal,
        due_date: datetime,
        issue_date: datetime | None = None,
        status: str = INVOICE_PENDING,
        description: str | None = None,
    ) -> int:
        """Create an invoice and return its id."""

    @abstractmethod
    def get_invoice(self, invoice_id: int) -> Invoice | None:
        """Load an invoice by id."""

    @abstractmethod
    def list_invoice_ids(self, account_id: int) -> list[int]:
        """List the ids of every invoice owned by an account."""

    @abstractmethod
    def update_invoice_status(
        self, invoice_id: int, status: str, paid_date: datetime | None = None
    ) -> bool:
        """Change an invoice's status."""

    @abstractmethod
    def update_invoice_due_date(self, invoice_id: int, due_date: datetime) -> bool:
        """Move an invoice's due date."""

    @abstractmethod
    def get_reminder_policy(self, account_id: int) -> ReminderPolicy:
        """Load the account's policy, falling back to the defaults."""

    @abstractmethod
    def save_reminder_policy(self, policy: ReminderPolicy) -> None:
        """Insert or replace the account's policy."""

    @abstractmethod
    def get_template(self, kind: str, account_id: int | None = None) -> EmailTemplate | None:
        """Fetch the account's template for a kind, or the default one."""

    @abstractmethod
    def save_template(self, template: EmailTemplate, account_id: int = 0) -> None:
        """Insert or replace a template."""

    @abstractmethod
    def delete_template(self, kind: str, account_id: int = 0) -> None:
        """Remove a template."""

    @abstractmethod
    def list_entries_for_invoice(self, invoice_id: int) -> list[ScheduleEntry]:
        """List every entry of an invoice in creation order."""

    @abstractmethod
    def get_schedule_entry(self, entry_id: int) -> ScheduleEntry | None:
        """Load an entry by id."""

    @abstractmethod
    def create_schedule_entry(self, invoice_id: int, kind: str, fire_at: datetime) -> int | None:
        """Insert a scheduled entry; None when a live one already exists."""

    @abstractmethod
    def update_scheduled_fire_at(self, entry_id: int, fire_at: datetime) -> bool:
        """Move an entry's fire time while it is still scheduled."""

    @abstractmethod
    def cancel_schedule_entry(self, entry_id: int) -> bool:
        """Cancel an entry while it is still scheduled."""

    @abstractmethod
    def list_due_entries(self, now: datetime, limit: int | None = None) -> list[ScheduleEntry]:
        """List scheduled entries whose fire time has passed, oldest first."""

    @abstractmethod
    def list_upcoming_entries(self, account_id: int, until: datetime) -> list[ScheduleEntry]:
        """List an account's scheduled entries firing up to ``until``."""

    @abstractmethod
    def claim_schedule_entry(
        self, entry_id: int, token: str, now: datetime, stale_before: datetime
    ) -> bool:
        """Summary: Take the delivery lease on a scheduled entry.

        Importance: Exactly one caller may hold an unexpired lease.
        Alternatives: Lock entries in process memory.
        """

    @abstractmethod
    def complete_schedule_entry(
        self,
        entry_id: int,
        token: str,
        state: str,
        *,
        sent_at: datetime | None = None,
        failure_reason: str | None = None,
        last_error: str | None = None,
        count_attempt: bool = False,
    ) -> bool:
        """Move a leased entry to a terminal state if the lease is still held."""

    @abstractmethod
    def release_schedule_entry(self, entry_id: int, token: str, last_error: str) -> bool:
        """Give the lease back after a transient failure, counting the attempt."""

    @abstractmethod
    def add_mailbox_connection(
        self,
        account_id: int,
        provider: str,
        address: str,
        access_token: str,
        refresh_token: str | None,
        expires_at: datetime | None,
        created_at: datetime,
    ) -> int:
        """Store a new active connection, deactivating the account's others."""

    @abstractmethod
    def get_mailbox_connection(self, connection_id: int) -> StoredConnection | None:
        """Load a connection by id."""

    @abstractmethod
    def get_active_mailbox_connection(self, account_id: int) -> StoredConnection | None:
        """Load the account's active connection."""

    @abstractmethod
    def list_mailbox_connections(self, account_id: int) -> list[StoredConnection]:
        """List all of an account's connections."""

    @abstractmethod
    def update_connection_tokens(
        self,
        connection_id: int,
        access_token: str,
        refresh_token: str | None,
        expires_at: datetime | None,
    ) -> None:
        """Persist refreshed tokens; a None refresh token keeps the stored one."""

    @abstractmethod
    def deactivate_mailbox_connection(self, connection_id: int) -> bool:
        """Mark a connection inactive; False when it already was."""

    @abstractmethod
    def mark_connection_tested(self, connection_id: int, tested_at: datetime) -> None:
        """Record a successful test send."""

    @abstractmethod
    def add_activity(self, activity: Activity) -> int:
        """Append an activity record."""

    @abstractmethod
    def list_activities(self, account_id: int, limit: int = 50) -> list[Activity]:
        """List an account's most recent activities first."""
