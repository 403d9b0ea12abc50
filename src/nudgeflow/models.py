"""Summary: Domain model dataclasses for NudgeFlow.

Importance: Defines the entities shared by the scheduler, dispatcher and storage.
Alternatives: Use Pydantic models or ORM classes directly.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal


TIER_FREE = "free"
TIER_PRO = "pro"
TIER_ENTERPRISE = "enterprise"
SUBSCRIPTION_TIERS = (TIER_FREE, TIER_PRO, TIER_ENTERPRISE)

INVOICE_PENDING = "pending"
INVOICE_SENT = "sent"
INVOICE_VIEWED = "viewed"
INVOICE_PAID = "paid"
INVOICE_OVERDUE = "overdue"
INVOICE_STATUSES = (INVOICE_PENDING, INVOICE_SENT, INVOICE_VIEWED, INVOICE_PAID, INVOICE_OVERDUE)

KIND_FIRST = "first"
KIND_SECOND = "second"
KIND_FINAL = "final"
# Strict ordering: first < second < final.
REMINDER_KINDS = (KIND_FIRST, KIND_SECOND, KIND_FINAL)

STATE_SCHEDULED = "scheduled"
STATE_SENT = "sent"
STATE_CANCELLED = "cancelled"
STATE_FAILED = "failed"

REASON_NO_CONNECTION = "no_connection"
REASON_AUTH = "auth"
REASON_PERMANENT = "permanent_delivery"
REASON_RETRY_EXHAUSTED = "retry_exhausted"
REASON_CONFIGURATION = "configuration"

ACTIVITY_NUDGE_SENT = "nudge_sent"
ACTIVITY_NUDGE_FAILED = "nudge_failed"
ACTIVITY_NUDGE_CANCELLED = "nudge_cancelled"
ACTIVITY_CONNECTION_DEACTIVATED = "connection_deactivated"
ACTIVITY_PLAN_CHANGED = "plan_changed"


@dataclass(frozen=True)
class Account:
    """Summary: The owner of invoices, a mailbox connection and a subscription.

    Importance: Carries the tier and footer preference the branding policy reads.
    Alternatives: Keep subscription data in the billing system only.
    """

    id: int
    display_name: str
    email: str
    company_name: str
    tier: str
    hide_footer_requested: bool


@dataclass(frozen=True)
class Customer:
    """Recipient of reminders for an invoice."""

    id: int
    account_id: int
    name: str
    email: str


@dataclass(frozen=True)
class Invoice:
    """Summary: Invoice as observed by the reminder core.

    Importance: Due date and status drive every scheduling decision.
    Alternatives: Pass only the due date and status around.
    """

    id: int
    account_id: int
    customer_id: int
    number: str
    amount: Decimal
    status: str
    issue_date: datetime
    due_date: datetime
    description: str | None = None
    paid_date: datetime | None = None

    @property
    def is_paid(self) -> bool:
        return self.status == INVOICE_PAID


@dataclass(frozen=True)
class ReminderPolicy:
    """Summary: Per-account reminder timing configuration.

    Importance: Offsets and timing flags decide when each reminder fires.
    Alternatives: Hardcode reminder offsets in the scheduler.
    """

    account_id: int
    first_offset_days: int | None = 7
    second_offset_days: int | None = 14
    final_offset_days: int | None = 21
    auto_enabled: bool = True
    business_hours_only: bool = True
    weekdays_only: bool = True

    def offset_for(self, kind: str) -> int | None:
        """Return the offset in days configured for a reminder kind."""

        if kind == KIND_FIRST:
            return self.first_offset_days
        if kind == KIND_SECOND:
            return self.second_offset_days
        if kind == KIND_FINAL:
            return self.final_offset_days
        raise ValueError(f"Unknown reminder kind: {kind}")


@dataclass(frozen=True)
class EmailTemplate:
    """Subject and body template used for one reminder kind."""

    kind: str
    subject: str
    body: str


@dataclass(frozen=True)
class ScheduleEntry:
    """Summary: One planned reminder for one invoice.

    Importance: The stateful record the sweep and dispatcher operate on.
    Alternatives: Recompute reminders on every sweep without persistence.
    """

    id: int
    invoice_id: int
    kind: str
    fire_at: datetime
    state: str
    sent_at: datetime | None = None
    attempts: int = 0
    last_error: str | None = None
    failure_reason: str | None = None
    claim_token: str | None = None
    claimed_at: datetime | None = None


@dataclass(frozen=True)
class MailboxConnection:
    """Summary: An OAuth grant that lets NudgeFlow send as the account's mailbox.

    Importance: Sending always goes through the owner's own address.
    Alternatives: Send every reminder from a shared system mailbox.
    """

    id: int
    account_id: int
    provider: str
    address: str
    access_token: str
    refresh_token: str | None
    expires_at: datetime | None
    active: bool
    last_tested_at: datetime | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class OutgoingMessage:
    """A rendered email ready to hand to a provider."""

    to: str
    subject: str
    html: str
    text: str


@dataclass(frozen=True)
class Activity:
    """Summary: Append-only record of something the core did.

    Importance: Feeds the activity timeline shown to account owners.
    Alternatives: Rely on application logs only.
    """

    account_id: int
    type: str
    description: str
    created_at: datetime
    invoice_id: int | None = None
    customer_id: int | None = None
    id: int | None = None
