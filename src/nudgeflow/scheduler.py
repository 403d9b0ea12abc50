"""Summary: Reminder scheduling from invoice due dates and account policy.

Importance: Decides when each reminder fires and keeps one live schedule
entry per invoice and reminder kind.
Alternatives: Compute fire times on the fly during every sweep.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta

from nudgeflow.activity import ActivityRecorder
from nudgeflow.errors import ConfigurationConflict
from nudgeflow.models import (
    ACTIVITY_NUDGE_CANCELLED,
    REMINDER_KINDS,
    STATE_FAILED,
    STATE_SCHEDULED,
    STATE_SENT,
    Invoice,
    ReminderPolicy,
    ScheduleEntry,
)
from nudgeflow.storage.base import ReminderStore


logger = logging.getLogger(__name__)

SATURDAY = 5


def roll_to_weekday(moment: datetime) -> datetime:
    """Move a weekend moment to the following Monday, keeping the clock time."""

    if moment.weekday() >= SATURDAY:
        return moment + timedelta(days=7 - moment.weekday())
    return moment


def compute_fire_time(
    due_date: datetime,
    offset_days: int,
    policy: ReminderPolicy,
    start_hour: int = 9,
    end_hour: int = 17,
) -> datetime:
    """Summary: Compute the adjusted fire time for one reminder.

    Importance: Applies the weekday roll first, then clamps into the business
    window; a clamp past the end of the day may land on a weekend, which is
    rolled again.
    Alternatives: Fire exactly ``offset_days`` after the due date.
    """

    moment = due_date + timedelta(days=offset_days)
    if policy.weekdays_only:
        moment = roll_to_weekday(moment)
    if policy.business_hours_only:
        opening = time(hour=start_hour)
        closing = time(hour=end_hour)
        clock = moment.time()
        if clock < opening:
            moment = datetime.combine(moment.date(), opening)
        elif clock >= closing:
            moment = datetime.combine(moment.date() + timedelta(days=1), opening)
            if policy.weekdays_only:
                moment = roll_to_weekday(moment)
    return moment


@dataclass
class ReconcileResult:
    """Outcome of reconciling one invoice's schedule."""

    invoice_id: int
    created: list[int] = field(default_factory=list)
    updated: list[int] = field(default_factory=list)
    cancelled: list[int] = field(default_factory=list)
    unchanged: list[int] = field(default_factory=list)
    conflicts: list[ConfigurationConflict] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return {
            "invoice_id": self.invoice_id,
            "created": self.created,
            "updated": self.updated,
            "cancelled": self.cancelled,
            "unchanged": self.unchanged,
            "conflicts": [str(conflict) for conflict in self.conflicts],
        }


@dataclass(frozen=True)
class ReminderScheduler:
    """Summary: Upserts schedule entries so they match the invoice and policy.

    Importance: Running it repeatedly with unchanged inputs changes nothing.
    Alternatives: Delete and recreate every entry on each change.
    """

    store: ReminderStore
    activities: ActivityRecorder
    business_hours_start: int = 9
    business_hours_end: int = 17

    def reconcile(self, invoice: Invoice, policy: ReminderPolicy) -> ReconcileResult:
        """Summary: Bring an invoice's schedule in line with its due date and policy.

        Importance: Paid invoices lose every still-scheduled reminder; sent
        reminders are never touched; out-of-order kinds are reported, not fired.
        Alternatives: Raise on the first conflicting kind.
        """

        result = ReconcileResult(invoice_id=invoice.id)
        entries = self.store.list_entries_for_invoice(invoice.id)
        if invoice.is_paid:
            for entry in entries:
                self._cancel(entry, invoice, "invoice was paid", result)
            return result

        previous_kind: str | None = None
        previous_time: datetime | None = None
        for kind in REMINDER_KINDS:
            kind_entries = [entry for entry in entries if entry.kind == kind]
            offset = policy.offset_for(kind)
            if not policy.auto_enabled or offset is None:
                for entry in kind_entries:
                    self._cancel(entry, invoice, "reminder is disabled", result)
                continue
            fire_at = compute_fire_time(
                invoice.due_date,
                offset,
                policy,
                self.business_hours_start,
                self.business_hours_end,
            )
            if previous_time is not None and fire_at <= previous_time:
                conflict = ConfigurationConflict(invoice.id, kind, previous_kind or "")
                logger.warning("Skipping reminder: %s", conflict)
                result.conflicts.append(conflict)
                for entry in kind_entries:
                    self._cancel(entry, invoice, "reminder would fire out of order", result)
                continue
            previous_kind, previous_time = kind, fire_at
            self._upsert(invoice, kind, fire_at, kind_entries, result)
        if result.created or result.updated or result.cancelled:
            logger.info(
                "Reconciled invoice %s: %s created, %s updated, %s cancelled.",
                invoice.id,
                len(result.created),
                len(result.updated),
                len(result.cancelled),
            )
        return result

    def cancel_all(self, invoice_id: int, reason: str, invoice: Invoice | None = None) -> ReconcileResult:
        """Cancel every still-scheduled entry of an invoice, e.g. when it is deleted."""

        result = ReconcileResult(invoice_id=invoice_id)
        for entry in self.store.list_entries_for_invoice(invoice_id):
            self._cancel(entry, invoice, reason, result)
        return result

    def _upsert(
        self,
        invoice: Invoice,
        kind: str,
        fire_at: datetime,
        kind_entries: list[ScheduleEntry],
        result: ReconcileResult,
    ) -> None:
        sent = [entry for entry in kind_entries if entry.state == STATE_SENT]
        if sent:
            result.unchanged.append(sent[0].id)
            return
        scheduled = [entry for entry in kind_entries if entry.state == STATE_SCHEDULED]
        if scheduled:
            entry = scheduled[0]
            if entry.fire_at == fire_at:
                result.unchanged.append(entry.id)
            elif self.store.update_scheduled_fire_at(entry.id, fire_at):
                result.updated.append(entry.id)
            return
        failed = [entry for entry in kind_entries if entry.state == STATE_FAILED]
        if failed and failed[-1].fire_at == fire_at:
            # Failed stays terminal until the invoice or policy moves the fire time.
            result.unchanged.append(failed[-1].id)
            return
        entry_id = self.store.create_schedule_entry(invoice.id, kind, fire_at)
        if entry_id is None:
            logger.debug("Live %s entry for invoice %s already exists.", kind, invoice.id)
            return
        result.created.append(entry_id)

    def _cancel(
        self,
        entry: ScheduleEntry,
        invoice: Invoice | None,
        reason: str,
        result: ReconcileResult,
    ) -> None:
        if entry.state != STATE_SCHEDULED or not self.store.cancel_schedule_entry(entry.id):
            return
        result.cancelled.append(entry.id)
        if invoice is None:
            logger.info("Cancelled %s reminder for removed invoice %s.", entry.kind, entry.invoice_id)
            return
        self.activities.record(
            invoice.account_id,
            ACTIVITY_NUDGE_CANCELLED,
            f"Cancelled {entry.kind} reminder for invoice {invoice.number}: {reason}",
            invoice_id=invoice.id,
            customer_id=invoice.customer_id,
        )
