"""Summary: Tests for fire-time computation and schedule reconciliation.

Importance: Reminders must fire at the right moment, exactly once per kind.
Alternatives: Verify schedules manually against a calendar.
"""

from __future__ import annotations

from datetime import datetime

from nudgeflow.models import (
    ACTIVITY_NUDGE_CANCELLED,
    KIND_FINAL,
    KIND_FIRST,
    KIND_SECOND,
    STATE_CANCELLED,
    STATE_FAILED,
    STATE_SCHEDULED,
    STATE_SENT,
    ReminderPolicy,
)
from nudgeflow.scheduler import compute_fire_time, roll_to_weekday


def _policy(**overrides: object) -> ReminderPolicy:
    return ReminderPolicy(account_id=1, **overrides)


def test_first_reminder_fires_at_opening_time() -> None:
    """Summary: A midnight due date plus seven days lands at 09:00.

    Importance: Reminders should never be delivered in the middle of the night.
    Alternatives: Keep the due date's clock time.
    """

    fire_at = compute_fire_time(datetime(2025, 1, 1), 7, _policy())
    assert fire_at == datetime(2025, 1, 8, 9, 0)


def test_weekend_moves_to_monday() -> None:
    policy = _policy(business_hours_only=False)
    assert compute_fire_time(datetime(2025, 1, 4, 10, 0), 0, policy) == datetime(2025, 1, 6, 10, 0)
    assert roll_to_weekday(datetime(2025, 1, 5, 14, 30)) == datetime(2025, 1, 6, 14, 30)
    assert roll_to_weekday(datetime(2025, 1, 7, 14, 30)) == datetime(2025, 1, 7, 14, 30)


def test_after_hours_friday_rolls_past_weekend() -> None:
    """Summary: Clamping past Friday's close lands on Saturday, which rolls again.

    Importance: The clamp must not produce a weekend send.
    Alternatives: Apply the weekday roll only once.
    """

    fire_at = compute_fire_time(datetime(2025, 1, 10, 18, 0), 0, _policy())
    assert fire_at == datetime(2025, 1, 13, 9, 0)


def test_business_hours_without_weekday_rule() -> None:
    policy = _policy(weekdays_only=False)
    assert compute_fire_time(datetime(2025, 1, 10, 17, 0), 0, policy) == datetime(2025, 1, 11, 9, 0)
    assert compute_fire_time(datetime(2025, 1, 8, 7, 30), 0, policy) == datetime(2025, 1, 8, 9, 0)
    assert compute_fire_time(datetime(2025, 1, 8, 16, 59), 0, policy) == datetime(2025, 1, 8, 16, 59)


def test_no_adjustments_when_flags_disabled() -> None:
    policy = _policy(business_hours_only=False, weekdays_only=False)
    assert compute_fire_time(datetime(2025, 1, 4, 23, 0), 0, policy) == datetime(2025, 1, 4, 23, 0)


def test_reconcile_creates_one_entry_per_kind(context, make_invoice, account_id) -> None:
    """Summary: Reconciling a fresh invoice plans first, second and final reminders.

    Importance: Confirms default offsets and that no entry precedes the due date.
    Alternatives: Plan only the next reminder.
    """

    invoice = make_invoice()
    policy = context.store.get_reminder_policy(account_id)
    result = context.scheduler.reconcile(invoice, policy)

    entries = context.store.list_entries_for_invoice(invoice.id)
    assert len(result.created) == 3
    assert [(entry.kind, entry.fire_at) for entry in entries] == [
        (KIND_FIRST, datetime(2025, 1, 8, 9, 0)),
        (KIND_SECOND, datetime(2025, 1, 15, 9, 0)),
        (KIND_FINAL, datetime(2025, 1, 22, 9, 0)),
    ]
    assert all(entry.fire_at >= invoice.due_date for entry in entries)
    assert all(entry.state == STATE_SCHEDULED for entry in entries)


def test_reconcile_is_idempotent(context, make_invoice, account_id) -> None:
    invoice = make_invoice()
    policy = context.store.get_reminder_policy(account_id)
    context.scheduler.reconcile(invoice, policy)

    again = context.scheduler.reconcile(invoice, policy)

    assert again.created == []
    assert again.updated == []
    assert again.cancelled == []
    assert len(again.unchanged) == 3
    assert len(context.store.list_entries_for_invoice(invoice.id)) == 3


def test_due_date_change_moves_scheduled_entries(context, make_invoice, account_id) -> None:
    invoice = make_invoice()
    policy = context.store.get_reminder_policy(account_id)
    context.scheduler.reconcile(invoice, policy)

    context.store.update_invoice_due_date(invoice.id, datetime(2025, 2, 3))
    moved = context.store.get_invoice(invoice.id)
    result = context.scheduler.reconcile(moved, policy)

    assert len(result.updated) == 3
    first = context.store.list_entries_for_invoice(invoice.id)[0]
    assert first.fire_at == datetime(2025, 2, 10, 9, 0)


def test_paid_invoice_cancels_only_scheduled_entries(context, make_invoice, account_id, clock) -> None:
    """Summary: Paying an invoice cancels pending reminders but keeps sent history.

    Importance: Customers who paid must not be nudged again, and sent records
    are never rewritten.
    Alternatives: Delete all entries for paid invoices.
    """

    invoice = make_invoice()
    store = context.store
    policy = store.get_reminder_policy(account_id)
    context.scheduler.reconcile(invoice, policy)
    first = store.list_entries_for_invoice(invoice.id)[0]
    assert store.claim_schedule_entry(first.id, "lease", clock(), clock())
    assert store.complete_schedule_entry(first.id, "lease", STATE_SENT, sent_at=clock(), count_attempt=True)

    store.update_invoice_status(invoice.id, "paid", paid_date=clock())
    result = context.scheduler.reconcile(store.get_invoice(invoice.id), policy)

    states = {entry.kind: entry.state for entry in store.list_entries_for_invoice(invoice.id)}
    assert states == {KIND_FIRST: STATE_SENT, KIND_SECOND: STATE_CANCELLED, KIND_FINAL: STATE_CANCELLED}
    assert len(result.cancelled) == 2
    cancelled_activities = [
        activity
        for activity in context.activities.list_recent(account_id)
        if activity.type == ACTIVITY_NUDGE_CANCELLED
    ]
    assert len(cancelled_activities) == 2


def test_out_of_order_offsets_report_conflict(context, make_invoice, account_id) -> None:
    """Summary: A second reminder configured before the first is reported and skipped.

    Importance: Customers must never receive the second notice before the first.
    Alternatives: Silently reorder the kinds.
    """

    invoice = make_invoice()
    policy = ReminderPolicy(account_id=account_id, first_offset_days=14, second_offset_days=7)
    result = context.scheduler.reconcile(invoice, policy)

    assert len(result.conflicts) == 1
    conflict = result.conflicts[0]
    assert conflict.kind == KIND_SECOND
    assert conflict.previous_kind == KIND_FIRST
    kinds = [entry.kind for entry in context.store.list_entries_for_invoice(invoice.id)]
    assert kinds == [KIND_FIRST, KIND_FINAL]


def test_kinds_rolled_onto_the_same_time_report_conflict(context, make_invoice, account_id) -> None:
    """Summary: Saturday and Sunday reminders both rolling to Monday 09:00 conflict.

    Importance: Two kinds at the same moment have no guaranteed delivery order.
    Alternatives: Nudge the later kind forward by a minute.
    """

    invoice = make_invoice(due_date=datetime(2025, 1, 6))
    policy = ReminderPolicy(
        account_id=account_id, first_offset_days=5, second_offset_days=6, final_offset_days=30
    )
    result = context.scheduler.reconcile(invoice, policy)

    assert [(conflict.kind, conflict.previous_kind) for conflict in result.conflicts] == [
        (KIND_SECOND, KIND_FIRST)
    ]
    entries = context.store.list_entries_for_invoice(invoice.id)
    assert [(entry.kind, entry.fire_at) for entry in entries] == [
        (KIND_FIRST, datetime(2025, 1, 13, 9)),
        (KIND_FINAL, datetime(2025, 2, 5, 9)),
    ]


def test_disabled_kind_is_cancelled(context, make_invoice, account_id) -> None:
    invoice = make_invoice()
    store = context.store
    context.scheduler.reconcile(invoice, store.get_reminder_policy(account_id))

    policy = ReminderPolicy(account_id=account_id, final_offset_days=None)
    result = context.scheduler.reconcile(invoice, policy)

    assert len(result.cancelled) == 1
    final = [entry for entry in store.list_entries_for_invoice(invoice.id) if entry.kind == KIND_FINAL]
    assert final[0].state == STATE_CANCELLED


def test_auto_disabled_cancels_everything(context, make_invoice, account_id) -> None:
    invoice = make_invoice()
    context.scheduler.reconcile(invoice, context.store.get_reminder_policy(account_id))

    result = context.scheduler.reconcile(invoice, ReminderPolicy(account_id=account_id, auto_enabled=False))

    assert len(result.cancelled) == 3


def test_failed_entry_is_recreated_only_when_fire_time_changes(
    context, make_invoice, account_id, clock
) -> None:
    """Summary: A failed reminder stays failed until the schedule actually moves.

    Importance: Reconciling must not resurrect reminders that failed for a reason
    the owner has not addressed.
    Alternatives: Retry failed reminders on every reconcile.
    """

    invoice = make_invoice()
    store = context.store
    policy = store.get_reminder_policy(account_id)
    context.scheduler.reconcile(invoice, policy)
    first = store.list_entries_for_invoice(invoice.id)[0]
    store.claim_schedule_entry(first.id, "lease", clock(), clock())
    store.complete_schedule_entry(first.id, "lease", STATE_FAILED, failure_reason="no_connection")

    unchanged = context.scheduler.reconcile(invoice, policy)
    assert unchanged.created == []

    store.update_invoice_due_date(invoice.id, datetime(2025, 1, 2))
    moved = context.scheduler.reconcile(store.get_invoice(invoice.id), policy)

    firsts = [entry for entry in store.list_entries_for_invoice(invoice.id) if entry.kind == KIND_FIRST]
    assert len(moved.created) == 1
    assert [entry.state for entry in firsts] == [STATE_FAILED, STATE_SCHEDULED]


def test_cancel_all_for_deleted_invoice(context, make_invoice, account_id) -> None:
    invoice = make_invoice()
    context.scheduler.reconcile(invoice, context.store.get_reminder_policy(account_id))

    result = context.scheduler.cancel_all(invoice.id, "invoice was deleted")

    assert len(result.cancelled) == 3
    assert context.activities.list_recent(account_id) == []
