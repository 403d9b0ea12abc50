"""Summary: SQLite storage implementation for NudgeFlow.

Importance: Provides local-first persistence for accounts, invoices, schedule
entries, mailbox connections and the activity log.
Alternatives: Use an ORM or an external database immediately.
"""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Iterator

from nudgeflow.models import (
    INVOICE_PENDING,
    INVOICE_STATUSES,
    KIND_FINAL,
    KIND_FIRST,
    KIND_SECOND,
    STATE_CANCELLED,
    STATE_SCHEDULED,
    TIER_FREE,
    Account,
    Activity,
    Customer,
    EmailTemplate,
    Invoice,
    ReminderPolicy,
    ScheduleEntry,
)
from nudgeflow.storage.base import ReminderStore, StoredConnection


DEFAULT_TEMPLATES = (
    EmailTemplate(
        kind=KIND_FIRST,
        subject="Payment Reminder: Invoice {{invoiceNumber}}",
        body=(
            "Dear {{customerName}},\n\nThis is a friendly reminder that invoice {{invoiceNumber}} "
            "for ${{amount}} is now due. Please process payment at your earliest convenience."
            "\n\nThank you for your business!"
        ),
    ),
    EmailTemplate(
        kind=KIND_SECOND,
        subject="Second Notice: Invoice {{invoiceNumber}} Past Due",
        body=(
            "Dear {{customerName}},\n\nInvoice {{invoiceNumber}} for ${{amount}} is now past due. "
            "Please remit payment immediately to avoid any late fees.\n\n"
            "If you have any questions, please contact us.\n\nThank you."
        ),
    ),
    EmailTemplate(
        kind=KIND_FINAL,
        subject="FINAL NOTICE: Invoice {{invoiceNumber}} - Immediate Action Required",
        body=(
            "Dear {{customerName}},\n\nThis is our final notice regarding invoice {{invoiceNumber}} "
            "for ${{amount}}. Payment is seriously past due.\n\nPlease remit payment immediately "
            "or contact us to discuss payment arrangements.\n\n"
            "Failure to respond may result in collection activities."
        ),
    ),
)

# Templates stored under this account id apply to every account without its own.
DEFAULT_TEMPLATE_ACCOUNT = 0

_ENTRY_COLUMNS = (
    "id, invoice_id, kind, fire_at, state, sent_at, attempts, last_error, "
    "failure_reason, claim_token, claimed_at"
)
_CONNECTION_COLUMNS = (
    "id, account_id, provider, address, access_token, refresh_token, expires_at, "
    "active, last_tested_at, created_at"
)


class SqliteStore(ReminderStore):
    """Summary: SQLite-backed storage for NudgeFlow.

    Importance: Enables local-first persistence with minimal dependencies.
    Alternatives: Use Postgres and SQLAlchemy from day one.
    """

    def __init__(self, db_path: str, busy_timeout: float = 30.0) -> None:
        """Summary: Initialize the storage with a database path.

        Importance: Allows configurable database location per environment.
        Alternatives: Hardcode a default path in the class.
        """

        self._db_path = Path(db_path)
        self._busy_timeout = busy_timeout

    def initialize(self) -> None:
        """Summary: Create tables if they do not exist and seed default templates.

        Importance: Ensures the database is ready for scheduling and delivery.
        Alternatives: Run migrations using a dedicated migration tool.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS accounts (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    display_name TEXT NOT NULL,
                    email TEXT NOT NULL UNIQUE,
                    company_name TEXT,
                    tier TEXT NOT NULL DEFAULT 'free',
                    hide_footer_requested INTEGER NOT NULL DEFAULT 0
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS customers (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    account_id INTEGER NOT NULL,
                    name TEXT NOT NULL,
                    email TEXT
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS invoices (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    account_id INTEGER NOT NULL,
                    customer_id INTEGER NOT NULL,
                    number TEXT NOT NULL,
                    amount TEXT NOT NULL,
                    description TEXT,
                    issue_date TEXT NOT NULL,
                    due_date TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    paid_date TEXT
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS reminder_policies (
                    account_id INTEGER PRIMARY KEY,
                    first_offset_days INTEGER,
                    second_offset_days INTEGER,
                    final_offset_days INTEGER,
                    auto_enabled INTEGER NOT NULL DEFAULT 1,
                    business_hours_only INTEGER NOT NULL DEFAULT 1,
                    weekdays_only INTEGER NOT NULL DEFAULT 1
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS email_templates (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    account_id INTEGER NOT NULL DEFAULT 0,
                    kind TEXT NOT NULL,
                    subject TEXT NOT NULL,
                    body TEXT NOT NULL,
                    UNIQUE(account_id, kind)
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS schedule_entries (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    invoice_id INTEGER NOT NULL,
                    kind TEXT NOT NULL,
                    fire_at TEXT NOT NULL,
                    state TEXT NOT NULL DEFAULT 'scheduled',
                    sent_at TEXT,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    last_error TEXT,
                    claim_token TEXT,
                    claimed_at TEXT,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            # At most one live entry per (invoice, kind); failed and cancelled rows are history.
            cursor.execute(
                """
                CREATE UNIQUE INDEX IF NOT EXISTS idx_schedule_entries_live
                ON schedule_entries(invoice_id, kind)
                WHERE state IN ('scheduled', 'sent')
                """
            )
            cursor.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_schedule_entries_due
                ON schedule_entries(state, fire_at)
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS mailbox_connections (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    account_id INTEGER NOT NULL,
                    provider TEXT NOT NULL,
                    address TEXT NOT NULL,
                    access_token TEXT NOT NULL,
                    refresh_token TEXT,
                    expires_at TEXT,
                    active INTEGER NOT NULL DEFAULT 1,
                    last_tested_at TEXT,
                    created_at TEXT
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS activities (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    account_id INTEGER NOT NULL,
                    type TEXT NOT NULL,
                    description TEXT NOT NULL,
                    invoice_id INTEGER,
                    customer_id INTEGER,
                    created_at TEXT NOT NULL
                )
                """
            )
            cursor.executemany(
                """
                INSERT OR IGNORE INTO email_templates (account_id, kind, subject, body)
                VALUES (?, ?, ?, ?)
                """,
                [
                    (DEFAULT_TEMPLATE_ACCOUNT, template.kind, template.subject, template.body)
                    for template in DEFAULT_TEMPLATES
                ],
            )
            connection.commit()
        self._ensure_column("schedule_entries", "failure_reason", "TEXT")

    def create_account(
        self,
        display_name: str,
        email: str,
        company_name: str = "",
        tier: str = TIER_FREE,
    ) -> int:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                INSERT INTO accounts (display_name, email, company_name, tier)
                VALUES (?, ?, ?, ?)
                """,
                (display_name, email, company_name, tier),
            )
            account_id = cursor.lastrowid
            connection.commit()
        return int(account_id)

    def ensure_account(self, display_name: str, email: str, company_name: str = "") -> int:
        """Summary: Return the account id for an email, creating it when missing.

        Importance: Gives single-owner deployments a stable default account.
        Alternatives: Require explicit account provisioning.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute("SELECT id FROM accounts WHERE email = ?", (email,))
            row = cursor.fetchone()
            if row:
                return int(row[0])
            cursor.execute(
                "INSERT INTO accounts (display_name, email, company_name) VALUES (?, ?, ?)",
                (display_name, email, company_name),
            )
            account_id = cursor.lastrowid
            connection.commit()
        return int(account_id)

    def get_account(self, account_id: int) -> Account | None:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                SELECT id, display_name, email, company_name, tier, hide_footer_requested
                FROM accounts WHERE id = ?
                """,
                (account_id,),
            )
            row = cursor.fetchone()
        if not row:
            return None
        return Account(
            id=row[0],
            display_name=row[1],
            email=row[2],
            company_name=row[3] or "",
            tier=row[4],
            hide_footer_requested=bool(row[5]),
        )

    def update_account_tier(self, account_id: int, tier: str) -> bool:
        """Summary: Change an account's tier, resetting the footer preference on free.

        Importance: A single statement means a concurrent preference write can
        never leave a free account with the footer hidden.
        Alternatives: Read the account, then write tier and preference separately.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                UPDATE accounts
                SET tier = ?,
                    hide_footer_requested = CASE WHEN ? = 'free' THEN 0 ELSE hide_footer_requested END
                WHERE id = ?
                """,
                (tier, tier, account_id),
            )
            updated = cursor.rowcount > 0
            connection.commit()
        return updated

    def set_hide_footer(self, account_id: int, hide: bool) -> bool:
        """Summary: Store the footer preference only while the tier allows it.

        Importance: The tier check and the write happen in one statement.
        Alternatives: Check the tier in Python before updating.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                UPDATE accounts SET hide_footer_requested = ?
                WHERE id = ? AND tier IN ('pro', 'enterprise')
                """,
                (int(hide), account_id),
            )
            updated = cursor.rowcount > 0
            connection.commit()
        return updated

    def add_customer(self, account_id: int, name: str, email: str) -> int:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                "INSERT INTO customers (account_id, name, email) VALUES (?, ?, ?)",
                (account_id, name, email),
            )
            customer_id = cursor.lastrowid
            connection.commit()
        return int(customer_id)

    def get_customer(self, customer_id: int) -> Customer | None:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                "SELECT id, account_id, name, email FROM customers WHERE id = ?",
                (customer_id,),
            )
            row = cursor.fetchone()
        if not row:
            return None
        return Customer(id=row[0], account_id=row[1], name=row[2], email=row[3] or "")

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
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                INSERT INTO invoices (
                    account_id, customer_id, number, amount, description,
                    issue_date, due_date, status
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    account_id,
                    customer_id,
                    number,
                    str(amount),
                    description,
                    _format_dt(issue_date or due_date),
                    _format_dt(due_date),
                    status,
                ),
            )
            invoice_id = cursor.lastrowid
            connection.commit()
        return int(invoice_id)

    def get_invoice(self, invoice_id: int) -> Invoice | None:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                SELECT id, account_id, customer_id, number, amount, status,
                       issue_date, due_date, description, paid_date
                FROM invoices WHERE id = ?
                """,
                (invoice_id,),
            )
            row = cursor.fetchone()
        if not row:
            return None
        return Invoice(
            id=row[0],
            account_id=row[1],
            customer_id=row[2],
            number=row[3],
            amount=Decimal(row[4]),
            status=row[5],
            issue_date=_parse_dt(row[6]),
            due_date=_parse_dt(row[7]),
            description=row[8],
            paid_date=_parse_dt(row[9]),
        )

    def list_invoice_ids(self, account_id: int) -> list[int]:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                "SELECT id FROM invoices WHERE account_id = ? ORDER BY id",
                (account_id,),
            )
            rows = cursor.fetchall()
        return [row[0] for row in rows]

    def update_invoice_status(
        self, invoice_id: int, status: str, paid_date: datetime | None = None
    ) -> bool:
        if status not in INVOICE_STATUSES:
            raise ValueError(f"Unknown invoice status: {status}")
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                "UPDATE invoices SET status = ?, paid_date = ? WHERE id = ?",
                (status, _format_dt(paid_date), invoice_id),
            )
            updated = cursor.rowcount > 0
            connection.commit()
        return updated

    def update_invoice_due_date(self, invoice_id: int, due_date: datetime) -> bool:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                "UPDATE invoices SET due_date = ? WHERE id = ?",
                (_format_dt(due_date), invoice_id),
            )
            updated = cursor.rowcount > 0
            connection.commit()
        return updated

    def get_reminder_policy(self, account_id: int) -> ReminderPolicy:
        """Summary: Load the reminder policy for an account.

        Importance: Accounts without a stored policy get the 7/14/21 defaults.
        Alternatives: Insert a policy row when the account is created.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                SELECT first_offset_days, second_offset_days, final_offset_days,
                       auto_enabled, business_hours_only, weekdays_only
                FROM reminder_policies WHERE account_id = ?
                """,
                (account_id,),
            )
            row = cursor.fetchone()
        if not row:
            return ReminderPolicy(account_id=account_id)
        return ReminderPolicy(
            account_id=account_id,
            first_offset_days=row[0],
            second_offset_days=row[1],
            final_offset_days=row[2],
            auto_enabled=bool(row[3]),
            business_hours_only=bool(row[4]),
            weekdays_only=bool(row[5]),
        )

    def save_reminder_policy(self, policy: ReminderPolicy) -> None:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                INSERT INTO reminder_policies (
                    account_id, first_offset_days, second_offset_days, final_offset_days,
                    auto_enabled, business_hours_only, weekdays_only
                )
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(account_id) DO UPDATE SET
                    first_offset_days = excluded.first_offset_days,
                    second_offset_days = excluded.second_offset_days,
                    final_offset_days = excluded.final_offset_days,
                    auto_enabled = excluded.auto_enabled,
                    business_hours_only = excluded.business_hours_only,
                    weekdays_only = excluded.weekdays_only
                """,
                (
                    policy.account_id,
                    policy.first_offset_days,
                    policy.second_offset_days,
                    policy.final_offset_days,
                    int(policy.auto_enabled),
                    int(policy.business_hours_only),
                    int(policy.weekdays_only),
                ),
            )
            connection.commit()

    def get_template(self, kind: str, account_id: int | None = None) -> EmailTemplate | None:
        """Summary: Fetch the template for a reminder kind.

        Importance: An account's own template wins over the seeded default.
        Alternatives: Copy default templates into every account.
        """

        scope = account_id or DEFAULT_TEMPLATE_ACCOUNT
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                SELECT kind, subject, body FROM email_templates
                WHERE kind = ? AND account_id IN (?, ?)
                ORDER BY account_id = ? DESC
                LIMIT 1
                """,
                (kind, scope, DEFAULT_TEMPLATE_ACCOUNT, scope),
            )
            row = cursor.fetchone()
        if not row:
            return None
        return EmailTemplate(kind=row[0], subject=row[1], body=row[2])

    def save_template(self, template: EmailTemplate, account_id: int = DEFAULT_TEMPLATE_ACCOUNT) -> None:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                INSERT INTO email_templates (account_id, kind, subject, body)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(account_id, kind) DO UPDATE SET
                    subject = excluded.subject,
                    body = excluded.body
                """,
                (account_id, template.kind, template.subject, template.body),
            )
            connection.commit()

    def delete_template(self, kind: str, account_id: int = DEFAULT_TEMPLATE_ACCOUNT) -> None:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                "DELETE FROM email_templates WHERE kind = ? AND account_id = ?",
                (kind, account_id),
            )
            connection.commit()

    def list_entries_for_invoice(self, invoice_id: int) -> list[ScheduleEntry]:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                f"SELECT {_ENTRY_COLUMNS} FROM schedule_entries WHERE invoice_id = ? ORDER BY id",
                (invoice_id,),
            )
            rows = cursor.fetchall()
        return [_row_to_entry(row) for row in rows]

    def get_schedule_entry(self, entry_id: int) -> ScheduleEntry | None:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                f"SELECT {_ENTRY_COLUMNS} FROM schedule_entries WHERE id = ?",
                (entry_id,),
            )
            row = cursor.fetchone()
        return _row_to_entry(row) if row else None

    def create_schedule_entry(self, invoice_id: int, kind: str, fire_at: datetime) -> int | None:
        """Summary: Insert a scheduled entry for an invoice and kind.

        Importance: Returns None when a live entry already exists, so two
        concurrent reconciles cannot both create one.
        Alternatives: Lock the invoice row before inserting.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            try:
                cursor.execute(
                    """
                    INSERT INTO schedule_entries (invoice_id, kind, fire_at, state)
                    VALUES (?, ?, ?, ?)
                    """,
                    (invoice_id, kind, _format_dt(fire_at), STATE_SCHEDULED),
                )
            except sqlite3.IntegrityError:
                connection.rollback()
                return None
            entry_id = cursor.lastrowid
            connection.commit()
        return int(entry_id)

    def update_scheduled_fire_at(self, entry_id: int, fire_at: datetime) -> bool:
        return self._update_entry(
            """
            UPDATE schedule_entries SET fire_at = ?, updated_at = CURRENT_TIMESTAMP
            WHERE id = ? AND state = 'scheduled'
            """,
            (_format_dt(fire_at), entry_id),
        )

    def cancel_schedule_entry(self, entry_id: int) -> bool:
        """Cancel an entry if it is still scheduled, regardless of any lease."""

        return self._update_entry(
            """
            UPDATE schedule_entries
            SET state = ?, claim_token = NULL, claimed_at = NULL, updated_at = CURRENT_TIMESTAMP
            WHERE id = ? AND state = 'scheduled'
            """,
            (STATE_CANCELLED, entry_id),
        )

    def list_due_entries(self, now: datetime, limit: int | None = None) -> list[ScheduleEntry]:
        query = (
            f"SELECT {_ENTRY_COLUMNS} FROM schedule_entries "
            "WHERE state = 'scheduled' AND fire_at <= ? ORDER BY fire_at, id"
        )
        params: list[object] = [_format_dt(now)]
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(query, params)
            rows = cursor.fetchall()
        return [_row_to_entry(row) for row in rows]

    def list_upcoming_entries(self, account_id: int, until: datetime) -> list[ScheduleEntry]:
        """Summary: List an account's scheduled entries firing up to a cutoff.

        Importance: Feeds the upcoming reminders list, including entries that
        are due but not yet picked up by the sweep.
        Alternatives: Filter all entries in Python.
        """

        columns = ", ".join(f"s.{column.strip()}" for column in _ENTRY_COLUMNS.split(","))
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                f"""
                SELECT {columns}
                FROM schedule_entries s
                JOIN invoices i ON i.id = s.invoice_id
                WHERE i.account_id = ? AND s.state = 'scheduled' AND s.fire_at <= ?
                ORDER BY s.fire_at, s.id
                """,
                (account_id, _format_dt(until)),
            )
            rows = cursor.fetchall()
        return [_row_to_entry(row) for row in rows]

    def claim_schedule_entry(
        self, entry_id: int, token: str, now: datetime, stale_before: datetime
    ) -> bool:
        """Summary: Take the delivery lease on a scheduled entry.

        Importance: Exactly one dispatcher wins; a lease older than
        ``stale_before`` is treated as abandoned.
        Alternatives: Hold a process-wide lock per entry.
        """

        return self._update_entry(
            """
            UPDATE schedule_entries
            SET claim_token = ?, claimed_at = ?, updated_at = CURRENT_TIMESTAMP
            WHERE id = ? AND state = 'scheduled'
              AND (claim_token IS NULL OR claimed_at IS NULL OR claimed_at < ?)
            """,
            (token, _format_dt(now), entry_id, _format_dt(stale_before)),
        )

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
        """Summary: Move a leased entry to a terminal state.

        Importance: Only the lease holder may finish an entry, and only while it
        is still scheduled.
        Alternatives: Unconditional UPDATE by id.
        """

        return self._update_entry(
            """
            UPDATE schedule_entries
            SET state = ?, sent_at = ?, failure_reason = ?,
                last_error = COALESCE(?, last_error),
                attempts = attempts + ?,
                claim_token = NULL, claimed_at = NULL, updated_at = CURRENT_TIMESTAMP
            WHERE id = ? AND state = 'scheduled' AND claim_token = ?
            """,
            (
                state,
                _format_dt(sent_at),
                failure_reason,
                last_error,
                1 if count_attempt else 0,
                entry_id,
                token,
            ),
        )

    def release_schedule_entry(self, entry_id: int, token: str, last_error: str) -> bool:
        """Give the lease back after a transient failure, counting the attempt."""

        return self._update_entry(
            """
            UPDATE schedule_entries
            SET attempts = attempts + 1, last_error = ?,
                claim_token = NULL, claimed_at = NULL, updated_at = CURRENT_TIMESTAMP
            WHERE id = ? AND state = 'scheduled' AND claim_token = ?
            """,
            (last_error, entry_id, token),
        )

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
        """Summary: Store a new connection and deactivate the account's others.

        Importance: An account sends through exactly one mailbox at a time.
        Alternatives: Allow several active connections and pick one at send time.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                "UPDATE mailbox_connections SET active = 0 WHERE account_id = ? AND active = 1",
                (account_id,),
            )
            cursor.execute(
                """
                INSERT INTO mailbox_connections (
                    account_id, provider, address, access_token, refresh_token,
                    expires_at, active, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, 1, ?)
                """,
                (
                    account_id,
                    provider,
                    address,
                    access_token,
                    refresh_token,
                    _format_dt(expires_at),
                    _format_dt(created_at),
                ),
            )
            connection_id = cursor.lastrowid
            connection.commit()
        return int(connection_id)

    def get_mailbox_connection(self, connection_id: int) -> StoredConnection | None:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                f"SELECT {_CONNECTION_COLUMNS} FROM mailbox_connections WHERE id = ?",
                (connection_id,),
            )
            row = cursor.fetchone()
        return _row_to_connection(row) if row else None

    def get_active_mailbox_connection(self, account_id: int) -> StoredConnection | None:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                f"""
                SELECT {_CONNECTION_COLUMNS} FROM mailbox_connections
                WHERE account_id = ? AND active = 1
                ORDER BY id DESC LIMIT 1
                """,
                (account_id,),
            )
            row = cursor.fetchone()
        return _row_to_connection(row) if row else None

    def list_mailbox_connections(self, account_id: int) -> list[StoredConnection]:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                f"""
                SELECT {_CONNECTION_COLUMNS} FROM mailbox_connections
                WHERE account_id = ? ORDER BY id DESC
                """,
                (account_id,),
            )
            rows = cursor.fetchall()
        return [_row_to_connection(row) for row in rows]

    def update_connection_tokens(
        self,
        connection_id: int,
        access_token: str,
        refresh_token: str | None,
        expires_at: datetime | None,
    ) -> None:
        """Persist refreshed tokens; a None refresh token keeps the stored one."""

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                UPDATE mailbox_connections
                SET access_token = ?, refresh_token = COALESCE(?, refresh_token), expires_at = ?
                WHERE id = ?
                """,
                (access_token, refresh_token, _format_dt(expires_at), connection_id),
            )
            connection.commit()

    def deactivate_mailbox_connection(self, connection_id: int) -> bool:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                "UPDATE mailbox_connections SET active = 0 WHERE id = ? AND active = 1",
                (connection_id,),
            )
            updated = cursor.rowcount > 0
            connection.commit()
        return updated

    def mark_connection_tested(self, connection_id: int, tested_at: datetime) -> None:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                "UPDATE mailbox_connections SET last_tested_at = ? WHERE id = ?",
                (_format_dt(tested_at), connection_id),
            )
            connection.commit()

    def add_activity(self, activity: Activity) -> int:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                INSERT INTO activities (
                    account_id, type, description, invoice_id, customer_id, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    activity.account_id,
                    activity.type,
                    activity.description,
                    activity.invoice_id,
                    activity.customer_id,
                    _format_dt(activity.created_at),
                ),
            )
            activity_id = cursor.lastrowid
            connection.commit()
        return int(activity_id)

    def list_activities(self, account_id: int, limit: int = 50) -> list[Activity]:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                SELECT id, account_id, type, description, invoice_id, customer_id, created_at
                FROM activities WHERE account_id = ?
                ORDER BY id DESC LIMIT ?
                """,
                (account_id, limit),
            )
            rows = cursor.fetchall()
        return [
            Activity(
                id=row[0],
                account_id=row[1],
                type=row[2],
                description=row[3],
                invoice_id=row[4],
                customer_id=row[5],
                created_at=_parse_dt(row[6]),
            )
            for row in rows
        ]

    def _update_entry(self, query: str, params: tuple) -> bool:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(query, params)
            updated = cursor.rowcount > 0
            connection.commit()
        return updated

    def _ensure_column(self, table: str, column: str, column_type: str = "INTEGER") -> None:
        """Summary: Ensure a column exists in a table.

        Importance: Provides lightweight migration support for new fields.
        Alternatives: Use a migration tool to manage schema changes.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(f"PRAGMA table_info({table})")
            columns = {row[1] for row in cursor.fetchall()}
            if column in columns:
                return
            cursor.execute(f"ALTER TABLE {table} ADD COLUMN {column} {column_type}")
            connection.commit()

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        """Summary: Context manager for SQLite connections.

        Importance: Each call gets its own connection with a busy timeout, so
        sweep workers never share one.
        Alternatives: Keep a single long-lived connection behind a lock.
        """

        connection = sqlite3.connect(self._db_path, timeout=self._busy_timeout)
        try:
            yield connection
        finally:
            connection.close()


def _format_dt(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat(sep=" ", timespec="seconds")


def _parse_dt(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)


def _row_to_entry(row: tuple) -> ScheduleEntry:
    return ScheduleEntry(
        id=row[0],
        invoice_id=row[1],
        kind=row[2],
        fire_at=_parse_dt(row[3]),
        state=row[4],
        sent_at=_parse_dt(row[5]),
        attempts=row[6] or 0,
        last_error=row[7],
        failure_reason=row[8],
        claim_token=row[9],
        claimed_at=_parse_dt(row[10]),
    )


def _row_to_connection(row: tuple) -> StoredConnection:
    return StoredConnection(
        id=row[0],
        account_id=row[1],
        provider=row[2],
        address=row[3],
        access_token=row[4],
        refresh_token=row[5],
        expires_at=_parse_dt(row[6]),
        active=bool(row[7]),
        last_tested_at=_parse_dt(row[8]),
        created_at=_parse_dt(row[9]),
    )
