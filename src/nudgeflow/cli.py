"""Summary: Command-line interface for NudgeFlow.

Importance: Runs sweeps, manual sends and account settings without the API.
Alternatives: Build a web UI or desktop client first.
"""

from __future__ import annotations

import argparse
import logging

import uvicorn

from nudgeflow.api import create_app
from nudgeflow.app import AppContext, AppServices, build_context, default_account_id
from nudgeflow.config import AppConfig
from nudgeflow.errors import NudgeFlowError
from nudgeflow.models import SUBSCRIPTION_TIERS
from nudgeflow.oauth import create_state_token
from nudgeflow.providers import PROVIDER_GMAIL, PROVIDER_OUTLOOK


def build_parser() -> argparse.ArgumentParser:
    """Summary: Build the CLI argument parser.

    Importance: Defines supported commands for local operation.
    Alternatives: Use a CLI framework like Typer or Click.
    """

    parser = argparse.ArgumentParser(description="NudgeFlow CLI")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("sweep", help="Dispatch all due reminders once")
    subparsers.add_parser("run-sweeper", help="Run the reminder sweep until interrupted")
    subparsers.add_parser("serve", help="Run the HTTP API with the background sweeper")

    upcoming = subparsers.add_parser("upcoming", help="List upcoming reminders")
    upcoming.add_argument("--days", type=int, default=None)

    send_now = subparsers.add_parser("send-now", help="Send the next reminder for an invoice")
    send_now.add_argument("invoice_id", type=int)

    reconcile = subparsers.add_parser("reconcile", help="Re-plan reminders for an invoice")
    reconcile.add_argument("invoice_id", type=int)

    subparsers.add_parser("footer-config", help="Show the branding footer configuration")
    set_footer = subparsers.add_parser("set-footer", help="Show or hide the branding footer")
    footer_choice = set_footer.add_mutually_exclusive_group(required=True)
    footer_choice.add_argument("--hide", action="store_true")
    footer_choice.add_argument("--show", action="store_true")

    tier_changed = subparsers.add_parser("tier-changed", help="Apply a subscription tier change")
    tier_changed.add_argument("tier", choices=SUBSCRIPTION_TIERS)
    tier_changed.add_argument("--account-id", type=int, default=None)

    oauth_url = subparsers.add_parser("oauth-url", help="Print a mailbox OAuth URL")
    oauth_url.add_argument("provider", choices=(PROVIDER_GMAIL, PROVIDER_OUTLOOK))

    subparsers.add_parser("list-connections", help="List mailbox connections")
    test_email = subparsers.add_parser("test-email", help="Send a test email via the active mailbox")
    test_email.add_argument("--to", type=str, default=None)
    return parser


def run_cli(argv: list[str] | None = None) -> None:
    """Summary: Execute CLI commands based on arguments.

    Importance: Drives scheduled delivery and settings from a terminal or cron.
    Alternatives: Invoke services via the HTTP API.
    """

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    parser = build_parser()
    args = parser.parse_args(argv)
    config = AppConfig.from_env()

    if args.command == "serve":
        uvicorn.run(create_app(config), host=config.api_host, port=config.api_port)
        return

    context = build_context(config)
    services = context.services_for_account(default_account_id(context))
    try:
        _run_command(args, context, services)
    except (NudgeFlowError, ValueError) as exc:
        parser.exit(1, f"error: {exc}\n")


def _run_command(args: argparse.Namespace, context: AppContext, services: AppServices) -> None:
    if args.command == "sweep":
        report = context.sweeper.run_once()
        print(", ".join(f"{key}={value}" for key, value in report.to_dict().items()))
        return

    if args.command == "run-sweeper":
        try:
            context.sweeper.run_forever()
        except KeyboardInterrupt:
            context.sweeper.stop()
        return

    if args.command == "upcoming":
        entries = services.reminders.schedule_upcoming(args.days)
        if not entries:
            print("No upcoming reminders.")
        for entry in entries:
            print(f"#{entry.id} invoice {entry.invoice_id} {entry.kind} at {entry.fire_at:%Y-%m-%d %H:%M}")
        return

    if args.command == "send-now":
        outcome = services.reminders.send_now(args.invoice_id)
        if not outcome.claimed:
            print("Reminder is already being delivered.")
            return
        reason = f" ({outcome.reason})" if outcome.reason else ""
        print(f"Entry {outcome.entry_id}: {outcome.state}{reason}")
        return

    if args.command == "reconcile":
        result = services.reminders.on_invoice_changed(args.invoice_id)
        print(
            f"Created {len(result.created)}, updated {len(result.updated)}, "
            f"cancelled {len(result.cancelled)}."
        )
        for conflict in result.conflicts:
            print(f"Conflict: {conflict}")
        return

    if args.command == "footer-config":
        footer = services.branding.get_footer_config(services.account_id)
        print(f"tier: {footer.tier}")
        print(f"footer included: {footer.should_include_footer}")
        print(f"can toggle: {footer.can_toggle_footer}")
        return

    if args.command == "set-footer":
        print(services.branding.set_footer_preference(services.account_id, args.hide))
        return

    if args.command == "tier-changed":
        account_id = args.account_id or services.account_id
        footer = services.branding.on_subscription_tier_changed(account_id, args.tier)
        print(f"Account {account_id} is now on {footer.tier}; footer included: {footer.should_include_footer}")
        return

    if args.command == "oauth-url":
        print(services.email.authorization_url(args.provider, create_state_token()))
        return

    if args.command == "list-connections":
        for connection in services.email.list_connections():
            status = "active" if connection.active else "inactive"
            print(f"{connection.id}: {connection.provider} {connection.address} ({status})")
        return

    if args.command == "test-email":
        recipient = services.email.send_test_email(args.to)
        print(f"Test email sent to {recipient}.")
        return


if __name__ == "__main__":
    run_cli()
