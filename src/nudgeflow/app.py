"""Summary: Application factory wiring core services.

Importance: Centralizes dependency creation for the CLI, API and sweeper.
Alternatives: Instantiate services manually in each entrypoint.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from nudgeflow.activity import ActivityRecorder
from nudgeflow.branding import BrandingService
from nudgeflow.config import AppConfig
from nudgeflow.connections import MailboxConnectionService
from nudgeflow.dispatcher import DeliveryDispatcher
from nudgeflow.providers import MailProvider, ProviderRegistry
from nudgeflow.scheduler import ReminderScheduler
from nudgeflow.services import EmailSetupService, PolicyService, ReminderService
from nudgeflow.storage.base import ReminderStore
from nudgeflow.storage.sqlite_store import SqliteStore
from nudgeflow.sweeper import ReminderSweeper
from nudgeflow.token_codec import TokenCodec
from nudgeflow.token_manager import TokenLifecycleManager


@dataclass(frozen=True)
class AppContext:
    """Summary: Shared application context for building account services.

    Importance: The token manager, dispatcher and sweeper are process-wide so
    refresh locks and leases are shared by every caller.
    Alternatives: Rebuild dependencies for every request.
    """

    config: AppConfig
    store: ReminderStore
    providers: ProviderRegistry
    activities: ActivityRecorder
    connections: MailboxConnectionService
    tokens: TokenLifecycleManager
    branding: BrandingService
    scheduler: ReminderScheduler
    dispatcher: DeliveryDispatcher
    sweeper: ReminderSweeper
    clock: Callable[[], datetime]

    def services_for_account(self, account_id: int) -> "AppServices":
        """Summary: Build account-scoped services from shared context.

        Importance: Keeps invoice and connection lookups inside one account.
        Alternatives: Pass the account id to every service call.
        """

        reminders = ReminderService(
            store=self.store,
            scheduler=self.scheduler,
            dispatcher=self.dispatcher,
            account_id=account_id,
            upcoming_window_days=self.config.upcoming_window_days,
            clock=self.clock,
        )
        policies = PolicyService(store=self.store, account_id=account_id)
        email = EmailSetupService(
            store=self.store,
            connections=self.connections,
            tokens=self.tokens,
            providers=self.providers,
            branding=self.branding,
            account_id=account_id,
        )
        return AppServices(
            reminders=reminders,
            policies=policies,
            email=email,
            branding=self.branding,
            activities=self.activities,
            sweeper=self.sweeper,
            store=self.store,
            account_id=account_id,
        )


@dataclass(frozen=True)
class AppServices:
    """Summary: Bundle of core services for one account.

    Importance: Simplifies passing dependencies to the API and CLI layers.
    Alternatives: Use a dependency injection container.
    """

    reminders: ReminderService
    policies: PolicyService
    email: EmailSetupService
    branding: BrandingService
    activities: ActivityRecorder
    sweeper: ReminderSweeper
    store: ReminderStore
    account_id: int


def build_context(
    config: AppConfig,
    providers: dict[str, MailProvider] | None = None,
    clock: Callable[[], datetime] = datetime.now,
) -> AppContext:
    """Summary: Build the shared context from configuration.

    Importance: ``providers`` lets callers swap in provider variants such as
    the in-memory mock.
    Alternatives: Construct dependencies separately per entrypoint.
    """

    store = SqliteStore(config.db_path)
    store.initialize()
    registry = ProviderRegistry(config, providers)
    activities = ActivityRecorder(store=store, clock=clock)
    connections = MailboxConnectionService(
        store=store,
        codec=TokenCodec(config.token_secret),
        providers=registry,
        clock=clock,
    )
    tokens = TokenLifecycleManager(
        connections,
        registry,
        activities,
        refresh_margin_seconds=config.token_refresh_margin_seconds,
        clock=clock,
    )
    branding = BrandingService(
        store=store,
        activities=activities,
        footer_html=config.footer_html,
        footer_text=config.footer_text,
    )
    scheduler = ReminderScheduler(
        store=store,
        activities=activities,
        business_hours_start=config.business_hours_start,
        business_hours_end=config.business_hours_end,
    )
    dispatcher = DeliveryDispatcher(
        store,
        connections,
        tokens,
        registry,
        branding,
        activities,
        max_attempts=config.max_send_attempts,
        claim_ttl_seconds=config.claim_ttl_seconds,
        clock=clock,
    )
    sweeper = ReminderSweeper(
        store,
        dispatcher,
        concurrency=config.dispatch_concurrency,
        interval_seconds=config.sweep_interval_seconds,
        clock=clock,
    )
    return AppContext(
        config=config,
        store=store,
        providers=registry,
        activities=activities,
        connections=connections,
        tokens=tokens,
        branding=branding,
        scheduler=scheduler,
        dispatcher=dispatcher,
        sweeper=sweeper,
        clock=clock,
    )


def default_account_id(context: AppContext) -> int:
    config = context.config
    return context.store.ensure_account(
        config.default_account_name,
        config.default_account_email,
        config.default_company_name,
    )


def build_services(config: AppConfig) -> AppServices:
    """Summary: Build services for the configured default account.

    Importance: Single-owner deployments need no account provisioning.
    Alternatives: Require an account id on every entrypoint.
    """

    context = build_context(config)
    return context.services_for_account(default_account_id(context))
