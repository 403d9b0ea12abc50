"""Summary: Branding policy for the "Powered by" footer on outgoing reminders.

Importance: Free accounts always carry the footer; paid accounts may hide it,
and a downgrade to free restores it atomically.
Alternatives: Let every account toggle the footer regardless of plan.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace

from nudgeflow.activity import ActivityRecorder
from nudgeflow.errors import NotFoundError, UpgradeRequired
from nudgeflow.models import (
    ACTIVITY_PLAN_CHANGED,
    SUBSCRIPTION_TIERS,
    TIER_ENTERPRISE,
    TIER_FREE,
    TIER_PRO,
    Account,
    OutgoingMessage,
)
from nudgeflow.storage.base import ReminderStore


logger = logging.getLogger(__name__)

_TOGGLE_TIERS = (TIER_PRO, TIER_ENTERPRISE)


def should_include_footer(tier: str, hide_requested: bool) -> bool:
    """Summary: Decide whether the footer goes on an email.

    Importance: Unknown tiers fall back to showing the footer.
    Alternatives: Reject unknown tiers outright.
    """

    if tier == TIER_FREE:
        return True
    if tier in _TOGGLE_TIERS:
        return not hide_requested
    return True


def can_toggle(tier: str) -> bool:
    return tier in _TOGGLE_TIERS


def finalize(
    message: OutgoingMessage,
    tier: str,
    hide_requested: bool,
    footer_html: str,
    footer_text: str,
) -> OutgoingMessage:
    """Summary: Apply the footer to both bodies of a rendered message.

    Importance: The HTML footer lands before the last ``</body>`` so it stays
    inside the document; without one it is appended.
    Alternatives: Always append to the end of the markup.
    """

    if not should_include_footer(tier, hide_requested):
        return message
    html = message.html
    index = html.rfind("</body>")
    if index != -1:
        html = html[:index] + footer_html + html[index:]
    else:
        html = html + footer_html
    return replace(message, html=html, text=message.text + footer_text)


@dataclass(frozen=True)
class FooterConfig:
    should_include_footer: bool
    can_toggle_footer: bool
    current_setting: bool
    tier: str


@dataclass(frozen=True)
class BrandingService:
    """Summary: Reads and changes per-account branding settings.

    Importance: Preference writes and tier changes are conditional SQL updates,
    so a downgrade always beats a concurrent "hide footer" request.
    Alternatives: Read-check-write in Python under an application lock.
    """

    store: ReminderStore
    activities: ActivityRecorder
    footer_html: str
    footer_text: str

    def apply(self, account_id: int, message: OutgoingMessage) -> OutgoingMessage:
        """Summary: Brand a message with the account's settings as stored right now.

        Importance: A downgrade that lands while a reminder is being prepared
        still puts the footer on it; an account that cannot be read gets the footer.
        Alternatives: Brand with the account snapshot taken when dispatch started.
        """

        account = self.store.get_account(account_id)
        if account is None:
            logger.warning("Account %s not found; including the footer.", account_id)
            return finalize(message, TIER_FREE, False, self.footer_html, self.footer_text)
        return finalize(
            message,
            account.tier,
            account.hide_footer_requested,
            self.footer_html,
            self.footer_text,
        )

    def get_footer_config(self, account_id: int) -> FooterConfig:
        account = self._require_account(account_id)
        return FooterConfig(
            should_include_footer=should_include_footer(account.tier, account.hide_footer_requested),
            can_toggle_footer=can_toggle(account.tier),
            current_setting=account.hide_footer_requested,
            tier=account.tier,
        )

    def set_footer_preference(self, account_id: int, hide: bool) -> str:
        """Summary: Store whether a paid account wants the footer hidden.

        Importance: The tier condition is evaluated by the UPDATE itself.
        Alternatives: Trust a tier read made before the write.
        """

        account = self._require_account(account_id)
        if not can_toggle(account.tier) or not self.store.set_hide_footer(account_id, hide):
            logger.info("Rejected footer preference change for account %s on %s.", account_id, account.tier)
            raise UpgradeRequired()
        logger.info("Account %s set hide_footer=%s.", account_id, hide)
        return "Footer hidden from future emails" if hide else "Footer will appear on future emails"

    def on_subscription_tier_changed(self, account_id: int, tier: str) -> FooterConfig:
        """Summary: Apply a subscription tier change from billing.

        Importance: Moving to free clears the hide preference in the same statement.
        Alternatives: Leave the preference and ignore it at send time.
        """

        if tier not in SUBSCRIPTION_TIERS:
            raise ValueError(f"Unknown subscription tier: {tier}")
        if not self.store.update_account_tier(account_id, tier):
            raise NotFoundError(f"Account {account_id} not found")
        self.activities.record(account_id, ACTIVITY_PLAN_CHANGED, f"Subscription changed to {tier}")
        logger.info("Account %s moved to the %s tier.", account_id, tier)
        return self.get_footer_config(account_id)

    def _require_account(self, account_id: int) -> Account:
        account = self.store.get_account(account_id)
        if account is None:
            raise NotFoundError(f"Account {account_id} not found")
        return account
