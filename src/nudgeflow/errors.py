"""Summary: Exception types raised by the reminder scheduling and delivery core.

Importance: Lets callers tell configuration, authorization and delivery failures apart.
Alternatives: Raise ValueError/RuntimeError everywhere and match on messages.
"""

from __future__ import annotations


class NudgeFlowError(Exception):
    """Base class for all NudgeFlow errors."""


class NotFoundError(NudgeFlowError):
    """Raised when a referenced record does not exist."""


class PolicyValidationError(NudgeFlowError, ValueError):
    """Raised when a reminder policy is rejected at the write boundary."""


class ConfigurationConflict(NudgeFlowError):
    """Summary: A reminder kind would not fire strictly after the kind that precedes it.

    Importance: Keeps reminders from being delivered out of sequence.
    Alternatives: Silently reorder the computed fire times.
    """

    def __init__(self, invoice_id: int, kind: str, previous_kind: str) -> None:
        super().__init__(
            f"Reminder '{kind}' for invoice {invoice_id} would not fire after '{previous_kind}'"
        )
        self.invoice_id = invoice_id
        self.kind = kind
        self.previous_kind = previous_kind


class UpgradeRequired(NudgeFlowError):
    """Raised when a setting is only available on a paid subscription tier."""

    def __init__(
        self,
        message: str = (
            "Footer settings are only available for Pro and Enterprise plans. "
            "Upgrade to customize your email branding."
        ),
    ) -> None:
        super().__init__(message)


class ReauthorizationRequired(NudgeFlowError):
    """Summary: A mailbox connection can no longer be used without reconnecting.

    Importance: Signals the dispatcher to fail the entry with the "auth" reason.
    Alternatives: Retry forever with a token that will never work.
    """

    def __init__(self, connection_id: int, detail: str) -> None:
        super().__init__(f"Mailbox connection {connection_id} requires reauthorization: {detail}")
        self.connection_id = connection_id
        self.detail = detail


class OAuthError(NudgeFlowError):
    """Summary: A token endpoint call failed.

    Importance: Carries the provider error code so callers can separate
    revoked grants from temporary outages.
    Alternatives: Parse the error body at every call site.
    """

    def __init__(
        self,
        message: str,
        *,
        error_code: str | None = None,
        status: int | None = None,
        transient: bool = False,
    ) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.status = status
        self.transient = transient


class DeliveryError(NudgeFlowError):
    """Base class for provider send failures."""


class TransientDeliveryError(DeliveryError):
    """Raised for rate limits, 5xx responses, timeouts and network errors."""


class PermanentDeliveryError(DeliveryError):
    """Summary: Raised when retrying a send can never succeed.

    Importance: Moves the entry straight to Failed with a reason the UI can show.
    Alternatives: Count permanent failures against the retry budget.
    """

    def __init__(self, message: str, reason: str = "permanent_delivery") -> None:
        super().__init__(message)
        self.reason = reason
