"""Summary: Token lifecycle management for mailbox connections.

Importance: Hands the dispatcher a usable access token, refreshing it when it
is about to expire and deactivating connections that cannot be repaired.
Alternatives: Refresh on every send, or let sends fail with 401 and react.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta
from typing import Callable

from nudgeflow.activity import ActivityRecorder
from nudgeflow.connections import MailboxConnectionService
from nudgeflow.errors import OAuthError, ReauthorizationRequired, TransientDeliveryError
from nudgeflow.models import ACTIVITY_CONNECTION_DEACTIVATED, MailboxConnection
from nudgeflow.providers import ProviderRegistry


logger = logging.getLogger(__name__)


class TokenLifecycleManager:
    """Summary: Returns valid access tokens with single-flight refresh.

    Importance: Concurrent dispatches for one mailbox trigger at most one
    refresh; waiters reuse the token the winner stored.
    Alternatives: A global refresh lock shared by every connection.
    """

    def __init__(
        self,
        connections: MailboxConnectionService,
        providers: ProviderRegistry,
        activities: ActivityRecorder,
        refresh_margin_seconds: int = 60,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._connections = connections
        self._providers = providers
        self._activities = activities
        self._margin = timedelta(seconds=refresh_margin_seconds)
        self._clock = clock
        self._locks: dict[int, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def get_valid_token(self, connection: MailboxConnection) -> str:
        """Summary: Return an access token that is valid for at least the margin.

        Importance: Refresh failures are split into transient outages, which
        leave the connection alone, and rejected grants, which deactivate it.
        Alternatives: Treat every refresh failure as fatal.
        """

        if self._is_fresh(connection):
            return connection.access_token
        with self._lock_for(connection.id):
            current = self._connections.load(connection.id)
            if current is None or not current.active:
                raise ReauthorizationRequired(connection.id, "connection is no longer active")
            if self._is_fresh(current):
                logger.debug("Reusing token refreshed concurrently for connection %s.", connection.id)
                return current.access_token
            return self._refresh(current)

    def _refresh(self, connection: MailboxConnection) -> str:
        if not connection.refresh_token:
            self._deactivate(connection, "no refresh token is available")
            raise ReauthorizationRequired(connection.id, "no refresh token is available")
        provider = self._providers.get(connection.provider)
        try:
            tokens = provider.refresh(connection.refresh_token)
        except OAuthError as exc:
            if exc.transient:
                logger.warning(
                    "Token refresh for connection %s failed temporarily: %s", connection.id, exc
                )
                raise TransientDeliveryError(f"Token refresh failed temporarily: {exc}") from exc
            detail = exc.error_code or f"token endpoint rejected the refresh ({exc.status})"
            self._deactivate(connection, detail)
            raise ReauthorizationRequired(connection.id, detail) from exc
        self._connections.store_tokens(connection.id, tokens)
        logger.info("Refreshed access token for connection %s.", connection.id)
        return tokens.access_token

    def revoke(self, connection: MailboxConnection, detail: str) -> None:
        """Deactivate a connection whose grant the provider rejected at send time."""

        with self._lock_for(connection.id):
            self._deactivate(connection, detail)

    def _deactivate(self, connection: MailboxConnection, detail: str) -> None:
        if not self._connections.deactivate(connection.id):
            return
        self._activities.record(
            connection.account_id,
            ACTIVITY_CONNECTION_DEACTIVATED,
            f"{connection.provider.title()} connection {connection.address} needs to be "
            f"reconnected ({detail})",
        )

    def _is_fresh(self, connection: MailboxConnection) -> bool:
        if connection.expires_at is None:
            return True
        return connection.expires_at - self._clock() >= self._margin

    def _lock_for(self, connection_id: int) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(connection_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[connection_id] = lock
            return lock
