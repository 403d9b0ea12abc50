"""Summary: Mailbox connection store with encoded tokens.

Importance: The only place that turns stored connection rows into usable
tokens and back.
Alternatives: Decode tokens wherever a connection is read.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from nudgeflow.errors import NotFoundError
from nudgeflow.models import MailboxConnection
from nudgeflow.oauth import OAuthTokenResult
from nudgeflow.providers import ProviderRegistry
from nudgeflow.storage.base import ReminderStore, StoredConnection
from nudgeflow.token_codec import TokenCodec


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MailboxConnectionService:
    """Summary: Creates, reads and deactivates mailbox connections.

    Importance: Each account sends through one OAuth-authenticated mailbox,
    and connections are deactivated rather than deleted.
    Alternatives: Store tokens in plaintext and query the table directly.
    """

    store: ReminderStore
    codec: TokenCodec
    providers: ProviderRegistry
    clock: Callable[[], datetime] = datetime.now

    def connect(self, account_id: int, provider_tag: str, code: str) -> MailboxConnection:
        """Summary: Complete an OAuth flow and store the resulting connection.

        Importance: Looks up the mailbox address so reminders go out from it.
        Alternatives: Ask the owner to type the address manually.
        """

        provider = self.providers.get(provider_tag)
        tokens = provider.exchange_code(code)
        address = provider.fetch_identity(tokens.access_token)
        return self.add_connection(account_id, provider_tag, address, tokens)

    def add_connection(
        self,
        account_id: int,
        provider_tag: str,
        address: str,
        tokens: OAuthTokenResult,
    ) -> MailboxConnection:
        self.providers.get(provider_tag)
        connection_id = self.store.add_mailbox_connection(
            account_id=account_id,
            provider=provider_tag,
            address=address,
            access_token=self.codec.encode(tokens.access_token),
            refresh_token=self.codec.encode_optional(tokens.refresh_token),
            expires_at=tokens.expires_at,
            created_at=self.clock(),
        )
        logger.info("Connected %s mailbox %s for account %s.", provider_tag, address, account_id)
        return self._require(connection_id)

    def load(self, connection_id: int) -> MailboxConnection | None:
        record = self.store.get_mailbox_connection(connection_id)
        return self._decode(record) if record else None

    def get_active(self, account_id: int) -> MailboxConnection | None:
        record = self.store.get_active_mailbox_connection(account_id)
        return self._decode(record) if record else None

    def list_connections(self, account_id: int) -> list[MailboxConnection]:
        return [self._decode(record) for record in self.store.list_mailbox_connections(account_id)]

    def store_tokens(self, connection_id: int, tokens: OAuthTokenResult) -> None:
        """Persist refreshed tokens, keeping the refresh token unless rotated."""

        self.store.update_connection_tokens(
            connection_id,
            access_token=self.codec.encode(tokens.access_token),
            refresh_token=self.codec.encode_optional(tokens.refresh_token),
            expires_at=tokens.expires_at,
        )

    def deactivate(self, connection_id: int) -> bool:
        updated = self.store.deactivate_mailbox_connection(connection_id)
        if updated:
            logger.warning("Deactivated mailbox connection %s.", connection_id)
        return updated

    def disconnect(self, account_id: int, connection_id: int) -> bool:
        """Summary: Deactivate one of the account's connections on request.

        Importance: The row stays for history; only the active flag changes.
        Alternatives: Delete the row and its tokens.
        """

        record = self.store.get_mailbox_connection(connection_id)
        if record is None or record.account_id != account_id:
            raise NotFoundError(f"Mailbox connection {connection_id} not found")
        return self.deactivate(connection_id)

    def mark_tested(self, connection_id: int) -> None:
        self.store.mark_connection_tested(connection_id, self.clock())

    def _require(self, connection_id: int) -> MailboxConnection:
        connection = self.load(connection_id)
        if connection is None:
            raise NotFoundError(f"Mailbox connection {connection_id} not found")
        return connection

    def _decode(self, record: StoredConnection) -> MailboxConnection:
        return MailboxConnection(
            id=record.id,
            account_id=record.account_id,
            provider=record.provider,
            address=record.address,
            access_token=self.codec.decode(record.access_token),
            refresh_token=self.codec.decode_optional(record.refresh_token),
            expires_at=record.expires_at,
            active=record.active,
            last_tested_at=record.last_tested_at,
            created_at=record.created_at,
        )
