"""Summary: Append-only activity log for reminder and connection events.

Importance: Every Sent, Failed and Cancelled transition leaves a record the
owner can see in their timeline.
Alternatives: Rely on application logs only.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from nudgeflow.models import Activity
from nudgeflow.storage.base import ReminderStore


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ActivityRecorder:
    """Summary: Writes activity rows stamped with the service clock.

    Importance: Keeps activity emission in one place for the scheduler,
    dispatcher, token manager and branding engine.
    Alternatives: Insert activity rows inline in each component.
    """

    store: ReminderStore
    clock: Callable[[], datetime] = datetime.now

    def record(
        self,
        account_id: int,
        activity_type: str,
        description: str,
        invoice_id: int | None = None,
        customer_id: int | None = None,
    ) -> int:
        activity = Activity(
            account_id=account_id,
            type=activity_type,
            description=description,
            created_at=self.clock(),
            invoice_id=invoice_id,
            customer_id=customer_id,
        )
        activity_id = self.store.add_activity(activity)
        logger.debug("Recorded %s activity for account %s.", activity_type, account_id)
        return activity_id

    def list_recent(self, account_id: int, limit: int = 50) -> list[Activity]:
        return self.store.list_activities(account_id, limit=limit)
