"""
Reminder Dispatch

The dispatcher accepts (recipient, assignment, campaign) tuples and returns
how many were accepted. The default implementation queues notification_jobs
rows for the email worker; delivery itself happens elsewhere.
"""
import logging
from dataclasses import dataclass
from typing import List, Optional
from uuid import uuid4

from sqlalchemy.orm import Session

from ...models.db_models import NotificationJobDB

logger = logging.getLogger(__name__)


@dataclass
class ReminderRequest:
    recipient: str
    assignment_id: str
    campaign_id: Optional[str]


class NotificationDispatcher:
    """Interface for reminder delivery."""

    def dispatch(self, org_id: str, reminders: List[ReminderRequest]) -> int:
        raise NotImplementedError


class NotificationJobQueue(NotificationDispatcher):
    """Queues reminders in the notification_jobs table. Flushes, never commits."""

    def __init__(self, db: Session):
        self.db = db

    def dispatch(self, org_id: str, reminders: List[ReminderRequest]) -> int:
        if not reminders:
            return 0
        for reminder in reminders:
            self.db.add(NotificationJobDB(
                id=str(uuid4()),
                org_id=org_id,
                campaign_id=reminder.campaign_id,
                assignment_id=reminder.assignment_id,
                recipient=reminder.recipient,
                notification_type="reminder",
                status="queued",
            ))
        self.db.flush()
        logger.info(f"Queued {len(reminders)} reminders for org {org_id}")
        return len(reminders)
