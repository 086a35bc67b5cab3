"""Admin announcements and targeted notifications."""

import logging
from typing import List

from sqlalchemy.orm import Session

from library_lending.database import transaction
from library_lending.exceptions import NotFoundError
from library_lending.models import Notification
from library_lending.repositories import (
    ActivityLogRepository,
    NotificationRepository,
    UserRepository,
)

logger = logging.getLogger(__name__)

ANNOUNCEMENT = "announcement"


class NotificationWorkflow:
    def __init__(self, db: Session):
        self.db = db
        self.notifications = NotificationRepository(db)
        self.users = UserRepository(db)
        self.activity = ActivityLogRepository(db)

    def create_announcement(self, admin_id: str, title: str, content: str) -> Notification:
        """Broadcast a message to every user (user_id stays NULL)."""
        with transaction(self.db):
            notification = self.notifications.add(
                Notification(
                    title=title,
                    content=content,
                    type=ANNOUNCEMENT,
                    created_by_id=admin_id,
                    user_id=None,
                )
            )
            self.activity.append(
                admin_id,
                "announcement_created",
                f"Created announcement: {title}",
                entity_type="notification",
                entity_id=notification.id,
            )
        self.db.refresh(notification)
        return notification

    def create_notification(
        self, admin_id: str, user_id: str, title: str, content: str, type: str = "message"
    ) -> Notification:
        """Send a message to a single user.

        Raises:
            NotFoundError: If the recipient does not exist.
        """
        recipient = self.users.get(user_id)
        if recipient is None:
            raise NotFoundError("User not found")

        with transaction(self.db):
            notification = self.notifications.add(
                Notification(
                    title=title,
                    content=content,
                    type=type,
                    created_by_id=admin_id,
                    user_id=user_id,
                )
            )
            self.activity.append(
                admin_id,
                "notification_created",
                f"Sent notification '{title}' to {recipient.email or recipient.id}",
                entity_type="notification",
                entity_id=notification.id,
            )
        self.db.refresh(notification)
        return notification

    def list_for_user(self, user_id: str) -> List[Notification]:
        return self.notifications.for_user(user_id)

    def list_all(self) -> List[Notification]:
        return self.notifications.all()

    def delete_notification(self, admin_id: str, notification_id: int) -> None:
        notification = self.notifications.get(notification_id)
        if notification is None:
            raise NotFoundError("Notification not found")

        with transaction(self.db):
            self.notifications.delete(notification)
            self.activity.append(
                admin_id,
                "notification_deleted",
                f"Deleted notification with ID: {notification_id}",
                entity_type="notification",
                entity_id=notification_id,
            )
        logger.info("Notification %s deleted by %s", notification_id, admin_id)
