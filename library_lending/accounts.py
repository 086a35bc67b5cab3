"""User administration: listing, role changes, deletion and new admins."""

import logging
from typing import List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from library_lending.auth import USERNAME_TAKEN, AuthService, identity_from_user
from library_lending.database import transaction
from library_lending.exceptions import ConflictError, NotFoundError, UsernameTakenError
from library_lending.guard import Action, Identity, enforce
from library_lending.models import User, UserRole
from library_lending.repositories import (
    ActivityLogRepository,
    BorrowingRepository,
    NotificationRepository,
    UserRepository,
)

logger = logging.getLogger(__name__)


class AccountWorkflow:
    def __init__(self, db: Session):
        self.db = db
        self.users = UserRepository(db)
        self.borrowings = BorrowingRepository(db)
        self.notifications = NotificationRepository(db)
        self.activity = ActivityLogRepository(db)

    def get_user(self, user_id: str) -> User:
        user = self.users.get(user_id)
        if user is None:
            raise NotFoundError("User not found")
        return user

    def list_users(
        self,
        search: Optional[str] = None,
        role: Optional[str] = None,
        page: int = 1,
        limit: int = 10,
    ) -> Tuple[List[User], int]:
        return self.users.list(search=search, role=role, page=page, limit=limit)

    def update_role(self, actor_id: str, target_id: str, role: UserRole) -> User:
        user = self.get_user(target_id)
        with transaction(self.db):
            user.role = role
            self.db.flush()
            self.activity.append(
                actor_id,
                "user_role_updated",
                f"Updated user role to {role.value} for {user.email or user.id}",
                entity_type="user",
                entity_id=target_id,
            )
        self.db.refresh(user)
        logger.info("User %s role set to %s by %s", target_id, role.value, actor_id)
        return user

    def delete_user(self, actor: Identity, target_id: str) -> None:
        """
        Delete a user account.

        Business Logic:
        - nobody can delete themselves or an admin, whatever their role
        - users with copies still on loan cannot be deleted
        - the user's sessions, returned borrowings and the notifications
          addressed to them go with the account; audit entries stay

        Raises:
            NotFoundError: If the target does not exist.
            AuthorizationError: For self- or admin-deletion.
            ConflictError: If the target still has books on loan.
        """
        target = self.get_user(target_id)
        enforce(actor, Action.DELETE_USER, target)

        outstanding = self.borrowings.count_outstanding_for_user(target_id)
        if outstanding:
            raise ConflictError(f"User still has {outstanding} borrowed books")

        label = target.email or target.username or target.id
        with transaction(self.db):
            self.notifications.detach_author(target_id)
            self.users.delete(target)
            self.activity.append(
                actor.id,
                "user_deleted",
                f"Deleted user account: {label}",
                entity_type="user",
                entity_id=target_id,
            )
        logger.info("User %s deleted by %s", target_id, actor.id)

    def create_admin(
        self,
        actor_id: str,
        auth_service: AuthService,
        username: str,
        password: str,
        email: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> Identity:
        """
        Register a local account with the admin role.

        The account and its admin_created entry are committed together.

        Raises:
            UsernameTakenError: If the username (case-insensitive) is taken.
        """
        try:
            with transaction(self.db):
                admin = auth_service.add_local_user(
                    username=username,
                    password=password,
                    email=email or f"{username.strip().lower()}@admin.local",
                    first_name=first_name or "Admin",
                    last_name=last_name or "User",
                    role=UserRole.ADMIN,
                )
                self.activity.append(
                    actor_id,
                    "admin_created",
                    f"Created admin account: {admin.username}",
                    entity_type="user",
                    entity_id=admin.id,
                )
        except IntegrityError:
            raise UsernameTakenError(USERNAME_TAKEN)

        logger.info("Admin %s created by %s", admin.id, actor_id)
        return identity_from_user(admin)
