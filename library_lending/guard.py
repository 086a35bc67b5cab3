"""Authorization decisions.

Every permission rule of the service lives in ``authorize``, a pure
function of (identity, action, resource). Endpoints ask it before calling
a workflow; nothing here touches the database or logs.
"""

import enum
from dataclasses import dataclass
from typing import Any, Optional

from library_lending.exceptions import AuthenticationError, AuthorizationError
from library_lending.models import UserRole


@dataclass(frozen=True)
class Identity:
    """The authenticated caller, resolved from a valid session."""

    id: str
    role: UserRole
    username: Optional[str] = None
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


class Action(str, enum.Enum):
    READ_CATALOG = "read_catalog"
    READ_DASHBOARD = "read_dashboard"
    READ_PROFILE = "read_profile"
    READ_BORROWINGS = "read_borrowings"
    READ_ACTIVITY = "read_activity"
    READ_NOTIFICATIONS = "read_notifications"
    CREATE_BORROWING = "create_borrowing"
    RETURN_BORROWING = "return_borrowing"
    MARK_OVERDUE = "mark_overdue"
    MANAGE_BOOKS = "manage_books"
    LIST_USERS = "list_users"
    UPDATE_USER_ROLE = "update_user_role"
    DELETE_USER = "delete_user"
    CREATE_ADMIN = "create_admin"
    MANAGE_NOTIFICATIONS = "manage_notifications"


ADMIN_ONLY_ACTIONS = frozenset(
    {
        Action.MARK_OVERDUE,
        Action.MANAGE_BOOKS,
        Action.LIST_USERS,
        Action.UPDATE_USER_ROLE,
        Action.DELETE_USER,
        Action.CREATE_ADMIN,
        Action.MANAGE_NOTIFICATIONS,
    }
)

# Reads a non-admin may only make over their own records
OWN_SCOPE_ACTIONS = frozenset({Action.READ_BORROWINGS, Action.READ_ACTIVITY})

UNAUTHENTICATED = "Unauthorized"
ADMIN_REQUIRED = "Admin access required"
CANNOT_DELETE_SELF = "Cannot delete your own account"
CANNOT_DELETE_ADMIN = "Cannot delete admin accounts"
NOT_BORROWING_OWNER = "Not authorized to return this book"


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: Optional[str] = None


ALLOW = Decision(True)


def _deny(reason: str) -> Decision:
    return Decision(False, reason)


def authorize(identity: Optional[Identity], action: Action, resource: Any = None) -> Decision:
    """Decide whether identity may perform action on resource.

    Rules are evaluated in order and the first match wins:

    1. No identity: deny.
    2. Admin-only action and the caller is not an admin: deny.
    3. Own-scope reads are allowed; the caller must pass
       ``scope_user_id(identity)`` as a mandatory filter.
    4. Deleting a user: deny when the target is the caller or an admin,
       whatever the caller's role.
    5. Returning a borrowing: allow for admins and for the borrower.
    6. Anything else is allowed.

    Args:
        identity: The authenticated caller, or None.
        action: What the caller wants to do.
        resource: The target, when the rule needs it: a ``User`` for
            DELETE_USER, a ``Borrowing`` for RETURN_BORROWING.

    Returns:
        A Decision; ``reason`` is the user-visible message when denied.
    """
    if identity is None:
        return _deny(UNAUTHENTICATED)

    if action in ADMIN_ONLY_ACTIONS and not identity.is_admin:
        return _deny(ADMIN_REQUIRED)

    if action in OWN_SCOPE_ACTIONS:
        return ALLOW

    if action == Action.DELETE_USER:
        if resource is not None and resource.id == identity.id:
            return _deny(CANNOT_DELETE_SELF)
        if resource is not None and resource.role == UserRole.ADMIN:
            return _deny(CANNOT_DELETE_ADMIN)
        return ALLOW

    if action == Action.RETURN_BORROWING:
        if identity.is_admin or (resource is not None and resource.user_id == identity.id):
            return ALLOW
        return _deny(NOT_BORROWING_OWNER)

    return ALLOW


def enforce(identity: Optional[Identity], action: Action, resource: Any = None) -> Identity:
    """Raise unless ``authorize`` allows the action; return the identity."""
    decision = authorize(identity, action, resource)
    if not decision.allowed:
        if identity is None:
            raise AuthenticationError(decision.reason)
        raise AuthorizationError(decision.reason)
    return identity


def scope_user_id(identity: Identity) -> Optional[str]:
    """Mandatory user filter for own-scope reads; None means no restriction."""
    return None if identity.is_admin else identity.id
