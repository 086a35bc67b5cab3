import pytest

from library_lending.exceptions import AuthenticationError, AuthorizationError
from library_lending.guard import (
    ADMIN_ONLY_ACTIONS,
    ADMIN_REQUIRED,
    CANNOT_DELETE_ADMIN,
    CANNOT_DELETE_SELF,
    NOT_BORROWING_OWNER,
    Action,
    Identity,
    authorize,
    enforce,
    scope_user_id,
)
from library_lending.models import Borrowing, User, UserRole

ADMIN = Identity(id="local_admin", role=UserRole.ADMIN, username="librarian")
PATRON = Identity(id="local_alice", role=UserRole.USER, username="alice")


def test_anonymous_caller_is_denied_everything():
    for action in Action:
        decision = authorize(None, action)
        assert not decision.allowed
        assert decision.reason == "Unauthorized"


@pytest.mark.parametrize("action", sorted(ADMIN_ONLY_ACTIONS, key=lambda a: a.value))
def test_admin_only_actions(action):
    """
    Verifies:
    - Patrons are refused with the same message for every admin action
    - Admins pass the role check
    """
    denied = authorize(PATRON, action)
    assert not denied.allowed
    assert denied.reason == ADMIN_REQUIRED
    assert authorize(ADMIN, action, User(id="local_bob", role=UserRole.USER)).allowed


def test_everyday_actions_are_open_to_patrons():
    for action in (
        Action.READ_CATALOG,
        Action.READ_DASHBOARD,
        Action.READ_PROFILE,
        Action.READ_NOTIFICATIONS,
        Action.CREATE_BORROWING,
        Action.READ_BORROWINGS,
        Action.READ_ACTIVITY,
    ):
        assert authorize(PATRON, action).allowed


def test_own_scope_filter():
    assert scope_user_id(PATRON) == "local_alice"
    assert scope_user_id(ADMIN) is None


def test_delete_user_target_rules():
    """
    Business Logic:
    - Self-deletion is refused even for admins
    - Admin targets are refused
    - Deleting a patron is allowed for admins
    """
    self_target = User(id=ADMIN.id, role=UserRole.ADMIN)
    other_admin = User(id="local_deputy", role=UserRole.ADMIN)
    patron = User(id="local_bob", role=UserRole.USER)

    assert authorize(ADMIN, Action.DELETE_USER, self_target).reason == CANNOT_DELETE_SELF
    assert authorize(ADMIN, Action.DELETE_USER, other_admin).reason == CANNOT_DELETE_ADMIN
    assert authorize(ADMIN, Action.DELETE_USER, patron).allowed


def test_return_borrowing_ownership():
    own = Borrowing(user_id=PATRON.id)
    someone_else = Borrowing(user_id="local_bob")

    assert authorize(PATRON, Action.RETURN_BORROWING, own).allowed
    denied = authorize(PATRON, Action.RETURN_BORROWING, someone_else)
    assert not denied.allowed
    assert denied.reason == NOT_BORROWING_OWNER
    assert authorize(ADMIN, Action.RETURN_BORROWING, someone_else).allowed


def test_enforce_raises_matching_errors():
    with pytest.raises(AuthenticationError):
        enforce(None, Action.READ_CATALOG)
    with pytest.raises(AuthorizationError) as exc_info:
        enforce(PATRON, Action.MANAGE_BOOKS)
    assert exc_info.value.status_code == 403
    assert enforce(ADMIN, Action.MANAGE_BOOKS) is ADMIN
