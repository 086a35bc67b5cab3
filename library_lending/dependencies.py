"""Dependency injection module for FastAPI.

Request-scoped services are built on top of the request's database
session. ``require(action)`` is the single place where endpoints plug into
the authorization guard.
"""

from typing import Annotated, Optional

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from library_lending.accounts import AccountWorkflow
from library_lending.auth import AuthService
from library_lending.borrowing import BorrowingWorkflow
from library_lending.catalog import CatalogWorkflow
from library_lending.config import SESSION_COOKIE_NAME
from library_lending.database import get_db
from library_lending.guard import Action, Identity, enforce
from library_lending.notifications import NotificationWorkflow
from library_lending.oidc import OIDCClient, get_oidc_client


def get_auth_service(
    db: Session = Depends(get_db),
    oidc_client: Optional[OIDCClient] = Depends(get_oidc_client),
) -> AuthService:
    """Get AuthService instance with request-scoped DB session.

    Args:
        db: Database session.
        oidc_client: Identity provider client, None when not configured.

    Returns:
        AuthService instance.
    """
    return AuthService(db, oidc_client)


def get_current_identity(
    request: Request,
    auth_service: AuthService = Depends(get_auth_service),
) -> Identity:
    """Resolve the session cookie to the caller's identity.

    Raises:
        AuthenticationError: If there is no valid session.
    """
    return auth_service.resolve(request.cookies.get(SESSION_COOKIE_NAME))


def require(action: Action):
    """Build a dependency that lets the request through only if allowed.

    Usage in endpoints:
    @app.post("/api/books")
    def add_book(identity: Identity = Depends(require(Action.MANAGE_BOOKS))): ...

    Role checks run as dependencies, before the request body is validated,
    so a non-admin always gets 403 whatever the payload.
    """

    def dependency(identity: Identity = Depends(get_current_identity)) -> Identity:
        return enforce(identity, action)

    return dependency


def get_borrowing_workflow(db: Session = Depends(get_db)) -> BorrowingWorkflow:
    return BorrowingWorkflow(db)


def get_catalog_workflow(db: Session = Depends(get_db)) -> CatalogWorkflow:
    return CatalogWorkflow(db)


def get_notification_workflow(db: Session = Depends(get_db)) -> NotificationWorkflow:
    return NotificationWorkflow(db)


def get_account_workflow(db: Session = Depends(get_db)) -> AccountWorkflow:
    return AccountWorkflow(db)


# Type aliases for dependency injection
AuthServiceDep = Annotated[AuthService, Depends(get_auth_service)]
CurrentIdentity = Annotated[Identity, Depends(get_current_identity)]
BorrowingWorkflowDep = Annotated[BorrowingWorkflow, Depends(get_borrowing_workflow)]
CatalogWorkflowDep = Annotated[CatalogWorkflow, Depends(get_catalog_workflow)]
NotificationWorkflowDep = Annotated[NotificationWorkflow, Depends(get_notification_workflow)]
AccountWorkflowDep = Annotated[AccountWorkflow, Depends(get_account_workflow)]
