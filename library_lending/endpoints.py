import logging
import secrets
from contextlib import asynccontextmanager
from typing import List, Literal, Optional

from fastapi import Depends, FastAPI, Query, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from library_lending import config, schemas
from library_lending.dashboard import get_dashboard_stats
from library_lending.database import get_db, init_db
from library_lending.dependencies import (
    AccountWorkflowDep,
    AuthServiceDep,
    BorrowingWorkflowDep,
    CatalogWorkflowDep,
    CurrentIdentity,
    NotificationWorkflowDep,
    require,
)
from library_lending.exceptions import FederatedAuthError, LibraryError, NotFoundError, StorageError
from library_lending.guard import Action, Identity, enforce, scope_user_id
from library_lending.logging_config import setup_logging
from library_lending.oidc import OIDCClient, get_oidc_client
from library_lending.repositories import ActivityLogRepository, UserRepository

logger = logging.getLogger(__name__)

OIDC_STATE_COOKIE = "oidc_state"

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan: runs once before the first request.

    Internal Working:
    1. Configure logging
    2. Refuse to start without administrator credentials
    3. Create any missing tables
    """
    setup_logging()
    config.validate_admin_settings()
    init_db()
    logger.info("Library Lending API started")
    yield
    logger.info("Library Lending API stopped")


app = FastAPI(
    title="Library Lending API",
    description="Book catalog, borrowing and returns, user administration and announcements",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- Error handling ---


@app.exception_handler(LibraryError)
async def library_error_handler(request: Request, exc: LibraryError):
    body = {"message": exc.message}
    errors = getattr(exc, "errors", None)
    if errors:
        body["errors"] = errors
    return JSONResponse(status_code=exc.status_code, content=body)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = []
    for error in exc.errors():
        location = [str(part) for part in error["loc"] if part not in ("body", "query", "path")]
        errors.append({"field": ".".join(location) or "body", "message": error["msg"]})
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"message": "Invalid request data", "errors": errors},
    )


@app.exception_handler(SQLAlchemyError)
async def storage_error_handler(request: Request, exc: SQLAlchemyError):
    logger.exception("Storage error on %s %s", request.method, request.url.path)
    error = StorageError("Internal server error")
    return JSONResponse(status_code=error.status_code, content={"message": error.message})


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"message": "Internal server error"},
    )


def _set_session_cookie(response: Response, cookie_value: str) -> None:
    response.set_cookie(
        key=config.SESSION_COOKIE_NAME,
        value=cookie_value,
        max_age=int(config.SESSION_TTL.total_seconds()),
        httponly=True,
        samesite="lax",
        secure=config.COOKIE_SECURE,
    )


def _clear_session_cookie(response: Response) -> None:
    response.delete_cookie(
        key=config.SESSION_COOKIE_NAME,
        httponly=True,
        samesite="lax",
        secure=config.COOKIE_SECURE,
    )


def _auth_response(message: str, identity: Identity) -> schemas.AuthResponse:
    return schemas.AuthResponse(
        message=message,
        user=schemas.UserSummary(id=identity.id, username=identity.username, role=identity.role),
    )


@app.get("/health")
async def health_check():
    """
    Health check endpoint for monitoring and load balancers.

    Returns:
        Simple status message indicating the service is running
    """
    return {"status": "healthy", "service": "library-lending-api"}


# --- Authentication ---


@app.post("/api/auth/login", response_model=schemas.AuthResponse)
def login(credentials: schemas.LoginRequest, response: Response, auth: AuthServiceDep):
    """
    Log in with a username and password.

    Internal Working:
    1. AuthService checks the configured administrator first, then the
       stored bcrypt hash of a local account
    2. Any failure is a generic 401, never saying which part was wrong
    3. On success a server-side session is stored and its signed id is set
       as an HTTP-only cookie valid for 7 days
    """
    identity = auth.authenticate(credentials.username, credentials.password)
    _, cookie_value = auth.create_session(identity)
    _set_session_cookie(response, cookie_value)
    logger.info("User %s logged in", identity.id)
    return _auth_response("Login successful", identity)


@app.post(
    "/api/auth/register",
    response_model=schemas.AuthResponse,
    status_code=status.HTTP_201_CREATED,
)
def register(data: schemas.RegisterRequest, response: Response, auth: AuthServiceDep):
    """
    Create a patron account and log it in straight away.

    Internal Working:
    1. The body is validated (passwords match, no whitespace in username)
    2. The account is stored with the user role and a bcrypt hash
    3. A session is opened exactly as after a login

    Raises:
        UsernameTakenError: 400 if the username is taken (case-insensitive)
            or is the configured administrator's
    """
    identity = auth.register(
        username=data.username,
        password=data.password,
        email=data.email,
        first_name=data.first_name,
        last_name=data.last_name,
    )
    _, cookie_value = auth.create_session(identity)
    _set_session_cookie(response, cookie_value)
    return _auth_response("Account created successfully", identity)


@app.post("/api/auth/logout", response_model=schemas.MessageResponse)
def logout(request: Request, response: Response, identity: CurrentIdentity, auth: AuthServiceDep):
    """
    End the caller's session.

    The server-side session row is deleted, so a copied cookie stops
    working too, and the cookie is cleared on the client.
    """
    auth.logout(request.cookies.get(config.SESSION_COOKIE_NAME))
    _clear_session_cookie(response)
    return schemas.MessageResponse(message="Logout successful")


@app.get("/api/logout")
def logout_redirect(request: Request, auth: AuthServiceDep):
    """Browser logout: end the session and go back to the login page."""
    auth.logout(request.cookies.get(config.SESSION_COOKIE_NAME))
    response = RedirectResponse(url="/login", status_code=status.HTTP_302_FOUND)
    _clear_session_cookie(response)
    return response


@app.get("/api/auth/user", response_model=schemas.User)
def current_user(
    identity: Identity = Depends(require(Action.READ_PROFILE)),
    db: Session = Depends(get_db),
):
    """
    Return the logged-in user's profile.

    Returns:
        The stored user row, never including the password hash
    """
    user = UserRepository(db).get(identity.id)
    if user is None:
        raise NotFoundError("User not found")
    return schemas.User.model_validate(user)


@app.post(
    "/api/auth/create-admin",
    response_model=schemas.AuthResponse,
    status_code=status.HTTP_201_CREATED,
)
def create_admin(
    data: schemas.CreateAdminRequest,
    auth: AuthServiceDep,
    accounts: AccountWorkflowDep,
    identity: Identity = Depends(require(Action.CREATE_ADMIN)),
):
    """
    Create another administrator account (admin only).

    Missing profile fields get placeholder values. The new account and
    its admin_created log entry are stored in one transaction.

    Raises:
        UsernameTakenError: 400 if the username is taken
    """
    admin = accounts.create_admin(
        identity.id,
        auth,
        username=data.username,
        password=data.password,
        email=data.email,
        first_name=data.first_name,
        last_name=data.last_name,
    )
    return _auth_response("Admin account created successfully", admin)


# --- Federated login ---


def _require_oidc(client: Optional[OIDCClient]) -> OIDCClient:
    if client is None:
        raise NotFoundError("Federated login is not configured")
    return client


@app.get("/api/login")
def federated_login(oidc_client: Optional[OIDCClient] = Depends(get_oidc_client)):
    """Redirect the browser to the identity provider."""
    client = _require_oidc(oidc_client)
    state = secrets.token_urlsafe(16)
    response = RedirectResponse(
        url=client.authorization_url(config.OIDC_REDIRECT_URI, state),
        status_code=status.HTTP_302_FOUND,
    )
    response.set_cookie(
        OIDC_STATE_COOKIE, state, max_age=600, httponly=True, samesite="lax",
        secure=config.COOKIE_SECURE,
    )
    return response


@app.get("/api/callback")
def federated_callback(
    request: Request,
    auth: AuthServiceDep,
    code: str = Query(..., min_length=1),
    state: str = Query(..., min_length=1),
    oidc_client: Optional[OIDCClient] = Depends(get_oidc_client),
):
    """
    Finish a federated login.

    Internal Working:
    1. The state must match the cookie set by /api/login
    2. The authorization code is exchanged for tokens
    3. The user is upserted from the id_token claims and a federated
       session (with its refresh token) is opened
    Any failure sends the browser back to /api/login.
    """
    client = _require_oidc(oidc_client)
    expected_state = request.cookies.get(OIDC_STATE_COOKIE)
    try:
        if not expected_state or not secrets.compare_digest(expected_state, state):
            raise FederatedAuthError("State mismatch")
        token_set = client.exchange_code(code, config.OIDC_REDIRECT_URI)
        _, cookie_value = auth.login_federated(token_set)
    except FederatedAuthError as e:
        logger.warning("Federated login failed: %s", e.message)
        return RedirectResponse(url="/api/login", status_code=status.HTTP_302_FOUND)

    response = RedirectResponse(url="/", status_code=status.HTTP_302_FOUND)
    response.delete_cookie(OIDC_STATE_COOKIE)
    _set_session_cookie(response, cookie_value)
    return response


# --- Dashboard ---


@app.get("/api/dashboard/stats", response_model=schemas.DashboardStats)
def dashboard_stats(
    identity: Identity = Depends(require(Action.READ_DASHBOARD)),
    db: Session = Depends(get_db),
):
    """
    Catalog and lending figures for the dashboard.

    Returns:
        Book and user totals, active and overdue borrowing counts, and the
        five most borrowed books
    """
    return get_dashboard_stats(db)


# --- Books ---


@app.get("/api/books", response_model=schemas.BookList)
def list_books(
    catalog: CatalogWorkflowDep,
    identity: Identity = Depends(require(Action.READ_CATALOG)),
    search: Optional[str] = Query(None),
    search_field: Optional[str] = Query(None, alias="searchField"),
    genre: Optional[str] = Query(None),
    book_status: Optional[Literal["available", "borrowed", "all"]] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    limit: int = Query(config.DEFAULT_PAGE_SIZE, ge=1),
):
    """
    List books with search, filters and pagination.

    searchField picks the column (id = isbn, title, author, genre); without
    it the search term is matched against all of them. status filters on
    availability before pagination, so total always matches the filter.
    """
    books, total = catalog.list_books(
        search=search,
        search_field=search_field,
        genre=genre,
        status=book_status,
        page=page,
        limit=limit,
    )
    return schemas.BookList(books=[schemas.Book.model_validate(b) for b in books], total=total)


@app.get("/api/books/{book_id}", response_model=schemas.Book)
def get_book(
    book_id: int,
    catalog: CatalogWorkflowDep,
    identity: Identity = Depends(require(Action.READ_CATALOG)),
):
    """
    Retrieve a single book.

    Raises:
        NotFoundError: 404 if no book has this id
    """
    return schemas.Book.model_validate(catalog.get_book(book_id))


@app.post("/api/books", response_model=schemas.Book, status_code=status.HTTP_201_CREATED)
def add_book(
    book: schemas.BookCreate,
    catalog: CatalogWorkflowDep,
    identity: Identity = Depends(require(Action.MANAGE_BOOKS)),
):
    """
    Add a book, or more copies of an already catalogued isbn (admin only).
    """
    return schemas.Book.model_validate(catalog.add_book(identity.id, book))


@app.put("/api/books/{book_id}", response_model=schemas.Book)
def update_book(
    book_id: int,
    book_update: schemas.BookUpdate,
    catalog: CatalogWorkflowDep,
    identity: Identity = Depends(require(Action.MANAGE_BOOKS)),
):
    """
    Update a book's information (admin only).

    Internal Working:
    1. Only the fields present in the body are changed (partial update)
    2. isbn and availableQuantity are rejected with 400
    3. A new quantity moves availableQuantity by the same amount, so the
       copies on loan stay accounted for

    Raises:
        NotFoundError: 404 if the book does not exist
        ConflictError: 409 if quantity would drop below the copies on loan
    """
    return schemas.Book.model_validate(catalog.update_book(identity.id, book_id, book_update))


@app.delete("/api/books/{book_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_book(
    book_id: int,
    catalog: CatalogWorkflowDep,
    identity: Identity = Depends(require(Action.MANAGE_BOOKS)),
):
    """
    Delete a book and its returned borrowing history (admin only).

    Raises:
        NotFoundError: 404 if the book does not exist
        ConflictError: 409 while any copy is still on loan
    """
    catalog.delete_book(identity.id, book_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# --- Borrowings ---


@app.get("/api/borrowings", response_model=schemas.BorrowingList)
def list_borrowings(
    workflow: BorrowingWorkflowDep,
    identity: Identity = Depends(require(Action.READ_BORROWINGS)),
    borrowing_status: Optional[Literal["active", "returned", "overdue", "all"]] = Query(
        None, alias="status"
    ),
    page: int = Query(1, ge=1),
    limit: int = Query(config.DEFAULT_PAGE_SIZE, ge=1),
):
    """
    List borrowings, newest first, with book and user details.

    Admins see every borrowing; everyone else only their own.

    Args:
        status: active, returned or overdue; all or omitted means no filter
        page: 1-based page number
        limit: Page size (no upper bound)
    """
    items, total = workflow.list_borrowings(
        user_id=scope_user_id(identity),
        status=borrowing_status,
        page=page,
        limit=limit,
    )
    return schemas.BorrowingList(
        borrowings=[schemas.BorrowingWithDetails.model_validate(b) for b in items],
        total=total,
    )


@app.post(
    "/api/borrowings",
    response_model=schemas.Borrowing,
    status_code=status.HTTP_201_CREATED,
)
def create_borrowing(
    data: schemas.BorrowingCreate,
    workflow: BorrowingWorkflowDep,
    identity: Identity = Depends(require(Action.CREATE_BORROWING)),
):
    """
    Borrow a book for the current user.

    Raises:
        NotFoundError: 404 if the book does not exist
        ValidationError: 400 if the due date is not in the future
        UnavailableError: 400 if no copy is available
    """
    borrowing = workflow.create_borrowing(identity.id, data.book_id, data.due_date)
    return schemas.Borrowing.model_validate(borrowing)


@app.put("/api/borrowings/{borrowing_id}/return", response_model=schemas.Borrowing)
def return_borrowing(
    borrowing_id: int,
    workflow: BorrowingWorkflowDep,
    identity: CurrentIdentity,
):
    """
    Return a borrowed book (the borrower or an admin).

    Raises:
        NotFoundError: 404 if the borrowing does not exist
        AuthorizationError: 403 if the caller neither owns it nor is admin
        ConflictError: 409 if it was already returned
    """
    borrowing = workflow.get_borrowing(borrowing_id)
    enforce(identity, Action.RETURN_BORROWING, borrowing)
    returned = workflow.return_borrowing(borrowing_id, identity.id)
    return schemas.Borrowing.model_validate(returned)


@app.put("/api/borrowings/{borrowing_id}/overdue", response_model=schemas.Borrowing)
def mark_borrowing_overdue(
    borrowing_id: int,
    workflow: BorrowingWorkflowDep,
    identity: Identity = Depends(require(Action.MARK_OVERDUE)),
):
    """
    Flag an active borrowing as overdue (admin only).

    The copy is still out, so the book's counts are not touched.

    Raises:
        NotFoundError: 404 if the borrowing does not exist
        ConflictError: 409 if the borrowing is not active
    """
    borrowing = workflow.mark_overdue(borrowing_id, identity.id)
    return schemas.Borrowing.model_validate(borrowing)


# --- Activity logs ---


@app.get("/api/activity-logs", response_model=schemas.ActivityLogList)
def list_activity_logs(
    identity: Identity = Depends(require(Action.READ_ACTIVITY)),
    db: Session = Depends(get_db),
    page: int = Query(1, ge=1),
    limit: int = Query(config.DEFAULT_ACTIVITY_PAGE_SIZE, ge=1),
):
    """
    Page through the activity log, newest first.

    Admins see the whole trail; everyone else only their own actions.
    Entries outlive the users and books they mention.
    """
    logs, total = ActivityLogRepository(db).list(
        user_id=scope_user_id(identity), page=page, limit=limit
    )
    return schemas.ActivityLogList(
        logs=[schemas.ActivityLog.model_validate(log) for log in logs], total=total
    )


# --- Users ---


@app.get("/api/users", response_model=schemas.UserList)
def list_users(
    accounts: AccountWorkflowDep,
    identity: Identity = Depends(require(Action.LIST_USERS)),
    search: Optional[str] = Query(None),
    role: Optional[Literal["admin", "user", "all"]] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(config.DEFAULT_PAGE_SIZE, ge=1),
):
    """
    List user accounts (admin only).

    search matches username, email, first and last name
    (case-insensitive); role narrows to admins or patrons. Newest first.
    """
    users, total = accounts.list_users(search=search, role=role, page=page, limit=limit)
    return schemas.UserList(users=[schemas.User.model_validate(u) for u in users], total=total)


@app.put("/api/users/{user_id}/role", response_model=schemas.User)
def update_user_role(
    user_id: str,
    data: schemas.RoleUpdate,
    accounts: AccountWorkflowDep,
    identity: Identity = Depends(require(Action.UPDATE_USER_ROLE)),
):
    """
    Change a user's role (admin only).

    Takes effect on the user's next request; their session is kept.

    Raises:
        NotFoundError: 404 if the user does not exist
    """
    return schemas.User.model_validate(accounts.update_role(identity.id, user_id, data.role))


@app.delete("/api/users/{user_id}", response_model=schemas.MessageResponse)
def delete_user(
    user_id: str,
    accounts: AccountWorkflowDep,
    identity: Identity = Depends(require(Action.DELETE_USER)),
):
    """
    Delete a user account (admin only).

    Business Logic:
    - nobody can delete their own account (403)
    - admin accounts cannot be deleted (403)
    - users with books still on loan cannot be deleted (409)
    """
    accounts.delete_user(identity, user_id)
    return schemas.MessageResponse(message="User deleted successfully")


# --- Notifications ---


@app.get("/api/notifications", response_model=schemas.NotificationList)
def list_my_notifications(
    workflow: NotificationWorkflowDep,
    identity: Identity = Depends(require(Action.READ_NOTIFICATIONS)),
):
    """Notifications addressed to the caller plus all announcements."""
    notifications = workflow.list_for_user(identity.id)
    return schemas.NotificationList(
        notifications=[schemas.Notification.model_validate(n) for n in notifications]
    )


@app.get("/api/notifications/all", response_model=List[schemas.Notification])
def list_all_notifications(
    workflow: NotificationWorkflowDep,
    identity: Identity = Depends(require(Action.MANAGE_NOTIFICATIONS)),
):
    """List every notification, broadcast or targeted (admin only)."""
    return [schemas.Notification.model_validate(n) for n in workflow.list_all()]


@app.post(
    "/api/notifications/announcement",
    response_model=schemas.Notification,
    status_code=status.HTTP_201_CREATED,
)
def create_announcement(
    data: schemas.AnnouncementCreate,
    workflow: NotificationWorkflowDep,
    identity: Identity = Depends(require(Action.MANAGE_NOTIFICATIONS)),
):
    """
    Broadcast an announcement to every user (admin only).

    Returns:
        The stored notification, with type announcement and no recipient
    """
    notification = workflow.create_announcement(identity.id, data.title, data.content)
    return schemas.Notification.model_validate(notification)


@app.post(
    "/api/notifications",
    response_model=schemas.Notification,
    status_code=status.HTTP_201_CREATED,
)
def create_notification(
    data: schemas.NotificationCreate,
    workflow: NotificationWorkflowDep,
    identity: Identity = Depends(require(Action.MANAGE_NOTIFICATIONS)),
):
    """
    Send a notification to one user (admin only).

    Raises:
        NotFoundError: 404 if the recipient does not exist
    """
    notification = workflow.create_notification(
        identity.id, data.user_id, data.title, data.content, data.type
    )
    return schemas.Notification.model_validate(notification)


@app.delete("/api/notifications/{notification_id}", response_model=schemas.MessageResponse)
def delete_notification(
    notification_id: int,
    workflow: NotificationWorkflowDep,
    identity: Identity = Depends(require(Action.MANAGE_NOTIFICATIONS)),
):
    """
    Delete a notification (admin only).

    Raises:
        NotFoundError: 404 if the notification does not exist
    """
    workflow.delete_notification(identity.id, notification_id)
    return schemas.MessageResponse(message="Notification deleted successfully")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=config.API_HOST, port=config.API_PORT)
