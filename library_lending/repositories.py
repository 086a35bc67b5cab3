"""Repositories wrapping SQLAlchemy queries for each aggregate.

Repositories only add and flush; committing is the caller's job so a
workflow can make several changes plus its audit entry in one
transaction.
"""

from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy import desc, func, or_
from sqlalchemy.orm import Query, Session, joinedload

from library_lending.models import (
    OUTSTANDING_STATUSES,
    ActivityLog,
    Book,
    Borrowing,
    BorrowingStatus,
    Notification,
    SessionRecord,
    User,
    UserRole,
)

# Wildcard value accepted by genre/status/role filters
ALL = "all"

BOOK_SEARCH_FIELDS = {
    "id": Book.isbn,
    "title": Book.title,
    "author": Book.author,
    "genre": Book.genre,
}


def _paginate(query: Query, page: int, limit: int) -> Query:
    return query.offset((page - 1) * limit).limit(limit)


def _like(term: str) -> str:
    return f"%{term.lower()}%"


class UserRepository:
    """Credential store and user administration queries."""

    def __init__(self, session: Session):
        self.session = session

    def get(self, user_id: str) -> Optional[User]:
        """Look up a user by primary key."""
        return self.session.get(User, user_id)

    def get_by_username(self, username: str) -> Optional[User]:
        """Case-insensitive username lookup; usernames are stored lower-cased."""
        return (
            self.session.query(User)
            .filter(User.username == username.lower())
            .first()
        )

    def add(self, user: User) -> User:
        """Insert a user and flush so unique-index violations surface here.

        Raises:
            IntegrityError: If the username is already taken.
        """
        self.session.add(user)
        self.session.flush()
        return user

    def upsert(self, user_id: str, **fields) -> User:
        """Create the user or overwrite the given fields of the existing row."""
        user = self.get(user_id)
        if user is None:
            user = User(id=user_id, **fields)
            self.session.add(user)
        else:
            for key, value in fields.items():
                setattr(user, key, value)
            user.updated_at = datetime.now()
        self.session.flush()
        return user

    def list(
        self,
        search: Optional[str] = None,
        role: Optional[str] = None,
        page: int = 1,
        limit: int = 10,
    ) -> Tuple[List[User], int]:
        """Filter and paginate users, newest first.

        Args:
            search: Substring matched against username, email and both names
            role: admin or user; all or None means no filter
            page: 1-based page number
            limit: Page size

        Returns:
            The page of users and the total number of matches
        """
        query = self.session.query(User)
        if search:
            pattern = _like(search)
            query = query.filter(
                or_(
                    func.lower(User.username).like(pattern),
                    func.lower(User.email).like(pattern),
                    func.lower(User.first_name).like(pattern),
                    func.lower(User.last_name).like(pattern),
                )
            )
        if role and role != ALL:
            query = query.filter(User.role == UserRole(role))

        total = query.count()
        users = _paginate(query.order_by(desc(User.created_at), desc(User.id)), page, limit).all()
        return users, total

    def count(self) -> int:
        """Number of registered accounts, administrators included."""
        return self.session.query(func.count(User.id)).scalar()

    def delete(self, user: User) -> None:
        """Delete the user; sessions and borrowings cascade with it."""
        self.session.delete(user)
        self.session.flush()


class BookRepository:
    """Catalog queries plus the atomic copy-count updates."""

    def __init__(self, session: Session):
        self.session = session

    def get(self, book_id: int) -> Optional[Book]:
        """Look up a book by id."""
        return self.session.get(Book, book_id)

    def get_by_isbn(self, isbn: str) -> Optional[Book]:
        """Find the catalog entry for an ISBN, if any."""
        return self.session.query(Book).filter(Book.isbn == isbn).first()

    def add(self, book: Book) -> Book:
        """Insert a book and flush so it receives its id."""
        self.session.add(book)
        self.session.flush()
        return book

    def delete(self, book: Book) -> None:
        """Delete the book together with its borrowing history."""
        self.session.delete(book)
        self.session.flush()

    def search(
        self,
        search: Optional[str] = None,
        search_field: Optional[str] = None,
        genre: Optional[str] = None,
        status: Optional[str] = None,
        page: int = 1,
        limit: int = 10,
    ) -> Tuple[List[Book], int]:
        """Filter, count and paginate the catalog.

        Args:
            search: Case-insensitive substring to look for.
            search_field: One of id (isbn), title, author, genre; any other
                value searches all of them.
            genre: Exact genre, or "all".
            status: available, borrowed or "all". Applied in SQL before
                pagination, so every page except the last is full.
            page: 1-indexed page number.
            limit: Page size.

        Returns:
            Tuple of (books on the page, total matching books).
        """
        query = self.session.query(Book)

        if search:
            pattern = _like(search)
            column = BOOK_SEARCH_FIELDS.get(search_field or "")
            if column is not None:
                query = query.filter(func.lower(column).like(pattern))
            else:
                query = query.filter(
                    or_(*(func.lower(col).like(pattern) for col in BOOK_SEARCH_FIELDS.values()))
                )

        if genre and genre != ALL:
            query = query.filter(Book.genre == genre)

        if status == "available":
            query = query.filter(Book.available_quantity > 0)
        elif status == "borrowed":
            query = query.filter(Book.available_quantity <= 0)

        total = query.count()
        books = _paginate(query.order_by(desc(Book.created_at), desc(Book.id)), page, limit).all()
        return books, total

    def take_copy(self, book_id: int) -> bool:
        """Decrement available_quantity if, and only if, a copy is left.

        A single conditional UPDATE, so two concurrent borrowers can never
        both take the last copy.

        Returns:
            True if a copy was taken, False if none was available.
        """
        rows = (
            self.session.query(Book)
            .filter(Book.id == book_id, Book.available_quantity > 0)
            .update(
                {
                    Book.available_quantity: Book.available_quantity - 1,
                    Book.updated_at: datetime.now(),
                },
                synchronize_session=False,
            )
        )
        return rows == 1

    def put_back_copy(self, book_id: int) -> bool:
        """Increment available_quantity, never past quantity."""
        rows = (
            self.session.query(Book)
            .filter(Book.id == book_id, Book.available_quantity < Book.quantity)
            .update(
                {
                    Book.available_quantity: Book.available_quantity + 1,
                    Book.updated_at: datetime.now(),
                },
                synchronize_session=False,
            )
        )
        return rows == 1

    def add_copies(self, book_id: int, amount: int) -> None:
        """Grow quantity and available_quantity together."""
        self.session.query(Book).filter(Book.id == book_id).update(
            {
                Book.quantity: Book.quantity + amount,
                Book.available_quantity: Book.available_quantity + amount,
                Book.updated_at: datetime.now(),
            },
            synchronize_session=False,
        )

    def count(self) -> int:
        """Number of catalog entries (titles, not copies)."""
        return self.session.query(func.count(Book.id)).scalar()

    def most_borrowed(self, limit: int) -> List[Tuple[Book, int]]:
        """Return (book, borrowing count) pairs, highest count first."""
        borrow_count = func.count(Borrowing.id)
        rows = (
            self.session.query(Book, borrow_count)
            .outerjoin(Borrowing, Borrowing.book_id == Book.id)
            .group_by(Book.id)
            .order_by(desc(borrow_count), Book.id)
            .limit(limit)
            .all()
        )
        return [(book, count) for book, count in rows]


class BorrowingRepository:
    """Lending transactions and their status transitions."""

    def __init__(self, session: Session):
        self.session = session

    def _with_details(self) -> Query:
        return self.session.query(Borrowing).options(
            joinedload(Borrowing.user), joinedload(Borrowing.book)
        )

    def get(self, borrowing_id: int) -> Optional[Borrowing]:
        """Load a borrowing with its user and book eagerly joined."""
        return self._with_details().filter(Borrowing.id == borrowing_id).first()

    def add(self, borrowing: Borrowing) -> Borrowing:
        """Insert a borrowing and flush so it receives its id."""
        self.session.add(borrowing)
        self.session.flush()
        return borrowing

    def transition(
        self,
        borrowing_id: int,
        new_status: BorrowingStatus,
        from_statuses,
        return_date: Optional[datetime] = None,
    ) -> bool:
        """Move a borrowing to new_status only if it is in from_statuses.

        Returns:
            True if the row changed, False if it was not in an allowed state.
        """
        values = {Borrowing.status: new_status, Borrowing.updated_at: datetime.now()}
        if return_date is not None:
            values[Borrowing.return_date] = return_date
        rows = (
            self.session.query(Borrowing)
            .filter(Borrowing.id == borrowing_id, Borrowing.status.in_(list(from_statuses)))
            .update(values, synchronize_session=False)
        )
        return rows == 1

    def list(
        self,
        user_id: Optional[str] = None,
        status: Optional[str] = None,
        page: int = 1,
        limit: int = 10,
    ) -> Tuple[List[Borrowing], int]:
        """Filter and paginate borrowings, newest first.

        Args:
            user_id: Restrict to one borrower; None means everyone
            status: active, returned or overdue; all or None means no filter
            page: 1-based page number
            limit: Page size

        Returns:
            The page of borrowings (user and book loaded) and the total count
        """
        query = self.session.query(Borrowing)
        if user_id:
            query = query.filter(Borrowing.user_id == user_id)
        if status and status != ALL:
            query = query.filter(Borrowing.status == BorrowingStatus(status))

        total = query.count()
        query = query.options(joinedload(Borrowing.user), joinedload(Borrowing.book))
        items = _paginate(
            query.order_by(desc(Borrowing.created_at), desc(Borrowing.id)), page, limit
        ).all()
        return items, total

    def count_by_status(self, status: BorrowingStatus) -> int:
        """Number of borrowings currently in the given status."""
        return (
            self.session.query(func.count(Borrowing.id))
            .filter(Borrowing.status == status)
            .scalar()
        )

    def count_outstanding_for_book(self, book_id: int) -> int:
        """Active or overdue borrowings of one book."""
        return (
            self.session.query(func.count(Borrowing.id))
            .filter(Borrowing.book_id == book_id, Borrowing.status.in_(OUTSTANDING_STATUSES))
            .scalar()
        )

    def count_outstanding_for_user(self, user_id: str) -> int:
        """Active or overdue borrowings held by one user."""
        return (
            self.session.query(func.count(Borrowing.id))
            .filter(Borrowing.user_id == user_id, Borrowing.status.in_(OUTSTANDING_STATUSES))
            .scalar()
        )


class ActivityLogRepository:
    """Append-only audit trail: entries are never updated or deleted."""

    def __init__(self, session: Session):
        self.session = session

    def append(
        self,
        user_id: str,
        action: str,
        details: str,
        entity_type: Optional[str] = None,
        entity_id=None,
    ) -> ActivityLog:
        """Record one action.

        Args:
            user_id: Who acted; not a foreign key, so entries outlive the user
            action: Machine-readable action name, e.g. book_borrowed
            details: Human-readable description
            entity_type: Kind of entity acted on, if any
            entity_id: Its id, stored as text
        """
        entry = ActivityLog(
            user_id=user_id,
            action=action,
            details=details,
            entity_type=entity_type,
            entity_id=str(entity_id) if entity_id is not None else None,
        )
        self.session.add(entry)
        self.session.flush()
        return entry

    def list(
        self, user_id: Optional[str] = None, page: int = 1, limit: int = 20
    ) -> Tuple[List[ActivityLog], int]:
        """Page through entries, newest first, optionally for one user."""
        query = self.session.query(ActivityLog)
        if user_id:
            query = query.filter(ActivityLog.user_id == user_id)

        total = query.count()
        query = query.options(joinedload(ActivityLog.user))
        logs = _paginate(
            query.order_by(desc(ActivityLog.timestamp), desc(ActivityLog.id)), page, limit
        ).all()
        return logs, total


class NotificationRepository:
    """Announcements and targeted messages."""

    def __init__(self, session: Session):
        self.session = session

    def get(self, notification_id: int) -> Optional[Notification]:
        """Look up a notification by id."""
        return self.session.get(Notification, notification_id)

    def add(self, notification: Notification) -> Notification:
        self.session.add(notification)
        self.session.flush()
        return notification

    def delete(self, notification: Notification) -> None:
        self.session.delete(notification)
        self.session.flush()

    def for_user(self, user_id: str) -> List[Notification]:
        """Notifications addressed to user_id plus every broadcast."""
        return (
            self.session.query(Notification)
            .filter(or_(Notification.user_id == user_id, Notification.user_id.is_(None)))
            .order_by(desc(Notification.created_at), desc(Notification.id))
            .all()
        )

    def all(self) -> List[Notification]:
        """Every notification, newest first."""
        return (
            self.session.query(Notification)
            .order_by(desc(Notification.created_at), desc(Notification.id))
            .all()
        )

    def detach_author(self, user_id: str) -> None:
        """Clear the author of notifications written by a user being deleted."""
        self.session.query(Notification).filter(
            Notification.created_by_id == user_id
        ).update({Notification.created_by_id: None}, synchronize_session=False)


class SessionRepository:
    """Server-side session records."""

    def __init__(self, session: Session):
        self.session = session

    def get(self, sid: str) -> Optional[SessionRecord]:
        """Look up a session by its id."""
        return self.session.get(SessionRecord, sid)

    def add(self, record: SessionRecord) -> SessionRecord:
        self.session.add(record)
        self.session.flush()
        return record

    def delete(self, record: SessionRecord) -> None:
        """Remove a session; its cookie stops resolving immediately."""
        self.session.delete(record)
        self.session.flush()

    def purge_expired(self, now: datetime) -> int:
        """Delete local sessions past their expiry; returns the count."""
        return (
            self.session.query(SessionRecord)
            .filter(SessionRecord.expires_at <= now, SessionRecord.refresh_token.is_(None))
            .delete(synchronize_session=False)
        )
