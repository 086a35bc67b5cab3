"""Borrowing workflow.

Creating and returning a borrowing each touch three tables: the borrowing
row, the book's available copy count and the activity log. Each operation
runs as one transaction, and the copy count only moves through conditional
UPDATE statements so it can never be over-committed by concurrent
requests.
"""

import logging
from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy.orm import Session

from library_lending.database import transaction
from library_lending.exceptions import (
    ConflictError,
    NotFoundError,
    UnavailableError,
    ValidationError,
)
from library_lending.models import OUTSTANDING_STATUSES, Borrowing, BorrowingStatus
from library_lending.repositories import (
    ActivityLogRepository,
    BookRepository,
    BorrowingRepository,
)

logger = logging.getLogger(__name__)

NOT_AVAILABLE = "Book is not available"
ALREADY_RETURNED = "This book has already been returned"


class BorrowingWorkflow:
    def __init__(self, db: Session):
        self.db = db
        self.books = BookRepository(db)
        self.borrowings = BorrowingRepository(db)
        self.activity = ActivityLogRepository(db)

    def get_borrowing(self, borrowing_id: int) -> Borrowing:
        """Load a borrowing with its user and book.

        Raises:
            NotFoundError: If no borrowing has this id.
        """
        borrowing = self.borrowings.get(borrowing_id)
        if borrowing is None:
            raise NotFoundError("Borrowing not found")
        return borrowing

    def create_borrowing(self, user_id: str, book_id: int, due_date: datetime) -> Borrowing:
        """
        Lend one copy of a book to a user.

        Business Logic:
        1. The book must exist (404)
        2. The due date must lie after the borrow date (400)
        3. At least one copy must be available (400)
        4. The copy is taken with a conditional decrement, so the check in
           step 3 cannot be raced past
        5. The borrowing row and the book_borrowed log entry are written in
           the same transaction as the decrement

        Args:
            user_id: The borrower
            book_id: The book to borrow
            due_date: When the copy is due back

        Returns:
            The created borrowing (status active)
        """
        book = self.books.get(book_id)
        if book is None:
            raise NotFoundError("Book not found")

        now = datetime.now()
        if due_date <= now:
            raise ValidationError(
                "Invalid borrowing data",
                errors=[{"field": "dueDate", "message": "Due date must be in the future"}],
            )
        if book.available_quantity <= 0:
            raise UnavailableError(NOT_AVAILABLE)

        title = book.title
        with transaction(self.db):
            if not self.books.take_copy(book_id):
                raise UnavailableError(NOT_AVAILABLE)
            borrowing = self.borrowings.add(
                Borrowing(
                    user_id=user_id,
                    book_id=book_id,
                    borrow_date=now,
                    due_date=due_date,
                    status=BorrowingStatus.ACTIVE,
                )
            )
            self.activity.append(
                user_id,
                "book_borrowed",
                f"Borrowed book: {title}",
                entity_type="borrowing",
                entity_id=borrowing.id,
            )

        logger.info("User %s borrowed book %s (borrowing %s)", user_id, book_id, borrowing.id)
        return borrowing

    def return_borrowing(self, borrowing_id: int, acting_user_id: str) -> Borrowing:
        """
        Bring a borrowed copy back.

        The caller must already have checked that acting_user_id is the
        borrower or an admin. Active and overdue borrowings can be returned;
        a second return of the same borrowing fails without touching the
        copy count.

        Raises:
            NotFoundError: If the borrowing does not exist.
            ConflictError: If it was already returned.
        """
        borrowing = self.get_borrowing(borrowing_id)
        if borrowing.status == BorrowingStatus.RETURNED:
            raise ConflictError(ALREADY_RETURNED)

        book_id = borrowing.book_id
        title = borrowing.book.title if borrowing.book is not None else f"#{book_id}"
        with transaction(self.db):
            returned = self.borrowings.transition(
                borrowing_id,
                BorrowingStatus.RETURNED,
                OUTSTANDING_STATUSES,
                return_date=datetime.now(),
            )
            if not returned:
                raise ConflictError(ALREADY_RETURNED)
            if not self.books.put_back_copy(book_id):
                logger.warning("Book %s already had all copies on the shelf", book_id)
            self.activity.append(
                acting_user_id,
                "book_returned",
                f"Returned book: {title}",
                entity_type="borrowing",
                entity_id=borrowing_id,
            )

        logger.info("Borrowing %s returned by %s", borrowing_id, acting_user_id)
        self.db.refresh(borrowing)
        return borrowing

    def mark_overdue(
        self,
        borrowing_id: int,
        acting_user_id: str,
        return_date: Optional[datetime] = None,
    ) -> Borrowing:
        """Flag an active borrowing as overdue.

        The copy is still out, so the book's counts do not change and the
        due date is kept.

        Raises:
            NotFoundError: If the borrowing does not exist.
            ConflictError: If it is not active.
        """
        borrowing = self.get_borrowing(borrowing_id)
        with transaction(self.db):
            changed = self.borrowings.transition(
                borrowing_id,
                BorrowingStatus.OVERDUE,
                [BorrowingStatus.ACTIVE],
                return_date=return_date,
            )
            if not changed:
                raise ConflictError("Only active borrowings can be marked overdue")
            self.activity.append(
                acting_user_id,
                "borrowing_overdue",
                f"Marked borrowing {borrowing_id} as overdue",
                entity_type="borrowing",
                entity_id=borrowing_id,
            )

        self.db.refresh(borrowing)
        return borrowing

    def list_borrowings(
        self,
        user_id: Optional[str] = None,
        status: Optional[str] = None,
        page: int = 1,
        limit: int = 10,
    ) -> Tuple[List[Borrowing], int]:
        """Newest-first page of borrowings.

        user_id is not checked here: endpoints pass the caller's own id for
        non-admins.
        """
        return self.borrowings.list(user_id=user_id, status=status, page=page, limit=limit)
