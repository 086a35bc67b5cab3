from sqlalchemy.orm import Session

from library_lending import schemas
from library_lending.config import POPULAR_BOOKS_LIMIT
from library_lending.models import BorrowingStatus
from library_lending.repositories import BookRepository, BorrowingRepository, UserRepository


def get_dashboard_stats(db: Session) -> schemas.DashboardStats:
    """
    Aggregate catalog and lending figures for the dashboard.

    All five queries run inside the request's single read transaction;
    figures are not locked against concurrent writers.

    Returns:
        Totals of books and users, active and overdue borrowing counts, and
        the most borrowed books (ties broken by book id)
    """
    books = BookRepository(db)
    borrowings = BorrowingRepository(db)
    users = UserRepository(db)

    popular = [
        schemas.PopularBook(book=schemas.Book.model_validate(book), borrow_count=count)
        for book, count in books.most_borrowed(POPULAR_BOOKS_LIMIT)
    ]
    return schemas.DashboardStats(
        total_books=books.count(),
        total_users=users.count(),
        active_borrowings=borrowings.count_by_status(BorrowingStatus.ACTIVE),
        overdue_borrowings=borrowings.count_by_status(BorrowingStatus.OVERDUE),
        popular_books=popular,
    )
