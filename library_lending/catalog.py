"""Catalog administration workflow."""

import logging
from typing import List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from library_lending import schemas
from library_lending.database import transaction
from library_lending.exceptions import ConflictError, NotFoundError, ValidationError
from library_lending.models import Book
from library_lending.repositories import (
    ActivityLogRepository,
    BookRepository,
    BorrowingRepository,
)

logger = logging.getLogger(__name__)

NULLABLE_BOOK_FIELDS = {"description"}


class CatalogWorkflow:
    def __init__(self, db: Session):
        self.db = db
        self.books = BookRepository(db)
        self.borrowings = BorrowingRepository(db)
        self.activity = ActivityLogRepository(db)

    def get_book(self, book_id: int) -> Book:
        book = self.books.get(book_id)
        if book is None:
            raise NotFoundError("Book not found")
        return book

    def list_books(
        self,
        search: Optional[str] = None,
        search_field: Optional[str] = None,
        genre: Optional[str] = None,
        status: Optional[str] = None,
        page: int = 1,
        limit: int = 10,
    ) -> Tuple[List[Book], int]:
        return self.books.search(
            search=search,
            search_field=search_field,
            genre=genre,
            status=status,
            page=page,
            limit=limit,
        )

    def add_book(self, actor_id: str, data: schemas.BookCreate) -> Book:
        """
        Add copies of a book to the catalog.

        Business Logic:
        - isbn already catalogued: quantity and availableQuantity both grow
          by data.quantity; no second row is created and the stored title,
          author, genre and description are kept
        - new isbn: a row is inserted with availableQuantity = quantity
        - either way one book_added entry is logged

        Args:
            actor_id: The admin adding the book
            data: Validated book fields

        Returns:
            The new or grown book
        """
        try:
            with transaction(self.db):
                existing = self.books.get_by_isbn(data.isbn)
                if existing is not None:
                    self.books.add_copies(existing.id, data.quantity)
                    book = existing
                    details = f"Added {data.quantity} copies of book: {existing.title}"
                else:
                    book = self.books.add(
                        Book(
                            **data.model_dump(),
                            available_quantity=data.quantity,
                        )
                    )
                    details = f"Added book: {book.title}"
                self.activity.append(
                    actor_id, "book_added", details, entity_type="book", entity_id=book.id
                )
        except IntegrityError:
            # A concurrent request inserted the same isbn first
            raise ConflictError(f"Book with ISBN {data.isbn} was added concurrently, please retry")

        self.db.refresh(book)
        logger.info("Book %s (%s) now has %s copies", book.id, book.isbn, book.quantity)
        return book

    def update_book(self, actor_id: str, book_id: int, data: schemas.BookUpdate) -> Book:
        """
        Update a book's descriptive fields or its total quantity.

        isbn and availableQuantity cannot be set directly. A new quantity
        shifts availableQuantity by the same amount so the number of copies
        on loan is unchanged; going below that number is a conflict.

        Raises:
            NotFoundError: If the book does not exist.
            ValidationError: If a required field is set to null.
            ConflictError: If quantity would drop below the copies on loan.
        """
        book = self.get_book(book_id)
        update_data = data.model_dump(exclude_unset=True)

        null_fields = [
            key for key, value in update_data.items()
            if value is None and key not in NULLABLE_BOOK_FIELDS
        ]
        if null_fields:
            raise ValidationError(
                "Invalid book data",
                errors=[{"field": key, "message": "Field cannot be null"} for key in null_fields],
            )

        new_quantity = update_data.pop("quantity", None)
        if new_quantity is not None and new_quantity < book.total_borrowed:
            raise ConflictError(
                f"Quantity cannot be lower than the {book.total_borrowed} copies on loan"
            )

        try:
            with transaction(self.db):
                for key, value in update_data.items():
                    setattr(book, key, value)
                if new_quantity is not None:
                    delta = new_quantity - book.quantity
                    book.quantity = new_quantity
                    # SQL-side arithmetic keeps concurrent borrows/returns
                    book.available_quantity = Book.available_quantity + delta
                self.db.flush()
                self.activity.append(
                    actor_id,
                    "book_updated",
                    f"Updated book: {book.title}",
                    entity_type="book",
                    entity_id=book.id,
                )
        except IntegrityError:
            raise ConflictError("Quantity cannot be lower than the copies on loan")

        self.db.refresh(book)
        return book

    def delete_book(self, actor_id: str, book_id: int) -> None:
        """
        Remove a book and its returned borrowing history.

        Raises:
            NotFoundError: If the book does not exist.
            ConflictError: If any copy is still on loan (active or overdue).
        """
        book = self.get_book(book_id)
        outstanding = self.borrowings.count_outstanding_for_book(book_id)
        if outstanding:
            raise ConflictError(f"Cannot delete a book with {outstanding} copies on loan")

        title = book.title
        with transaction(self.db):
            self.books.delete(book)
            self.activity.append(
                actor_id,
                "book_deleted",
                f"Deleted book: {title}",
                entity_type="book",
                entity_id=book_id,
            )
        logger.info("Book %s deleted by %s", book_id, actor_id)
