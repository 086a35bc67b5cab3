import enum
from datetime import datetime

from library_lending.database import Base
from sqlalchemy.orm import relationship
from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
)


class UserRole(str, enum.Enum):
    ADMIN = "admin"
    USER = "user"


class BorrowingStatus(str, enum.Enum):
    ACTIVE = "active"
    RETURNED = "returned"
    OVERDUE = "overdue"


class SessionKind(str, enum.Enum):
    LOCAL = "local"
    FEDERATED = "federated"


# Borrowings in these states mean the physical copy is out of the library
OUTSTANDING_STATUSES = (BorrowingStatus.ACTIVE, BorrowingStatus.OVERDUE)


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class User(Base):
    """
    User model representing patrons and librarians.

    Relationships:
    - One user can have many borrowings (one-to-many)
    - One user can have many sessions (one-to-many)
    - One user can receive many targeted notifications

    Business Logic:
    - username is stored lower-cased; the unique index is what guarantees
      two registrations can never claim the same name
    - federated users have no username or hashed_password
    """

    __tablename__ = "users"

    id = Column(String, primary_key=True, index=True)
    username = Column(String, unique=True, nullable=True, index=True)
    hashed_password = Column(String, nullable=True)
    email = Column(String, nullable=True, index=True)
    first_name = Column(String, nullable=True)
    last_name = Column(String, nullable=True)
    profile_image_url = Column(String, nullable=True)
    role = Column(
        Enum(UserRole, values_callable=_enum_values, name="user_role"),
        default=UserRole.USER,
        nullable=False,
    )
    created_at = Column(DateTime, default=datetime.now, nullable=False)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now, nullable=False)

    borrowings = relationship(
        "Borrowing",
        back_populates="user",
        cascade="all, delete-orphan",
    )
    sessions = relationship(
        "SessionRecord",
        back_populates="user",
        cascade="all, delete-orphan",
    )
    notifications = relationship(
        "Notification",
        foreign_keys="Notification.user_id",
        back_populates="user",
        cascade="all, delete-orphan",
    )


class Book(Base):
    """
    Book model representing a catalog entry and its copy counts.

    Relationships:
    - One book can have many borrowings (one-to-many)

    Business Logic:
    - isbn is the external identifier; adding a book with a known isbn
      grows the existing row instead of creating a new one
    - available_quantity only moves through borrow (-1), return (+1) and
      quantity changes made by a librarian
    - CHECK constraints keep 0 <= available_quantity <= quantity
    """

    __tablename__ = "books"
    __table_args__ = (
        CheckConstraint("quantity >= 0", name="ck_books_quantity_non_negative"),
        CheckConstraint(
            "available_quantity >= 0", name="ck_books_available_non_negative"
        ),
        CheckConstraint(
            "available_quantity <= quantity", name="ck_books_available_within_quantity"
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String(255), nullable=False, index=True)
    author = Column(String(255), nullable=False, index=True)
    isbn = Column(String(20), unique=True, nullable=False, index=True)
    genre = Column(String(100), nullable=False, index=True)
    quantity = Column(Integer, default=1, nullable=False)
    available_quantity = Column(Integer, default=1, nullable=False)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.now, nullable=False)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now, nullable=False)

    borrowings = relationship(
        "Borrowing",
        back_populates="book",
        cascade="all, delete-orphan",
    )

    @property
    def is_available(self) -> bool:
        return self.available_quantity > 0

    @property
    def total_borrowed(self) -> int:
        return self.quantity - self.available_quantity


class Borrowing(Base):
    """
    Borrowing model representing one lending transaction.

    Business Logic:
    - status starts as active and moves to returned or overdue
    - borrow_date and due_date never change after creation
    - return_date is only set when the book comes back
    """

    __tablename__ = "borrowings"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    book_id = Column(Integer, ForeignKey("books.id"), nullable=False, index=True)
    borrow_date = Column(DateTime, default=datetime.now, nullable=False)
    due_date = Column(DateTime, nullable=False)
    return_date = Column(DateTime, nullable=True)
    status = Column(
        Enum(BorrowingStatus, values_callable=_enum_values, name="borrowing_status"),
        default=BorrowingStatus.ACTIVE,
        nullable=False,
        index=True,
    )
    created_at = Column(DateTime, default=datetime.now, nullable=False)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now, nullable=False)

    user = relationship("User", back_populates="borrowings")
    book = relationship("Book", back_populates="borrowings")


class ActivityLog(Base):
    """
    Append-only audit entry.

    user_id is not a foreign key: entries outlive the acting account.
    """

    __tablename__ = "activity_logs"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, nullable=False, index=True)
    action = Column(String(100), nullable=False, index=True)
    details = Column(Text, nullable=False)
    entity_type = Column(String(50), nullable=True)
    entity_id = Column(String(50), nullable=True)
    timestamp = Column(DateTime, default=datetime.now, nullable=False, index=True)

    user = relationship(
        "User",
        primaryjoin="foreign(ActivityLog.user_id) == User.id",
        viewonly=True,
    )


class Notification(Base):
    """
    Admin-authored message; user_id NULL means broadcast to everyone.
    """

    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String(255), nullable=False)
    content = Column(Text, nullable=False)
    type = Column(String(50), default="announcement", nullable=False)
    created_by_id = Column(String, ForeignKey("users.id"), nullable=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=True, index=True)
    created_at = Column(DateTime, default=datetime.now, nullable=False, index=True)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now, nullable=False)

    user = relationship("User", foreign_keys=[user_id], back_populates="notifications")
    created_by = relationship("User", foreign_keys=[created_by_id])


class SessionRecord(Base):
    """
    Server-side session. The cookie only carries the signed sid.

    Federated sessions also keep the provider tokens so they can be
    refreshed in place once expires_at has passed.
    """

    __tablename__ = "sessions"

    sid = Column(String, primary_key=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    kind = Column(
        Enum(SessionKind, values_callable=_enum_values, name="session_kind"),
        default=SessionKind.LOCAL,
        nullable=False,
    )
    claims = Column(JSON, nullable=False)
    access_token = Column(Text, nullable=True)
    refresh_token = Column(Text, nullable=True)
    expires_at = Column(DateTime, nullable=False, index=True)
    created_at = Column(DateTime, default=datetime.now, nullable=False)

    user = relationship("User", back_populates="sessions")
