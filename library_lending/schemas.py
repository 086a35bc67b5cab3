from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from library_lending.config import MIN_PASSWORD_LENGTH
from library_lending.models import BorrowingStatus, UserRole


class CamelModel(BaseModel):
    """
    Base schema for every request and response body.

    Internal Working:
    - alias_generator=to_camel: JSON keys are camelCase (availableQuantity),
      Python attributes stay snake_case (available_quantity)
    - populate_by_name=True: either spelling is accepted on input
    - from_attributes=True: ORM objects can be validated directly
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


def _as_local_naive(value: Optional[datetime]) -> Optional[datetime]:
    # Stored timestamps are naive local time
    if value is not None and value.tzinfo is not None:
        return value.astimezone().replace(tzinfo=None)
    return value


# --- Auth ---


class LoginRequest(CamelModel):
    username: str = Field(..., min_length=1, max_length=100)
    password: str = Field(..., min_length=1)


class RegisterRequest(CamelModel):
    """
    Schema for self-registration.

    All fields are required; password and confirmPassword must match.
    """

    username: str = Field(..., min_length=1, max_length=100)
    password: str = Field(..., min_length=MIN_PASSWORD_LENGTH)
    confirm_password: str = Field(..., min_length=1)
    email: str = Field(..., min_length=3, max_length=255)
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)

    @field_validator("username")
    @classmethod
    def username_has_no_whitespace(cls, value: str) -> str:
        value = value.strip()
        if not value or any(ch.isspace() for ch in value):
            raise ValueError("Username must not contain whitespace")
        return value

    @model_validator(mode="after")
    def passwords_match(self):
        if self.password != self.confirm_password:
            raise ValueError("Password confirmation does not match")
        return self


class CreateAdminRequest(CamelModel):
    """
    Schema for an admin creating another admin account.

    Profile fields are optional and get placeholder values.
    """

    username: str = Field(..., min_length=1, max_length=100)
    password: str = Field(..., min_length=MIN_PASSWORD_LENGTH)
    email: Optional[str] = Field(None, max_length=255)
    first_name: Optional[str] = Field(None, max_length=100)
    last_name: Optional[str] = Field(None, max_length=100)


class UserSummary(CamelModel):
    id: str
    username: Optional[str] = None
    role: UserRole


class AuthResponse(CamelModel):
    message: str
    user: UserSummary


class MessageResponse(CamelModel):
    message: str


# --- Users ---


class User(CamelModel):
    """
    Schema for user responses.

    Never includes the password hash.
    """

    id: str
    username: Optional[str] = None
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    profile_image_url: Optional[str] = None
    role: UserRole
    created_at: datetime
    updated_at: datetime


class UserList(CamelModel):
    users: List[User]
    total: int


class RoleUpdate(CamelModel):
    role: UserRole


# --- Books ---


class BookBase(CamelModel):
    """Base schema with common book fields."""

    title: str = Field(..., min_length=1, max_length=255)
    author: str = Field(..., min_length=1, max_length=255)
    genre: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=5000)


class BookCreate(BookBase):
    """
    Schema for adding a book.

    If the isbn is already in the catalog, quantity is added to the
    existing entry. availableQuantity is never accepted from clients.
    """

    isbn: str = Field(..., min_length=1, max_length=20)
    quantity: int = Field(1, ge=1)


class BookUpdate(CamelModel):
    """
    Schema for updating a book.

    All fields are optional to support partial updates. isbn and
    availableQuantity are rejected: extra fields are forbidden.
    """

    model_config = ConfigDict(extra="forbid")

    title: Optional[str] = Field(None, min_length=1, max_length=255)
    author: Optional[str] = Field(None, min_length=1, max_length=255)
    genre: Optional[str] = Field(None, min_length=1, max_length=100)
    quantity: Optional[int] = Field(None, ge=0)
    description: Optional[str] = Field(None, max_length=5000)


class Book(BookBase):
    """
    Schema for book responses.

    isAvailable and totalBorrowed are derived from the copy counts.
    """

    id: int
    isbn: str
    quantity: int
    available_quantity: int
    is_available: bool
    total_borrowed: int
    created_at: datetime
    updated_at: datetime


class BookList(CamelModel):
    books: List[Book]
    total: int


# --- Borrowings ---


class BorrowingCreate(CamelModel):
    book_id: int = Field(..., gt=0)
    due_date: datetime

    @field_validator("due_date")
    @classmethod
    def normalize_due_date(cls, value: datetime) -> datetime:
        return _as_local_naive(value)


class Borrowing(CamelModel):
    id: int
    user_id: str
    book_id: int
    borrow_date: datetime
    due_date: datetime
    return_date: Optional[datetime] = None
    status: BorrowingStatus
    created_at: datetime
    updated_at: datetime


class BorrowingWithDetails(Borrowing):
    """
    Extended borrowing schema including borrower and book details.
    """

    user: Optional[User] = None
    book: Optional[Book] = None


class BorrowingList(CamelModel):
    borrowings: List[BorrowingWithDetails]
    total: int


# --- Activity logs ---


class ActivityLog(CamelModel):
    id: int
    user_id: str
    action: str
    details: str
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    timestamp: datetime
    user: Optional[User] = None


class ActivityLogList(CamelModel):
    logs: List[ActivityLog]
    total: int


# --- Notifications ---


class AnnouncementCreate(CamelModel):
    title: str = Field(..., min_length=1, max_length=255)
    content: str = Field(..., min_length=1)


class NotificationCreate(AnnouncementCreate):
    """Schema for a notification addressed to a single user."""

    user_id: str = Field(..., min_length=1)
    type: str = Field("message", min_length=1, max_length=50)


class Notification(CamelModel):
    id: int
    title: str
    content: str
    type: str
    created_by_id: Optional[str] = None
    user_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class NotificationList(CamelModel):
    notifications: List[Notification]


# --- Dashboard ---


class PopularBook(CamelModel):
    book: Book
    borrow_count: int


class DashboardStats(CamelModel):
    total_books: int
    total_users: int
    active_borrowings: int
    overdue_borrowings: int
    popular_books: List[PopularBook]
