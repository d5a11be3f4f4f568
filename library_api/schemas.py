from datetime import date, datetime
from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from library_api.models import BorrowStatus, Role


EMAIL_PATTERN = r"^[\w.+-]+@[\w-]+(\.[\w-]+)*\.\w{2,}$"


class CamelModel(BaseModel):
    """
    Base for every schema exposed over REST.

    Internal Working:
    - alias_generator: fields are written and read as camelCase in JSON
    - populate_by_name: services may still build schemas with snake_case names
    - from_attributes: ORM objects can be validated directly
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


# Users


class UserBase(CamelModel):
    """Base schema with common user fields."""

    name: str = Field(..., min_length=1, max_length=50)
    email: str = Field(..., pattern=EMAIL_PATTERN)

    @field_validator("name")
    @classmethod
    def strip_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Name is required")
        return value

    @field_validator("email")
    @classmethod
    def normalize_email(cls, value: str) -> str:
        return value.strip().lower()


class UserCreate(UserBase):
    """
    Schema for creating a user.

    Used both for self-registration (role is then forced to Member) and for
    admin-created accounts.
    """

    password: str = Field(..., min_length=6, max_length=128)
    role: Role = Role.MEMBER


class UserUpdate(CamelModel):
    """
    Schema for updating a user.

    All fields are optional to support partial updates.
    """

    name: Optional[str] = Field(None, min_length=1, max_length=50)
    email: Optional[str] = Field(None, pattern=EMAIL_PATTERN)
    password: Optional[str] = Field(None, min_length=6, max_length=128)
    role: Optional[Role] = None
    is_active: Optional[bool] = None

    @field_validator("email")
    @classmethod
    def normalize_email(cls, value: Optional[str]) -> Optional[str]:
        return value.strip().lower() if value is not None else value


class User(CamelModel):
    """
    Schema for user responses.

    password_hash is not a field here, so it can never leak into a read path.
    """

    id: int
    name: str
    email: str
    role: Role
    is_active: bool
    membership_date: datetime
    active_borrow_count: int = 0
    created_at: datetime
    updated_at: datetime


class LoginRequest(CamelModel):
    email: str = Field(..., min_length=3)
    password: str = Field(..., min_length=1)


# Books


class BookBase(CamelModel):
    """Base schema with common book fields."""

    title: str = Field(..., min_length=1, max_length=500)
    author: str = Field(..., min_length=1, max_length=200)
    isbn: str = Field(..., min_length=10, max_length=17)
    genre: str = Field(..., min_length=1, max_length=100)
    publisher: Optional[str] = Field(None, max_length=200)
    description: Optional[str] = Field(None, max_length=2000)
    publication_date: Optional[date] = None


class BookCreate(BookBase):
    """
    Schema for creating a new book.

    available_copies is not accepted: a new book starts fully available.
    """

    total_copies: int = Field(1, ge=0)


class BookUpdate(CamelModel):
    """
    Schema for updating a book.

    All fields are optional to support partial updates.
    Only provided fields will be updated.
    """

    title: Optional[str] = Field(None, min_length=1, max_length=500)
    author: Optional[str] = Field(None, min_length=1, max_length=200)
    isbn: Optional[str] = Field(None, min_length=10, max_length=17)
    genre: Optional[str] = Field(None, min_length=1, max_length=100)
    publisher: Optional[str] = Field(None, max_length=200)
    description: Optional[str] = Field(None, max_length=2000)
    publication_date: Optional[date] = None
    total_copies: Optional[int] = Field(None, ge=0)
    is_active: Optional[bool] = None


class Book(BookBase):
    """Schema for book responses."""

    id: int
    total_copies: int
    available_copies: int
    is_active: bool
    created_at: datetime
    updated_at: datetime


# Borrow records


class BorrowCreate(CamelModel):
    """
    Schema for borrowing a book.

    user_id defaults to the caller; only admins may borrow on behalf of
    someone else.
    """

    book_id: int = Field(..., gt=0)
    user_id: Optional[int] = Field(None, gt=0)
    notes: Optional[str] = Field(None, max_length=1000)


class BorrowReturn(CamelModel):
    notes: Optional[str] = Field(None, max_length=1000)


class BorrowUpdate(CamelModel):
    """Admin correction of a borrow record."""

    return_date: Optional[datetime] = None
    status: Optional[BorrowStatus] = None
    fine: Optional[float] = Field(None, ge=0)
    notes: Optional[str] = Field(None, max_length=1000)


class UserSummary(CamelModel):
    id: int
    name: str
    email: str


class BookSummary(CamelModel):
    id: int
    title: str
    author: str
    isbn: str


class BorrowRecord(CamelModel):
    """
    Schema for borrow record responses.

    overdue is derived at read time, it is not a stored status.
    """

    id: int
    user_id: int
    book_id: int
    user: UserSummary
    book: BookSummary
    borrow_date: datetime
    due_date: datetime
    return_date: Optional[datetime] = None
    status: BorrowStatus
    overdue: bool = False
    fine: float
    renewal_count: int
    notes: Optional[str] = None
    created_at: datetime
    updated_at: datetime


# Response envelopes


class Message(CamelModel):
    success: bool = True
    message: Optional[str] = None


class UserResponse(Message):
    data: Optional[User] = None


class AuthResponse(UserResponse):
    token: Optional[str] = None


class BookResponse(Message):
    data: Optional[Book] = None


class BorrowResponse(Message):
    data: Optional[BorrowRecord] = None


class PageInfo(CamelModel):
    success: bool = True
    count: int
    total: int
    page: int
    pages: int


class UsersPage(PageInfo):
    data: List[User]


class BooksPage(PageInfo):
    data: List[Book]


class BorrowsPage(PageInfo):
    data: List[BorrowRecord]


# Analytics


class BookPopularity(CamelModel):
    book: Book
    borrow_count: int
    active_borrows: int
    total_fines: float
    popularity_score: float


class MemberActivity(CamelModel):
    user: User
    total_borrows: int
    active_borrows: int
    returned_books: int
    overdue_books: int
    total_fines: float
    total_renewals: int
    avg_borrow_duration: Optional[float] = None
    activity_score: float


class BookAvailabilityItem(CamelModel):
    book: Book
    borrowed_copies: int
    total_borrows: int
    total_fines_generated: float
    availability_percentage: float
    status: str


class AvailabilitySummary(CamelModel):
    total_books: int = 0
    total_copies: int = 0
    total_available: int = 0
    total_borrowed: int = 0
    out_of_stock: int = 0
    low_stock: int = 0
    available_books: int = 0
    overall_availability: float = 0.0


class GenreStats(CamelModel):
    genre: str
    total_books: int
    total_copies: int
    available_copies: int
    borrowed_copies: int
    total_borrows: int
    active_borrows: int
    total_fines: float
    availability_rate: float
    popularity_score: float


class LibraryStats(CamelModel):
    total_users: int
    total_books: int
    total_borrows: int
    active_borrows: int
    overdue_borrows: int
    total_fines: float


class MostBorrowedBooksResponse(CamelModel):
    success: bool = True
    count: int
    data: List[BookPopularity]


class MostActiveMembersResponse(CamelModel):
    success: bool = True
    count: int
    data: List[MemberActivity]


class BookAvailabilityResponse(CamelModel):
    success: bool = True
    summary: AvailabilitySummary
    count: int
    data: List[BookAvailabilityItem]


class GenreStatsResponse(CamelModel):
    success: bool = True
    count: int
    data: List[GenreStats]


class LibraryStatsResponse(CamelModel):
    success: bool = True
    data: LibraryStats


class Health(BaseModel):
    status: str
    message: str
    timestamp: datetime
    version: str
