"""
GraphQL interface, served by strawberry at /graphql.

Resolvers are thin: they pull the request session and the resolved caller
out of the context, convert inputs into the same pydantic schemas the REST
layer validates, call the shared services and wrap the result in the
response types below. Access checks happen inside the services, so an
anonymous request reaches every resolver and is rejected per field.
"""

import dataclasses
import logging
from datetime import date, datetime
from typing import List, Optional

import pydantic
import strawberry
from fastapi import Depends
from sqlalchemy.orm import Session
from strawberry.fastapi import GraphQLRouter
from strawberry.types import Info

from library_api import analytics, books as book_service, borrowing, schemas
from library_api import users as user_service
from library_api.auth import get_current_caller
from library_api.config import settings
from library_api.database import get_db
from library_api.errors import LibraryError, ValidationError
from library_api.models import Role, User


logger = logging.getLogger(__name__)


# Object types


@strawberry.type(name="User")
class UserType:
    id: strawberry.ID
    name: str
    email: str
    role: str
    is_active: bool
    membership_date: datetime
    active_borrow_count: Optional[int]
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(cls, user) -> "UserType":
        return cls(
            id=strawberry.ID(str(user.id)),
            name=user.name,
            email=user.email,
            role=Role(user.role).value,
            is_active=user.is_active,
            membership_date=user.membership_date,
            active_borrow_count=user.active_borrow_count,
            created_at=user.created_at,
            updated_at=user.updated_at,
        )


@strawberry.type(name="Book")
class BookType:
    id: strawberry.ID
    title: str
    author: str
    isbn: str
    publication_date: Optional[date]
    genre: str
    total_copies: int
    available_copies: int
    description: Optional[str]
    publisher: Optional[str]
    is_active: bool
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(cls, book) -> "BookType":
        return cls(
            id=strawberry.ID(str(book.id)),
            title=book.title,
            author=book.author,
            isbn=book.isbn,
            publication_date=book.publication_date,
            genre=book.genre,
            total_copies=book.total_copies,
            available_copies=book.available_copies,
            description=book.description,
            publisher=book.publisher,
            is_active=book.is_active,
            created_at=book.created_at,
            updated_at=book.updated_at,
        )


@strawberry.type(name="BorrowRecord")
class BorrowRecordType:
    id: strawberry.ID
    user: UserType
    book: BookType
    borrow_date: datetime
    due_date: datetime
    return_date: Optional[datetime]
    status: str
    overdue: bool
    fine: float
    renewal_count: int
    notes: Optional[str]
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(cls, record) -> "BorrowRecordType":
        return cls(
            id=strawberry.ID(str(record.id)),
            user=UserType.from_model(record.user),
            book=BookType.from_model(record.book),
            borrow_date=record.borrow_date,
            due_date=record.due_date,
            return_date=record.return_date,
            status=record.status.value,
            overdue=record.is_overdue(),
            fine=record.fine,
            renewal_count=record.renewal_count,
            notes=record.notes,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )


# Response wrappers


@strawberry.type
class UserResponse:
    data: Optional[UserType] = None
    message: Optional[str] = None
    success: bool = True


@strawberry.type
class UsersResponse:
    count: int
    total: int
    page: int
    pages: int
    data: List[UserType]
    success: bool = True


@strawberry.type
class AuthResponse:
    token: Optional[str] = None
    data: Optional[UserType] = None
    message: Optional[str] = None
    success: bool = True


@strawberry.type
class BookResponse:
    data: Optional[BookType] = None
    message: Optional[str] = None
    success: bool = True


@strawberry.type
class BooksResponse:
    count: int
    total: int
    page: int
    pages: int
    data: List[BookType]
    success: bool = True


@strawberry.type
class BorrowResponse:
    data: Optional[BorrowRecordType] = None
    message: Optional[str] = None
    success: bool = True


@strawberry.type
class BorrowsResponse:
    count: int
    total: int
    page: int
    pages: int
    data: List[BorrowRecordType]
    success: bool = True


# Analytics types


@strawberry.type
class LibraryStats:
    total_users: int
    total_books: int
    total_borrows: int
    active_borrows: int
    overdue_borrows: int
    total_fines: float


@strawberry.type
class BookPopularity:
    book: BookType
    borrow_count: int
    active_borrows: int
    total_fines: float
    popularity_score: float


@strawberry.type
class MostBorrowedBooksResponse:
    count: int
    data: List[BookPopularity]
    success: bool = True


@strawberry.type
class MemberActivity:
    user: UserType
    total_borrows: int
    active_borrows: int
    returned_books: int
    overdue_books: int
    total_fines: float
    total_renewals: int
    avg_borrow_duration: Optional[float]
    activity_score: float


@strawberry.type
class MostActiveMembersResponse:
    count: int
    data: List[MemberActivity]
    success: bool = True


@strawberry.type
class BookAvailabilityItem:
    book: BookType
    borrowed_copies: int
    total_borrows: int
    total_fines_generated: float
    availability_percentage: float
    status: str


@strawberry.type
class AvailabilitySummary:
    total_books: int
    total_copies: int
    total_available: int
    total_borrowed: int
    out_of_stock: int
    low_stock: int
    available_books: int
    overall_availability: float


@strawberry.type
class BookAvailabilityResponse:
    summary: AvailabilitySummary
    count: int
    data: List[BookAvailabilityItem]
    success: bool = True


@strawberry.type
class GenreStats:
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


@strawberry.type
class GenreStatsResponse:
    count: int
    data: List[GenreStats]
    success: bool = True


# Inputs


@strawberry.input
class LoginInput:
    email: str
    password: str


@strawberry.input
class CreateUserInput:
    name: str
    email: str
    password: str
    role: Optional[str] = None


@strawberry.input
class UpdateUserInput:
    name: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None
    role: Optional[str] = None
    is_active: Optional[bool] = None


@strawberry.input
class CreateBookInput:
    title: str
    author: str
    isbn: str
    genre: str
    total_copies: int
    publication_date: Optional[date] = None
    description: Optional[str] = None
    publisher: Optional[str] = None


@strawberry.input
class UpdateBookInput:
    title: Optional[str] = None
    author: Optional[str] = None
    isbn: Optional[str] = None
    publication_date: Optional[date] = None
    genre: Optional[str] = None
    total_copies: Optional[int] = None
    description: Optional[str] = None
    publisher: Optional[str] = None
    is_active: Optional[bool] = None


@strawberry.input
class CreateBorrowInput:
    book_id: strawberry.ID
    user_id: Optional[strawberry.ID] = None
    notes: Optional[str] = None


@strawberry.input
class UpdateBorrowInput:
    return_date: Optional[datetime] = None
    status: Optional[str] = None
    fine: Optional[float] = None
    notes: Optional[str] = None


@strawberry.input
class BookSearchInput:
    title: Optional[str] = None
    author: Optional[str] = None
    genre: Optional[str] = None
    isbn: Optional[str] = None
    available: Optional[bool] = None


@strawberry.input
class BorrowFilterInput:
    user_id: Optional[strawberry.ID] = None
    book_id: Optional[strawberry.ID] = None
    status: Optional[str] = None
    overdue: Optional[bool] = None


@strawberry.input
class AvailabilityFilterInput:
    genre: Optional[str] = None
    author: Optional[str] = None
    search: Optional[str] = None


# Helpers


def _context(info: Info):
    return info.context["db"], info.context["caller"]


def _parse_id(value) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid id '{value}'") from None


def _validate(schema_cls, data):
    """Build a pydantic schema from a strawberry input, keeping only given fields."""
    values = {key: value for key, value in dataclasses.asdict(data).items() if value is not None}
    try:
        return schema_cls(**values)
    except pydantic.ValidationError as exc:
        details = "; ".join(
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
            for error in exc.errors()
        )
        raise ValidationError(details) from exc


def _users_page(result) -> UsersResponse:
    items, meta = result
    return UsersResponse(data=[UserType.from_model(user) for user in items], **meta)


def _books_page(result) -> BooksResponse:
    items, meta = result
    return BooksResponse(data=[BookType.from_model(book) for book in items], **meta)


def _borrows_page(result) -> BorrowsResponse:
    items, meta = result
    return BorrowsResponse(
        data=[BorrowRecordType.from_model(record) for record in items], **meta
    )


# Root types


@strawberry.type
class Query:
    @strawberry.field
    def users(self, info: Info, page: Optional[int] = 1, limit: Optional[int] = 10) -> UsersResponse:
        db, caller = _context(info)
        return _users_page(user_service.list_users(db, caller, page, limit))

    @strawberry.field
    def user(self, info: Info, id: strawberry.ID) -> UserResponse:
        db, caller = _context(info)
        user = user_service.get_user(db, caller, _parse_id(id))
        return UserResponse(data=UserType.from_model(user))

    @strawberry.field
    def me(self, info: Info) -> UserResponse:
        _, caller = _context(info)
        return UserResponse(data=UserType.from_model(user_service.me(caller)))

    @strawberry.field
    def books(
        self,
        info: Info,
        page: Optional[int] = 1,
        limit: Optional[int] = 10,
        search: Optional[BookSearchInput] = None,
    ) -> BooksResponse:
        db, _ = _context(info)
        filters = dataclasses.asdict(search) if search else {}
        return _books_page(book_service.list_books(db, page, limit, **filters))

    @strawberry.field
    def book(self, info: Info, id: strawberry.ID) -> BookResponse:
        db, _ = _context(info)
        return BookResponse(data=BookType.from_model(book_service.get_book(db, _parse_id(id))))

    @strawberry.field
    def search_books(
        self, info: Info, query: str, page: Optional[int] = 1, limit: Optional[int] = 10
    ) -> BooksResponse:
        db, _ = _context(info)
        return _books_page(book_service.search_books(db, query, page, limit))

    @strawberry.field
    def borrows(
        self,
        info: Info,
        page: Optional[int] = 1,
        limit: Optional[int] = 10,
        filter: Optional[BorrowFilterInput] = None,
    ) -> BorrowsResponse:
        db, caller = _context(info)
        filter = filter or BorrowFilterInput()
        return _borrows_page(
            borrowing.list_borrows(
                db,
                caller,
                page,
                limit,
                user_id=_parse_id(filter.user_id),
                book_id=_parse_id(filter.book_id),
                status=filter.status,
                overdue=filter.overdue,
            )
        )

    @strawberry.field
    def borrow(self, info: Info, id: strawberry.ID) -> BorrowResponse:
        db, caller = _context(info)
        record = borrowing.get_borrow(db, caller, _parse_id(id))
        return BorrowResponse(data=BorrowRecordType.from_model(record))

    @strawberry.field
    def my_borrows(
        self, info: Info, page: Optional[int] = 1, limit: Optional[int] = 10
    ) -> BorrowsResponse:
        db, caller = _context(info)
        return _borrows_page(borrowing.my_borrows(db, caller, page, limit))

    @strawberry.field
    def overdue_borrows(
        self, info: Info, page: Optional[int] = 1, limit: Optional[int] = 10
    ) -> BorrowsResponse:
        db, caller = _context(info)
        return _borrows_page(borrowing.overdue_borrows(db, caller, page, limit))

    @strawberry.field
    def library_stats(self, info: Info) -> LibraryStats:
        db, caller = _context(info)
        return LibraryStats(**analytics.library_stats(db, caller).model_dump())

    @strawberry.field
    def most_borrowed_books(
        self, info: Info, limit: Optional[int] = 10
    ) -> MostBorrowedBooksResponse:
        db, caller = _context(info)
        results = analytics.most_borrowed_books(db, caller, limit)
        return MostBorrowedBooksResponse(
            count=len(results),
            data=[
                BookPopularity(
                    book=BookType.from_model(item.book),
                    **item.model_dump(exclude={"book"}),
                )
                for item in results
            ],
        )

    @strawberry.field
    def most_active_members(
        self, info: Info, limit: Optional[int] = 10
    ) -> MostActiveMembersResponse:
        db, caller = _context(info)
        results = analytics.most_active_members(db, caller, limit)
        return MostActiveMembersResponse(
            count=len(results),
            data=[
                MemberActivity(
                    user=UserType.from_model(item.user),
                    **item.model_dump(exclude={"user"}),
                )
                for item in results
            ],
        )

    @strawberry.field
    def book_availability_report(
        self, info: Info, filter: Optional[AvailabilityFilterInput] = None
    ) -> BookAvailabilityResponse:
        db, caller = _context(info)
        filters = dataclasses.asdict(filter) if filter else {}
        summary, items = analytics.book_availability_report(db, caller, **filters)
        return BookAvailabilityResponse(
            summary=AvailabilitySummary(**summary.model_dump()),
            count=len(items),
            data=[
                BookAvailabilityItem(
                    book=BookType.from_model(item.book),
                    **item.model_dump(exclude={"book"}),
                )
                for item in items
            ],
        )

    @strawberry.field
    def genre_stats(self, info: Info) -> GenreStatsResponse:
        db, caller = _context(info)
        results = analytics.genre_stats(db, caller)
        return GenreStatsResponse(
            count=len(results),
            data=[GenreStats(**item.model_dump()) for item in results],
        )


@strawberry.type
class Mutation:
    @strawberry.mutation
    def login(self, info: Info, input: LoginInput) -> AuthResponse:
        db, _ = _context(info)
        user, token = user_service.login(db, input.email, input.password)
        return AuthResponse(
            token=token, data=UserType.from_model(user), message="Login successful"
        )

    @strawberry.mutation
    def register(self, info: Info, input: CreateUserInput) -> AuthResponse:
        db, _ = _context(info)
        user, token = user_service.register(db, _validate(schemas.UserCreate, input))
        return AuthResponse(
            token=token, data=UserType.from_model(user), message="Registration successful"
        )

    @strawberry.mutation
    def create_user(self, info: Info, input: CreateUserInput) -> UserResponse:
        db, caller = _context(info)
        user = user_service.create_user(db, caller, _validate(schemas.UserCreate, input))
        return UserResponse(data=UserType.from_model(user), message="User created successfully")

    @strawberry.mutation
    def update_user(self, info: Info, id: strawberry.ID, input: UpdateUserInput) -> UserResponse:
        db, caller = _context(info)
        user = user_service.update_user(
            db, caller, _parse_id(id), _validate(schemas.UserUpdate, input)
        )
        return UserResponse(data=UserType.from_model(user), message="User updated successfully")

    @strawberry.mutation
    def delete_user(self, info: Info, id: strawberry.ID) -> UserResponse:
        db, caller = _context(info)
        user = user_service.delete_user(db, caller, _parse_id(id))
        return UserResponse(data=UserType.from_model(user), message="User deleted successfully")

    @strawberry.mutation
    def create_book(self, info: Info, input: CreateBookInput) -> BookResponse:
        db, caller = _context(info)
        book = book_service.create_book(db, caller, _validate(schemas.BookCreate, input))
        return BookResponse(data=BookType.from_model(book), message="Book created successfully")

    @strawberry.mutation
    def update_book(self, info: Info, id: strawberry.ID, input: UpdateBookInput) -> BookResponse:
        db, caller = _context(info)
        book = book_service.update_book(
            db, caller, _parse_id(id), _validate(schemas.BookUpdate, input)
        )
        return BookResponse(data=BookType.from_model(book), message="Book updated successfully")

    @strawberry.mutation
    def delete_book(self, info: Info, id: strawberry.ID) -> BookResponse:
        db, caller = _context(info)
        book = book_service.delete_book(db, caller, _parse_id(id))
        return BookResponse(data=BookType.from_model(book), message="Book deleted successfully")

    @strawberry.mutation
    def borrow_book(self, info: Info, input: CreateBorrowInput) -> BorrowResponse:
        db, caller = _context(info)
        record = borrowing.borrow_book(
            db,
            caller,
            _parse_id(input.book_id),
            user_id=_parse_id(input.user_id),
            notes=input.notes,
        )
        return BorrowResponse(
            data=BorrowRecordType.from_model(record), message="Book borrowed successfully"
        )

    @strawberry.mutation
    def return_book(
        self, info: Info, id: strawberry.ID, input: Optional[UpdateBorrowInput] = None
    ) -> BorrowResponse:
        db, caller = _context(info)
        notes = input.notes if input else None
        record = borrowing.return_book(db, caller, _parse_id(id), notes=notes)
        return BorrowResponse(
            data=BorrowRecordType.from_model(record), message="Book returned successfully"
        )

    @strawberry.mutation
    def renew_book(self, info: Info, id: strawberry.ID) -> BorrowResponse:
        db, caller = _context(info)
        record = borrowing.renew_book(db, caller, _parse_id(id))
        return BorrowResponse(
            data=BorrowRecordType.from_model(record), message="Book renewed successfully"
        )

    @strawberry.mutation
    def update_borrow(
        self, info: Info, id: strawberry.ID, input: UpdateBorrowInput
    ) -> BorrowResponse:
        db, caller = _context(info)
        record = borrowing.update_borrow(
            db, caller, _parse_id(id), _validate(schemas.BorrowUpdate, input)
        )
        return BorrowResponse(
            data=BorrowRecordType.from_model(record),
            message="Borrow record updated successfully",
        )


class LibrarySchema(strawberry.Schema):
    def process_errors(self, errors, execution_context=None) -> None:
        unexpected = []
        for error in errors:
            if isinstance(error.original_error, LibraryError):
                logger.info("GraphQL %s: %s", error.original_error.code, error.message)
            else:
                unexpected.append(error)
        if unexpected:
            super().process_errors(unexpected, execution_context)


schema = LibrarySchema(query=Query, mutation=Mutation)


async def get_context(
    db: Session = Depends(get_db),
    caller: Optional[User] = Depends(get_current_caller),
) -> dict:
    """Per-request resolver context: the session and the (possibly anonymous) caller."""
    return {"db": db, "caller": caller}


graphql_router = GraphQLRouter(
    schema,
    context_getter=get_context,
    graphql_ide="graphiql" if settings.graphql_ide else None,
)
