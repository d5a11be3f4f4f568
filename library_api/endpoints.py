from library_api import analytics, books, borrowing, models, schemas, users
from library_api.auth import get_current_caller
from library_api.config import settings
from library_api.database import engine, get_db
from library_api.errors import LibraryError, Unavailable
from library_api.graphql_api import graphql_router

import logging
from typing import Optional
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
from fastapi import FastAPI, Depends, Query, Request, status
from fastapi.responses import JSONResponse


logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

models.Base.metadata.create_all(bind=engine)

app = FastAPI(
    title=settings.app_name,
    description="Library management system with users, books, borrow records and analytics",
    version=settings.app_version,
)

app.include_router(graphql_router, prefix="/graphql")


@app.exception_handler(LibraryError)
async def library_error_handler(request: Request, exc: LibraryError):
    """
    Translate a service failure into a JSON error response.

    Every LibraryError subclass carries its own status code and error code,
    so endpoints never build HTTPExceptions themselves.
    """
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.code, "detail": exc.message},
    )


@app.exception_handler(OperationalError)
async def store_error_handler(request: Request, exc: OperationalError):
    logger.error("Store error on %s %s: %s", request.method, request.url.path, exc.orig)
    return await library_error_handler(request, Unavailable())


@app.get("/health", response_model=schemas.Health)
async def health_check():
    """
    Health check endpoint for monitoring and load balancers.

    Returns:
        Status, message, current timestamp and API version
    """
    return {
        "status": "OK",
        "message": f"{settings.app_name} is running",
        "timestamp": models.utcnow(),
        "version": settings.app_version,
    }


@app.get("/")
async def root():
    return {
        "success": True,
        "message": f"Welcome to {settings.app_name}",
        "version": settings.app_version,
        "endpoints": {
            "health": "/health",
            "auth": "/api/auth",
            "users": "/api/users",
            "books": "/api/books",
            "borrows": "/api/borrows",
            "analytics": "/api/analytics",
            "graphql": "/graphql",
        },
    }


# Authentication


@app.post(
    "/api/auth/register",
    response_model=schemas.AuthResponse,
    status_code=status.HTTP_201_CREATED,
)
async def register(data: schemas.UserCreate, db: Session = Depends(get_db)):
    """
    Self-service registration.

    The requested role is ignored: every registered account is a Member.
    A bearer token is returned so the client can sign in immediately.
    """
    user, token = users.register(db, data)
    return {"message": "Registration successful", "token": token, "data": user}


@app.post("/api/auth/login", response_model=schemas.AuthResponse)
async def login(credentials: schemas.LoginRequest, db: Session = Depends(get_db)):
    user, token = users.login(db, credentials.email, credentials.password)
    return {"message": "Login successful", "token": token, "data": user}


@app.get("/api/auth/me", response_model=schemas.UserResponse)
async def me(caller=Depends(get_current_caller)):
    return {"data": users.me(caller)}


# Users


@app.get("/api/users", response_model=schemas.UsersPage)
async def list_users(
    page: int = Query(1, ge=1),
    limit: int = Query(settings.default_page_size, ge=1, le=settings.max_page_size),
    db: Session = Depends(get_db),
    caller=Depends(get_current_caller),
):
    items, meta = users.list_users(db, caller, page, limit)
    return {"data": items, **meta}


@app.post(
    "/api/users",
    response_model=schemas.UserResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_user(
    data: schemas.UserCreate,
    db: Session = Depends(get_db),
    caller=Depends(get_current_caller),
):
    """Create an account with any role (requires Admin)."""
    user = users.create_user(db, caller, data)
    return {"message": "User created successfully", "data": user}


@app.get("/api/users/{user_id}", response_model=schemas.UserResponse)
async def get_user(
    user_id: int, db: Session = Depends(get_db), caller=Depends(get_current_caller)
):
    return {"data": users.get_user(db, caller, user_id)}


@app.get("/api/users/{user_id}/eligibility")
async def get_borrow_eligibility(
    user_id: int, db: Session = Depends(get_db), caller=Depends(get_current_caller)
):
    """Whether the user may borrow right now (limit not reached, nothing overdue)."""
    users.get_user(db, caller, user_id)
    return {"success": True, "canBorrow": borrowing.can_user_borrow(db, user_id)}


@app.put("/api/users/{user_id}", response_model=schemas.UserResponse)
async def update_user(
    user_id: int,
    data: schemas.UserUpdate,
    db: Session = Depends(get_db),
    caller=Depends(get_current_caller),
):
    """
    Update a user (self or Admin).

    Only the fields present in the body are changed; role and isActive are
    only honoured for Admin callers.
    """
    user = users.update_user(db, caller, user_id, data)
    return {"message": "User updated successfully", "data": user}


@app.delete("/api/users/{user_id}", response_model=schemas.UserResponse)
async def delete_user(
    user_id: int, db: Session = Depends(get_db), caller=Depends(get_current_caller)
):
    user = users.delete_user(db, caller, user_id)
    return {"message": "User deleted successfully", "data": user}


# Books


@app.get("/api/books", response_model=schemas.BooksPage)
async def list_books(
    page: int = Query(1, ge=1),
    limit: int = Query(settings.default_page_size, ge=1, le=settings.max_page_size),
    title: Optional[str] = Query(None),
    author: Optional[str] = Query(None),
    genre: Optional[str] = Query(None),
    isbn: Optional[str] = Query(None),
    available: Optional[bool] = Query(None),
    db: Session = Depends(get_db),
    caller=Depends(get_current_caller),
):
    """
    List active books with optional filters and pagination.

    title and author match case-insensitive substrings, genre and isbn
    match exactly, available=true keeps books with at least one copy left.
    """
    items, meta = books.list_books(db, page, limit, title, author, genre, isbn, available)
    return {"data": items, **meta}


@app.get("/api/books/search", response_model=schemas.BooksPage)
async def search_books(
    q: str = Query(..., min_length=1),
    page: int = Query(1, ge=1),
    limit: int = Query(settings.default_page_size, ge=1, le=settings.max_page_size),
    db: Session = Depends(get_db),
):
    items, meta = books.search_books(db, q, page, limit)
    return {"data": items, **meta}


@app.post(
    "/api/books",
    response_model=schemas.BookResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_book(
    book: schemas.BookCreate,
    db: Session = Depends(get_db),
    caller=Depends(get_current_caller),
):
    """
    Create a new book (requires Admin).

    Business Logic:
    - ISBN must be unique across all books
    - availableCopies starts equal to totalCopies
    """
    db_book = books.create_book(db, caller, book)
    return {"message": "Book created successfully", "data": db_book}


@app.get("/api/books/{book_id}", response_model=schemas.BookResponse)
async def get_book(book_id: int, db: Session = Depends(get_db)):
    return {"data": books.get_book(db, book_id)}


@app.put("/api/books/{book_id}", response_model=schemas.BookResponse)
async def update_book(
    book_id: int,
    book_update: schemas.BookUpdate,
    db: Session = Depends(get_db),
    caller=Depends(get_current_caller),
):
    db_book = books.update_book(db, caller, book_id, book_update)
    return {"message": "Book updated successfully", "data": db_book}


@app.delete("/api/books/{book_id}", response_model=schemas.BookResponse)
async def delete_book(
    book_id: int, db: Session = Depends(get_db), caller=Depends(get_current_caller)
):
    """Soft delete a book (requires Admin); refused with 409 while copies are on loan."""
    db_book = books.delete_book(db, caller, book_id)
    return {"message": "Book deleted successfully", "data": db_book}


# Borrow records


@app.get("/api/borrows", response_model=schemas.BorrowsPage)
async def list_borrows(
    page: int = Query(1, ge=1),
    limit: int = Query(settings.default_page_size, ge=1, le=settings.max_page_size),
    user_id: Optional[int] = Query(None, alias="userId"),
    book_id: Optional[int] = Query(None, alias="bookId"),
    borrow_status: Optional[str] = Query(None, alias="status"),
    overdue: Optional[bool] = Query(None),
    db: Session = Depends(get_db),
    caller=Depends(get_current_caller),
):
    """
    List borrow records, newest first.

    Admins see every record and may filter by userId; Members only ever see
    their own. status is one of active, returned or overdue.
    """
    items, meta = borrowing.list_borrows(
        db,
        caller,
        page,
        limit,
        user_id=user_id,
        book_id=book_id,
        status=borrow_status,
        overdue=overdue,
    )
    return {"data": items, **meta}


@app.post(
    "/api/borrows",
    response_model=schemas.BorrowResponse,
    status_code=status.HTTP_201_CREATED,
)
async def borrow_book(
    data: schemas.BorrowCreate,
    db: Session = Depends(get_db),
    caller=Depends(get_current_caller),
):
    """
    Borrow a book.

    Business Logic:
    1. The borrower is the caller unless an Admin names another userId
    2. The borrower must be under the active-borrow limit with nothing overdue
    3. A copy must be available; the counter is decremented atomically

    Raises:
        400 IneligibleBorrower, 404 unknown user/book, 409 BookUnavailable
    """
    record = borrowing.borrow_book(
        db, caller, data.book_id, user_id=data.user_id, notes=data.notes
    )
    return {"message": "Book borrowed successfully", "data": record}


@app.get("/api/borrows/mine", response_model=schemas.BorrowsPage)
async def my_borrows(
    page: int = Query(1, ge=1),
    limit: int = Query(settings.default_page_size, ge=1, le=settings.max_page_size),
    db: Session = Depends(get_db),
    caller=Depends(get_current_caller),
):
    items, meta = borrowing.my_borrows(db, caller, page, limit)
    return {"data": items, **meta}


@app.get("/api/borrows/overdue", response_model=schemas.BorrowsPage)
async def overdue_borrows(
    page: int = Query(1, ge=1),
    limit: int = Query(settings.default_page_size, ge=1, le=settings.max_page_size),
    db: Session = Depends(get_db),
    caller=Depends(get_current_caller),
):
    items, meta = borrowing.overdue_borrows(db, caller, page, limit)
    return {"data": items, **meta}


@app.get("/api/borrows/{record_id}", response_model=schemas.BorrowResponse)
async def get_borrow(
    record_id: int, db: Session = Depends(get_db), caller=Depends(get_current_caller)
):
    return {"data": borrowing.get_borrow(db, caller, record_id)}


@app.put("/api/borrows/{record_id}", response_model=schemas.BorrowResponse)
async def update_borrow(
    record_id: int,
    data: schemas.BorrowUpdate,
    db: Session = Depends(get_db),
    caller=Depends(get_current_caller),
):
    record = borrowing.update_borrow(db, caller, record_id, data)
    return {"message": "Borrow record updated successfully", "data": record}


@app.post("/api/borrows/{record_id}/return", response_model=schemas.BorrowResponse)
async def return_book(
    record_id: int,
    data: Optional[schemas.BorrowReturn] = None,
    db: Session = Depends(get_db),
    caller=Depends(get_current_caller),
):
    """
    Return a borrowed book (owner or Admin).

    The fine is assessed for every started day past the due date. A second
    return of the same record answers 400 and leaves the copy count alone.
    """
    notes = data.notes if data else None
    record = borrowing.return_book(db, caller, record_id, notes=notes)
    return {"message": "Book returned successfully", "data": record}


@app.post("/api/borrows/{record_id}/renew", response_model=schemas.BorrowResponse)
async def renew_book(
    record_id: int, db: Session = Depends(get_db), caller=Depends(get_current_caller)
):
    record = borrowing.renew_book(db, caller, record_id)
    return {"message": "Book renewed successfully", "data": record}


# Analytics (Admin only)


@app.get(
    "/api/analytics/most-borrowed-books",
    response_model=schemas.MostBorrowedBooksResponse,
)
async def most_borrowed_books(
    limit: int = Query(10, ge=1, le=settings.max_page_size),
    db: Session = Depends(get_db),
    caller=Depends(get_current_caller),
):
    results = analytics.most_borrowed_books(db, caller, limit)
    return {"count": len(results), "data": results}


@app.get(
    "/api/analytics/most-active-members",
    response_model=schemas.MostActiveMembersResponse,
)
async def most_active_members(
    limit: int = Query(10, ge=1, le=settings.max_page_size),
    db: Session = Depends(get_db),
    caller=Depends(get_current_caller),
):
    results = analytics.most_active_members(db, caller, limit)
    return {"count": len(results), "data": results}


@app.get(
    "/api/analytics/book-availability",
    response_model=schemas.BookAvailabilityResponse,
)
async def book_availability(
    genre: Optional[str] = Query(None),
    author: Optional[str] = Query(None),
    search: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    caller=Depends(get_current_caller),
):
    """
    Availability report over active books.

    Items are ordered from least to most available; the summary aggregates
    the same filtered set.
    """
    summary, items = analytics.book_availability_report(db, caller, genre, author, search)
    return {"summary": summary, "count": len(items), "data": items}


@app.get("/api/analytics/genre-stats", response_model=schemas.GenreStatsResponse)
async def genre_stats(db: Session = Depends(get_db), caller=Depends(get_current_caller)):
    results = analytics.genre_stats(db, caller)
    return {"count": len(results), "data": results}


@app.get("/api/analytics/library-stats", response_model=schemas.LibraryStatsResponse)
async def library_stats(db: Session = Depends(get_db), caller=Depends(get_current_caller)):
    return {"data": analytics.library_stats(db, caller)}
