"""Catalog management: book CRUD, search and soft deletes."""

import logging
from typing import Optional

from sqlalchemy import func, or_, update
from sqlalchemy.orm import Session

from library_api import schemas
from library_api.auth import require_admin
from library_api.database import commit
from library_api.errors import Conflict, NotFound, ValidationError
from library_api.models import Book, BorrowRecord, BorrowStatus, User, utcnow
from library_api.pagination import paginate


logger = logging.getLogger(__name__)

NULLABLE_FIELDS = {"publisher", "description", "publication_date"}


def icontains(column, term: str):
    """Case-insensitive substring match with LIKE wildcards escaped."""
    return func.lower(column).contains(term.lower(), autoescape=True)


def _isbn_taken(db: Session, isbn: str, exclude_id: Optional[int] = None) -> bool:
    query = db.query(Book).filter(Book.isbn == isbn)
    if exclude_id is not None:
        query = query.filter(Book.id != exclude_id)
    return db.query(query.exists()).scalar()


def _active_borrow_count(db: Session, book_id: int) -> int:
    return (
        db.query(BorrowRecord)
        .filter(
            BorrowRecord.book_id == book_id,
            BorrowRecord.status == BorrowStatus.ACTIVE,
        )
        .count()
    )


def create_book(db: Session, caller: Optional[User], data: schemas.BookCreate) -> Book:
    """
    Add a book to the catalog (Admin only).

    Business Logic:
    - ISBN must be unique across all books, including soft-deleted ones
    - A new book starts with every copy available
    """
    require_admin(caller)
    if _isbn_taken(db, data.isbn):
        raise Conflict(f"Book with ISBN {data.isbn} already exists")

    book = Book(**data.model_dump())
    book.available_copies = book.total_copies
    db.add(book)
    commit(db, f"Book with ISBN {data.isbn} already exists")
    db.refresh(book)
    logger.info("Created book %s (%s)", book.id, book.isbn)
    return book


def list_books(
    db: Session,
    page=None,
    limit=None,
    title: Optional[str] = None,
    author: Optional[str] = None,
    genre: Optional[str] = None,
    isbn: Optional[str] = None,
    available: Optional[bool] = None,
):
    query = db.query(Book).filter(Book.is_active.is_(True))

    if title:
        query = query.filter(icontains(Book.title, title))
    if author:
        query = query.filter(icontains(Book.author, author))
    if genre:
        query = query.filter(Book.genre == genre)
    if isbn:
        query = query.filter(Book.isbn == isbn)
    if available:
        query = query.filter(Book.available_copies > 0)

    query = query.order_by(Book.created_at.desc(), Book.id.desc())
    return paginate(query, page, limit)


def search_books(db: Session, text: str, page=None, limit=None):
    """Free-text search over title, author, isbn, genre and description."""
    text = (text or "").strip()
    if not text:
        raise ValidationError("Search query is required")

    query = (
        db.query(Book)
        .filter(
            Book.is_active.is_(True),
            or_(
                icontains(Book.title, text),
                icontains(Book.author, text),
                icontains(Book.isbn, text),
                icontains(Book.genre, text),
                icontains(Book.description, text),
            ),
        )
        .order_by(Book.title, Book.id)
    )
    return paginate(query, page, limit)


def get_book(db: Session, book_id: int) -> Book:
    book = db.get(Book, book_id)
    if book is None or not book.is_active:
        raise NotFound(f"Book with id {book_id} not found")
    return book


def update_book(
    db: Session, caller: Optional[User], book_id: int, data: schemas.BookUpdate
) -> Book:
    """
    Update a book's information (Admin only).

    Changing total_copies moves available_copies by the same delta in one
    conditional UPDATE, so copies currently on loan are never lost and a
    concurrent borrow cannot push the counter out of range.
    """
    require_admin(caller)
    book = db.get(Book, book_id)
    if book is None:
        raise NotFound(f"Book with id {book_id} not found")

    update_data = data.model_dump(exclude_unset=True)

    if "isbn" in update_data and update_data["isbn"] != book.isbn:
        if _isbn_taken(db, update_data["isbn"], exclude_id=book.id):
            raise Conflict(f"Book with ISBN {update_data['isbn']} already exists")

    if update_data.get("is_active") is False and book.is_active:
        if _active_borrow_count(db, book.id) > 0:
            raise Conflict("Cannot deactivate book with active borrows")

    total_copies = update_data.pop("total_copies", None)
    if total_copies is not None and total_copies != book.total_copies:
        delta = total_copies - book.total_copies
        result = db.execute(
            update(Book)
            .where(Book.id == book.id, Book.available_copies + delta >= 0)
            .values(
                total_copies=total_copies,
                available_copies=Book.available_copies + delta,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            db.rollback()
            raise Conflict("totalCopies cannot be lower than the number of copies on loan")

    for key, value in update_data.items():
        if value is None and key not in NULLABLE_FIELDS:
            continue
        setattr(book, key, value)

    commit(db, "Book with this ISBN already exists")
    db.refresh(book)
    return book


def delete_book(db: Session, caller: Optional[User], book_id: int) -> Book:
    """Soft delete, refused while any copy of the book is out on loan."""
    require_admin(caller)
    book = db.get(Book, book_id)
    if book is None:
        raise NotFound(f"Book with id {book_id} not found")

    if _active_borrow_count(db, book.id) > 0:
        raise Conflict("Cannot delete book with active borrows")

    book.is_active = False
    commit(db)
    db.refresh(book)
    logger.info("Deactivated book %s", book.id)
    return book
