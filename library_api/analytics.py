"""
Administrative reports over borrow records, books and users.

Each report is read-only and computed fresh on every call. The database does
the grouping (COUNT and SUM(CASE ...) per book, user or genre); derived
percentages, scores, rounding and the final ordering are computed here so the
formulas stay identical whatever SQL dialect sits underneath.
"""

import logging
from collections import defaultdict
from datetime import datetime
from typing import Optional

from sqlalchemy import and_, case, func, or_, select
from sqlalchemy.orm import Session

from library_api import schemas
from library_api.auth import require_admin
from library_api.books import icontains
from library_api.config import settings
from library_api.errors import ValidationError
from library_api.models import Book, BorrowRecord, BorrowStatus, User, utcnow


logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60
LOW_STOCK_RATIO = 0.2


def _ratio(part, whole) -> float:
    """part/whole as a percentage; 0 when whole is 0."""
    return 100.0 * part / whole if whole else 0.0


def _report_limit(limit: Optional[int]) -> int:
    """Validate a ranking size; the same bounds the REST routes enforce."""
    if limit is None:
        return 10
    if limit < 1 or limit > settings.max_page_size:
        raise ValidationError(
            f"limit must be between 1 and {settings.max_page_size}"
        )
    return limit


def _count_where(condition):
    return func.coalesce(func.sum(case((condition, 1), else_=0)), 0)


def _per_book_stats():
    """Borrow totals grouped by book over the full history."""
    return (
        select(
            BorrowRecord.book_id.label("book_id"),
            func.count(BorrowRecord.id).label("total_borrows"),
            _count_where(BorrowRecord.status == BorrowStatus.ACTIVE).label(
                "active_borrows"
            ),
            func.coalesce(func.sum(BorrowRecord.fine), 0.0).label("total_fines"),
        )
        .group_by(BorrowRecord.book_id)
        .subquery()
    )


def most_borrowed_books(db: Session, caller: Optional[User], limit: Optional[int] = 10):
    """
    Rank active books by how often they were borrowed.

    popularity_score = 0.7 * borrow_count + 0.3 * active_borrows, ordered by
    (borrow_count desc, popularity_score desc).
    """
    require_admin(caller)
    limit = _report_limit(limit)
    stats = _per_book_stats()

    rows = db.execute(
        select(Book, stats.c.total_borrows, stats.c.active_borrows, stats.c.total_fines)
        .join(stats, stats.c.book_id == Book.id)
        .where(Book.is_active.is_(True))
        .order_by(Book.id)
    ).all()

    results = [
        schemas.BookPopularity(
            book=schemas.Book.model_validate(book),
            borrow_count=borrow_count,
            active_borrows=active_borrows,
            total_fines=float(total_fines),
            popularity_score=0.7 * borrow_count + 0.3 * active_borrows,
        )
        for book, borrow_count, active_borrows, total_fines in rows
    ]
    results.sort(key=lambda item: (-item.borrow_count, -item.popularity_score))
    return results[:limit]


def _average_durations(db: Session) -> dict:
    """Mean borrow duration in days per user, over returned records only."""
    totals = defaultdict(float)
    counts = defaultdict(int)
    rows = db.execute(
        select(BorrowRecord.user_id, BorrowRecord.borrow_date, BorrowRecord.return_date)
        .where(BorrowRecord.return_date.is_not(None))
    )
    for user_id, borrow_date, return_date in rows:
        totals[user_id] += (return_date - borrow_date).total_seconds() / SECONDS_PER_DAY
        counts[user_id] += 1
    return {user_id: round(totals[user_id] / counts[user_id], 1) for user_id in counts}


def most_active_members(
    db: Session,
    caller: Optional[User],
    limit: Optional[int] = 10,
    now: Optional[datetime] = None,
):
    """
    Rank active users by borrowing activity.

    activity_score = 0.4 * total_borrows + 0.3 * returned_books
                     + 0.2 * total_renewals - 0.1 * overdue_books
    ordered by (total_borrows desc, activity_score desc).
    """
    require_admin(caller)
    limit = _report_limit(limit)
    now = now or utcnow()

    stats = (
        select(
            BorrowRecord.user_id.label("user_id"),
            func.count(BorrowRecord.id).label("total_borrows"),
            _count_where(BorrowRecord.status == BorrowStatus.ACTIVE).label(
                "active_borrows"
            ),
            _count_where(BorrowRecord.status == BorrowStatus.RETURNED).label(
                "returned_books"
            ),
            _count_where(
                and_(
                    BorrowRecord.status == BorrowStatus.ACTIVE,
                    BorrowRecord.due_date < now,
                )
            ).label("overdue_books"),
            func.coalesce(func.sum(BorrowRecord.fine), 0.0).label("total_fines"),
            func.coalesce(func.sum(BorrowRecord.renewal_count), 0).label(
                "total_renewals"
            ),
        )
        .group_by(BorrowRecord.user_id)
        .subquery()
    )

    rows = db.execute(
        select(User, stats)
        .join(stats, stats.c.user_id == User.id)
        .where(User.is_active.is_(True))
        .order_by(User.id)
    ).all()
    durations = _average_durations(db)

    results = []
    for row in rows:
        user = row[0]
        results.append(
            schemas.MemberActivity(
                user=schemas.User.model_validate(user),
                total_borrows=row.total_borrows,
                active_borrows=row.active_borrows,
                returned_books=row.returned_books,
                overdue_books=row.overdue_books,
                total_fines=float(row.total_fines),
                total_renewals=row.total_renewals,
                avg_borrow_duration=durations.get(user.id),
                activity_score=(
                    0.4 * row.total_borrows
                    + 0.3 * row.returned_books
                    + 0.2 * row.total_renewals
                    - 0.1 * row.overdue_books
                ),
            )
        )
    results.sort(key=lambda item: (-item.total_borrows, -item.activity_score))
    return results[:limit]


def stock_status(available_copies: int, total_copies: int) -> str:
    if available_copies == 0:
        return "Out of Stock"
    if available_copies < LOW_STOCK_RATIO * total_copies:
        return "Low Stock"
    return "Available"


def book_availability_report(
    db: Session,
    caller: Optional[User],
    genre: Optional[str] = None,
    author: Optional[str] = None,
    search: Optional[str] = None,
):
    """
    Availability of every active book matching the filters.

    Filters: exact genre, case-insensitive author substring, and a
    case-insensitive substring searched in title, author and isbn.

    Returns (summary, items) with items ordered by
    (availability_percentage asc, total_borrows desc).
    """
    require_admin(caller)
    stats = _per_book_stats()

    query = (
        select(Book, stats.c.total_borrows, stats.c.active_borrows, stats.c.total_fines)
        .outerjoin(stats, stats.c.book_id == Book.id)
        .where(Book.is_active.is_(True))
        .order_by(Book.id)
    )
    if genre:
        query = query.where(Book.genre == genre)
    if author:
        query = query.where(icontains(Book.author, author))
    if search:
        query = query.where(
            or_(
                icontains(Book.title, search),
                icontains(Book.author, search),
                icontains(Book.isbn, search),
            )
        )

    items = []
    for book, total_borrows, active_borrows, total_fines in db.execute(query).all():
        items.append(
            schemas.BookAvailabilityItem(
                book=schemas.Book.model_validate(book),
                borrowed_copies=active_borrows or 0,
                total_borrows=total_borrows or 0,
                total_fines_generated=float(total_fines or 0),
                availability_percentage=_ratio(book.available_copies, book.total_copies),
                status=stock_status(book.available_copies, book.total_copies),
            )
        )
    items.sort(key=lambda item: (item.availability_percentage, -item.total_borrows))

    summary = schemas.AvailabilitySummary()
    for item in items:
        book = item.book
        summary.total_books += 1
        summary.total_copies += book.total_copies
        summary.total_available += book.available_copies
        if book.available_copies == 0:
            summary.out_of_stock += 1
        elif book.available_copies < LOW_STOCK_RATIO * book.total_copies:
            summary.low_stock += 1
    summary.total_borrowed = summary.total_copies - summary.total_available
    summary.available_books = summary.total_books - summary.out_of_stock
    summary.overall_availability = _ratio(summary.total_available, summary.total_copies)

    return summary, items


def genre_stats(db: Session, caller: Optional[User]):
    """
    Per-genre inventory and borrowing totals over active books.

    availability_rate = 100 * available_copies / total_copies and
    popularity_score = total_borrows / total_books, both 0 on an empty
    denominator; ordered by (total_borrows desc, popularity_score desc).
    """
    require_admin(caller)
    stats = _per_book_stats()

    rows = db.execute(
        select(
            Book.genre,
            func.count(Book.id).label("total_books"),
            func.coalesce(func.sum(Book.total_copies), 0).label("total_copies"),
            func.coalesce(func.sum(Book.available_copies), 0).label("available_copies"),
            func.coalesce(func.sum(stats.c.total_borrows), 0).label("total_borrows"),
            func.coalesce(func.sum(stats.c.active_borrows), 0).label("active_borrows"),
            func.coalesce(func.sum(stats.c.total_fines), 0.0).label("total_fines"),
        )
        .outerjoin(stats, stats.c.book_id == Book.id)
        .where(Book.is_active.is_(True))
        .group_by(Book.genre)
        .order_by(Book.genre)
    ).all()

    results = [
        schemas.GenreStats(
            genre=row.genre,
            total_books=row.total_books,
            total_copies=row.total_copies,
            available_copies=row.available_copies,
            borrowed_copies=row.total_copies - row.available_copies,
            total_borrows=row.total_borrows,
            active_borrows=row.active_borrows,
            total_fines=float(row.total_fines),
            availability_rate=_ratio(row.available_copies, row.total_copies),
            popularity_score=row.total_borrows / row.total_books if row.total_books else 0.0,
        )
        for row in rows
    ]
    results.sort(key=lambda item: (-item.total_borrows, -item.popularity_score))
    return results


def library_stats(db: Session, caller: Optional[User], now: Optional[datetime] = None):
    require_admin(caller)
    now = now or utcnow()

    row = db.execute(
        select(
            func.count(BorrowRecord.id).label("total_borrows"),
            _count_where(BorrowRecord.status == BorrowStatus.ACTIVE).label(
                "active_borrows"
            ),
            _count_where(
                and_(
                    BorrowRecord.status == BorrowStatus.ACTIVE,
                    BorrowRecord.due_date < now,
                )
            ).label("overdue_borrows"),
            func.coalesce(func.sum(BorrowRecord.fine), 0.0).label("total_fines"),
        )
    ).one()

    return schemas.LibraryStats(
        total_users=db.query(User).filter(User.is_active.is_(True)).count(),
        total_books=db.query(Book).filter(Book.is_active.is_(True)).count(),
        total_borrows=row.total_borrows,
        active_borrows=row.active_borrows,
        overdue_borrows=row.overdue_borrows,
        total_fines=float(row.total_fines),
    )
