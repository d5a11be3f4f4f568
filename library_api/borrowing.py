"""
Borrow lifecycle: borrowing, returning and renewing books.

This module is the only writer of BorrowRecord rows and of
Book.available_copies after a book has been created. Every change to the copy
counter is a single conditional UPDATE ("decrement where copies remain",
"increment where below total") so that two requests racing for the last copy
cannot both succeed: the loser's UPDATE matches no row and the whole
operation is rolled back.

Every operation takes an optional ``now`` so that due dates, fines and
overdue checks can be evaluated at a fixed instant.
"""

import logging
import math
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from library_api import schemas
from library_api.auth import require_admin, require_authenticated, require_self_or_admin
from library_api.config import settings
from library_api.database import commit
from library_api.errors import (
    AlreadyReturned,
    BookUnavailable,
    CannotRenewOverdue,
    Conflict,
    IneligibleBorrower,
    NotFound,
    RecordNotFound,
    ValidationError,
)
from library_api.models import Book, BorrowRecord, BorrowStatus, User, as_utc, utcnow
from library_api.pagination import paginate


logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60


def days_late(due_date: datetime, at: datetime) -> int:
    """Whole days past due, rounded up; 0 when not past due."""
    return max(0, math.ceil((at - due_date).total_seconds() / SECONDS_PER_DAY))


def compute_fine(due_date: datetime, returned_at: datetime, fine_per_day=None) -> float:
    if fine_per_day is None:
        fine_per_day = settings.fine_per_day
    return max(0.0, days_late(due_date, returned_at) * fine_per_day)


def loan_period() -> timedelta:
    return timedelta(days=settings.loan_period_days)


def _active_records(db: Session, user_id: int):
    return db.query(BorrowRecord).filter(
        BorrowRecord.user_id == user_id,
        BorrowRecord.status == BorrowStatus.ACTIVE,
    )


def can_user_borrow(db: Session, user_id: int, now: Optional[datetime] = None) -> bool:
    """
    Eligibility predicate with no side effects.

    A user may borrow while they hold fewer than MAX_ACTIVE_BORROWS active
    records and none of those is overdue.
    """
    now = now or utcnow()
    active = _active_records(db, user_id)
    if active.count() >= settings.max_active_borrows:
        return False
    return active.filter(BorrowRecord.due_date < now).count() == 0


def _get_record(db: Session, record_id: int) -> BorrowRecord:
    record = db.get(BorrowRecord, record_id)
    if record is None:
        raise RecordNotFound(f"Borrow record with id {record_id} not found")
    return record


def borrow_book(
    db: Session,
    caller: Optional[User],
    book_id: int,
    user_id: Optional[int] = None,
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> BorrowRecord:
    """
    Lend one copy of a book.

    Business Logic:
    1. The borrower defaults to the caller; borrowing for someone else
       requires Admin
    2. The borrower must exist, be active and pass can_user_borrow
    3. The book must exist, be active and have a copy left
    4. The copy counter is decremented with a conditional UPDATE and the
       record inserted in the same transaction

    Raises:
        NotFound: unknown user or book
        IneligibleBorrower: borrow limit reached, overdue books, or inactive
        BookUnavailable: no copy left, including when a concurrent borrow
            took the last one between the check and the update
    """
    caller = require_authenticated(caller)
    target_id = user_id or caller.id
    require_self_or_admin(caller, target_id)
    now = now or utcnow()

    user = db.get(User, target_id)
    if user is None:
        raise NotFound(f"User with id {target_id} not found")
    if not user.is_active or not can_user_borrow(db, target_id, now):
        logger.warning("User %s is not eligible to borrow", target_id)
        raise IneligibleBorrower()

    book = db.get(Book, book_id)
    if book is None:
        raise NotFound(f"Book with id {book_id} not found")
    if not book.is_available:
        raise BookUnavailable()

    result = db.execute(
        update(Book)
        .where(
            Book.id == book_id,
            Book.is_active.is_(True),
            Book.available_copies > 0,
        )
        .values(available_copies=Book.available_copies - 1, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        db.rollback()
        logger.warning("Lost the race for the last copy of book %s", book_id)
        raise BookUnavailable()

    record = BorrowRecord(
        user_id=target_id,
        book_id=book_id,
        borrow_date=now,
        due_date=now + loan_period(),
        status=BorrowStatus.ACTIVE,
        fine=0.0,
        renewal_count=0,
        notes=notes,
    )
    db.add(record)
    commit(db)
    db.refresh(record)
    logger.info("User %s borrowed book %s (record %s)", target_id, book_id, record.id)
    return record


def _close(
    db: Session,
    record: BorrowRecord,
    returned_at: datetime,
    fine: Optional[float] = None,
    notes: Optional[str] = None,
) -> BorrowRecord:
    """Mark an active record returned and put its copy back on the shelf."""
    if fine is None:
        fine = compute_fine(record.due_date, returned_at)

    values = {
        "status": BorrowStatus.RETURNED,
        "return_date": returned_at,
        "fine": fine,
        "updated_at": utcnow(),
    }
    if notes is not None:
        values["notes"] = notes

    result = db.execute(
        update(BorrowRecord)
        .where(
            BorrowRecord.id == record.id,
            BorrowRecord.status == BorrowStatus.ACTIVE,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        db.rollback()
        logger.warning("Record %s was already returned", record.id)
        raise AlreadyReturned()

    result = db.execute(
        update(Book)
        .where(
            Book.id == record.book_id,
            Book.available_copies < Book.total_copies,
        )
        .values(available_copies=Book.available_copies + 1, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        db.rollback()
        logger.error("Book %s already has every copy on the shelf", record.book_id)
        raise Conflict("Book copy count is inconsistent with its borrow records")

    commit(db)
    db.refresh(record)
    logger.info(
        "Record %s returned (book %s, fine %.2f)", record.id, record.book_id, record.fine
    )
    return record


def return_book(
    db: Session,
    caller: Optional[User],
    record_id: int,
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> BorrowRecord:
    """
    Return a borrowed book.

    Sets the return date, assesses the fine for every started day past the
    due date and releases the copy. Returning twice fails with
    AlreadyReturned and leaves the copy counter untouched.
    """
    caller = require_authenticated(caller)
    record = _get_record(db, record_id)
    require_self_or_admin(caller, record.user_id)
    if not record.is_active:
        raise AlreadyReturned()
    return _close(db, record, now or utcnow(), notes=notes)


def renew_book(
    db: Session,
    caller: Optional[User],
    record_id: int,
    now: Optional[datetime] = None,
) -> BorrowRecord:
    """
    Extend an active, not yet overdue loan by one loan period.

    The extension is a conditional UPDATE on the status and due date that
    were checked, so a record returned or renewed by a concurrent request
    is never renewed on stale data.
    """
    caller = require_authenticated(caller)
    record = _get_record(db, record_id)
    require_self_or_admin(caller, record.user_id)
    now = now or utcnow()

    if not record.is_active:
        raise AlreadyReturned()
    if days_late(record.due_date, now) > 0:
        logger.warning("Refused renewal of overdue record %s", record.id)
        raise CannotRenewOverdue()

    due_date = record.due_date
    result = db.execute(
        update(BorrowRecord)
        .where(
            BorrowRecord.id == record.id,
            BorrowRecord.status == BorrowStatus.ACTIVE,
            BorrowRecord.due_date == due_date,
            BorrowRecord.due_date >= now,
        )
        .values(
            due_date=due_date + loan_period(),
            renewal_count=BorrowRecord.renewal_count + 1,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        db.rollback()
        db.refresh(record)
        if not record.is_active:
            logger.warning("Record %s was returned before it could be renewed", record.id)
            raise AlreadyReturned()
        raise Conflict("Borrow record was changed by another request, please retry")

    commit(db)
    db.refresh(record)
    logger.info("Record %s renewed until %s", record.id, record.due_date.isoformat())
    return record


def get_borrow(db: Session, caller: Optional[User], record_id: int) -> BorrowRecord:
    caller = require_authenticated(caller)
    record = _get_record(db, record_id)
    require_self_or_admin(caller, record.user_id)
    return record


def list_borrows(
    db: Session,
    caller: Optional[User],
    page=None,
    limit=None,
    user_id: Optional[int] = None,
    book_id: Optional[int] = None,
    status: Optional[str] = None,
    overdue: Optional[bool] = None,
    now: Optional[datetime] = None,
):
    """
    List borrow records, newest first.

    Members only ever see their own records whatever user_id they pass.
    status accepts "active", "returned" or "overdue", the last being
    shorthand for overdue=True.
    """
    caller = require_authenticated(caller)
    now = now or utcnow()
    query = db.query(BorrowRecord)

    if not caller.is_admin:
        user_id = caller.id
    if user_id:
        query = query.filter(BorrowRecord.user_id == user_id)
    if book_id:
        query = query.filter(BorrowRecord.book_id == book_id)

    if status:
        status = status.lower()
        if status == "overdue":
            overdue = True
        else:
            try:
                query = query.filter(BorrowRecord.status == BorrowStatus(status))
            except ValueError:
                raise ValidationError(f"Unknown borrow status '{status}'") from None
    if overdue:
        query = query.filter(
            BorrowRecord.status == BorrowStatus.ACTIVE,
            BorrowRecord.due_date < now,
        )

    query = query.order_by(BorrowRecord.created_at.desc(), BorrowRecord.id.desc())
    return paginate(query, page, limit)


def my_borrows(db: Session, caller: Optional[User], page=None, limit=None):
    caller = require_authenticated(caller)
    query = (
        db.query(BorrowRecord)
        .filter(BorrowRecord.user_id == caller.id)
        .order_by(BorrowRecord.created_at.desc(), BorrowRecord.id.desc())
    )
    return paginate(query, page, limit)


def overdue_borrows(
    db: Session, caller: Optional[User], page=None, limit=None, now=None
):
    require_admin(caller)
    now = now or utcnow()
    query = (
        db.query(BorrowRecord)
        .filter(
            BorrowRecord.status == BorrowStatus.ACTIVE,
            BorrowRecord.due_date < now,
        )
        .order_by(BorrowRecord.due_date.asc(), BorrowRecord.id)
    )
    return paginate(query, page, limit)


def update_borrow(
    db: Session,
    caller: Optional[User],
    record_id: int,
    data: schemas.BorrowUpdate,
    now: Optional[datetime] = None,
) -> BorrowRecord:
    """
    Admin correction of a borrow record.

    Setting status "returned" or a return date on an active record performs
    a regular return at that date (fine computed unless one is given). A
    returned record can have its fine, notes and return date corrected but
    can never become active again.
    """
    require_admin(caller)
    record = _get_record(db, record_id)
    changes = data.model_dump(exclude_unset=True)

    return_date = changes.get("return_date")
    if return_date is not None:
        return_date = as_utc(return_date)
        if return_date < record.borrow_date:
            raise ValidationError("returnDate cannot be earlier than borrowDate")

    new_status = changes.get("status")
    if new_status == BorrowStatus.ACTIVE and not record.is_active:
        raise ValidationError("A returned borrow record cannot be reactivated")

    if record.is_active and (new_status == BorrowStatus.RETURNED or return_date):
        return _close(
            db,
            record,
            return_date or now or utcnow(),
            fine=changes.get("fine"),
            notes=changes.get("notes"),
        )

    if return_date is not None:
        record.return_date = return_date
    if changes.get("fine") is not None:
        record.fine = changes["fine"]
    if "notes" in changes:
        record.notes = changes["notes"]

    commit(db)
    db.refresh(record)
    return record
