import threading
from datetime import datetime, timedelta

import pytest

from library_api import borrowing, schemas
from library_api.config import settings
from library_api.errors import (
    AlreadyReturned,
    BookUnavailable,
    CannotRenewOverdue,
    Conflict,
    Forbidden,
    IneligibleBorrower,
    NotFound,
    Unauthorized,
    ValidationError,
)
from library_api.models import Book, BorrowRecord, BorrowStatus, User

T0 = datetime(2024, 1, 1, 10, 0, 0)


def test_borrow_decrements_copies_and_sets_due_date(db, member, make_book):
    """
    Test a plain borrow.

    Verifies:
    - availableCopies drops by one
    - Record is active with dueDate = borrowDate + loan period
    """
    book = make_book(copies=1)

    record = borrowing.borrow_book(db, member, book.id, now=T0)

    db.refresh(book)
    assert book.available_copies == 0
    assert record.status == BorrowStatus.ACTIVE
    assert record.borrow_date == T0
    assert record.due_date == T0 + timedelta(days=14)
    assert record.fine == 0
    assert record.renewal_count == 0
    assert record.user_id == member.id


def test_borrow_requires_authentication(db, make_book):
    book = make_book()
    with pytest.raises(Unauthorized):
        borrowing.borrow_book(db, None, book.id, now=T0)


def test_member_cannot_borrow_for_someone_else(db, member, make_user, make_book):
    other = make_user()
    book = make_book()
    with pytest.raises(Forbidden):
        borrowing.borrow_book(db, member, book.id, user_id=other.id, now=T0)


def test_admin_borrows_on_behalf_of_member(db, admin, member, make_book):
    book = make_book()
    record = borrowing.borrow_book(db, admin, book.id, user_id=member.id, now=T0)
    assert record.user_id == member.id


def test_borrow_unknown_book_or_user(db, admin, member):
    with pytest.raises(NotFound):
        borrowing.borrow_book(db, member, 999, now=T0)
    with pytest.raises(NotFound):
        borrowing.borrow_book(db, admin, 1, user_id=999, now=T0)


def test_borrow_without_copies_creates_no_record(db, member, make_user, make_book):
    """
    Test borrowing a book with no copy left.

    Verifies:
    - BookUnavailable is raised
    - No borrow record is written and the counter stays at 0
    """
    book = make_book(copies=1)
    borrowing.borrow_book(db, make_user(), book.id, now=T0)

    with pytest.raises(BookUnavailable):
        borrowing.borrow_book(db, member, book.id, now=T0)

    db.refresh(book)
    assert book.available_copies == 0
    assert db.query(BorrowRecord).count() == 1


def test_borrow_limit_makes_member_ineligible(db, member, make_book, monkeypatch):
    monkeypatch.setattr(settings, "max_active_borrows", 2)
    first, second, third = make_book(), make_book(), make_book()

    borrowing.borrow_book(db, member, first.id, now=T0)
    borrowing.borrow_book(db, member, second.id, now=T0)
    assert borrowing.can_user_borrow(db, member.id, now=T0) is False

    with pytest.raises(IneligibleBorrower):
        borrowing.borrow_book(db, member, third.id, now=T0)

    db.refresh(third)
    assert third.available_copies == 1


def test_overdue_record_blocks_new_borrows(db, member, make_book):
    first, second = make_book(), make_book()
    borrowing.borrow_book(db, member, first.id, now=T0)

    later = T0 + timedelta(days=15)
    assert borrowing.can_user_borrow(db, member.id, now=T0) is True
    assert borrowing.can_user_borrow(db, member.id, now=later) is False
    with pytest.raises(IneligibleBorrower):
        borrowing.borrow_book(db, member, second.id, now=later)


def test_deactivated_user_cannot_borrow(db, admin, member, make_book):
    book = make_book()
    member.is_active = False
    db.commit()
    with pytest.raises(IneligibleBorrower):
        borrowing.borrow_book(db, admin, book.id, user_id=member.id, now=T0)


def test_return_on_time_has_no_fine(db, member, make_book):
    book = make_book(copies=2)
    record = borrowing.borrow_book(db, member, book.id, now=T0)

    returned = borrowing.return_book(db, member, record.id, now=T0 + timedelta(days=3))

    db.refresh(book)
    assert returned.status == BorrowStatus.RETURNED
    assert returned.return_date == T0 + timedelta(days=3)
    assert returned.fine == 0
    assert book.available_copies == 2


def test_late_return_is_fined_per_started_day(db, member, make_book):
    """
    Test the fine of a late return.

    Verifies:
    - Returning 5 days after dueDate costs 5 at the default rate
    - A partial day counts as a whole day
    """
    book = make_book()
    record = borrowing.borrow_book(db, member, book.id, now=T0)

    returned = borrowing.return_book(
        db, member, record.id, now=record.due_date + timedelta(days=5)
    )
    assert returned.fine == 5.0

    assert borrowing.compute_fine(T0, T0 + timedelta(days=2, hours=1)) == 3.0
    assert borrowing.compute_fine(T0, T0 - timedelta(days=1)) == 0.0


def test_double_return_leaves_copies_unchanged(db, member, make_book):
    book = make_book(copies=3)
    record = borrowing.borrow_book(db, member, book.id, now=T0)
    borrowing.return_book(db, member, record.id, now=T0 + timedelta(days=1))

    with pytest.raises(AlreadyReturned):
        borrowing.return_book(db, member, record.id, now=T0 + timedelta(days=2))

    db.refresh(book)
    assert book.available_copies == 3


def test_member_cannot_return_someone_elses_record(db, member, make_user, make_book):
    book = make_book()
    record = borrowing.borrow_book(db, make_user(), book.id, now=T0)
    with pytest.raises(Forbidden):
        borrowing.return_book(db, member, record.id, now=T0)


def test_return_unknown_record(db, member):
    with pytest.raises(NotFound):
        borrowing.return_book(db, member, 12345, now=T0)


def test_renew_extends_due_date(db, member, make_book):
    book = make_book()
    record = borrowing.borrow_book(db, member, book.id, now=T0)

    renewed = borrowing.renew_book(db, member, record.id, now=T0 + timedelta(days=10))

    assert renewed.due_date == T0 + timedelta(days=28)
    assert renewed.renewal_count == 1


def test_overdue_record_cannot_be_renewed(db, member, make_book):
    book = make_book()
    record = borrowing.borrow_book(db, member, book.id, now=T0)

    with pytest.raises(CannotRenewOverdue):
        borrowing.renew_book(db, member, record.id, now=T0 + timedelta(days=20))


def test_returned_record_cannot_be_renewed(db, member, make_book):
    book = make_book()
    record = borrowing.borrow_book(db, member, book.id, now=T0)
    borrowing.return_book(db, member, record.id, now=T0 + timedelta(days=1))

    with pytest.raises(AlreadyReturned):
        borrowing.renew_book(db, member, record.id, now=T0 + timedelta(days=2))


def test_overdue_is_computed_not_stored(db, member, make_book):
    book = make_book()
    record = borrowing.borrow_book(db, member, book.id, now=T0)

    assert record.status == BorrowStatus.ACTIVE
    assert record.is_overdue(T0 + timedelta(days=1)) is False
    assert record.is_overdue(T0 + timedelta(days=15)) is True


def test_list_borrows_scopes_members_to_their_records(db, admin, member, make_user, make_book):
    other = make_user()
    borrowing.borrow_book(db, member, make_book().id, now=T0)
    borrowing.borrow_book(db, other, make_book().id, now=T0)

    items, meta = borrowing.list_borrows(db, member, user_id=other.id)
    assert meta["total"] == 1
    assert items[0].user_id == member.id

    items, meta = borrowing.list_borrows(db, admin)
    assert meta["total"] == 2


def test_list_borrows_status_filters(db, admin, member, make_user, make_book):
    reader = make_user()
    late = borrowing.borrow_book(db, member, make_book().id, now=T0)
    borrowing.borrow_book(db, reader, make_book().id, now=T0 + timedelta(days=30))
    done = borrowing.borrow_book(db, reader, make_book().id, now=T0 + timedelta(days=30))
    borrowing.return_book(db, reader, done.id, now=T0 + timedelta(days=31))
    now = T0 + timedelta(days=32)

    _, meta = borrowing.list_borrows(db, admin, status="active", now=now)
    assert meta["total"] == 2
    _, meta = borrowing.list_borrows(db, admin, status="returned", now=now)
    assert meta["total"] == 1

    items, meta = borrowing.list_borrows(db, admin, status="overdue", now=now)
    assert [record.id for record in items] == [late.id]

    items, _ = borrowing.overdue_borrows(db, admin, now=now)
    assert [record.id for record in items] == [late.id]

    with pytest.raises(ValidationError):
        borrowing.list_borrows(db, admin, status="lost")


def test_overdue_borrows_requires_admin(db, member):
    with pytest.raises(Forbidden):
        borrowing.overdue_borrows(db, member)


def test_update_borrow_with_return_date_closes_record(db, admin, member, make_book):
    book = make_book()
    record = borrowing.borrow_book(db, member, book.id, now=T0)

    updated = borrowing.update_borrow(
        db,
        admin,
        record.id,
        schemas.BorrowUpdate(return_date=T0 + timedelta(days=16)),
    )

    db.refresh(book)
    assert updated.status == BorrowStatus.RETURNED
    assert updated.fine == 2.0
    assert book.available_copies == 1


def test_update_borrow_rejects_reactivation(db, admin, member, make_book):
    book = make_book()
    record = borrowing.borrow_book(db, member, book.id, now=T0)
    borrowing.return_book(db, member, record.id, now=T0 + timedelta(days=1))

    with pytest.raises(ValidationError):
        borrowing.update_borrow(
            db, admin, record.id, schemas.BorrowUpdate(status=BorrowStatus.ACTIVE)
        )

    corrected = borrowing.update_borrow(
        db, admin, record.id, schemas.BorrowUpdate(fine=0.5, notes="waived")
    )
    assert corrected.fine == 0.5
    assert corrected.notes == "waived"

    db.refresh(book)
    assert book.available_copies == 1


def test_update_borrow_rejects_return_before_borrow(db, admin, member, make_book):
    record = borrowing.borrow_book(db, member, make_book().id, now=T0)
    with pytest.raises(ValidationError):
        borrowing.update_borrow(
            db, admin, record.id, schemas.BorrowUpdate(return_date=T0 - timedelta(days=1))
        )


def test_stale_read_cannot_take_the_last_copy(db, member, make_user, make_book, session_factory):
    """
    Test the last-copy race with two sessions.

    Verifies:
    - A session that read availableCopies=1 before another session took the
      last copy gets BookUnavailable instead of driving the counter negative
    """
    book = make_book(copies=1)
    rival = make_user()

    other = session_factory()
    try:
        stale = other.get(Book, book.id)
        assert stale.available_copies == 1

        borrowing.borrow_book(db, member, book.id, now=T0)

        with pytest.raises(BookUnavailable):
            borrowing.borrow_book(other, other.get(User, rival.id), book.id, now=T0)
    finally:
        other.close()

    db.refresh(book)
    assert book.available_copies == 0
    assert db.query(BorrowRecord).count() == 1


def test_stale_read_cannot_renew_a_returned_record(db, member, make_book, session_factory):
    """
    Test renewing a record that another session has just returned.

    Verifies:
    - The renewal fails with AlreadyReturned
    - renewalCount and dueDate keep the values the return left behind
    """
    book = make_book()
    record = borrowing.borrow_book(db, member, book.id, now=T0)
    due_date = record.due_date

    other = session_factory()
    try:
        stale = other.get(BorrowRecord, record.id)
        assert stale.is_active

        borrowing.return_book(db, member, record.id, now=T0 + timedelta(days=2))

        with pytest.raises(AlreadyReturned):
            borrowing.renew_book(
                other, other.get(User, member.id), record.id, now=T0 + timedelta(days=3)
            )
    finally:
        other.close()

    db.refresh(record)
    assert record.status == BorrowStatus.RETURNED
    assert record.renewal_count == 0
    assert record.due_date == due_date


def test_stale_read_cannot_renew_twice(db, member, make_book, session_factory):
    book = make_book()
    record = borrowing.borrow_book(db, member, book.id, now=T0)

    other = session_factory()
    try:
        other.get(BorrowRecord, record.id)

        borrowing.renew_book(db, member, record.id, now=T0 + timedelta(days=1))

        with pytest.raises(Conflict):
            borrowing.renew_book(
                other, other.get(User, member.id), record.id, now=T0 + timedelta(days=1)
            )
    finally:
        other.close()

    db.refresh(record)
    assert record.renewal_count == 1
    assert record.due_date == T0 + timedelta(days=28)


def test_concurrent_borrows_of_last_copy(db, make_user, make_book, session_factory):
    """
    Test two threads racing for the last copy.

    Verifies:
    - Exactly one borrow succeeds
    - The counter ends at 0 with a single borrow record
    """
    book = make_book(copies=1)
    user_ids = [make_user().id, make_user().id]
    barrier = threading.Barrier(len(user_ids))
    outcomes = []

    def attempt(user_id):
        session = session_factory()
        try:
            caller = session.get(User, user_id)
            barrier.wait()
            borrowing.borrow_book(session, caller, book.id, now=T0)
            outcomes.append("ok")
        except BookUnavailable:
            outcomes.append("unavailable")
        finally:
            session.close()

    threads = [threading.Thread(target=attempt, args=(user_id,)) for user_id in user_ids]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(outcomes) == ["ok", "unavailable"]
    db.refresh(book)
    assert book.available_copies == 0
    assert db.query(BorrowRecord).count() == 1
