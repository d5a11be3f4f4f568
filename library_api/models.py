import enum
from datetime import datetime, timezone
from library_api.database import Base
from sqlalchemy.orm import relationship
from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
)


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_utc(value: datetime) -> datetime:
    """Convert an aware datetime to naive UTC; naive values pass through."""
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class Role(str, enum.Enum):
    ADMIN = "Admin"
    MEMBER = "Member"


class BorrowStatus(str, enum.Enum):
    """
    Stored lifecycle state of a borrow record.

    "Overdue" is deliberately not a member: it is computed on read as
    an active record whose due date has passed.
    """

    ACTIVE = "active"
    RETURNED = "returned"


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class User(Base):
    """
    Library account, either a Member or an Admin.

    Relationships:
    - One user can have many borrow records (one-to-many)

    Users are never removed: deleting an account flips is_active to False so
    historical borrow records keep a valid reference.
    """

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(50), nullable=False)
    email = Column(String, unique=True, nullable=False, index=True)
    password_hash = Column(String, nullable=False)
    role = Column(
        Enum(Role, native_enum=False, values_callable=_enum_values, length=20),
        default=Role.MEMBER,
        nullable=False,
        index=True,
    )
    is_active = Column(Boolean, default=True, nullable=False)
    membership_date = Column(DateTime, default=utcnow, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    borrow_records = relationship("BorrowRecord", back_populates="user")

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    @property
    def active_borrow_count(self) -> int:
        return sum(1 for record in self.borrow_records if record.is_active)


class Book(Base):
    """
    Catalog entry with a copy counter.

    available_copies is the only shared mutable counter in the system. It is
    changed exclusively through conditional UPDATE statements in the
    borrowing and catalog services, and the CHECK constraint guards
    0 <= available_copies <= total_copies at the database level.
    """

    __tablename__ = "books"
    __table_args__ = (
        CheckConstraint("available_copies >= 0", name="ck_books_available_non_negative"),
        CheckConstraint(
            "available_copies <= total_copies", name="ck_books_available_le_total"
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String, nullable=False, index=True)
    author = Column(String, nullable=False, index=True)
    isbn = Column(String, unique=True, nullable=False, index=True)
    genre = Column(String, nullable=False, index=True)
    publisher = Column(String, nullable=True)
    description = Column(Text, nullable=True)
    publication_date = Column(Date, nullable=True)
    total_copies = Column(Integer, nullable=False, default=1)
    available_copies = Column(Integer, nullable=False, default=1)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    borrow_records = relationship("BorrowRecord", back_populates="book")

    @property
    def is_available(self) -> bool:
        return self.is_active and self.available_copies > 0


class BorrowRecord(Base):
    """
    Ledger entry linking one user to one book.

    Business Logic:
    - A record is active exactly while return_date is unset
    - Status only moves from active to returned
    - fine is assessed at return time from the days past due_date
    - Records are never deleted
    """

    __tablename__ = "borrow_records"
    __table_args__ = (
        CheckConstraint("fine >= 0", name="ck_borrow_records_fine_non_negative"),
        CheckConstraint(
            "renewal_count >= 0", name="ck_borrow_records_renewals_non_negative"
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    book_id = Column(Integer, ForeignKey("books.id"), nullable=False, index=True)
    borrow_date = Column(DateTime, default=utcnow, nullable=False)
    due_date = Column(DateTime, nullable=False, index=True)
    return_date = Column(DateTime, nullable=True)
    status = Column(
        Enum(BorrowStatus, native_enum=False, values_callable=_enum_values, length=20),
        default=BorrowStatus.ACTIVE,
        nullable=False,
        index=True,
    )
    fine = Column(Float, default=0.0, nullable=False)
    renewal_count = Column(Integer, default=0, nullable=False)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    user = relationship("User", back_populates="borrow_records")
    book = relationship("Book", back_populates="borrow_records")

    @property
    def is_active(self) -> bool:
        return self.status == BorrowStatus.ACTIVE

    @property
    def overdue(self) -> bool:
        return self.is_overdue()

    def is_overdue(self, now=None) -> bool:
        """True if the record is still out and its due date has passed."""
        now = now or utcnow()
        return self.is_active and self.due_date < now
