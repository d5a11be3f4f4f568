from library_api.endpoints import app
from library_api.auth import create_access_token, hash_password
from library_api.database import Base, get_db
from library_api.models import Book, Role, User

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from fastapi.testclient import TestClient


SQLALCHEMY_DATABASE_URL = "sqlite:///./test.db"
engine = create_engine(
    SQLALCHEMY_DATABASE_URL, connect_args={"check_same_thread": False, "timeout": 30}
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def override_get_db():
    """
    Override function for the database dependency.

    This replaces the normal get_db() with one that uses the test database.
    FastAPI's dependency injection will call this instead during tests, for
    the REST routes and the GraphQL context alike.
    """
    try:
        db = TestingSessionLocal()
        yield db
    finally:
        db.close()


app.dependency_overrides[get_db] = override_get_db


@pytest.fixture(autouse=True)
def setup_database():
    """
    Fixture to set up and tear down the database for each test.

    Internal Working:
    1. autouse=True: This fixture runs automatically before each test
    2. Before yield: Create all tables in the test database
    3. yield: Control passes to the test function
    4. After yield: Drop all tables to ensure clean slate for next test
    """
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def db():
    """Session on the test database for calling the services directly."""
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def session_factory():
    return TestingSessionLocal


@pytest.fixture
def make_user(db):
    """Factory inserting users straight into the database."""
    counter = {"n": 0}

    def _make_user(name=None, role=Role.MEMBER, password="secret123", email=None):
        counter["n"] += 1
        user = User(
            name=name or f"User {counter['n']}",
            email=email or f"user{counter['n']}@example.com",
            password_hash=hash_password(password),
            role=role,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make_user


@pytest.fixture
def make_book(db):
    """Factory inserting fully available books."""
    counter = {"n": 0}

    def _make_book(title=None, author="Jane Austen", genre="Fiction", copies=1, isbn=None):
        counter["n"] += 1
        book = Book(
            title=title or f"Book {counter['n']}",
            author=author,
            isbn=isbn or f"978-00000{counter['n']:05d}",
            genre=genre,
            total_copies=copies,
            available_copies=copies,
        )
        db.add(book)
        db.commit()
        db.refresh(book)
        return book

    return _make_book


@pytest.fixture
def admin(make_user):
    return make_user(name="Admin", role=Role.ADMIN, email="admin@example.com")


@pytest.fixture
def member(make_user):
    return make_user(name="Member", email="member@example.com")


def bearer(user):
    return {"Authorization": f"Bearer {create_access_token(user.id)}"}


@pytest.fixture
def auth_headers():
    """Build Bearer Authorization headers for any user."""
    return bearer


@pytest.fixture
def admin_headers(admin):
    """
    Fixture providing authentication headers for an Admin.

    Returns:
        Dictionary with a Bearer Authorization header
    """
    return bearer(admin)


@pytest.fixture
def member_headers(member):
    return bearer(member)
