import logging
from sqlalchemy import create_engine
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session, sessionmaker, declarative_base

from library_api.config import settings
from library_api.errors import Conflict, Unavailable


logger = logging.getLogger(__name__)

DATABASE_URL = settings.database_url


def _connect_args(url: str) -> dict:
    if "sqlite" in url:
        return {"check_same_thread": False, "timeout": settings.database_timeout}
    return {"connect_timeout": int(settings.database_timeout)}


engine = create_engine(DATABASE_URL, connect_args=_connect_args(DATABASE_URL))

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def get_db():
    """
    Dependency function that provides a database session.

    The session is yielded to the endpoint (or GraphQL context) and closed
    once the request has finished, whether it succeeded or not.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def commit(db: Session, conflict_message: str = "Resource already exists") -> None:
    """
    Commit the current transaction, translating store failures.

    A unique constraint violation becomes Conflict, a lost or locked
    connection becomes Unavailable. The session is rolled back in both cases.
    """
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        logger.warning("Integrity error on commit: %s", exc.orig)
        raise Conflict(conflict_message) from exc
    except OperationalError as exc:
        db.rollback()
        logger.error("Store unavailable on commit: %s", exc.orig)
        raise Unavailable() from exc
