"""Account management: registration, login and user CRUD."""

import logging
from typing import Optional, Tuple

from sqlalchemy.orm import Session

from library_api import schemas
from library_api.auth import (
    create_access_token,
    hash_password,
    require_admin,
    require_authenticated,
    require_self_or_admin,
    verify_password,
)
from library_api.database import commit
from library_api.errors import Conflict, Forbidden, NotFound, Unauthorized
from library_api.models import Role, User
from library_api.pagination import paginate


logger = logging.getLogger(__name__)


def _email_taken(db: Session, email: str, exclude_id: Optional[int] = None) -> bool:
    query = db.query(User).filter(User.email == email.lower())
    if exclude_id is not None:
        query = query.filter(User.id != exclude_id)
    return db.query(query.exists()).scalar()


def _create(db: Session, data: schemas.UserCreate, role: Role) -> User:
    # Emails are unique across active and deactivated accounts alike.
    if _email_taken(db, data.email):
        raise Conflict("Email already exists")

    user = User(
        name=data.name,
        email=data.email,
        password_hash=hash_password(data.password),
        role=role,
    )
    db.add(user)
    commit(db, "Email already exists")
    db.refresh(user)
    logger.info("Created %s account %s", role.value, user.id)
    return user


def register(db: Session, data: schemas.UserCreate) -> Tuple[User, str]:
    """Self-service sign-up. New accounts are always Members."""
    user = _create(db, data, Role.MEMBER)
    return user, create_access_token(user.id)


def login(db: Session, email: str, password: str) -> Tuple[User, str]:
    user = db.query(User).filter(User.email == email.strip().lower()).first()
    if not user or not user.is_active or not verify_password(password, user.password_hash):
        logger.warning("Failed login attempt")
        raise Unauthorized("Invalid credentials")
    return user, create_access_token(user.id)


def create_user(db: Session, caller: Optional[User], data: schemas.UserCreate) -> User:
    require_admin(caller)
    return _create(db, data, data.role)


def list_users(db: Session, caller: Optional[User], page=None, limit=None):
    require_admin(caller)
    query = (
        db.query(User)
        .filter(User.is_active.is_(True))
        .order_by(User.created_at.desc(), User.id.desc())
    )
    return paginate(query, page, limit)


def get_user(db: Session, caller: Optional[User], user_id: int) -> User:
    require_self_or_admin(caller, user_id)
    user = db.get(User, user_id)
    if user is None or not user.is_active:
        raise NotFound("User not found")
    return user


def me(caller: Optional[User]) -> User:
    return require_authenticated(caller)


def update_user(
    db: Session, caller: Optional[User], user_id: int, data: schemas.UserUpdate
) -> User:
    """
    Partially update an account.

    Members may edit their own profile but not their role or active flag;
    those two fields are silently ignored for non-admins.
    An admin cannot deactivate their own account this way either.
    """
    caller = require_self_or_admin(caller, user_id)
    user = db.get(User, user_id)
    if user is None:
        raise NotFound("User not found")

    update_data = data.model_dump(exclude_unset=True)
    if not caller.is_admin:
        update_data.pop("role", None)
        update_data.pop("is_active", None)
    elif user.id == caller.id and update_data.get("is_active") is False:
        raise Forbidden("Cannot deactivate your own account")

    if "email" in update_data and update_data["email"] != user.email:
        if _email_taken(db, update_data["email"], exclude_id=user.id):
            raise Conflict("Email already exists")

    password = update_data.pop("password", None)
    if password:
        user.password_hash = hash_password(password)

    for key, value in update_data.items():
        if value is not None:
            setattr(user, key, value)

    commit(db, "Email already exists")
    db.refresh(user)
    return user


def delete_user(db: Session, caller: Optional[User], user_id: int) -> User:
    """Soft delete: the account is deactivated, never removed."""
    caller = require_admin(caller)
    user = db.get(User, user_id)
    if user is None:
        raise NotFound("User not found")
    if user.id == caller.id:
        raise Forbidden("Cannot delete your own account")

    user.is_active = False
    commit(db)
    db.refresh(user)
    logger.info("Deactivated user %s", user.id)
    return user
