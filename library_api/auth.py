import logging
from datetime import timedelta
from typing import Optional

from fastapi import Depends, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy.orm import Session

from library_api.config import settings
from library_api.database import get_db
from library_api.errors import Forbidden, Unauthorized
from library_api.models import Role, User, utcnow


logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")
bearer_scheme = HTTPBearer(auto_error=False)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    return pwd_context.verify(password, password_hash)


def create_access_token(user_id: int, expires_delta: Optional[timedelta] = None) -> str:
    """
    Issue a signed bearer token for a user.

    The token carries the user id in "sub" and expires after
    JWT_EXPIRATION_MINUTES unless an explicit lifetime is given.
    """
    expire = utcnow() + (
        expires_delta or timedelta(minutes=settings.jwt_expiration_minutes)
    )
    payload = {"sub": str(user_id), "exp": expire}
    return jwt.encode(payload, settings.secret_key, algorithm=settings.jwt_algorithm)


def resolve_caller(token: Optional[str], db: Session) -> Optional[User]:
    """
    Turn a bearer token into the calling user.

    Returns None (an anonymous caller) for a missing, malformed or expired
    token and for tokens of unknown or deactivated users. Rejection is left
    to the guards of each operation.
    """
    if not token:
        return None
    try:
        payload = jwt.decode(
            token, settings.secret_key, algorithms=[settings.jwt_algorithm]
        )
        user_id = int(payload.get("sub"))
    except (JWTError, TypeError, ValueError):
        logger.debug("Rejected bearer token")
        return None

    user = db.get(User, user_id)
    if user is None or not user.is_active:
        return None
    return user


async def get_current_caller(
    credentials: Optional[HTTPAuthorizationCredentials] = Security(bearer_scheme),
    db: Session = Depends(get_db),
) -> Optional[User]:
    """
    Dependency resolving the Authorization header once per request.

    Internal Working:
    1. HTTPBearer extracts "Authorization: Bearer <token>" (auto_error=False,
       so a missing header gives None instead of a 403)
    2. The token is decoded and the user loaded with the request session
    3. The endpoint receives the user, or None for an anonymous request
    """
    token = credentials.credentials if credentials else None
    return resolve_caller(token, db)


# Access control gate


def require_authenticated(caller: Optional[User]) -> User:
    if caller is None:
        raise Unauthorized()
    return caller


def require_admin(caller: Optional[User]) -> User:
    caller = require_authenticated(caller)
    if caller.role != Role.ADMIN:
        raise Forbidden("Admin access required")
    return caller


def require_self_or_admin(caller: Optional[User], target_user_id: int) -> User:
    caller = require_authenticated(caller)
    if caller.role != Role.ADMIN and caller.id != target_user_id:
        raise Forbidden()
    return caller
