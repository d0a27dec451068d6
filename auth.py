from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt
from passlib.context import CryptContext

import config
from pipeline import Eq, Limit, Match, Ne, Pipeline
from registry import DELETED, INACTIVE

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    if not password_hash:
        return False
    try:
        return pwd_context.verify(password, password_hash)
    except ValueError:
        # not a passlib hash
        return False


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, config.JWT_SECRET, algorithm=config.ALGORITHM)


def decode_subject(token: str) -> Optional[str]:
    """User id carried by a valid token, or None."""
    try:
        payload = jwt.decode(token, config.JWT_SECRET, algorithms=[config.ALGORITHM])
    except JWTError:
        return None
    return payload.get("sub")


def authenticate(storage, collection: str, email: str, password: str) -> Optional[dict]:
    pipeline = Pipeline().then(
        Match(Eq("email", email)),
        Match(Ne("status", DELETED)),
        Limit(1),
    )
    rows = storage.find_page(collection, pipeline)
    if not rows:
        return None
    user = rows[0]
    if user.get("status") == INACTIVE:
        return None
    if not verify_password(password, user.get("password") or ""):
        return None
    return user
