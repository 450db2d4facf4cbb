import hashlib
import logging
import datetime
from typing import Dict, Optional

import jwt
import pytz
import psycopg2
from psycopg2 import errors
from fastapi import HTTPException, status, Header

from config import settings
from database import get_cursor

logger = logging.getLogger(__name__)


def hash_password(password: str) -> str:
    """Hash a password using SHA-256."""
    return hashlib.sha256(password.encode()).hexdigest()


def create_access_token(data: dict) -> str:
    """Create a JWT access token."""
    to_encode = data.copy()
    expire = datetime.datetime.now(pytz.utc) + datetime.timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def verify_token(token: str) -> dict:
    """Verify and decode a JWT token."""
    try:
        return jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token has expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")


def get_current_user_id(authorization: Optional[str] = Header(None)) -> str:
    """Get the current user ID from the Bearer token in the Authorization header."""
    if not authorization:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authorization token missing")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid authorization header")
    payload = verify_token(token.strip())
    user_id = payload.get("user_id")
    if user_id is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token payload")
    return str(user_id)


def authenticate_user(db_config: Dict, username: str, password: str) -> Optional[str]:
    """Authenticate a user with username and password."""
    try:
        with get_cursor(db_config) as cur:
            cur.execute("SELECT id, password_hash FROM users WHERE username = %s", (username,))
            result = cur.fetchone()
    except psycopg2.Error as e:
        logger.error(f"Authentication error: {e}")
        return None

    if result and result[1] == hash_password(password):
        return str(result[0])
    return None


def create_user(db_config: Dict, username: str, password: str) -> Optional[str]:
    """Create a new user and return its id, or None when the username is taken."""
    try:
        with get_cursor(db_config, commit=True) as cur:
            cur.execute(
                "INSERT INTO users (username, password_hash) VALUES (%s, %s) RETURNING id",
                (username, hash_password(password)),
            )
            return str(cur.fetchone()[0])
    except errors.UniqueViolation:
        return None
    except psycopg2.Error as e:
        logger.error(f"Error creating user {username}: {e}")
        raise
