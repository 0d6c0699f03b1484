"""
Bearer-token auth for the REST API.

Tokens are HS256 JWTs issued by the storefront's account service with the
claims ``id``, ``email`` and ``isAdmin``.
"""

import os
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
import structlog
from fastapi import Depends, Request
from pydantic import BaseModel

from boutique.errors import AuthenticationError, AuthorizationError

logger = structlog.get_logger().bind(component="auth")


class AuthConfig:
    JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
    JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
    JWT_EXPIRE_DAYS = int(os.getenv("JWT_EXPIRE_DAYS", "30"))


config = AuthConfig()


class CurrentUser(BaseModel):
    user_id: str
    email: Optional[str] = None
    is_admin: bool = False


def generate_token(user_id: str, email: Optional[str] = None, is_admin: bool = False) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "id": user_id,
        "email": email,
        "isAdmin": is_admin,
        "iat": now,
        "exp": now + timedelta(days=config.JWT_EXPIRE_DAYS),
    }
    return jwt.encode(payload, config.JWT_SECRET, algorithm=config.JWT_ALGORITHM)


def decode_token(token: str) -> CurrentUser:
    try:
        claims = jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Not authorized, token expired")
    except jwt.InvalidTokenError as e:
        logger.warning("token_invalid", error=str(e))
        raise AuthenticationError("Not authorized, token failed")

    if not claims.get("id"):
        raise AuthenticationError("Not authorized, token failed")

    return CurrentUser(
        user_id=str(claims["id"]),
        email=claims.get("email"),
        is_admin=bool(claims.get("isAdmin", False)),
    )


async def get_current_user(request: Request) -> CurrentUser:
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise AuthenticationError("Not authorized, no token")
    return decode_token(token.strip())


async def require_admin(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if not user.is_admin:
        raise AuthorizationError("Not authorized as an admin")
    return user
