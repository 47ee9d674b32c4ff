"""Bearer-token authentication (HS256 JWTs)."""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Mapping

import jwt

from api.errors import UnauthorizedError
from config import ACCESS_TOKEN_TTL, JWT_ISSUER

# Security event logger - separate from regular application logging
security_logger = logging.getLogger("security.auth")

logger = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"


def get_bearer_token(headers: Mapping[str, str]) -> str:
    """Extract the token from an ``Authorization: Bearer <token>`` header."""
    auth_header = headers.get("authorization")
    if not auth_header:
        raise UnauthorizedError("Couldn't find JWT")

    scheme, _, token = auth_header.partition(" ")
    token = token.strip()
    if scheme.lower() != "bearer" or not token:
        raise UnauthorizedError("Malformed authorization header")
    return token


def make_jwt(user_id: str, secret: str, expires_in: int = ACCESS_TOKEN_TTL, issuer: str = JWT_ISSUER) -> str:
    """Mint an access token whose subject is the user id."""
    now = datetime.now(timezone.utc)
    claims = {
        "iss": issuer,
        "sub": user_id,
        "iat": now,
        "exp": now + timedelta(seconds=expires_in),
    }
    return jwt.encode(claims, secret, algorithm=JWT_ALGORITHM)


def validate_jwt(token: str, secret: str, issuer: str = JWT_ISSUER) -> str:
    """
    Validate an access token and return the authenticated user id.

    Raises:
        UnauthorizedError: if the token is expired, tampered with, issued by
            someone else, or its subject is not a user id
    """
    if not secret:
        # An empty HMAC key would accept tokens signed with an empty key
        logger.error("JWT secret is not configured; rejecting all tokens")
        raise UnauthorizedError("Couldn't validate JWT")

    try:
        claims = jwt.decode(
            token,
            secret,
            algorithms=[JWT_ALGORITHM],
            issuer=issuer,
            options={"require": ["exp", "iat", "iss", "sub"]},
        )
    except jwt.ExpiredSignatureError:
        security_logger.info("Rejected expired JWT")
        raise UnauthorizedError("JWT has expired")
    except jwt.InvalidTokenError as e:
        security_logger.warning(f"Rejected invalid JWT: {e}")
        raise UnauthorizedError("Couldn't validate JWT")

    subject = claims["sub"]
    try:
        return str(uuid.UUID(subject))
    except (ValueError, TypeError):
        security_logger.warning(f"Rejected JWT with non-UUID subject: {subject!r}")
        raise UnauthorizedError("Couldn't validate JWT")


def authenticate(headers: Mapping[str, str], secret: str) -> str:
    """Resolve the user id behind a request's bearer credential."""
    return validate_jwt(get_bearer_token(headers), secret)
