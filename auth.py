"""
Password hashing and bearer tokens.

Tokens are HS256 JWTs signed with AUTH_SECRET; `sub` carries the user id.
"""
import hashlib
import hmac
import os
import time
from typing import Optional

import jwt

from errors import AuthenticationError
from schemas import Role

AUTH_SECRET = os.getenv("AUTH_SECRET", "change-me-before-deploying-the-shop-api")
AUTH_SALT = os.getenv("AUTH_SALT", "shop_salt")
TOKEN_TTL_SECONDS = int(os.getenv("TOKEN_TTL_SECONDS", "3600"))
TOKEN_ALGORITHM = "HS256"

ROLE_BY_EMAIL_DOMAIN = {
    "admin.com": Role.ADMIN,
    "delivery.com": Role.DELIVERY,
    "sales.com": Role.SALES_MANAGER,
    "product.com": Role.PRODUCT_MANAGER,
}


def hash_password(pw: str) -> str:
    return hashlib.sha256((pw + AUTH_SALT).encode()).hexdigest()


def verify_password(pw: str, password_hash: str) -> bool:
    return hmac.compare_digest(hash_password(pw), password_hash or "")


def role_for_email(email: str) -> Role:
    domain = email.lower().rpartition("@")[2]
    return ROLE_BY_EMAIL_DOMAIN.get(domain, Role.USER)


def issue_token(user_id: str, now: Optional[float] = None) -> str:
    issued_at = int(now if now is not None else time.time())
    claims = {"sub": user_id, "iat": issued_at, "exp": issued_at + TOKEN_TTL_SECONDS}
    return jwt.encode(claims, AUTH_SECRET, algorithm=TOKEN_ALGORITHM)


def verify_token(token: str) -> str:
    """Return the user id carried by a valid token."""
    try:
        claims = jwt.decode(token, AUTH_SECRET, algorithms=[TOKEN_ALGORITHM],
                            options={"require": ["sub", "exp"]})
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Token expired")
    except jwt.InvalidTokenError:
        raise AuthenticationError("Invalid token")
    return claims["sub"]


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization or not authorization.startswith("Bearer "):
        return None
    return authorization.split(" ", 1)[1].strip() or None
