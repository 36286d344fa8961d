"""
Authentication: users, access tokens and refresh tokens.

Access tokens are short-lived HS256 JWTs carried as a bearer header. Refresh
tokens are opaque random strings that live only in an HttpOnly cookie; the
database keeps their SHA-256 hash. Every refresh rotates the token, and a
revoked token presented again is treated as theft: all of that user's refresh
tokens are revoked.
"""

import hashlib
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple

from jose import JWTError, jwt

from api.common import ensure_utc
from api.database import refresh_tokens, require_database, users
from api.db_retry import db_execute_with_retry, fetch_one_with_retry, with_db_retry
from api.enums import TokenType, UserRole
from api.identity import Identity
from config import (
    ACCESS_TOKEN_EXPIRY_MINUTES,
    JWT_ALGORITHM,
    JWT_SECRET,
    OWNER_OPEN_ID,
    REFRESH_TOKEN_EXPIRY_DAYS,
)

logger = logging.getLogger(__name__)

# Security event logger for authentication events
security_logger = logging.getLogger("security.auth")


class InvalidAccessToken(Exception):
    """Bearer token is malformed, expired, badly signed or not an access token."""


class InvalidRefreshToken(Exception):
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Invalid refresh token: {reason}")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def resolve_initial_role(open_id: str, owner_open_id: str = OWNER_OPEN_ID) -> UserRole:
    """Role for a newly created user: the configured owner is admin, everyone else a user."""
    if owner_open_id and open_id == owner_open_id:
        return UserRole.ADMIN
    return UserRole.USER


@with_db_retry()
async def upsert_user(identity: Identity, owner_open_id: str = OWNER_OPEN_ID) -> Dict[str, Any]:
    """
    Create or refresh the user row for a signed-in identity.

    The role is decided once, when the row is created. Later sign-ins only
    update profile fields and last_signed_in; they never change the role.
    """
    database = require_database()
    now = _now()

    async with database.transaction():
        existing = await database.fetch_one(users.select().where(users.c.open_id == identity.open_id))
        if existing is None:
            role = resolve_initial_role(identity.open_id, owner_open_id)
            user_id = await database.execute(
                users.insert().values(
                    open_id=identity.open_id,
                    name=identity.name,
                    email=identity.email,
                    login_method=identity.login_method,
                    role=role.value,
                    created_at=now,
                    updated_at=now,
                    last_signed_in=now,
                )
            )
            logger.info(f"Created user {user_id} with role {role.value}")
        else:
            user_id = existing["id"]
            values = {"last_signed_in": now, "updated_at": now}
            if identity.name is not None:
                values["name"] = identity.name
            if identity.email is not None:
                values["email"] = identity.email
            if identity.login_method is not None:
                values["login_method"] = identity.login_method
            await database.execute(users.update().where(users.c.id == user_id).values(**values))

        row = await database.fetch_one(users.select().where(users.c.id == user_id))
    return dict(row._mapping)


# ============ Access tokens ============


def create_access_token(user: Dict[str, Any], now: Optional[datetime] = None) -> Tuple[str, int]:
    """Return (jwt, lifetime in seconds) for a user row."""
    now = now or _now()
    expires_in = ACCESS_TOKEN_EXPIRY_MINUTES * 60
    claims = {
        "sub": str(user["id"]),
        "role": user["role"],
        "type": TokenType.ACCESS.value,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(seconds=expires_in)).timestamp()),
    }
    return jwt.encode(claims, JWT_SECRET, algorithm=JWT_ALGORITHM), expires_in


def decode_access_token(token: str) -> Dict[str, Any]:
    """Verify signature, expiry and token type. Raises InvalidAccessToken."""
    try:
        claims = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except JWTError as e:
        raise InvalidAccessToken(str(e))
    if claims.get("type") != TokenType.ACCESS.value:
        raise InvalidAccessToken("wrong token type")
    try:
        claims["user_id"] = int(claims["sub"])
    except (KeyError, TypeError, ValueError):
        raise InvalidAccessToken("malformed subject")
    return claims


def parse_bearer(authorization: Optional[str]) -> Optional[str]:
    """Token from an "Authorization: Bearer <token>" header value, or None."""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def get_user_for_token(token: Optional[str]) -> Optional[Dict[str, Any]]:
    """User row for a valid access token, None for anything else."""
    if not token:
        return None
    try:
        claims = decode_access_token(token)
    except InvalidAccessToken:
        return None
    row = await fetch_one_with_retry(users.select().where(users.c.id == claims["user_id"]))
    return dict(row._mapping) if row is not None else None


# ============ Refresh tokens ============


def hash_refresh_token(raw: str) -> str:
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


async def _insert_refresh_token(
    database, user_id: int, now: datetime, ip_address: Optional[str], user_agent: Optional[str]
) -> str:
    raw = secrets.token_urlsafe(48)  # 64 chars base64
    await database.execute(
        refresh_tokens.insert().values(
            user_id=user_id,
            token_hash=hash_refresh_token(raw),
            created_at=now,
            expires_at=now + timedelta(days=REFRESH_TOKEN_EXPIRY_DAYS),
            ip_address=ip_address[:45] if ip_address else None,
            user_agent=user_agent[:512] if user_agent else None,
        )
    )
    return raw


async def issue_refresh_token(
    user_id: int,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> str:
    """Create a refresh token for a user and return the raw value for the cookie."""
    database = require_database()
    return await _insert_refresh_token(database, user_id, _now(), ip_address, user_agent)


@with_db_retry()
async def rotate_refresh_token(
    raw: str,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> Tuple[Dict[str, Any], str]:
    """
    Exchange a refresh token for a new one. Returns (user row, new raw token).

    Raises InvalidRefreshToken for unknown, expired or reused tokens. Reuse
    revokes every outstanding token of the owning user before raising.
    """
    database = require_database()
    now = _now()
    token_hash = hash_refresh_token(raw)
    reused_by: Optional[int] = None

    async with database.transaction():
        row = await database.fetch_one(refresh_tokens.select().where(refresh_tokens.c.token_hash == token_hash))
        if row is None:
            raise InvalidRefreshToken("unknown")

        if row["revoked_at"] is not None:
            # The revocation below must commit, so the error is raised after the transaction
            await database.execute(
                refresh_tokens.update()
                .where(refresh_tokens.c.user_id == row["user_id"])
                .where(refresh_tokens.c.revoked_at.is_(None))
                .values(revoked_at=now)
            )
            reused_by = row["user_id"]
        else:
            if ensure_utc(row["expires_at"]) <= now:
                raise InvalidRefreshToken("expired")

            user = await database.fetch_one(users.select().where(users.c.id == row["user_id"]))
            if user is None:
                raise InvalidRefreshToken("unknown user")

            await database.execute(
                refresh_tokens.update().where(refresh_tokens.c.id == row["id"]).values(revoked_at=now)
            )
            new_raw = await _insert_refresh_token(database, user["id"], now, ip_address, user_agent)

    if reused_by is not None:
        security_logger.warning(
            "Refresh token reuse detected; all sessions revoked",
            extra={"event": "refresh_reuse", "reason": "revoked_token_presented", "user_id": reused_by, "client_ip": ip_address},
        )
        raise InvalidRefreshToken("reused")

    security_logger.info(
        "Refresh token rotated",
        extra={"event": "refresh_rotated", "user_id": user["id"], "client_ip": ip_address},
    )
    return dict(user._mapping), new_raw


async def revoke_refresh_token(raw: str) -> None:
    """Revoke one refresh token (logout). Unknown tokens are ignored."""
    await db_execute_with_retry(
        refresh_tokens.update()
        .where(refresh_tokens.c.token_hash == hash_refresh_token(raw))
        .where(refresh_tokens.c.revoked_at.is_(None))
        .values(revoked_at=_now())
    )


async def revoke_user_refresh_tokens(user_id: int) -> None:
    await db_execute_with_retry(
        refresh_tokens.update()
        .where(refresh_tokens.c.user_id == user_id)
        .where(refresh_tokens.c.revoked_at.is_(None))
        .values(revoked_at=_now())
    )


async def cleanup_expired_refresh_tokens() -> None:
    """Delete refresh tokens past their expiry. Called on admin API startup."""
    await db_execute_with_retry(refresh_tokens.delete().where(refresh_tokens.c.expires_at < _now()))
