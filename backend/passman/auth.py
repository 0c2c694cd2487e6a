"""
Authentication primitives for PassMan
Argon2id password hashing, HS256 session tokens and opaque token helpers
"""

import hashlib
import logging
import secrets
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Tuple

import jwt
from passlib.context import CryptContext

from .config import Settings, get_settings
from .database import epoch_seconds
from .exceptions import AuthenticationError, AuthFailureReason

logger = logging.getLogger(__name__)

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_BYTES = 64


def build_password_context(settings: Settings) -> CryptContext:
    """Argon2id context whose work factor comes from settings.

    Hashes made with a lower time or memory cost report ``needs_update``.
    """
    return CryptContext(
        schemes=["argon2"],
        deprecated="auto",
        argon2__memory_cost=settings.password_hash_memory_cost,
        argon2__time_cost=settings.password_hash_time_cost,
        argon2__min_rounds=settings.password_hash_time_cost,
        argon2__parallelism=settings.password_hash_parallelism,
        argon2__hash_len=32,
        argon2__salt_len=16,
    )


class PasswordManager:
    """Salted adaptive password hashing with constant-time verification"""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.pwd_context = build_password_context(self.settings)

    def hash_password(self, password: str) -> str:
        """Hash password using Argon2id"""
        return self.pwd_context.hash(password)

    def verify_password(self, plain_password: str, hashed_password: str) -> bool:
        """Verify password against hash; empty input and malformed hashes never verify"""
        verified, _ = self.verify_and_update(plain_password, hashed_password)
        return verified

    def verify_and_update(self, plain_password: str, hashed_password: str) -> Tuple[bool, Optional[str]]:
        """
        Verify a password and report a replacement hash when the stored one is outdated.

        Returns:
            (verified, new_hash) where new_hash is None unless a rehash is due
        """
        if not plain_password or not hashed_password:
            return False, None
        try:
            return self.pwd_context.verify_and_update(plain_password, hashed_password)
        except (ValueError, TypeError) as e:
            logger.warning(f"Rejected unverifiable password hash: {type(e).__name__}")
            return False, None

    def needs_rehash(self, hashed_password: str) -> bool:
        return self.pwd_context.needs_update(hashed_password)

    def dummy_verify(self) -> None:
        """Burn one verification so unknown accounts take as long as known ones"""
        self.pwd_context.dummy_verify()


class JWTManager:
    """HS256 session token management"""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    def create_access_token(
        self,
        data: Dict[str, Any],
        issued_at: datetime,
        expires_delta: Optional[timedelta] = None,
    ) -> Tuple[str, datetime]:
        """Sign an access token; returns the token and its expiry"""
        to_encode = data.copy()
        expire = issued_at + (expires_delta or timedelta(minutes=self.settings.access_token_expire_minutes))

        to_encode.update(
            {
                "exp": expire,
                "iat": issued_at,
                "jti": secrets.token_urlsafe(16),
                "iss": self.settings.jwt_issuer,
                "aud": self.settings.jwt_audience,
                "type": ACCESS_TOKEN_TYPE,
            }
        )

        token = jwt.encode(to_encode, self.settings.secret_key, algorithm=self.settings.jwt_algorithm)
        return token, expire

    def verify_token(self, token: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Verify signature, expiry, issuer and audience.

        When ``now`` is given, expiry is judged against it instead of the
        wall clock so callers with an injected clock stay consistent.
        """
        if not token:
            raise AuthenticationError("Token is missing", reason=AuthFailureReason.TOKEN_INVALID)

        options: Dict[str, Any] = {"require": ["exp", "iat", "sub", "jti"]}
        if now is not None:
            options.update({"verify_exp": False, "verify_iat": False})
        try:
            payload = jwt.decode(
                token,
                self.settings.secret_key,
                algorithms=[self.settings.jwt_algorithm],
                audience=self.settings.jwt_audience,
                issuer=self.settings.jwt_issuer,
                options=options,
            )
        except jwt.ExpiredSignatureError:
            raise AuthenticationError("Token has expired", reason=AuthFailureReason.TOKEN_EXPIRED)
        except jwt.InvalidTokenError as e:
            logger.warning(f"Invalid token: {type(e).__name__}")
            raise AuthenticationError("Could not validate credentials", reason=AuthFailureReason.TOKEN_INVALID)

        if now is not None and int(payload["exp"]) <= epoch_seconds(now):
            raise AuthenticationError("Token has expired", reason=AuthFailureReason.TOKEN_EXPIRED)
        return payload

    def validate_access_token(self, token: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Validate access token specifically"""
        payload = self.verify_token(token, now)
        if payload.get("type") != ACCESS_TOKEN_TYPE:
            raise AuthenticationError(
                "Token cannot be used for API access", reason=AuthFailureReason.TOKEN_INVALID
            )
        return payload


def generate_opaque_token(nbytes: int = REFRESH_TOKEN_BYTES) -> str:
    """Cryptographically random URL-safe token"""
    return secrets.token_urlsafe(nbytes)


def hash_token(token: str) -> str:
    """SHA-256 digest used to store opaque tokens at rest"""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()

