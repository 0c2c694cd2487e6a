"""
Session token lifecycle
Stateless access tokens plus server-tracked, single-use refresh tokens
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple

from sqlalchemy import or_, update
from sqlalchemy.orm import Session

from ...auth import JWTManager, generate_opaque_token, hash_token
from ...config import Settings, get_settings
from ...database import Clock, RefreshToken, User, utcnow
from ...exceptions import AuthenticationError, AuthFailureReason, ForbiddenError
from ...models.auth_models import TokenClaims, TokenPair
from ...rbac import RBACManager
from ...utils.logging_security import mask_token_for_log, sanitize_id_for_log
from ..base import service_operation
from ..identity_service import IdentityService

logger = logging.getLogger(__name__)


class TokenService:
    """Issue, validate, rotate and revoke session tokens"""

    def __init__(
        self,
        db: Session,
        settings: Optional[Settings] = None,
        jwt_manager: Optional[JWTManager] = None,
        identity: Optional[IdentityService] = None,
        clock: Clock = utcnow,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.jwt_manager = jwt_manager or JWTManager(self.settings)
        self.identity = identity or IdentityService(db, self.settings, clock=clock)
        self.clock = clock

    def issue_access_token(self, user: User, roles: Optional[List[str]] = None) -> Tuple[str, datetime]:
        """
        Sign an access token for a user.

        Claims carry the user id, display name, email, roles and the
        effective permission set, so validation never needs the store.
        """
        roles = list(roles) if roles is not None else self.identity.get_roles(user.id)
        permissions = sorted(p.value for p in RBACManager.get_effective_permissions(roles))
        claims = {
            "sub": str(user.id),
            "name": user.user_name or user.email,
            "email": user.email,
            "roles": roles,
            "permissions": permissions,
        }
        return self.jwt_manager.create_access_token(claims, issued_at=self.clock())

    @service_operation
    def issue_refresh_token(self, user_id: int) -> Tuple[str, datetime]:
        """Create and persist one refresh token; the raw value is returned only here"""
        token, row = self._create_refresh_row(user_id)
        self.db.commit()
        return token, row.expires_at

    @service_operation
    def issue_token_pair(self, user: User) -> TokenPair:
        pair, _ = self._issue_pair(user)
        self.db.commit()
        return pair

    @service_operation
    def validate(self, access_token: str) -> TokenClaims:
        """Check signature and expiry of an access token without touching the store"""
        payload = self.jwt_manager.validate_access_token(access_token, now=self.clock())
        try:
            user_id = int(payload["sub"])
        except (TypeError, ValueError):
            raise AuthenticationError("Could not validate credentials", reason=AuthFailureReason.TOKEN_INVALID)

        return TokenClaims(
            user_id=user_id,
            name=payload.get("name"),
            email=payload.get("email"),
            roles=payload.get("roles") or [],
            permissions=payload.get("permissions") or [],
            token_id=payload["jti"],
            issued_at=datetime.fromtimestamp(int(payload["iat"]), timezone.utc).replace(tzinfo=None),
            expires_at=datetime.fromtimestamp(int(payload["exp"]), timezone.utc).replace(tzinfo=None),
        )

    @service_operation
    def refresh(self, refresh_token: str) -> TokenPair:
        """
        Rotate a refresh token into a new token pair.

        The old token is invalidated by one conditional UPDATE, so of two
        concurrent calls with the same token exactly one matches a row. The
        loser is told whether the token was unknown, revoked or expired.
        """
        if not refresh_token:
            raise AuthenticationError("Refresh token is required", reason=AuthFailureReason.TOKEN_INVALID)

        token_hash = hash_token(refresh_token)
        now = self.clock()
        result = self.db.execute(
            update(RefreshToken)
            .where(
                RefreshToken.token_hash == token_hash,
                RefreshToken.revoked.is_(False),
                RefreshToken.expires_at > now,
            )
            .values(revoked=True, revoked_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.db.rollback()
            raise self._rejection_for(token_hash)

        old = self.db.query(RefreshToken).filter(RefreshToken.token_hash == token_hash).one()
        user = self.db.get(User, old.user_id)
        if user is None:
            self.db.commit()
            raise AuthenticationError("Invalid refresh token", reason=AuthFailureReason.TOKEN_INVALID)

        pair, new_row = self._issue_pair(user)
        old.replaced_by_id = new_row.id
        self.db.commit()

        logger.info(f"Rotated refresh token {mask_token_for_log(refresh_token)} for user {sanitize_id_for_log(user.id)}")
        return pair

    @service_operation
    def logout(self, user_id: int, refresh_token: str) -> bool:
        """
        Revoke one refresh token of ``user_id``.

        Returns False when the token is unknown. A token owned by someone
        else is refused rather than revoked.
        """
        if not refresh_token:
            return False
        row = self.db.query(RefreshToken).filter(RefreshToken.token_hash == hash_token(refresh_token)).first()
        if row is None:
            return False
        if row.user_id != user_id:
            logger.warning(
                f"User {sanitize_id_for_log(user_id)} tried to revoke a refresh token of "
                f"user {sanitize_id_for_log(row.user_id)}"
            )
            raise ForbiddenError("Refresh token belongs to another user")

        if not row.revoked:
            row.revoked = True
            row.revoked_at = self.clock()
            self.db.commit()
        return True

    @service_operation
    def revoke_all(self, user_id: int) -> int:
        """Revoke every live refresh token of a user; returns how many"""
        result = self.db.execute(
            update(RefreshToken)
            .where(RefreshToken.user_id == user_id, RefreshToken.revoked.is_(False))
            .values(revoked=True, revoked_at=self.clock())
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        return result.rowcount

    @service_operation
    def purge_expired(self) -> int:
        """Maintenance: delete expired and revoked refresh tokens"""
        deleted = (
            self.db.query(RefreshToken)
            .filter(or_(RefreshToken.expires_at <= self.clock(), RefreshToken.revoked.is_(True)))
            .delete(synchronize_session=False)
        )
        self.db.commit()
        if deleted:
            logger.info(f"Purged {deleted} expired or revoked refresh token(s)")
        return deleted

    def _issue_pair(self, user: User) -> Tuple[TokenPair, RefreshToken]:
        access_token, access_expires = self.issue_access_token(user)
        refresh_token, row = self._create_refresh_row(user.id)
        pair = TokenPair(
            access_token=access_token,
            access_token_expires_at=access_expires,
            refresh_token=refresh_token,
            refresh_token_expires_at=row.expires_at,
        )
        return pair, row

    def _create_refresh_row(self, user_id: int) -> Tuple[str, RefreshToken]:
        now = self.clock()
        token = generate_opaque_token()
        row = RefreshToken(
            token_hash=hash_token(token),
            user_id=user_id,
            issued_at=now,
            expires_at=now + timedelta(days=self.settings.refresh_token_expire_days),
            revoked=False,
        )
        self.db.add(row)
        self.db.flush()
        return token, row

    def _rejection_for(self, token_hash: str) -> AuthenticationError:
        existing = self.db.query(RefreshToken).filter(RefreshToken.token_hash == token_hash).first()
        if existing is None:
            return AuthenticationError("Invalid refresh token", reason=AuthFailureReason.TOKEN_INVALID)
        if existing.revoked:
            logger.warning(f"Revoked refresh token presented for user {sanitize_id_for_log(existing.user_id)}")
            return AuthenticationError("Refresh token has been revoked", reason=AuthFailureReason.TOKEN_REVOKED)
        return AuthenticationError("Refresh token has expired", reason=AuthFailureReason.TOKEN_EXPIRED)


def get_token_service(db: Session) -> TokenService:
    """Factory function to get token service instance"""
    return TokenService(db)
