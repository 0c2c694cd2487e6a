"""
Two-Factor Authentication Service for PassMan
RFC 6238 TOTP with clock-drift tolerance, single-use backup codes and the
per-user enrollment state machine
"""

import base64
import hashlib
import hmac
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from io import BytesIO
from typing import List, Optional, Tuple, Union

import pyotp
import qrcode
from sqlalchemy import update
from sqlalchemy.orm import Session

from ..config import Settings, get_settings
from ..database import Clock, User, epoch_seconds, utcnow
from ..exceptions import AuthenticationError, AuthFailureReason, NotFoundError, ValidationError
from ..models.auth_models import MFAEnrollmentResult, MFAStatus
from ..utils.logging_security import sanitize_id_for_log, sanitize_username_for_log
from .base import service_operation

logger = logging.getLogger(__name__)

TOTP_DIGITS = 6
TOTP_INTERVAL = 30
SECRET_BYTES = 20
BACKUP_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
MAX_BACKUP_CODES = 20
BACKUP_CODE_ATTEMPTS = 3


class MFAMethod(Enum):
    """Second factors accepted at login"""

    TOTP = "totp"
    BACKUP_CODE = "backup_code"


@dataclass
class MFAValidationResult:
    """Result of MFA validation"""

    valid: bool
    method_used: Optional[MFAMethod] = None
    backup_codes_remaining: Optional[int] = None
    error_message: Optional[str] = None


class MFAService:
    """TOTP and backup-code second factor"""

    def __init__(
        self,
        db: Optional[Session] = None,
        settings: Optional[Settings] = None,
        clock: Clock = utcnow,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.clock = clock
        self.issuer_name = self.settings.totp_issuer

    def generate_secret(self) -> str:
        """Generate a 160-bit base32 TOTP secret"""
        return base64.b32encode(secrets.token_bytes(SECRET_BYTES)).decode("utf-8")

    def generate_code(self, secret: str, time_counter: int) -> str:
        """6-digit code for one 30-second time step"""
        return pyotp.TOTP(secret, digits=TOTP_DIGITS, interval=TOTP_INTERVAL).generate_otp(time_counter)

    def current_code(self, secret: str, for_time: Optional[Union[int, datetime]] = None) -> str:
        timestamp = epoch_seconds(for_time if for_time is not None else self.clock())
        return self.generate_code(secret, timestamp // TOTP_INTERVAL)

    def validate_code(
        self,
        secret: str,
        code: str,
        tolerance_steps: Optional[int] = None,
        for_time: Optional[Union[int, datetime]] = None,
    ) -> bool:
        """
        Accept a code matching any time step within +/- tolerance.

        Every candidate step is compared with ``hmac.compare_digest`` and the
        loop never exits early, so timing does not reveal which step matched.
        """
        code = (code or "").strip().replace(" ", "")
        if not secret or len(code) != TOTP_DIGITS or not code.isdigit():
            return False

        tolerance = self.settings.totp_tolerance_steps if tolerance_steps is None else max(0, tolerance_steps)
        timestamp = epoch_seconds(for_time if for_time is not None else self.clock())
        counter = timestamp // TOTP_INTERVAL

        try:
            totp = pyotp.TOTP(secret, digits=TOTP_DIGITS, interval=TOTP_INTERVAL)
            matched = False
            for offset in range(-tolerance, tolerance + 1):
                if counter + offset < 0:
                    continue
                if hmac.compare_digest(code, totp.generate_otp(counter + offset)):
                    matched = True
            return matched
        except (ValueError, TypeError) as e:
            logger.warning(f"TOTP validation rejected a malformed secret: {type(e).__name__}")
            return False

    def provisioning_uri(self, secret: str, account_name: str) -> str:
        """otpauth:// URI understood by authenticator apps"""
        return pyotp.TOTP(secret).provisioning_uri(name=account_name, issuer_name=self.issuer_name)

    def generate_qr_code(self, provisioning_uri: str) -> Optional[str]:
        """Base64 PNG of the provisioning URI"""
        try:
            qr = qrcode.QRCode(
                version=1,
                error_correction=qrcode.constants.ERROR_CORRECT_L,
                box_size=10,
                border=4,
            )
            qr.add_data(provisioning_uri)
            qr.make(fit=True)

            img = qr.make_image(fill_color="black", back_color="white")
            buffer = BytesIO()
            img.save(buffer, format="PNG")
            return base64.b64encode(buffer.getvalue()).decode("utf-8")

        except Exception as e:
            logger.error(f"Failed to generate QR code: {type(e).__name__}")
            return None

    def generate_backup_codes(self, count: Optional[int] = None) -> List[str]:
        """Generate single-use recovery codes formatted XXXX-XXXX"""
        count = self.settings.backup_code_count if count is None else count
        if count < 1 or count > MAX_BACKUP_CODES:
            raise ValueError(f"Backup code count must be between 1 and {MAX_BACKUP_CODES}")

        codes = []
        while len(codes) < count:
            raw = "".join(secrets.choice(BACKUP_CODE_ALPHABET) for _ in range(8))
            code = f"{raw[:4]}-{raw[4:]}"
            if code not in codes:
                codes.append(code)
        return codes

    def hash_backup_code(self, code: str) -> str:
        """SHA-256 of the code with separators and case removed"""
        normalized = (code or "").strip().replace("-", "").replace(" ", "").upper()
        return hashlib.sha256(normalized.encode("utf-8")).hexdigest()

    def validate_backup_code(self, hashed_backup_codes: List[str], user_code: str) -> Tuple[bool, Optional[str]]:
        """
        Validate backup code against stored hashes

        Returns:
            Tuple of (is_valid, code_hash_if_valid)
        """
        candidate = self.hash_backup_code(user_code)
        found = None
        for stored in hashed_backup_codes or []:
            if hmac.compare_digest(candidate, stored):
                found = stored
        return (found is not None), found

    # Per-user state machine: disabled -> pending -> enabled

    @service_operation
    def get_status(self, user_id: int) -> MFAStatus:
        return MFAStatus(self._get_user(user_id).mfa_status)

    @service_operation
    def begin_enrollment(self, user_id: int, include_qr_code: bool = True) -> MFAEnrollmentResult:
        """Generate a secret and backup codes; the factor stays inactive until verified"""
        user = self._get_user(user_id)
        if user.mfa_status == MFAStatus.ENABLED.value:
            raise ValidationError("Two-factor authentication is already enabled")

        secret = self.generate_secret()
        backup_codes = self.generate_backup_codes()
        uri = self.provisioning_uri(secret, user.email)

        user.mfa_secret = secret
        user.backup_codes = [self.hash_backup_code(code) for code in backup_codes]
        user.backup_codes_version = (user.backup_codes_version or 0) + 1
        user.mfa_status = MFAStatus.PENDING.value
        self.db.commit()

        logger.info(f"Started two-factor enrollment for {sanitize_username_for_log(user.email)}")
        return MFAEnrollmentResult(
            success=True,
            secret_key=secret,
            provisioning_uri=uri,
            qr_code_data=self.generate_qr_code(uri) if include_qr_code else None,
            backup_codes=backup_codes,
        )

    @service_operation
    def verify_enrollment(self, user_id: int, code: str) -> MFAStatus:
        """Activate a pending factor with a current code"""
        user = self._get_user(user_id)
        if user.mfa_status != MFAStatus.PENDING.value:
            raise ValidationError("No pending two-factor enrollment", field="code")
        if not self.validate_code(user.mfa_secret, code):
            raise AuthenticationError("Invalid verification code", reason=AuthFailureReason.INVALID_MFA_CODE)

        now = self.clock()
        user.mfa_status = MFAStatus.ENABLED.value
        user.mfa_enrolled_at = now
        user.last_mfa_use = now
        self.db.commit()

        logger.info(f"Enabled two-factor authentication for user {sanitize_id_for_log(user.id)}")
        return MFAStatus.ENABLED

    @service_operation
    def disable(self, user_id: int, code: str) -> MFAStatus:
        """Turn the factor off; a password alone is not enough"""
        user = self._get_user(user_id)
        if user.mfa_status != MFAStatus.ENABLED.value:
            raise ValidationError("Two-factor authentication is not enabled")
        if not self.validate_code(user.mfa_secret, code):
            raise AuthenticationError("Invalid verification code", reason=AuthFailureReason.INVALID_MFA_CODE)

        user.mfa_status = MFAStatus.DISABLED.value
        user.mfa_secret = None
        user.backup_codes = None
        user.backup_codes_version = (user.backup_codes_version or 0) + 1
        user.mfa_enrolled_at = None
        self.db.commit()

        logger.info(f"Disabled two-factor authentication for user {sanitize_id_for_log(user.id)}")
        return MFAStatus.DISABLED

    @service_operation
    def regenerate_backup_codes(self, user_id: int, code: str, count: Optional[int] = None) -> List[str]:
        """Replace every backup code; requires a current TOTP code"""
        user = self._get_user(user_id)
        if user.mfa_status != MFAStatus.ENABLED.value:
            raise ValidationError("Two-factor authentication is not enabled")
        if not self.validate_code(user.mfa_secret, code):
            raise AuthenticationError("Invalid verification code", reason=AuthFailureReason.INVALID_MFA_CODE)
        try:
            backup_codes = self.generate_backup_codes(count)
        except ValueError as e:
            raise ValidationError(str(e), field="count")

        user.backup_codes = [self.hash_backup_code(c) for c in backup_codes]
        user.backup_codes_version = (user.backup_codes_version or 0) + 1
        self.db.commit()
        logger.info(f"Regenerated backup codes for user {sanitize_id_for_log(user.id)}")
        return backup_codes

    @service_operation
    def verify_second_factor(self, user_id: int, code: str) -> MFAValidationResult:
        """Check a TOTP code, falling back to a backup code which is then consumed"""
        user = self._get_user(user_id)
        if user.mfa_status != MFAStatus.ENABLED.value:
            raise ValidationError("Two-factor authentication is not enabled")

        now = self.clock()
        if self.validate_code(user.mfa_secret, code):
            user.last_mfa_use = now
            self.db.commit()
            return MFAValidationResult(valid=True, method_used=MFAMethod.TOTP)

        for _ in range(BACKUP_CODE_ATTEMPTS):
            remaining = self._consume_backup_code(user, code, now)
            if remaining is not None:
                logger.info(
                    f"User {sanitize_id_for_log(user.id)} signed in with a backup code, {len(remaining)} left"
                )
                return MFAValidationResult(
                    valid=True, method_used=MFAMethod.BACKUP_CODE, backup_codes_remaining=len(remaining)
                )
            # Another session rewrote the codes since this one read them; re-read and check again
            self.db.rollback()
            user = self._get_user(user_id)

        raise AuthenticationError("Invalid two-factor code", reason=AuthFailureReason.INVALID_MFA_CODE)

    def _consume_backup_code(self, user: User, code: str, now: datetime) -> Optional[List[str]]:
        """
        Remove a matching backup code with a single conditional UPDATE.

        The write only lands if ``backup_codes_version`` still holds the value
        this session read, so two sessions presenting the same code cannot both
        succeed. Returns the remaining hashes, or None when another writer got
        there first. Raises AuthenticationError when the code does not match.
        """
        seen_version = user.backup_codes_version
        is_valid, used_hash = self.validate_backup_code(user.backup_codes or [], code)
        if not is_valid:
            raise AuthenticationError("Invalid two-factor code", reason=AuthFailureReason.INVALID_MFA_CODE)

        remaining = [h for h in user.backup_codes if h != used_hash]
        result = self.db.execute(
            update(User)
            .where(User.id == user.id, User.backup_codes_version == seen_version)
            .values(backup_codes=remaining, backup_codes_version=seen_version + 1, last_mfa_use=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return None
        self.db.commit()
        return remaining

    def _get_user(self, user_id: int) -> User:
        user = self.db.get(User, user_id)
        if user is None:
            raise NotFoundError("User not found")
        return user


def get_mfa_service(db: Optional[Session] = None) -> MFAService:
    """Factory function to get MFA service instance"""
    return MFAService(db)
