from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
import string
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import quote, urlencode

from authlab.logging import get_logger
from authlab.service import audit as audit_actions
from authlab.service.audit import AuditLog
from authlab.service.directory import IdentityDirectory
from authlab.service.errors import (
    ConflictError,
    InvalidBackupCodeError,
    InvalidMFACodeError,
)
from authlab.storage.common import AuthStore, digest_backup_code
from authlab.storage.models import MFASecret, utcnow

SECRET_BYTES = 20
DIGITS = 6
BACKUP_CODE_LENGTH = 8
BACKUP_CODE_ALPHABET = string.ascii_uppercase + string.digits


def generate_secret() -> str:
    """160-bit random secret, base32 without padding."""
    return base64.b32encode(secrets.token_bytes(SECRET_BYTES)).decode("ascii").rstrip("=")


def generate_backup_code() -> str:
    raw = "".join(secrets.choice(BACKUP_CODE_ALPHABET) for _ in range(BACKUP_CODE_LENGTH))
    return f"{raw[:4]}-{raw[4:]}"


def _totp_at_counter(secret: str, counter: int, *, digits: int = DIGITS) -> str:
    padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
    try:
        key = base64.b32decode(padded, True)
    except ValueError:
        return ""
    digest = hmac.new(key, counter.to_bytes(8, "big"), hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**digits
    )
    return str(code_int).zfill(digits)


@dataclass
class MFASetup:
    secret: str
    provisioning_uri: str
    backup_codes: List[str]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "secret": self.secret,
            "provisioning_uri": self.provisioning_uri,
            "backup_codes": list(self.backup_codes),
        }


class MFAEngine:
    """RFC 6238 TOTP (HMAC-SHA1, 6 digits) plus single-use backup codes.

    Enrollment is two-step: ``setup`` stores a pending secret, and
    ``enable`` only succeeds after a TOTP code for that secret has been
    accepted. Accepted time-steps are remembered per user so a code cannot
    be replayed inside its validity window.
    """

    def __init__(
        self,
        store: AuthStore,
        directory: IdentityDirectory,
        audit: AuditLog,
        *,
        issuer: str = "Learn Authentication",
        window: int = 2,
        time_step: int = 30,
        backup_code_count: int = 10,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.directory = directory
        self.audit = audit
        self.issuer = issuer
        self.window = window
        self.time_step = time_step
        self.backup_code_count = backup_code_count
        self._clock = clock or utcnow
        self.logger = get_logger(__name__)

    # -- pure TOTP ---------------------------------------------------------

    def _counter(self, at: Optional[datetime]) -> int:
        moment = at or self._clock()
        return int(moment.timestamp() // self.time_step)

    def generate_code(self, secret: str, at: Optional[datetime] = None) -> str:
        return _totp_at_counter(secret, self._counter(at))

    def _match_counter(
        self, secret: str, code: str, at: Optional[datetime], window: Optional[int]
    ) -> Optional[int]:
        candidate = "".join((code or "").split())
        if len(candidate) != DIGITS or not (candidate.isascii() and candidate.isdigit()):
            return None
        steps = self.window if window is None else window
        current = self._counter(at)
        matched: Optional[int] = None
        # Check every step in the window so timing does not reveal which matched
        for offset in range(-steps, steps + 1):
            generated = _totp_at_counter(secret, current + offset)
            if generated and hmac.compare_digest(generated, candidate) and matched is None:
                matched = current + offset
        return matched

    def verify_code(
        self,
        secret: str,
        code: str,
        at: Optional[datetime] = None,
        window: Optional[int] = None,
    ) -> bool:
        """True if ``code`` matches any step within ``window`` steps of ``at``."""
        return self._match_counter(secret, code, at, window) is not None

    def seconds_until_next_code(self, at: Optional[datetime] = None) -> int:
        moment = at or self._clock()
        return self.time_step - int(moment.timestamp()) % self.time_step

    def provisioning_uri(self, secret: str, account: str, issuer: Optional[str] = None) -> str:
        issuer = issuer or self.issuer
        label = quote(f"{issuer}:{account}")
        params = urlencode(
            {
                "secret": secret,
                "issuer": issuer,
                "algorithm": "SHA1",
                "digits": DIGITS,
                "period": self.time_step,
            },
            quote_via=quote,
        )
        return f"otpauth://totp/{label}?{params}"

    # -- enrollment --------------------------------------------------------

    def _new_backup_codes(self) -> List[str]:
        codes: List[str] = []
        while len(codes) < self.backup_code_count:
            code = generate_backup_code()
            if code not in codes:
                codes.append(code)
        return codes

    def setup(self, user_id: str, email: str, issuer: Optional[str] = None) -> MFASetup:
        """Start enrollment. Backup codes are returned here once and stored only as digests."""
        user = self.directory.find_by_id(user_id)
        existing = self.store.get_mfa_secret(user_id)
        if existing and existing.enabled:
            raise ConflictError("MFA is already enabled")
        secret = generate_secret()
        codes = self._new_backup_codes()
        self.store.put_mfa_secret(
            MFASecret(
                user_id=user.id,
                secret=secret,
                enabled=False,
                backup_codes={digest_backup_code(code) for code in codes},
                created_at=self._clock(),
            )
        )
        self.audit.success(audit_actions.MFA_SETUP, user_id=user.id)
        return MFASetup(
            secret=secret,
            provisioning_uri=self.provisioning_uri(secret, email, issuer),
            backup_codes=codes,
        )

    def verify_user_code(self, user_id: str, code: str, at: Optional[datetime] = None) -> None:
        """Check a TOTP code against the stored secret.

        Raises:
            InvalidMFACodeError: no MFA record, wrong code, or a replay of an
                already accepted time-step.
        """
        record = self.store.get_mfa_secret(user_id)
        if not record:
            self.audit.failure(
                audit_actions.MFA_VERIFY_FAILED, user_id=user_id, reason="mfa_not_setup"
            )
            raise InvalidMFACodeError(reason="mfa_not_setup")
        counter = self._match_counter(record.secret, code, at, None)
        if counter is None:
            self.audit.failure(
                audit_actions.MFA_VERIFY_FAILED, user_id=user_id, reason="code_mismatch"
            )
            raise InvalidMFACodeError(reason="code_mismatch")
        if not self.store.advance_mfa_counter(user_id, counter):
            self.audit.failure(
                audit_actions.MFA_VERIFY_FAILED, user_id=user_id, reason="code_replayed"
            )
            raise InvalidMFACodeError(reason="code_replayed")
        self.store.mark_mfa_verified(user_id, self._clock())
        self.audit.success(audit_actions.MFA_VERIFY, user_id=user_id)

    def enable(self, user_id: str) -> None:
        record = self.store.get_mfa_secret(user_id)
        if not record or record.verified_at is None:
            raise InvalidMFACodeError(reason="mfa_not_verified")
        self.store.set_mfa_enabled(user_id, True)
        self.directory.set_mfa_enabled(user_id, True)
        self.audit.success(audit_actions.MFA_ENABLE, user_id=user_id)

    def confirm(self, user_id: str, code: str, at: Optional[datetime] = None) -> None:
        """Verify a first TOTP code and enable MFA."""
        self.verify_user_code(user_id, code, at)
        self.enable(user_id)

    def disable(self, user_id: str) -> None:
        self.store.delete_mfa_secret(user_id)
        self.directory.set_mfa_enabled(user_id, False)
        self.audit.success(audit_actions.MFA_DISABLE, user_id=user_id)

    def is_enabled(self, user_id: str) -> bool:
        record = self.store.get_mfa_secret(user_id)
        return bool(record and record.enabled)

    # -- backup codes ------------------------------------------------------

    def verify_backup_code(self, user_id: str, code: str) -> None:
        """Check and consume a backup code in one atomic step.

        Raises:
            InvalidBackupCodeError: unknown code, already used, or no MFA record.
        """
        if self.store.consume_backup_code(user_id, digest_backup_code(code)):
            self.audit.success(
                audit_actions.BACKUP_CODE_USED,
                user_id=user_id,
                remaining=self.remaining_backup_codes(user_id),
            )
            return
        self.audit.failure(
            audit_actions.BACKUP_CODE_INVALID, user_id=user_id, reason="backup_code_rejected"
        )
        raise InvalidBackupCodeError(reason="backup_code_rejected")

    def remaining_backup_codes(self, user_id: str) -> int:
        record = self.store.get_mfa_secret(user_id)
        return len(record.backup_codes) if record else 0

    def regenerate_backup_codes(self, user_id: str) -> List[str]:
        codes = self._new_backup_codes()
        if not self.store.replace_backup_codes(
            user_id, {digest_backup_code(code) for code in codes}
        ):
            raise InvalidMFACodeError(reason="mfa_not_setup")
        self.audit.success(audit_actions.MFA_SETUP, user_id=user_id, backup_codes_regenerated=True)
        return codes
