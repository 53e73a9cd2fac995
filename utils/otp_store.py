"""
Persistent one-time codes keyed by recipient email.

Expiry is evaluated lazily: a record past ``expires_at`` stays in the table
until it is checked or purged by the housekeeping job.
"""

from __future__ import annotations

import logging
import hmac
import math
import os
import secrets
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, NamedTuple, Optional

from sqlalchemy.orm import Session, sessionmaker

from models import OtpRecord


logger = logging.getLogger(__name__)

OTP_EXP_MIN = int(os.getenv("OTP_EXP_MINUTES", "5"))
OTP_RESEND_COOLDOWN_SECONDS = int(os.getenv("OTP_RESEND_COOLDOWN_SECONDS", "60"))
OTP_LENGTH = 6


class OtpReason(str, Enum):
    OK = "ok"
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    MISMATCH = "mismatch"


class OtpCheck(NamedTuple):
    valid: bool
    reason: OtpReason


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def generate_code() -> str:
    # Uniform over 000000..999999; leading zeros are valid codes.
    return f"{secrets.randbelow(10 ** OTP_LENGTH):0{OTP_LENGTH}d}"


class OtpStore:
    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        ttl_seconds: int = OTP_EXP_MIN * 60,
        resend_cooldown_seconds: int = OTP_RESEND_COOLDOWN_SECONDS,
        now: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        self._session_factory = session_factory
        self.ttl_seconds = max(1, ttl_seconds)
        self.resend_cooldown_seconds = max(0, resend_cooldown_seconds)
        self._now = now

    def _get(self, db: Session, email: str) -> Optional[OtpRecord]:
        return db.get(OtpRecord, normalize_email(email))

    def issue(self, email: str) -> str:
        """Create (or overwrite) the code for ``email`` and return it."""
        key = normalize_email(email)
        now = self._now()
        code = generate_code()
        with self._session_factory() as db:
            rec = db.get(OtpRecord, key)
            if rec is None:
                rec = OtpRecord(email=key)
                db.add(rec)
            rec.code = code
            rec.created_at = now
            rec.expires_at = now + timedelta(seconds=self.ttl_seconds)
            rec.verified = False
            rec.last_sent_at = now
            db.commit()
        logger.info("Issued OTP for %s (expires in %ss)", key, self.ttl_seconds)
        return code

    def check(self, email: str, code: str) -> OtpCheck:
        code = (code or "").strip()
        with self._session_factory() as db:
            rec = self._get(db, email)
            if rec is None or rec.verified:
                return OtpCheck(False, OtpReason.NOT_FOUND)
            if self._now() > rec.expires_at:
                return OtpCheck(False, OtpReason.EXPIRED)
            if not hmac.compare_digest(rec.code.encode("utf-8"), code.encode("utf-8")):
                return OtpCheck(False, OtpReason.MISMATCH)
            # Single use: the row goes away with the successful check.
            db.delete(rec)
            db.commit()
        return OtpCheck(True, OtpReason.OK)

    def remaining_seconds(self, email: str) -> int:
        with self._session_factory() as db:
            rec = self._get(db, email)
            if rec is None:
                return 0
            left = (rec.expires_at - self._now()).total_seconds()
        return max(0, int(left))

    def resend_wait_seconds(self, email: str) -> int:
        """Seconds until :meth:`can_resend` becomes true (0 when it already is)."""
        with self._session_factory() as db:
            rec = self._get(db, email)
            if rec is None or rec.last_sent_at is None:
                return 0
            now = self._now()
            to_expiry = (rec.expires_at - now).total_seconds()
            to_cooldown = (
                rec.last_sent_at + timedelta(seconds=self.resend_cooldown_seconds) - now
            ).total_seconds()
        wait = min(to_expiry, to_cooldown)
        return max(0, math.ceil(wait))

    def can_resend(self, email: str) -> bool:
        return self.resend_wait_seconds(email) == 0

    def clear_cooldown(self, email: str) -> None:
        with self._session_factory() as db:
            rec = self._get(db, email)
            if rec is None:
                return
            rec.last_sent_at = None
            db.commit()

    def purge_expired(self) -> int:
        with self._session_factory() as db:
            deleted = db.query(OtpRecord).filter(OtpRecord.expires_at < self._now()).delete()
            db.commit()
        return int(deleted or 0)
