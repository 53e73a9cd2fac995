from __future__ import annotations

import logging
import os
from datetime import datetime
from typing import Callable, Dict, Optional

from sqlalchemy.orm import sessionmaker

from errors import ExpiredError, MismatchError, NotFoundError, RateLimitError, TransportError, ValidationError
from models import VerifiedEmail
from utils.brevo_email import send_email
from utils.otp_store import OtpReason, OtpStore, normalize_email


logger = logging.getLogger(__name__)

OTP_SUBJECT = os.getenv("OTP_SUBJECT", "Unified Campus Verification Code")

EmailSender = Callable[..., None]

_VERIFY_ERRORS = {
    OtpReason.NOT_FOUND: lambda: NotFoundError("No OTP request found", status_code=400),
    OtpReason.EXPIRED: lambda: ExpiredError("OTP has expired"),
    OtpReason.MISMATCH: lambda: MismatchError("Invalid Code"),
}


def render_otp_email(code: str, *, expires_minutes: int) -> Dict[str, str]:
    html = f"""
    <div style="font-family:Arial,sans-serif;padding:20px;text-align:center">
      <h2>Verify Your Email</h2>
      <p>Your 6-digit code is:</p>
      <h1 style="color:#4A90E2;font-size:32px;letter-spacing:5px">{code}</h1>
      <p style="color:#666;font-size:12px">This code expires in {expires_minutes} minutes.</p>
    </div>
    """
    text = f"Your Unified Campus verification code is {code}. This code expires in {expires_minutes} minutes."
    return {"html": html, "text": text}


class OtpService:
    """Send/verify policy on top of :class:`OtpStore`.

    Resend is gated by the store's cooldown, which runs independently of the
    expiry timer: a new code may be requested once either has elapsed.
    """

    def __init__(
        self,
        store: OtpStore,
        session_factory: sessionmaker,
        *,
        sender: EmailSender = send_email,
        now: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        self.store = store
        self._session_factory = session_factory
        self.sender = sender
        self._now = now

    def send(self, email: Optional[str]) -> None:
        email = normalize_email(email or "")
        if not email:
            raise ValidationError("Email is required")

        if not self.store.can_resend(email):
            wait = self.store.resend_wait_seconds(email)
            raise RateLimitError(f"Please wait {wait}s before requesting a new code", retry_after=wait)

        code = self.store.issue(email)
        body = render_otp_email(code, expires_minutes=max(1, self.store.ttl_seconds // 60))
        try:
            self.sender(to_email=email, subject=OTP_SUBJECT, html=body["html"], text=body["text"])
        except TransportError as exc:
            # The issued code stays valid; let the user ask again immediately.
            self.store.clear_cooldown(email)
            logger.warning("OTP delivery to %s failed: %s", email, exc.message)
            raise TransportError("Failed to send OTP") from exc
        logger.info("OTP sent to %s", email)

    def verify(self, email: Optional[str], code: Optional[str]) -> None:
        email = normalize_email(email or "")
        code = str(code or "").strip()
        if not email:
            raise ValidationError("Email is required")
        if not code:
            raise ValidationError("OTP is required")

        result = self.store.check(email, code)
        if not result.valid:
            logger.info("OTP check for %s failed: %s", email, result.reason.value)
            raise _VERIFY_ERRORS[result.reason]()

        with self._session_factory() as db:
            rec = db.get(VerifiedEmail, email)
            if rec is None:
                db.add(VerifiedEmail(email=email, verified_at=self._now()))
            else:
                rec.verified_at = self._now()
            db.commit()
        logger.info("Email %s verified", email)

    def is_verified(self, email: str) -> bool:
        with self._session_factory() as db:
            return db.get(VerifiedEmail, normalize_email(email)) is not None

    def status(self, email: str) -> Dict[str, object]:
        email = normalize_email(email)
        wait = self.store.resend_wait_seconds(email)
        return {
            "remaining_seconds": self.store.remaining_seconds(email),
            "can_resend": wait == 0,
            "resend_in": wait,
        }
