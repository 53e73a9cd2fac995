from __future__ import annotations

import logging
import os
from typing import Optional

import requests

from errors import TransportError


logger = logging.getLogger(__name__)

BREVO_URL = "https://api.brevo.com/v3/smtp/email"
BREVO_SENDER_NAME = os.getenv("BREVO_SENDER_NAME", "Unified Campus")


def send_email(*, to_email: str, subject: str, html: str, text: Optional[str] = None) -> None:
    """
    Sends email using Brevo Transactional Email API.
    Requires:
      - BREVO_API_KEY
      - BREVO_FROM (email) OR EMAIL_FROM/SMTP_FROM

    Raises TransportError when the message could not be handed to Brevo.
    """
    api_key = os.getenv("BREVO_API_KEY")
    if not api_key:
        raise TransportError("BREVO_API_KEY is not set")

    from_email = (
        os.getenv("BREVO_FROM")
        or os.getenv("EMAIL_FROM")
        or os.getenv("SMTP_FROM")
    )
    if not from_email:
        raise TransportError("BREVO_FROM (or EMAIL_FROM/SMTP_FROM) is not set")

    payload = {
        "sender": {"email": from_email, "name": BREVO_SENDER_NAME},
        "to": [{"email": to_email}],
        "subject": subject,
        "htmlContent": html,
    }
    if text:
        payload["textContent"] = text

    try:
        resp = requests.post(
            BREVO_URL,
            headers={
                "accept": "application/json",
                "api-key": api_key,
                "content-type": "application/json",
            },
            json=payload,
            timeout=15,
        )
    except requests.RequestException as exc:
        logger.warning("Brevo request failed: %s", exc)
        raise TransportError("Email service unreachable") from exc

    if resp.status_code >= 300:
        logger.warning("Brevo send failed (%s): %s", resp.status_code, resp.text)
        raise TransportError(f"Brevo send failed ({resp.status_code})")
