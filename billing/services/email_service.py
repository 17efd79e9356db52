"""
Email delivery for reminders and workflow actions.

Sends through Django's configured backend with a bounded number of attempts.
A failed send is logged and reported to the caller; it never raises into the
business transaction that asked for it.
"""

import logging
import time
from typing import Optional

from django.conf import settings
from django.core.mail import send_mail

logger = logging.getLogger(__name__)


class EmailService:
    @staticmethod
    def send(to: str, subject: str, body: str, max_attempts: Optional[int] = None,
             backoff_seconds: Optional[float] = None) -> bool:
        max_attempts = max_attempts or settings.BILLING_EMAIL_MAX_ATTEMPTS
        if backoff_seconds is None:
            backoff_seconds = settings.BILLING_EMAIL_BACKOFF_SECONDS

        for attempt in range(1, max_attempts + 1):
            try:
                send_mail(
                    subject=subject,
                    message=body,
                    from_email=settings.DEFAULT_FROM_EMAIL,
                    recipient_list=[to],
                    fail_silently=False,
                )
                logger.debug(f"Email '{subject}' sent to {to} on attempt {attempt}")
                return True
            except Exception as e:
                if attempt == max_attempts:
                    logger.warning(f"Email '{subject}' to {to} failed after {max_attempts} attempts: {e}")
                    return False
                delay = min(backoff_seconds * (2 ** (attempt - 1)), 10)
                logger.debug(f"Email attempt {attempt} to {to} failed ({e}), retrying in {delay}s")
                time.sleep(delay)
        return False
