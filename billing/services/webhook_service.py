"""
Outbound webhook delivery.

Deliveries are persisted before anything goes over the wire, dispatched after
the surrounding transaction commits, and retried by the scheduler with
exponential backoff until they succeed or run out of attempts.
"""

import hashlib
import hmac
import json
import logging
import threading
from datetime import timedelta
from typing import Any, Dict, Optional

import requests
from django.conf import settings
from django.db import close_old_connections, transaction
from django.db.models import F, Q
from django.utils import timezone

from billingengine.middleware import bind_request_id, get_current_request_id

from ..models import WebhookDelivery
from ..validation import ConflictError, ErrorCode

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Signature"


def sign(secret: str, body: str) -> str:
    digest = hmac.new(secret.encode(), body.encode(), hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def verify_signature(secret: str, body, header: str) -> bool:
    """Check an ``X-Signature`` header against the raw request body."""
    if not secret or not header:
        return False
    if isinstance(body, bytes):
        body = body.decode()
    return hmac.compare_digest(sign(secret, body), header)


class WebhookService:

    @staticmethod
    def enqueue(url: str, payload: Dict[str, Any], *, method: str = "POST", headers: Optional[Dict[str, str]] = None,
                secret: str = "", max_attempts: Optional[int] = None, trigger=None, event_log=None) -> WebhookDelivery:
        """Persist a delivery and dispatch it once the current transaction commits."""
        body = json.dumps(payload, sort_keys=True, default=str)
        delivery = WebhookDelivery(
            trigger=trigger,
            event_log=event_log,
            url=url,
            method=method.upper(),
            headers=headers or {},
            body=body,
            secret=secret,
            max_attempts=max_attempts or settings.WEBHOOK_MAX_ATTEMPTS,
        )
        delivery.signature = delivery.generate_signature()
        delivery.save()

        transaction.on_commit(lambda: WebhookService.dispatch(delivery.id))
        logger.info(f"Webhook delivery {delivery.id} queued for {delivery.method} {url}")
        return delivery

    @staticmethod
    def dispatch(delivery_id: int):
        if settings.WEBHOOK_DISPATCH_MODE == "sync":
            WebhookService.deliver(delivery_id)
            return

        request_id = get_current_request_id()
        thread = threading.Thread(
            target=WebhookService._deliver_in_thread,
            args=(delivery_id, request_id),
            daemon=True,
            name=f"webhook-{delivery_id}",
        )
        thread.start()

    @staticmethod
    def _deliver_in_thread(delivery_id: int, request_id: str):
        with bind_request_id(request_id):
            try:
                WebhookService.deliver(delivery_id)
            except Exception:
                logger.exception(f"Webhook worker crashed on delivery {delivery_id}")
            finally:
                close_old_connections()

    @staticmethod
    def _claim(delivery_id: int) -> bool:
        """Take a lease on a due delivery so two workers never send it at once."""
        now = timezone.now()
        lease = now + timedelta(seconds=settings.WEBHOOK_TIMEOUT_SECONDS * 2)
        claimed = WebhookDelivery.objects.filter(
            pk=delivery_id,
            status__in=[WebhookDelivery.Status.PENDING, WebhookDelivery.Status.FAILED],
        ).filter(
            Q(next_retry_at__isnull=True) | Q(next_retry_at__lte=now)
        ).update(attempts=F('attempts') + 1, next_retry_at=lease)
        return claimed == 1

    @classmethod
    def deliver(cls, delivery_id: int) -> Optional[WebhookDelivery]:
        if not cls._claim(delivery_id):
            logger.debug(f"Webhook delivery {delivery_id} is not due or already claimed")
            return None

        delivery = WebhookDelivery.objects.get(pk=delivery_id)
        headers = {"Content-Type": "application/json", **delivery.headers}
        if delivery.signature:
            headers[SIGNATURE_HEADER] = f"sha256={delivery.signature}"

        try:
            response = requests.request(
                delivery.method,
                delivery.url,
                data=delivery.body.encode(),
                headers=headers,
                timeout=settings.WEBHOOK_TIMEOUT_SECONDS,
            )
        except requests.RequestException as e:
            delivery.mark_failed(str(e), backoff_seconds=settings.WEBHOOK_BACKOFF_SECONDS)
            logger.warning(f"Webhook delivery {delivery.id} attempt {delivery.attempts} failed: {e}")
            return delivery

        if 200 <= response.status_code < 300:
            delivery.mark_delivered(response.status_code, response.text)
            logger.info(f"Webhook delivery {delivery.id} delivered ({response.status_code})")
        else:
            delivery.mark_failed(
                f"HTTP {response.status_code}",
                response_status=response.status_code,
                backoff_seconds=settings.WEBHOOK_BACKOFF_SECONDS,
            )
            logger.warning(f"Webhook delivery {delivery.id} attempt {delivery.attempts} got HTTP {response.status_code}")

        if delivery.status == WebhookDelivery.Status.EXHAUSTED:
            logger.error(f"Webhook delivery {delivery.id} exhausted after {delivery.attempts} attempts")
        return delivery

    @classmethod
    def retry_due(cls) -> Dict[str, int]:
        """
        Hand every delivery whose backoff has elapsed to ``dispatch``.

        In thread mode the sends happen off the caller's thread, so the counts
        are of deliveries dispatched, not of their outcomes.
        """
        now = timezone.now()
        due_ids = list(
            WebhookDelivery.objects.filter(
                status__in=[WebhookDelivery.Status.PENDING, WebhookDelivery.Status.FAILED],
            ).filter(
                Q(next_retry_at__isnull=True) | Q(next_retry_at__lte=now)
            ).values_list('id', flat=True)
        )

        results = {'total': len(due_ids), 'dispatched': 0}
        for delivery_id in due_ids:
            cls.dispatch(delivery_id)
            results['dispatched'] += 1

        logger.info(f"Webhook retry run dispatched {results['dispatched']} deliveries ({settings.WEBHOOK_DISPATCH_MODE} mode)")
        return results

    @classmethod
    def retry(cls, delivery: WebhookDelivery) -> WebhookDelivery:
        """Manually re-arm a failed or exhausted delivery and send it now."""
        if delivery.status == WebhookDelivery.Status.DELIVERED:
            raise ConflictError("Webhook was already delivered", code=ErrorCode.INVALID_STATE_TRANSITION)

        delivery.status = WebhookDelivery.Status.PENDING
        delivery.next_retry_at = None
        delivery.max_attempts = max(delivery.max_attempts, delivery.attempts + 1)
        delivery.save(update_fields=['status', 'next_retry_at', 'max_attempts'])

        cls.deliver(delivery.id)
        delivery.refresh_from_db()
        return delivery
