import json
from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest
import requests
from django.utils import timezone

from billing.models import WebhookDelivery
from billing.services import WebhookService, sign, verify_signature
from billing.services.webhook_service import SIGNATURE_HEADER
from billing.validation import ConflictError


def response(status_code=200, text="ok"):
    mock = MagicMock()
    mock.status_code = status_code
    mock.text = text
    return mock


def queue(**kwargs):
    defaults = {"secret": "whsec_test", "max_attempts": 3}
    defaults.update(kwargs)
    return WebhookService.enqueue("https://hooks.test/billing", {"event": "invoice.paid", "data": {"invoice_id": 1}}, **defaults)


class TestSignatures:
    def test_sign_and_verify(self):
        body = json.dumps({"a": 1})
        header = sign("secret", body)
        assert header.startswith("sha256=")
        assert verify_signature("secret", body, header)
        assert verify_signature("secret", body.encode(), header)

    def test_verify_rejects_tampering(self):
        header = sign("secret", '{"a": 1}')
        assert not verify_signature("secret", '{"a": 2}', header)
        assert not verify_signature("other", '{"a": 1}', header)
        assert not verify_signature("secret", '{"a": 1}', "")


@pytest.mark.django_db
class TestDelivery:
    def test_enqueue_dispatches_after_commit(self, django_capture_on_commit_callbacks):
        with patch("billing.services.webhook_service.requests.request", return_value=response()) as request:
            with django_capture_on_commit_callbacks(execute=True):
                delivery = queue()
                request.assert_not_called()

        request.assert_called_once()
        delivery.refresh_from_db()
        assert delivery.status == WebhookDelivery.Status.DELIVERED
        assert delivery.attempts == 1
        assert delivery.delivered_at is not None

    def test_signed_request(self):
        delivery = queue(headers={"X-Tenant": "acme"})
        with patch("billing.services.webhook_service.requests.request", return_value=response()) as request:
            WebhookService.deliver(delivery.id)

        method, url = request.call_args.args
        kwargs = request.call_args.kwargs
        assert (method, url) == ("POST", "https://hooks.test/billing")
        assert kwargs["data"] == delivery.body.encode()
        assert kwargs["headers"]["X-Tenant"] == "acme"
        assert kwargs["headers"]["Content-Type"] == "application/json"
        assert verify_signature("whsec_test", kwargs["data"], kwargs["headers"][SIGNATURE_HEADER])
        assert kwargs["timeout"] > 0

    def test_unsigned_when_no_secret(self):
        delivery = queue(secret="")
        with patch("billing.services.webhook_service.requests.request", return_value=response()) as request:
            WebhookService.deliver(delivery.id)
        assert SIGNATURE_HEADER not in request.call_args.kwargs["headers"]

    def test_failure_schedules_backoff(self, settings):
        settings.WEBHOOK_BACKOFF_SECONDS = 60
        delivery = queue()
        with patch("billing.services.webhook_service.requests.request", return_value=response(500, "err")):
            WebhookService.deliver(delivery.id)

        delivery.refresh_from_db()
        assert delivery.status == WebhookDelivery.Status.FAILED
        assert delivery.attempts == 1
        assert delivery.response_status == 500
        assert delivery.last_error == "HTTP 500"
        delay = (delivery.next_retry_at - timezone.now()).total_seconds()
        assert 50 < delay <= 60

    def test_backoff_doubles(self, settings):
        settings.WEBHOOK_BACKOFF_SECONDS = 60
        delivery = queue(max_attempts=5)
        with patch("billing.services.webhook_service.requests.request", side_effect=requests.ConnectionError("refused")):
            WebhookService.deliver(delivery.id)
            WebhookDelivery.objects.filter(pk=delivery.id).update(next_retry_at=timezone.now() - timedelta(seconds=1))
            WebhookService.deliver(delivery.id)

        delivery.refresh_from_db()
        assert delivery.attempts == 2
        delay = (delivery.next_retry_at - timezone.now()).total_seconds()
        assert 110 < delay <= 120
        assert "refused" in delivery.last_error

    def test_exhausts_after_max_attempts(self):
        delivery = queue(max_attempts=2)
        with patch("billing.services.webhook_service.requests.request", return_value=response(503)):
            WebhookService.deliver(delivery.id)
            WebhookDelivery.objects.filter(pk=delivery.id).update(next_retry_at=None)
            WebhookService.deliver(delivery.id)

        delivery.refresh_from_db()
        assert delivery.status == WebhookDelivery.Status.EXHAUSTED
        assert delivery.attempts == 2
        assert delivery.next_retry_at is None

    def test_not_due_delivery_is_not_claimed(self):
        delivery = queue()
        WebhookDelivery.objects.filter(pk=delivery.id).update(
            status=WebhookDelivery.Status.FAILED, next_retry_at=timezone.now() + timedelta(minutes=5),
        )
        with patch("billing.services.webhook_service.requests.request") as request:
            assert WebhookService.deliver(delivery.id) is None
        request.assert_not_called()

    def test_delivered_is_not_resent(self):
        delivery = queue()
        with patch("billing.services.webhook_service.requests.request", return_value=response()) as request:
            WebhookService.deliver(delivery.id)
            WebhookService.deliver(delivery.id)
        assert request.call_count == 1


@pytest.mark.django_db
class TestRetries:
    def test_retry_due_only_picks_elapsed(self):
        due = queue()
        WebhookDelivery.objects.filter(pk=due.id).update(
            status=WebhookDelivery.Status.FAILED, attempts=1, next_retry_at=timezone.now() - timedelta(seconds=5),
        )
        waiting = queue()
        WebhookDelivery.objects.filter(pk=waiting.id).update(
            status=WebhookDelivery.Status.FAILED, attempts=1, next_retry_at=timezone.now() + timedelta(hours=1),
        )

        with patch("billing.services.webhook_service.requests.request", return_value=response()):
            results = WebhookService.retry_due()

        assert results == {"total": 1, "dispatched": 1}
        due.refresh_from_db()
        waiting.refresh_from_db()
        assert due.status == WebhookDelivery.Status.DELIVERED
        assert waiting.status == WebhookDelivery.Status.FAILED

    def test_retry_due_sends_on_worker_threads(self, settings):
        settings.WEBHOOK_DISPATCH_MODE = "thread"
        due = queue()
        WebhookDelivery.objects.filter(pk=due.id).update(
            status=WebhookDelivery.Status.FAILED, attempts=1, next_retry_at=timezone.now() - timedelta(seconds=5),
        )

        with patch("billing.services.webhook_service.threading.Thread") as thread, \
                patch("billing.services.webhook_service.requests.request") as request:
            results = WebhookService.retry_due()

        assert results == {"total": 1, "dispatched": 1}
        request.assert_not_called()
        assert thread.call_args.kwargs["target"] == WebhookService._deliver_in_thread
        assert thread.call_args.kwargs["args"][0] == due.id
        thread.return_value.start.assert_called_once()

    def test_manual_retry_rearms_exhausted(self):
        delivery = queue(max_attempts=1)
        with patch("billing.services.webhook_service.requests.request", return_value=response(500)):
            WebhookService.deliver(delivery.id)
        delivery.refresh_from_db()
        assert delivery.status == WebhookDelivery.Status.EXHAUSTED

        with patch("billing.services.webhook_service.requests.request", return_value=response(200)):
            retried = WebhookService.retry(delivery)

        assert retried.status == WebhookDelivery.Status.DELIVERED
        assert retried.attempts == 2

    def test_manual_retry_of_delivered_conflicts(self):
        delivery = queue()
        with patch("billing.services.webhook_service.requests.request", return_value=response()):
            WebhookService.deliver(delivery.id)
        delivery.refresh_from_db()
        with pytest.raises(ConflictError):
            WebhookService.retry(delivery)
