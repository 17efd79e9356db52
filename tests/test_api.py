from datetime import timedelta
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest
from django.utils import timezone
from rest_framework.test import APIClient

from billing.models import (
    Invoice,
    Notification,
    RecurringInvoice,
    ScheduledInvoice,
    WebhookDelivery,
    WorkflowTrigger,
)
from billing.services import (
    LedgerService,
    PaymentPlanService,
    RecurringInvoiceService,
    ScheduledInvoiceService,
    WebhookService,
)
from tests.factories import (
    ClientFactory,
    MilestoneFactory,
    ProjectFactory,
    WorkflowTriggerFactory,
    line_items,
    make_invoice,
    make_sent_invoice,
)

API = "/api/v1"


def invoice_body(client, **overrides):
    body = {
        "client": client.id,
        "line_items": [
            {"description": "Design", "quantity": "2", "unit_rate": "150.00"},
            {"description": "Hosting", "unit_rate": "40.00"},
        ],
        "tax_rate": "10",
    }
    body.update(overrides)
    return body


@pytest.mark.django_db
class TestAuthentication:
    def test_anonymous_requests_are_rejected(self):
        response = APIClient().get(f"{API}/invoices/")
        assert response.status_code in (401, 403)
        assert response.json()["success"] is False

    def test_health_is_public(self, client):
        response = client.get("/health/")
        assert response.status_code == 200
        assert response.json()["database"] == "up"

    def test_request_id_is_echoed(self, client):
        response = client.get("/health/", HTTP_X_REQUEST_ID="lb-7f3a.42")
        assert response["X-Request-ID"] == "lb-7f3a.42"

    def test_malformed_request_id_is_replaced(self, client):
        response = client.get("/health/", HTTP_X_REQUEST_ID="not a valid id")
        assert response["X-Request-ID"] != "not a valid id"
        assert len(response["X-Request-ID"]) == 36


@pytest.mark.django_db
class TestInvoiceEndpoints:
    def test_create_invoice(self, api_client):
        response = api_client.post(f"{API}/invoices/", invoice_body(ClientFactory()), format="json")

        assert response.status_code == 201
        payload = response.json()
        assert payload["success"] is True
        assert payload["message"] == "Invoice created."
        data = payload["data"]
        assert data["status"] == "draft"
        assert data["subtotal"] == "340.00"
        assert data["tax_amount"] == "34.00"
        assert data["total"] == "374.00"
        assert len(data["line_items"]) == 2
        assert set(data["available_transitions"]) == {"sent", "cancelled"}

    def test_create_rejects_bad_input(self, api_client):
        body = invoice_body(ClientFactory(), line_items=[])
        response = api_client.post(f"{API}/invoices/", body, format="json")
        assert response.status_code == 400
        assert response.json()["success"] is False

    def test_list_is_paginated_and_filterable(self, api_client):
        make_invoice()
        make_sent_invoice()

        response = api_client.get(f"{API}/invoices/")
        payload = response.json()
        assert payload["meta"]["pagination"]["total"] == 2
        assert payload["meta"]["pagination"]["page"] == 1

        sent = api_client.get(f"{API}/invoices/", {"status": "sent"}).json()
        assert [row["status"] for row in sent["data"]] == ["sent"]

    def test_send_view_and_pay(self, api_client):
        invoice = make_invoice(amounts=("300.00",))

        assert api_client.post(f"{API}/invoices/{invoice.id}/send/").json()["data"]["status"] == "sent"
        assert api_client.post(f"{API}/invoices/{invoice.id}/view/").json()["data"]["status"] == "viewed"

        response = api_client.post(
            f"{API}/invoices/{invoice.id}/record-payment/", {"amount": "100.00", "reference": "TX-1"}, format="json",
        )
        assert response.status_code == 201
        assert response.json()["data"]["status"] == "partial"
        assert response.json()["data"]["outstanding"] == "200.00"

        response = api_client.post(f"{API}/invoices/{invoice.id}/record-payment/", {"amount": "200.00"}, format="json")
        assert response.json()["data"]["status"] == "paid"

        history = api_client.get(f"{API}/invoices/{invoice.id}/payments/").json()["data"]
        assert [p["amount"] for p in history] == ["100.00", "200.00"]

    def test_overpayment_returns_conflict(self, api_client):
        invoice = make_sent_invoice(amounts=("100.00",))

        response = api_client.post(
            f"{API}/invoices/{invoice.id}/record-payment/", {"amount": "150.00"}, format="json",
            HTTP_X_REQUEST_ID="req-overpay",
        )

        assert response.status_code == 409
        body = response.json()
        assert body["success"] is False
        assert body["error"]["code"] == "OVERPAYMENT"
        assert body["request_id"] == "req-overpay"

    def test_illegal_transition_returns_conflict(self, api_client):
        invoice = make_invoice()
        response = api_client.post(f"{API}/invoices/{invoice.id}/void/", {"reason": "typo"}, format="json")
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "INVALID_STATE_TRANSITION"

    def test_apply_credit(self, api_client):
        client = ClientFactory()
        deposit = make_sent_invoice(client, amounts=("500.00",), invoice_type=Invoice.InvoiceType.DEPOSIT)
        LedgerService.record_payment(deposit, Decimal("500.00"))
        target = make_sent_invoice(client, amounts=("800.00",))

        deposits = api_client.get(f"{API}/invoices/deposits/", {"client": client.id}).json()["data"]
        assert deposits[0]["available_amount"] == "500.00"

        response = api_client.post(
            f"{API}/invoices/{target.id}/apply-credit/",
            {"source_invoice_id": deposit.id, "amount": "200.00"}, format="json",
        )
        assert response.status_code == 201
        assert response.json()["data"]["amount_paid"] == "200.00"

    def test_destroy_outcomes(self, api_client):
        draft = make_invoice()
        sent = make_sent_invoice()
        paid = make_sent_invoice()
        LedgerService.record_payment(paid, paid.total)

        assert api_client.delete(f"{API}/invoices/{draft.id}/").json()["data"]["outcome"] == "deleted"
        assert not Invoice.all_objects.filter(pk=draft.id).exists()

        assert api_client.delete(f"{API}/invoices/{sent.id}/").json()["data"]["outcome"] == "voided"
        sent.refresh_from_db()
        assert sent.status == Invoice.Status.VOID

        response = api_client.delete(f"{API}/invoices/{paid.id}/")
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "INVOICE_ALREADY_PAID"

    def test_missing_invoice_is_404(self, api_client):
        response = api_client.get(f"{API}/invoices/999999/")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "RESOURCE_NOT_FOUND"

    def test_aging_report(self, api_client):
        today = timezone.localdate()
        make_sent_invoice(amounts=("120.00",), issued_date=today - timedelta(days=60), due_date=today - timedelta(days=45))

        response = api_client.get(f"{API}/invoices/aging/", {"date": today.isoformat()})

        data = response.json()["data"]
        assert data["31_60"] == {"count": 1, "outstanding": "120.00"}
        assert data["current"]["count"] == 0
        assert response.json()["meta"]["as_of"] == today.isoformat()

    def test_apply_late_fee(self, api_client):
        today = timezone.localdate()
        invoice = make_sent_invoice(
            issued_date=today - timedelta(days=40), due_date=today - timedelta(days=10),
            late_fee_type=Invoice.LateFeeType.FLAT, late_fee_flat_amount="15.00",
        )
        response = api_client.post(f"{API}/invoices/{invoice.id}/apply-late-fee/")
        assert response.json()["data"]["late_fee_amount"] == "15.00"
        assert response.json()["data"]["total"] == "115.00"

    def test_late_fee_on_draft_is_unprocessable(self, api_client):
        invoice = make_invoice(late_fee_type=Invoice.LateFeeType.FLAT, late_fee_flat_amount="15.00")
        response = api_client.post(f"{API}/invoices/{invoice.id}/apply-late-fee/")
        assert response.status_code == 422
        assert response.json()["error"]["code"] == "LATE_FEE_NOT_APPLICABLE"

    def test_serializer_errors_name_nested_fields(self, api_client):
        body = invoice_body(ClientFactory(), line_items=[{"description": "", "unit_rate": "-1"}])
        response = api_client.post(f"{API}/invoices/", body, format="json")

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "VALIDATION_ERROR"
        fields = {f["field"]: f["code"] for f in error["fields"]}
        assert fields["line_items.0.description"] == "FIELD_REQUIRED"
        assert fields["line_items.0.unit_rate"] == "FIELD_OUT_OF_RANGE"


@pytest.mark.django_db
class TestGenerationEndpoints:
    def test_recurring_create_pause_resume(self, api_client):
        start = timezone.localdate() + timedelta(days=5)
        body = {
            "client": ClientFactory().id,
            "line_items": [{"description": "Retainer", "unit_rate": "1200.00"}],
            "start_date": start.isoformat(),
        }

        response = api_client.post(f"{API}/invoices/recurring/", body, format="json")
        assert response.status_code == 201
        data = response.json()["data"]
        assert data["next_generation_date"] == start.isoformat()
        assert data["upcoming_dates"][0] == start.isoformat()
        series_id = data["id"]

        paused = api_client.post(f"{API}/invoices/recurring/{series_id}/pause/").json()["data"]
        assert paused["state"] == "paused"

        resumed = api_client.post(f"{API}/invoices/recurring/{series_id}/resume/").json()["data"]
        assert resumed["is_active"] is True
        assert RecurringInvoice.objects.get(pk=series_id).next_generation_date == start

    def test_schedule_alias_and_cancel(self, api_client):
        body = {
            "client": ClientFactory().id,
            "line_items": [{"description": "Kickoff", "unit_rate": "900.00"}],
            "scheduled_date": (timezone.localdate() + timedelta(days=7)).isoformat(),
        }

        response = api_client.post(f"{API}/invoices/schedule/", body, format="json")
        assert response.status_code == 201
        scheduled_id = response.json()["data"]["id"]

        listed = api_client.get(f"{API}/invoices/scheduled/", {"status": "pending"}).json()
        assert [row["id"] for row in listed["data"]] == [scheduled_id]

        cancelled = api_client.delete(f"{API}/invoices/scheduled/{scheduled_id}/").json()["data"]
        assert cancelled["status"] == ScheduledInvoice.Status.CANCELLED

        again = api_client.delete(f"{API}/invoices/scheduled/{scheduled_id}/")
        assert again.status_code == 409

    def test_generate_scheduled_now(self, api_client):
        scheduled = ScheduledInvoiceService.create_scheduled(
            ClientFactory(), line_items("640.00"), scheduled_date=timezone.localdate() + timedelta(days=30),
        )

        response = api_client.post(f"{API}/invoices/scheduled/{scheduled.id}/generate/")
        assert response.status_code == 201
        assert response.json()["data"]["total"] == "640.00"

        again = api_client.post(f"{API}/invoices/scheduled/{scheduled.id}/generate/")
        assert again.status_code == 409
        assert again.json()["error"]["code"] == "DUPLICATE_GENERATION"

    def test_recurring_update_and_delete(self, api_client):
        start = timezone.localdate() + timedelta(days=5)
        series = RecurringInvoiceService.create_recurring(ClientFactory(), line_items("1200.00"), start)

        response = api_client.patch(
            f"{API}/invoices/recurring/{series.id}/",
            {"line_items": [{"description": "Retainer", "unit_rate": "1500.00"}], "notes": "Rate change"},
            format="json",
        )
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["template_total"] == "1500.00"
        assert data["notes"] == "Rate change"

        bad = api_client.patch(f"{API}/invoices/recurring/{series.id}/", {"frequency": "hourly"}, format="json")
        assert bad.status_code == 400

        deleted = api_client.delete(f"{API}/invoices/recurring/{series.id}/")
        assert deleted.status_code == 200
        assert deleted.json()["data"] == {"id": series.id, "invoices_kept": 0}
        assert not RecurringInvoice.objects.filter(pk=series.id).exists()

    def test_complete_milestone(self, api_client, django_capture_on_commit_callbacks):
        milestone = MilestoneFactory()
        with django_capture_on_commit_callbacks(execute=True):
            response = api_client.post(f"{API}/milestones/{milestone.id}/complete/")
        assert response.status_code == 200
        assert response.json()["data"]["is_completed"] is True


@pytest.mark.django_db
class TestTriggerEndpoints:
    def test_create_and_toggle(self, api_client):
        body = {
            "name": "Large payments",
            "event_type": "invoice.paid",
            "conditions": [{"field": "total", "operator": "gt", "value": "1000"}],
            "actions": [{"type": "notify", "config": {"message": "Paid {{invoice_number}}"}}],
        }

        response = api_client.post(f"{API}/triggers/", body, format="json")
        assert response.status_code == 201
        trigger_id = response.json()["data"]["id"]
        assert WorkflowTrigger.objects.get(pk=trigger_id).created_by is not None

        toggled = api_client.post(f"{API}/triggers/{trigger_id}/toggle/")
        assert toggled.json()["data"]["is_active"] is False
        assert toggled.json()["message"] == "Trigger disabled."

    def test_invalid_trigger_is_rejected(self, api_client):
        body = {
            "name": "Broken",
            "event_type": "invoice.paid",
            "conditions": [{"field": "no_such_field", "operator": "equals", "value": "x"}],
            "actions": [{"type": "notify", "config": {"message": "hi"}}],
        }

        response = api_client.post(f"{API}/triggers/", body, format="json")

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "TRIGGER_INVALID"
        assert not WorkflowTrigger.objects.exists()

    def test_catalogues(self, api_client):
        event_types = api_client.get(f"{API}/triggers/event-types/").json()["data"]
        paid = next(entry for entry in event_types if entry["value"] == "invoice.paid")
        assert "invoice_number" in paid["fields"]

        action_types = {entry["type"] for entry in api_client.get(f"{API}/triggers/action-types/").json()["data"]}
        assert {"send_email", "create_task", "update_status", "webhook", "notify", "create_invoice"} <= action_types

    def test_emit_runs_matching_triggers(self, api_client):
        trigger = WorkflowTriggerFactory()
        body = {
            "event_type": "invoice.paid",
            "data": {"invoice_id": 1, "invoice_number": "INV-9", "client_id": 1, "status": "paid", "total": "10.00"},
        }

        result = api_client.post(f"{API}/triggers/emit/", body, format="json").json()["data"]

        assert result["matched"] == 1
        assert result["fired"] == 1
        assert Notification.objects.get().message == "Invoice INV-9 paid"

        logs = api_client.get(f"{API}/triggers/logs/", {"trigger": trigger.id}).json()["data"]
        assert logs[0]["result"] == "success"


@pytest.mark.django_db
class TestWebhookDeliveryEndpoints:
    def test_list_and_retry(self, api_client):
        delivery = WebhookService.enqueue("https://hooks.test/x", {"event": "invoice.paid"}, max_attempts=1)
        failed = MagicMock(status_code=500, text="err")
        with patch("billing.services.webhook_service.requests.request", return_value=failed):
            WebhookService.deliver(delivery.id)

        listed = api_client.get(f"{API}/webhook-deliveries/", {"status": "exhausted"}).json()
        assert [row["id"] for row in listed["data"]] == [delivery.id]

        ok = MagicMock(status_code=200, text="ok")
        with patch("billing.services.webhook_service.requests.request", return_value=ok):
            response = api_client.post(f"{API}/webhook-deliveries/{delivery.id}/retry/")

        assert response.json()["data"]["status"] == WebhookDelivery.Status.DELIVERED
        assert response.json()["message"] == "Delivery delivered."


@pytest.mark.django_db
class TestPaymentPlanEndpoints:
    PAYMENTS = [
        {"percentage": 50, "trigger": "upfront", "label": "Deposit"},
        {"percentage": 50, "trigger": "completion", "label": "Balance"},
    ]

    def test_create_list_and_generate(self, api_client):
        response = api_client.post(
            f"{API}/invoices/payment-plans/", {"name": "Half up front", "payments": self.PAYMENTS}, format="json",
        )
        assert response.status_code == 201
        template_id = response.json()["data"]["id"]

        listed = api_client.get(f"{API}/invoices/payment-plans/").json()["data"]
        assert [row["name"] for row in listed] == ["Half up front"]

        project = ProjectFactory()
        body = {"template": template_id, "client": project.client_id, "project": project.id, "total_amount": "2400.00"}
        generated = api_client.post(f"{API}/invoices/payment-plans/generate/", body, format="json")
        assert generated.status_code == 201
        invoices = generated.json()["data"]["invoices"]
        assert [row["total"] for row in invoices] == ["1200.00", "1200.00"]
        assert [row["invoice_type"] for row in invoices] == ["deposit", "standard"]

        again = api_client.post(f"{API}/invoices/generate-from-plan/", body, format="json")
        assert again.status_code == 409
        assert again.json()["error"]["code"] == "DUPLICATE_GENERATION"

    def test_rejects_percentages_not_totalling_one_hundred(self, api_client):
        payments = [{"percentage": 60, "trigger": "upfront"}, {"percentage": 30, "trigger": "completion"}]
        response = api_client.post(f"{API}/invoices/payment-plans/", {"name": "Short", "payments": payments}, format="json")
        assert response.status_code == 400

    def test_delete_template(self, api_client):
        template = PaymentPlanService.create_template("One shot", [{"percentage": 100, "trigger": "completion"}])
        response = api_client.delete(f"{API}/invoices/payment-plans/{template.id}/")
        assert response.status_code == 200
        assert api_client.get(f"{API}/invoices/payment-plans/{template.id}/").status_code == 404
