from decimal import Decimal
from unittest.mock import DEFAULT, patch

import pytest
from django.core import mail

from billing.models import (
    Invoice,
    Notification,
    Project,
    Task,
    WebhookDelivery,
    WorkflowDedupeKey,
    WorkflowEventLog,
    WorkflowTriggerLog,
)
from billing.services import InvoiceService, MilestoneService
from billing.validation import ValidationError
from billing.workflow.actions import interpolate, validate_actions
from billing.workflow.conditions import evaluate, validate_conditions
from billing.workflow.engine import engine
from billing.workflow.events import InvoiceEvent, MilestoneEvent, build_event
from tests.factories import (
    ClientFactory,
    MilestoneFactory,
    ProjectFactory,
    UserFactory,
    WorkflowTriggerFactory,
    make_invoice,
    make_sent_invoice,
)


def invoice_payload(**overrides):
    data = {
        "invoice_id": 1,
        "invoice_number": "INV-2025-0001",
        "client_id": 7,
        "status": "paid",
        "total": "1500.00",
        "client_email": "billing@acme.test",
    }
    data.update(overrides)
    return data


def milestone_payload(milestone, **overrides):
    data = {
        "milestone_id": milestone.id,
        "project_id": milestone.project_id,
        "client_id": milestone.project.client_id,
        "title": milestone.title,
        "amount": str(milestone.amount),
        "client_email": milestone.project.client.email,
    }
    data.update(overrides)
    return data


class TestBuildEvent:
    def test_coerces_declared_fields(self):
        event = build_event("invoice.paid", invoice_payload())
        assert isinstance(event, InvoiceEvent)
        assert event.total == Decimal("1500.00")
        assert event.source_entity_id == "1"

    def test_rejects_unknown_fields(self):
        with pytest.raises(ValidationError) as exc_info:
            build_event("invoice.paid", invoice_payload(colour="red"))
        assert [f.field for f in exc_info.value.fields] == ["colour"]

    def test_rejects_missing_required_fields(self):
        data = invoice_payload()
        del data["invoice_number"]
        with pytest.raises(ValidationError) as exc_info:
            build_event("invoice.paid", data)
        assert "invoice_number" in [f.field for f in exc_info.value.fields]

    def test_rejects_unknown_event_type(self):
        with pytest.raises(ValidationError):
            build_event("invoice.exploded", invoice_payload())

    def test_boolean_coercion(self):
        event = build_event("milestone.completed", {"milestone_id": "3", "has_payment_deliverable": "true"})
        assert isinstance(event, MilestoneEvent)
        assert event.milestone_id == 3
        assert event.has_payment_deliverable is True


class TestConditions:
    def test_operators(self):
        event = build_event("invoice.paid", invoice_payload())
        assert evaluate(event, [{"field": "total", "operator": "gt", "value": "1000"}])
        assert not evaluate(event, [{"field": "total", "operator": "lt", "value": "1000"}])
        assert evaluate(event, [{"field": "status", "operator": "equals", "value": "paid"}])
        assert evaluate(event, [{"field": "status", "operator": "not_equals", "value": "void"}])
        assert evaluate(event, [{"field": "client_email", "operator": "contains", "value": "ACME"}])
        assert evaluate(event, [{"field": "client_id", "operator": "in", "value": "5, 7, 9"}])
        assert evaluate(event, [{"field": "client_id", "operator": "in", "value": [7]}])
        assert evaluate(event, [{"field": "client_email", "operator": "not_empty"}])
        assert not evaluate(event, [{"field": "project_id", "operator": "not_empty"}])

    def test_conditions_are_anded(self):
        event = build_event("invoice.paid", invoice_payload())
        assert not evaluate(event, [
            {"field": "total", "operator": "gt", "value": "1000"},
            {"field": "status", "operator": "equals", "value": "sent"},
        ])

    def test_unknown_field_never_matches(self):
        event = build_event("invoice.paid", invoice_payload())
        assert not evaluate(event, [{"field": "colour", "operator": "equals", "value": "red"}])

    def test_validate_conditions(self):
        validate_conditions("invoice.paid", [{"field": "total", "operator": "gt", "value": 10}])
        with pytest.raises(ValidationError) as exc_info:
            validate_conditions("invoice.paid", [
                {"field": "colour", "operator": "equals", "value": "red"},
                {"field": "total", "operator": "between", "value": 1},
                {"field": "total", "operator": "gt"},
            ])
        fields = {f.field for f in exc_info.value.fields}
        assert fields == {"conditions.0.field", "conditions.1.operator", "conditions.2.value"}


class TestActionValidation:
    def test_unknown_action_type(self):
        with pytest.raises(ValidationError):
            validate_actions("invoice.paid", [{"type": "launch_rocket", "config": {}}])

    def test_empty_actions(self):
        with pytest.raises(ValidationError):
            validate_actions("invoice.paid", [])

    def test_create_task_needs_project_in_payload(self):
        with pytest.raises(ValidationError):
            validate_actions("client.created", [{"type": "create_task", "config": {"title": "Onboard"}}])
        validate_actions("milestone.completed", [{"type": "create_task", "config": {"title": "Review"}}])

    def test_webhook_url_and_method(self):
        with pytest.raises(ValidationError):
            validate_actions("invoice.paid", [{"type": "webhook", "config": {"url": "ftp://nope"}}])
        with pytest.raises(ValidationError):
            validate_actions("invoice.paid", [{"type": "webhook", "config": {"url": "https://hooks.test/x", "method": "DELETE"}}])

    def test_update_status_checks_target(self):
        with pytest.raises(ValidationError):
            validate_actions("invoice.sent", [{"type": "update_status", "config": {"entity": "invoice", "status": "paid"}}])
        validate_actions("invoice.created", [{"type": "update_status", "config": {"entity": "invoice", "status": "sent"}}])

    def test_send_email_recipient(self):
        validate_actions("invoice.paid", [{"type": "send_email", "config": {"to": "client", "subject": "Thanks"}}])
        with pytest.raises(ValidationError):
            validate_actions("invoice.paid", [{"type": "send_email", "config": {"to": "not-an-email", "subject": "Hi"}}])

    def test_interpolate_leaves_unknown_placeholders(self):
        event = build_event("invoice.paid", invoice_payload())
        assert interpolate("Invoice {{ invoice_number }} / {{nope}}", event) == "Invoice INV-2025-0001 / {{nope}}"


@pytest.mark.django_db
class TestEngineDispatch:
    def test_event_is_logged(self):
        result = engine.emit("invoice.paid", invoice_payload())
        log = WorkflowEventLog.objects.get(pk=result.event_log_id)
        assert log.entity_type == "invoice"
        assert log.entity_id == "1"
        assert log.payload["total"] == "1500.00"

    def test_matching_trigger_runs_actions(self):
        trigger = WorkflowTriggerFactory(conditions=[{"field": "total", "operator": "gt", "value": "1000"}])
        result = engine.emit("invoice.paid", invoice_payload())

        assert result.matched == 1
        assert result.fired == 1
        notification = Notification.objects.get()
        assert notification.message == "Invoice INV-2025-0001 paid"
        assert WorkflowTriggerLog.objects.get(trigger=trigger).result == WorkflowTriggerLog.Result.SUCCESS

    def test_unmet_conditions_are_logged_as_skipped(self):
        trigger = WorkflowTriggerFactory(conditions=[{"field": "total", "operator": "gt", "value": "5000"}])
        result = engine.emit("invoice.paid", invoice_payload())

        assert result.skipped == 1
        log = WorkflowTriggerLog.objects.get(trigger=trigger)
        assert log.result == WorkflowTriggerLog.Result.SKIPPED
        assert log.detail == {"reason": "conditions_not_met"}
        assert Notification.objects.count() == 0

    def test_inactive_and_other_event_triggers_ignored(self):
        WorkflowTriggerFactory(is_active=False)
        WorkflowTriggerFactory(event_type="invoice.sent")
        result = engine.emit("invoice.paid", invoice_payload())
        assert result.matched == 0
        assert WorkflowTriggerLog.objects.count() == 0

    def test_priority_order(self):
        low = WorkflowTriggerFactory(priority=1)
        high = WorkflowTriggerFactory(priority=10)
        result = engine.emit("invoice.paid", invoice_payload())
        assert [o.trigger_id for o in result.outcomes] == [high.id, low.id]

    def test_failing_action_does_not_block_others(self):
        trigger = WorkflowTriggerFactory(actions=[
            {"type": "create_task", "config": {"title": "Chase"}},
            {"type": "notify", "config": {"message": "Still runs"}},
        ])
        result = engine.emit("invoice.paid", invoice_payload())

        assert result.failed == 1
        results = list(WorkflowTriggerLog.objects.filter(trigger=trigger).order_by("action_index").values_list("result", flat=True))
        assert results == [WorkflowTriggerLog.Result.FAILED, WorkflowTriggerLog.Result.SUCCESS]
        assert Notification.objects.filter(message="Still runs").exists()

    def test_unexpected_exception_is_contained(self):
        WorkflowTriggerFactory()
        with patch("billing.workflow.actions.NotifyAction.execute", side_effect=RuntimeError("boom")):
            result = engine.emit("invoice.paid", invoice_payload())
        assert result.failed == 1
        assert result.outcomes[0].error == "boom"

    def test_listener_failure_is_contained(self):
        calls = []

        def broken(event_type, event):
            raise RuntimeError("listener bug")

        def recorder(event_type, event):
            calls.append((event_type, event.source_entity_id))

        engine.on("invoice.paid", broken)
        engine.on("invoice.paid", recorder)
        engine.emit("invoice.paid", invoice_payload())
        assert calls == [("invoice.paid", "1")]

    def test_dispatch_safely_swallows_errors(self):
        event = build_event("invoice.paid", invoice_payload())
        with patch.object(engine, "dispatch", side_effect=RuntimeError("db down")):
            assert engine.dispatch_safely("invoice.paid", event) is None


@pytest.mark.django_db
class TestActions:
    def test_send_email_to_client(self):
        WorkflowTriggerFactory(actions=[{
            "type": "send_email",
            "config": {"to": "client", "subject": "Thanks for paying {{invoice_number}}"},
        }])
        engine.emit("invoice.paid", invoice_payload())
        assert len(mail.outbox) == 1
        assert mail.outbox[0].to == ["billing@acme.test"]
        assert mail.outbox[0].subject == "Thanks for paying INV-2025-0001"

    def test_create_task_with_assignee(self):
        assignee = UserFactory(email="pm@example.com")
        milestone = MilestoneFactory()
        WorkflowTriggerFactory(event_type="milestone.completed", actions=[{
            "type": "create_task",
            "config": {"title": "Review {{title}}", "assignee": "PM@example.com", "due_days": 3},
        }])
        engine.emit("milestone.completed", milestone_payload(milestone))

        task = Task.objects.get()
        assert task.project_id == milestone.project_id
        assert task.title == f"Review {milestone.title}"
        assert task.assigned_to == assignee
        assert task.due_date is not None

    def test_update_status_project(self):
        project = ProjectFactory()
        WorkflowTriggerFactory(event_type="contract.signed", actions=[{
            "type": "update_status", "config": {"entity": "project", "status": "completed"},
        }])
        engine.emit("contract.signed", {"contract_id": 9, "client_id": project.client_id, "project_id": project.id})
        project.refresh_from_db()
        assert project.status == Project.Status.COMPLETED

    def test_update_status_invoice_routes_through_state_machine(self):
        invoice = make_invoice()
        WorkflowTriggerFactory(event_type="invoice.created", actions=[{
            "type": "update_status", "config": {"entity": "invoice", "status": "void"},
        }])
        result = engine.emit("invoice.created", invoice_payload(invoice_id=invoice.id, status="draft"))

        # Drafts cannot be voided, so the action fails and the invoice is untouched
        assert result.failed == 1
        assert result.outcomes[0].detail["code"] == "INVALID_STATE_TRANSITION"
        invoice.refresh_from_db()
        assert invoice.status == Invoice.Status.DRAFT

    def test_update_status_invoice_send(self):
        invoice = make_invoice()
        WorkflowTriggerFactory(event_type="invoice.created", actions=[{
            "type": "update_status", "config": {"entity": "invoice", "status": "sent"},
        }])
        engine.emit("invoice.created", invoice_payload(invoice_id=invoice.id, status="draft"))
        invoice.refresh_from_db()
        assert invoice.status == Invoice.Status.SENT

    def test_webhook_action_queues_delivery(self):
        trigger = WorkflowTriggerFactory(actions=[{
            "type": "webhook", "config": {"url": "https://hooks.test/paid", "secret": "s3cret"},
        }])
        with patch("billing.services.webhook_service.WebhookService.dispatch") as dispatch:
            result = engine.emit("invoice.paid", invoice_payload())

        delivery = WebhookDelivery.objects.get()
        assert delivery.trigger == trigger
        assert delivery.event_log_id == result.event_log_id
        assert delivery.signature
        assert '"event": "invoice.paid"' in delivery.body
        # Dispatch waits for the surrounding transaction to commit
        dispatch.assert_not_called()


@pytest.mark.django_db
class TestDedupe:
    def _create_invoice_trigger(self):
        return WorkflowTriggerFactory(event_type="milestone.completed", actions=[{
            "type": "create_invoice",
            "config": {"amount": "{{amount}}", "description": "Milestone: {{title}}"},
        }])

    def test_duplicate_emission_creates_one_invoice(self):
        trigger = self._create_invoice_trigger()
        milestone = MilestoneFactory(amount=Decimal("1200.00"))

        first = engine.emit("milestone.completed", milestone_payload(milestone))
        second = engine.emit("milestone.completed", milestone_payload(milestone))

        assert first.fired == 1
        assert second.fired == 0
        assert second.skipped == 1
        invoices = Invoice.objects.filter(milestone=milestone)
        assert invoices.count() == 1
        assert invoices.get().total == Decimal("1200.00")
        assert WorkflowDedupeKey.objects.filter(trigger=trigger, source_entity_id=str(milestone.id)).count() == 1
        skipped = WorkflowTriggerLog.objects.filter(trigger=trigger, result=WorkflowTriggerLog.Result.SKIPPED).get()
        assert skipped.detail["reason"] == "duplicate"

    def test_bare_milestone_payload_bills_the_milestone(self):
        self._create_invoice_trigger()
        milestone = MilestoneFactory(amount=Decimal("750.00"))
        payload = {"milestone_id": milestone.id, "has_payment_deliverable": True}

        first = engine.emit("milestone.completed", payload)
        second = engine.emit("milestone.completed", payload)

        assert first.fired == 1
        assert first.failed == 0
        assert second.skipped == 1
        invoice = Invoice.objects.get(milestone=milestone)
        assert invoice.status == Invoice.Status.DRAFT
        assert invoice.project_id == milestone.project_id
        assert invoice.client_id == milestone.project.client_id
        assert invoice.total == Decimal("750.00")

    def test_unknown_milestone_fails_without_claiming(self):
        self._create_invoice_trigger()
        result = engine.emit("milestone.completed", {"milestone_id": 999999})

        assert result.failed == 1
        failed = WorkflowTriggerLog.objects.get(result=WorkflowTriggerLog.Result.FAILED)
        assert "No client could be resolved" in failed.error_message
        assert WorkflowDedupeKey.objects.count() == 0

    def test_failed_invoice_creation_can_be_retried(self):
        trigger = self._create_invoice_trigger()
        milestone = MilestoneFactory(amount=Decimal("300.00"))

        with patch.object(InvoiceService, "create_invoice", wraps=InvoiceService.create_invoice,
                          side_effect=[RuntimeError("connection reset"), DEFAULT]):
            first = engine.emit("milestone.completed", milestone_payload(milestone))
            second = engine.emit("milestone.completed", milestone_payload(milestone))

        assert first.failed == 1
        assert second.failed == 0
        assert second.skipped == 0
        assert Invoice.objects.filter(milestone=milestone).count() == 1
        assert WorkflowDedupeKey.objects.filter(trigger=trigger, source_entity_id=str(milestone.id)).count() == 1

        third = engine.emit("milestone.completed", milestone_payload(milestone))
        assert third.skipped == 1
        assert Invoice.objects.filter(milestone=milestone).count() == 1

    def test_different_sources_each_fire(self):
        self._create_invoice_trigger()
        engine.emit("milestone.completed", milestone_payload(MilestoneFactory()))
        engine.emit("milestone.completed", milestone_payload(MilestoneFactory()))
        assert Invoice.objects.count() == 2

    def test_non_financial_triggers_repeat(self):
        WorkflowTriggerFactory()
        engine.emit("invoice.paid", invoice_payload())
        engine.emit("invoice.paid", invoice_payload())
        assert Notification.objects.count() == 2
        assert WorkflowDedupeKey.objects.count() == 0

    def test_milestone_completion_through_service(self, django_capture_on_commit_callbacks):
        self._create_invoice_trigger()
        milestone = MilestoneFactory()
        with django_capture_on_commit_callbacks(execute=True):
            MilestoneService.complete(milestone)
        invoice = Invoice.objects.get(milestone=milestone)
        assert invoice.client_id == milestone.project.client_id

    def test_financial_flag(self):
        invoice_trigger = WorkflowTriggerFactory(actions=[{"type": "update_status", "config": {"entity": "invoice", "status": "void"}}])
        project_trigger = WorkflowTriggerFactory(actions=[{"type": "update_status", "config": {"entity": "project", "status": "completed"}}])
        assert engine._is_financial(invoice_trigger) is True
        assert engine._is_financial(project_trigger) is False


@pytest.mark.django_db
class TestServiceEmission:
    def test_invoice_lifecycle_emits_events(self, django_capture_on_commit_callbacks):
        client = ClientFactory()
        with django_capture_on_commit_callbacks(execute=True):
            invoice = make_sent_invoice(client)
        types = list(WorkflowEventLog.objects.order_by("id").values_list("event_type", flat=True))
        assert types == ["invoice.created", "invoice.sent"]
        assert WorkflowEventLog.objects.filter(entity_id=str(invoice.id)).count() == 2

    def test_rolled_back_mutation_emits_nothing(self, django_capture_on_commit_callbacks):
        with django_capture_on_commit_callbacks(execute=True) as callbacks:
            with pytest.raises(ValidationError):
                make_invoice(amounts=("100.00",), discount_value=Decimal("500.00"))
        assert callbacks == []
        assert WorkflowEventLog.objects.count() == 0
