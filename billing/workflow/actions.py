"""
Trigger actions.

Each action kind is a handler class registered in ``ACTION_HANDLERS``. A
handler validates its config when a trigger is saved and executes against a
typed event payload when the trigger fires. Service imports are deferred to
call time because the services emit events through the engine.
"""

import logging
import re
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Tuple

from django.conf import settings
from django.contrib.auth import get_user_model
from django.core.exceptions import ValidationError as DjangoValidationError
from django.core.validators import URLValidator, validate_email
from django.utils import timezone

from billing.validation import ConflictError, ErrorCode, FieldError, NotFoundError, ValidationError

from .events import BaseEvent, EventType, UnknownFieldError, payload_class

logger = logging.getLogger(__name__)

PLACEHOLDER = re.compile(r"\{\{\s*([a-zA-Z0-9_]+)\s*\}\}")


class ActionError(Exception):
    """An action could not complete; logged as a failed action."""


@dataclass
class ActionContext:
    event_type: str
    event: BaseEvent
    trigger: Any = None
    event_log: Any = None


def interpolate(template: str, event: BaseEvent) -> str:
    """Replace ``{{field}}`` with payload values. Unknown placeholders are left as written."""
    def replace(match):
        try:
            value = event.get_field(match.group(1))
        except UnknownFieldError:
            return match.group(0)
        return "" if value is None else str(value)

    return PLACEHOLDER.sub(replace, template or "")


def _payload_value(event: BaseEvent, name: str):
    try:
        return event.get_field(name)
    except UnknownFieldError:
        return None


def _is_zero(value) -> bool:
    try:
        return Decimal(str(value or 0)) == 0
    except InvalidOperation:
        return False


class ActionHandler:
    action_type = ""
    label = ""
    required_config: Tuple[str, ...] = ()
    # Payload fields the event must declare for the action to make sense
    required_payload: Tuple[str, ...] = ()

    def is_financial(self, config: Dict[str, Any]) -> bool:
        return False

    def validate(self, event_type: str, config: Dict[str, Any], prefix: str) -> List[FieldError]:
        errors = []
        for key in self.required_config:
            if config.get(key) in (None, ""):
                errors.append(FieldError(field=f"{prefix}.config.{key}", code=ErrorCode.FIELD_REQUIRED.value, message=f"'{key}' is required"))
        fields = payload_class(event_type).field_names()
        for name in self.required_payload:
            if name not in fields:
                errors.append(FieldError(
                    field=f"{prefix}.type",
                    code=ErrorCode.FIELD_INVALID.value,
                    message=f"{self.action_type} needs '{name}' in the payload, which {event_type} does not carry",
                ))
        return errors

    def execute(self, config: Dict[str, Any], context: ActionContext) -> Dict[str, Any]:
        raise NotImplementedError


class SendEmailAction(ActionHandler):
    action_type = "send_email"
    label = "Send Email"
    required_config = ("to", "subject")

    def validate(self, event_type, config, prefix):
        errors = super().validate(event_type, config, prefix)
        to = config.get("to")
        if to == "client" and "client_email" not in payload_class(event_type).field_names():
            errors.append(FieldError(field=f"{prefix}.config.to", code=ErrorCode.FIELD_INVALID.value, message=f"{event_type} has no client email"))
        elif to and to not in ("client", "admin"):
            try:
                validate_email(to)
            except DjangoValidationError:
                errors.append(FieldError(field=f"{prefix}.config.to", code=ErrorCode.FIELD_INVALID_FORMAT.value, message="Use 'client', 'admin' or an email address"))
        return errors

    def resolve_recipient(self, to: str, event: BaseEvent) -> Optional[str]:
        if to == "client":
            return _payload_value(event, "client_email") or None
        if to == "admin":
            return settings.BILLING_ADMIN_EMAIL
        return to

    def execute(self, config, context):
        from billing.services.email_service import EmailService

        recipient = self.resolve_recipient(config["to"], context.event)
        if not recipient:
            raise ActionError(f"No recipient for '{config['to']}'")

        subject = interpolate(config["subject"], context.event)
        body = interpolate(config.get("template") or config["subject"], context.event)
        if not EmailService.send(to=recipient, subject=subject, body=body):
            raise ActionError(f"Email to {recipient} failed after retries")
        return {"to": recipient, "subject": subject}


class CreateTaskAction(ActionHandler):
    action_type = "create_task"
    label = "Create Task"
    required_config = ("title",)
    required_payload = ("project_id",)

    def execute(self, config, context):
        from billing.models import Project, Task
        from .engine import emit_on_commit

        project_id = _payload_value(context.event, "project_id")
        if not project_id:
            raise ActionError("Event has no project to attach the task to")
        project = Project.objects.filter(pk=project_id).first()
        if project is None:
            raise NotFoundError(f"Project {project_id} not found")

        assignee = None
        if config.get("assignee"):
            User = get_user_model()
            assignee = User.objects.filter(email__iexact=config["assignee"]).first()
            if assignee is None:
                logger.warning(f"Task assignee '{config['assignee']}' not found; creating unassigned task")

        due_date = None
        if config.get("due_days") not in (None, ""):
            due_date = timezone.localdate() + timedelta(days=int(config["due_days"]))

        task = Task.objects.create(
            project=project,
            title=interpolate(config["title"], context.event),
            description=interpolate(config.get("description", ""), context.event),
            assigned_to=assignee,
            due_date=due_date,
        )
        emit_on_commit(EventType.TASK_CREATED, {
            "task_id": task.id,
            "project_id": project.id,
            "title": task.title,
            "assigned_to_id": task.assigned_to_id,
        })
        return {"task_id": task.id, "assigned_to_id": task.assigned_to_id}


class UpdateStatusAction(ActionHandler):
    action_type = "update_status"
    label = "Update Status"
    required_config = ("entity", "status")

    INVOICE_TARGETS = ("sent", "viewed", "void")

    def is_financial(self, config):
        return config.get("entity") == "invoice"

    def _choices(self, entity: str):
        from billing.models import Client, Project

        if entity == "project":
            return Project.Status.values
        if entity == "client":
            return Client.Status.values
        return list(self.INVOICE_TARGETS)

    def validate(self, event_type, config, prefix):
        errors = super().validate(event_type, config, prefix)
        entity = config.get("entity")
        if entity not in ("project", "invoice", "client"):
            if entity:
                errors.append(FieldError(field=f"{prefix}.config.entity", code=ErrorCode.FIELD_INVALID.value, message="Entity must be project, invoice or client"))
            return errors
        if f"{entity}_id" not in payload_class(event_type).field_names():
            errors.append(FieldError(field=f"{prefix}.config.entity", code=ErrorCode.FIELD_INVALID.value, message=f"{event_type} does not identify a {entity}"))
        if config.get("status") and config["status"] not in self._choices(entity):
            errors.append(FieldError(field=f"{prefix}.config.status", code=ErrorCode.FIELD_INVALID.value, message=f"'{config['status']}' is not a valid {entity} status here"))
        return errors

    def execute(self, config, context):
        from billing.models import Client, Invoice, Project
        from billing.services.invoice_service import InvoiceService
        from .engine import emit_on_commit

        entity = config["entity"]
        status = config["status"]
        entity_id = _payload_value(context.event, f"{entity}_id")
        if not entity_id:
            raise ActionError(f"Event does not identify a {entity}")

        if entity == "invoice":
            invoice = Invoice.objects.filter(pk=entity_id).first()
            if invoice is None:
                raise NotFoundError(f"Invoice {entity_id} not found")
            if status == "sent":
                invoice = InvoiceService.send_invoice(invoice)
            elif status == "viewed":
                invoice = InvoiceService.mark_viewed(invoice)
            elif status == "void":
                invoice = InvoiceService.void_invoice(invoice, reason="Workflow trigger")
            else:
                raise ConflictError(f"Workflows cannot move an invoice to '{status}'", code=ErrorCode.INVALID_STATE_TRANSITION)
            return {"entity": entity, "id": invoice.id, "status": invoice.status}

        model = Project if entity == "project" else Client
        if status not in model.Status.values:
            raise ValidationError(f"'{status}' is not a valid {entity} status")
        instance = model.objects.filter(pk=entity_id).first()
        if instance is None:
            raise NotFoundError(f"{entity.title()} {entity_id} not found")

        old_status = instance.status
        instance.status = status
        instance.save(update_fields=["status", "updated_at"])

        if entity == "project" and status == Project.Status.COMPLETED and old_status != status:
            emit_on_commit(EventType.PROJECT_COMPLETED, {
                "project_id": instance.id,
                "client_id": instance.client_id,
                "name": instance.name,
                "status": instance.status,
                "client_email": instance.client.email,
            })
        return {"entity": entity, "id": instance.id, "old_status": old_status, "status": status}


class WebhookAction(ActionHandler):
    action_type = "webhook"
    label = "Send Webhook"
    required_config = ("url",)

    def validate(self, event_type, config, prefix):
        errors = super().validate(event_type, config, prefix)
        if config.get("url"):
            try:
                URLValidator(schemes=["http", "https"])(config["url"])
            except DjangoValidationError:
                errors.append(FieldError(field=f"{prefix}.config.url", code=ErrorCode.FIELD_INVALID_FORMAT.value, message="Enter a valid http(s) URL"))
        if config.get("method") and str(config["method"]).upper() not in ("POST", "PUT", "PATCH"):
            errors.append(FieldError(field=f"{prefix}.config.method", code=ErrorCode.FIELD_INVALID.value, message="Method must be POST, PUT or PATCH"))
        return errors

    def execute(self, config, context):
        from billing.services.webhook_service import WebhookService

        payload = {
            "event": context.event_type,
            "event_id": context.event_log.id if context.event_log else None,
            "trigger_id": context.trigger.id if context.trigger else None,
            "data": context.event.to_dict(),
            "timestamp": timezone.now().isoformat(),
        }
        delivery = WebhookService.enqueue(
            config["url"],
            payload,
            method=config.get("method", "POST"),
            headers=config.get("headers") or {},
            secret=config.get("secret", ""),
            max_attempts=config.get("max_attempts"),
            trigger=context.trigger,
            event_log=context.event_log,
        )
        return {"delivery_id": delivery.id}


class NotifyAction(ActionHandler):
    action_type = "notify"
    label = "Send Notification"
    required_config = ("message",)

    def execute(self, config, context):
        from billing.models import Notification

        user = None
        if config.get("user"):
            user = get_user_model().objects.filter(email__iexact=config["user"]).first()

        notification = Notification.objects.create(
            user=user,
            channel=config.get("channel", "admin"),
            message=interpolate(config["message"], context.event),
            metadata={
                "event_type": context.event_type,
                "source_entity_id": context.event.source_entity_id,
                "trigger_id": context.trigger.id if context.trigger else None,
            },
        )
        return {"notification_id": notification.id}


class CreateInvoiceAction(ActionHandler):
    action_type = "create_invoice"
    label = "Create Invoice"
    # Any one of these lets the client be resolved
    link_fields = ("client_id", "project_id", "milestone_id")

    def is_financial(self, config):
        return True

    def validate(self, event_type, config, prefix):
        errors = super().validate(event_type, config, prefix)
        if not set(self.link_fields) & set(payload_class(event_type).field_names()):
            errors.append(FieldError(
                field=f"{prefix}.type",
                code=ErrorCode.FIELD_INVALID.value,
                message=f"create_invoice needs a client, project or milestone in the payload, which {event_type} does not carry",
            ))
        if not config.get("line_items") and config.get("amount") in (None, ""):
            errors.append(FieldError(field=f"{prefix}.config", code=ErrorCode.FIELD_REQUIRED.value, message="Provide line_items or an amount"))
        if config.get("amount") not in (None, ""):
            try:
                if Decimal(str(config["amount"])) <= 0:
                    raise InvalidOperation
            except InvalidOperation:
                errors.append(FieldError(field=f"{prefix}.config.amount", code=ErrorCode.FIELD_OUT_OF_RANGE.value, message="Amount must be a positive number"))
        return errors

    def _line_items(self, config, event: BaseEvent, milestone=None) -> List[Dict[str, Any]]:
        if config.get("line_items"):
            return [
                {**item, "description": interpolate(item.get("description", ""), event)}
                for item in config["line_items"]
            ]
        amount = config["amount"]
        # "{{amount}}" lets a milestone trigger bill the milestone's own amount
        if isinstance(amount, str):
            amount = interpolate(amount, event)
            if milestone is not None and _is_zero(amount):
                amount = milestone.amount
        return [{
            "description": interpolate(config.get("description", "Services"), event),
            "quantity": 1,
            "unit_rate": amount,
        }]

    def _resolve_links(self, event: BaseEvent):
        """
        Client, project and milestone for the invoice. Ids missing from the
        payload are filled in from the milestone, then from the project.
        """
        from billing.models import Client, Milestone, Project

        milestone_id = _payload_value(event, "milestone_id")
        milestone = Milestone.objects.select_related("project").filter(pk=milestone_id).first() if milestone_id else None

        project_id = _payload_value(event, "project_id")
        if project_id:
            project = Project.objects.filter(pk=project_id).first()
        else:
            project = milestone.project if milestone else None

        client_id = _payload_value(event, "client_id") or (project.client_id if project else None)
        client = Client.objects.filter(pk=client_id).first() if client_id else None
        if client is None:
            if client_id:
                raise NotFoundError(f"Client {client_id} not found")
            raise NotFoundError(f"No client could be resolved for source {event.source_entity_id}")
        return client, project, milestone

    def execute(self, config, context):
        from billing.services.invoice_service import InvoiceService

        event = context.event
        client, project, milestone = self._resolve_links(event)
        due_days = int(config.get("due_days") or settings.BILLING_DEFAULT_PAYMENT_TERMS_DAYS)
        today = timezone.localdate()

        invoice = InvoiceService.create_invoice(
            client,
            self._line_items(config, event, milestone),
            project=project,
            milestone=milestone,
            issued_date=today,
            due_date=today + timedelta(days=due_days),
            notes=interpolate(config.get("notes", ""), event),
        )
        return {"invoice_id": invoice.id, "invoice_number": invoice.invoice_number, "total": str(invoice.total)}


ACTION_HANDLERS: Dict[str, ActionHandler] = {
    handler.action_type: handler
    for handler in (
        SendEmailAction(),
        CreateTaskAction(),
        UpdateStatusAction(),
        WebhookAction(),
        NotifyAction(),
        CreateInvoiceAction(),
    )
}


def get_handler(action_type: str) -> Optional[ActionHandler]:
    return ACTION_HANDLERS.get(action_type)


def validate_actions(event_type: str, actions: Any) -> List[Dict[str, Any]]:
    if not isinstance(actions, list) or not actions:
        raise ValidationError(
            "At least one action is required",
            fields=[FieldError(field="actions", code=ErrorCode.FIELD_REQUIRED.value, message="At least one action is required")],
            code=ErrorCode.TRIGGER_INVALID,
        )

    errors = []
    for i, action in enumerate(actions):
        prefix = f"actions.{i}"
        if not isinstance(action, dict):
            errors.append(FieldError(field=prefix, code=ErrorCode.FIELD_INVALID_FORMAT.value, message="Action must be an object"))
            continue
        handler = get_handler(action.get("type"))
        if handler is None:
            errors.append(FieldError(field=f"{prefix}.type", code=ErrorCode.FIELD_INVALID.value, message=f"Unknown action type '{action.get('type')}'"))
            continue
        config = action.get("config") or {}
        if not isinstance(config, dict):
            errors.append(FieldError(field=f"{prefix}.config", code=ErrorCode.FIELD_INVALID_FORMAT.value, message="Config must be an object"))
            continue
        errors.extend(handler.validate(event_type, config, prefix))

    if errors:
        raise ValidationError("Invalid trigger actions", fields=errors, code=ErrorCode.TRIGGER_INVALID)
    return actions


def describe_actions() -> List[Dict[str, Any]]:
    return [
        {
            "type": handler.action_type,
            "label": handler.label,
            "required_config": list(handler.required_config),
            "required_payload": list(handler.required_payload),
        }
        for handler in ACTION_HANDLERS.values()
    ]
