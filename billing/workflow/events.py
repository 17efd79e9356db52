"""
Workflow events.

Every event the engine accepts is a member of ``EventType`` and carries one of
the typed payloads below. Payloads are built through ``build_event`` which
rejects unknown and missing keys, so conditions and templates only ever see
declared fields.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, ClassVar, Dict, Optional, Tuple, Type

from django.db import models

from billing.validation import ErrorCode, FieldError, ValidationError


class EventType(models.TextChoices):
    INVOICE_CREATED = "invoice.created", "Invoice Created"
    INVOICE_SENT = "invoice.sent", "Invoice Sent"
    INVOICE_PAID = "invoice.paid", "Invoice Paid"
    INVOICE_OVERDUE = "invoice.overdue", "Invoice Overdue"
    INVOICE_CANCELLED = "invoice.cancelled", "Invoice Cancelled"
    PROPOSAL_ACCEPTED = "proposal.accepted", "Proposal Accepted"
    PROPOSAL_REJECTED = "proposal.rejected", "Proposal Rejected"
    CONTRACT_SIGNED = "contract.signed", "Contract Signed"
    MILESTONE_COMPLETED = "milestone.completed", "Milestone Completed"
    DELIVERABLE_APPROVED = "deliverable.approved", "Deliverable Approved"
    DOCUMENT_REQUEST_APPROVED = "document_request.approved", "Document Request Approved"
    QUESTIONNAIRE_COMPLETED = "questionnaire.completed", "Questionnaire Completed"
    PROJECT_CREATED = "project.created", "Project Created"
    PROJECT_COMPLETED = "project.completed", "Project Completed"
    CLIENT_CREATED = "client.created", "Client Created"
    TASK_CREATED = "task.created", "Task Created"
    TASK_COMPLETED = "task.completed", "Task Completed"


class UnknownFieldError(KeyError):
    pass


@dataclass(frozen=True)
class BaseEvent:
    # Name of the field that identifies the entity the event is about
    source_field: ClassVar[str] = ""

    @property
    def source_entity_id(self) -> str:
        return str(getattr(self, self.source_field))

    @classmethod
    def field_names(cls) -> Tuple[str, ...]:
        return tuple(f.name for f in dataclasses.fields(cls))

    def get_field(self, name: str) -> Any:
        if name not in self.field_names():
            raise UnknownFieldError(name)
        return getattr(self, name)

    def to_dict(self) -> Dict[str, Any]:
        data = {}
        for name in self.field_names():
            value = getattr(self, name)
            data[name] = str(value) if isinstance(value, Decimal) else value
        return data


@dataclass(frozen=True)
class InvoiceEvent(BaseEvent):
    source_field: ClassVar[str] = "invoice_id"

    invoice_id: int
    invoice_number: str
    client_id: int
    status: str
    total: Decimal
    amount_paid: Decimal = Decimal('0.00')
    project_id: Optional[int] = None
    milestone_id: Optional[int] = None
    client_email: str = ""
    due_date: Optional[str] = None


@dataclass(frozen=True)
class ProposalEvent(BaseEvent):
    source_field: ClassVar[str] = "proposal_id"

    proposal_id: int
    client_id: int
    project_id: Optional[int] = None
    amount: Decimal = Decimal('0.00')
    client_email: str = ""
    title: str = ""


@dataclass(frozen=True)
class ContractEvent(BaseEvent):
    source_field: ClassVar[str] = "contract_id"

    contract_id: int
    client_id: int
    project_id: Optional[int] = None
    client_email: str = ""


@dataclass(frozen=True)
class MilestoneEvent(BaseEvent):
    source_field: ClassVar[str] = "milestone_id"

    milestone_id: int
    project_id: Optional[int] = None
    client_id: Optional[int] = None
    title: str = ""
    amount: Decimal = Decimal('0.00')
    has_payment_deliverable: bool = False
    client_email: str = ""


@dataclass(frozen=True)
class ApprovalEvent(BaseEvent):
    """Deliverables, document requests and questionnaires."""

    source_field: ClassVar[str] = "entity_id"

    entity_id: int
    client_id: Optional[int] = None
    project_id: Optional[int] = None
    title: str = ""
    client_email: str = ""


@dataclass(frozen=True)
class ProjectEvent(BaseEvent):
    source_field: ClassVar[str] = "project_id"

    project_id: int
    client_id: Optional[int] = None
    name: str = ""
    status: str = ""
    client_email: str = ""


@dataclass(frozen=True)
class ClientEvent(BaseEvent):
    source_field: ClassVar[str] = "client_id"

    client_id: int
    name: str = ""
    client_email: str = ""


@dataclass(frozen=True)
class TaskEvent(BaseEvent):
    source_field: ClassVar[str] = "task_id"

    task_id: int
    project_id: Optional[int] = None
    title: str = ""
    assigned_to_id: Optional[int] = None


EVENT_PAYLOADS: Dict[str, Type[BaseEvent]] = {
    EventType.INVOICE_CREATED: InvoiceEvent,
    EventType.INVOICE_SENT: InvoiceEvent,
    EventType.INVOICE_PAID: InvoiceEvent,
    EventType.INVOICE_OVERDUE: InvoiceEvent,
    EventType.INVOICE_CANCELLED: InvoiceEvent,
    EventType.PROPOSAL_ACCEPTED: ProposalEvent,
    EventType.PROPOSAL_REJECTED: ProposalEvent,
    EventType.CONTRACT_SIGNED: ContractEvent,
    EventType.MILESTONE_COMPLETED: MilestoneEvent,
    EventType.DELIVERABLE_APPROVED: ApprovalEvent,
    EventType.DOCUMENT_REQUEST_APPROVED: ApprovalEvent,
    EventType.QUESTIONNAIRE_COMPLETED: ApprovalEvent,
    EventType.PROJECT_CREATED: ProjectEvent,
    EventType.PROJECT_COMPLETED: ProjectEvent,
    EventType.CLIENT_CREATED: ClientEvent,
    EventType.TASK_CREATED: TaskEvent,
    EventType.TASK_COMPLETED: TaskEvent,
}


def payload_class(event_type: str) -> Type[BaseEvent]:
    try:
        return EVENT_PAYLOADS[EventType(event_type)]
    except ValueError:
        raise ValidationError(
            f"Unknown event type '{event_type}'",
            code=ErrorCode.EVENT_INVALID,
            fields=[FieldError(field="event_type", code=ErrorCode.FIELD_INVALID.value, message="Unknown event type")],
        )


def _coerce(name: str, annotation: str, value: Any) -> Any:
    if value is None:
        return None
    if "Decimal" in annotation:
        try:
            return Decimal(str(value))
        except InvalidOperation:
            raise ValueError(f"{name} must be a number")
    if "bool" in annotation:
        if isinstance(value, str):
            return value.strip().lower() in ("true", "1", "yes")
        return bool(value)
    if "int" in annotation:
        try:
            return int(value)
        except (TypeError, ValueError):
            raise ValueError(f"{name} must be an integer")
    if "str" in annotation:
        return str(value)
    return value


def build_event(event_type: str, data: Dict[str, Any]) -> BaseEvent:
    """Validate raw event data against the payload declared for ``event_type``."""
    cls = payload_class(event_type)
    declared = {f.name: f for f in dataclasses.fields(cls)}

    errors = []
    for key in data:
        if key not in declared:
            errors.append(FieldError(field=key, code=ErrorCode.FIELD_INVALID.value, message="Unknown field for this event"))

    kwargs = {}
    for name, f in declared.items():
        required = f.default is dataclasses.MISSING and f.default_factory is dataclasses.MISSING
        if name not in data or (required and data[name] is None):
            if required:
                errors.append(FieldError(field=name, code=ErrorCode.FIELD_REQUIRED.value, message="This field is required"))
            continue
        try:
            kwargs[name] = _coerce(name, str(f.type), data[name])
        except ValueError as e:
            errors.append(FieldError(field=name, code=ErrorCode.FIELD_INVALID_FORMAT.value, message=str(e)))

    if errors:
        raise ValidationError(f"Invalid payload for {event_type}", fields=errors, code=ErrorCode.EVENT_INVALID)

    return cls(**kwargs)


def entity_type_for(event_type: str) -> str:
    return event_type.split(".", 1)[0]
