import logging
from datetime import date, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from django.conf import settings
from django.db import transaction
from django.db.models import Max
from django.utils import timezone

from ..models import Invoice, InvoiceActivity, InvoiceLineItem
from ..validation import ConflictError, ErrorCode, FieldError, ValidationError
from ..workflow.engine import emit_on_commit
from ..workflow.events import EventType
from .reminder_service import ReminderService

logger = logging.getLogger(__name__)


def invoice_event_data(invoice: Invoice) -> Dict[str, Any]:
    return {
        'invoice_id': invoice.id,
        'invoice_number': invoice.invoice_number,
        'client_id': invoice.client_id,
        'project_id': invoice.project_id,
        'milestone_id': invoice.milestone_id,
        'status': invoice.status,
        'total': str(invoice.total),
        'amount_paid': str(invoice.amount_paid),
        'client_email': invoice.client.email,
        'due_date': invoice.due_date.isoformat(),
    }


class InvoiceService:
    VALID_TRANSITIONS = {
        Invoice.Status.DRAFT: [Invoice.Status.SENT, Invoice.Status.CANCELLED],
        Invoice.Status.SENT: [Invoice.Status.VIEWED, Invoice.Status.PARTIAL, Invoice.Status.PAID, Invoice.Status.VOID],
        Invoice.Status.VIEWED: [Invoice.Status.PARTIAL, Invoice.Status.PAID, Invoice.Status.VOID],
        Invoice.Status.PARTIAL: [Invoice.Status.PAID, Invoice.Status.VOID],
        Invoice.Status.PAID: [],
        Invoice.Status.VOID: [],
        Invoice.Status.CANCELLED: [],
    }

    @classmethod
    def can_transition(cls, from_status: str, to_status: str) -> bool:
        allowed = cls.VALID_TRANSITIONS.get(from_status, [])
        return to_status in allowed

    @classmethod
    def available_transitions(cls, invoice: Invoice) -> List[str]:
        return [str(status) for status in cls.VALID_TRANSITIONS.get(invoice.status, [])]

    @staticmethod
    def lock(invoice: Invoice) -> Invoice:
        """Re-read the invoice row under a write lock. Must run inside an atomic block."""
        return Invoice.all_objects.select_for_update().select_related('client').get(pk=invoice.pk)

    @staticmethod
    def generate_invoice_number(prefix: Optional[str] = None) -> str:
        prefix = prefix or settings.BILLING_INVOICE_PREFIX
        year = timezone.localdate().year
        last_id = Invoice.all_objects.aggregate(Max('id'))['id__max'] or 0
        number = f"{prefix}-{year}-{last_id + 1:04d}"
        while Invoice.all_objects.filter(invoice_number=number).exists():
            last_id += 1
            number = f"{prefix}-{year}-{last_id + 1:04d}"
        return number

    @staticmethod
    def validate_line_items(items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Normalize raw line item dicts; raises ValidationError listing every bad field."""
        errors = []
        cleaned = []

        if not items:
            raise ValidationError(
                "At least one line item is required",
                fields=[FieldError(field='line_items', code=ErrorCode.FIELD_REQUIRED.value, message='At least one line item is required')],
            )

        for i, item in enumerate(items):
            description = str(item.get('description', '')).strip()
            if not description:
                errors.append(FieldError(field=f'line_items.{i}.description', code=ErrorCode.FIELD_REQUIRED.value, message='Description is required'))
            try:
                quantity = Decimal(str(item.get('quantity', 1)))
                unit_rate = Decimal(str(item.get('unit_rate', 0)))
            except InvalidOperation:
                errors.append(FieldError(field=f'line_items.{i}', code=ErrorCode.FIELD_INVALID_FORMAT.value, message='Quantity and unit rate must be numbers'))
                continue
            if quantity <= 0:
                errors.append(FieldError(field=f'line_items.{i}.quantity', code=ErrorCode.FIELD_OUT_OF_RANGE.value, message='Quantity must be greater than 0'))
            if unit_rate < 0:
                errors.append(FieldError(field=f'line_items.{i}.unit_rate', code=ErrorCode.FIELD_OUT_OF_RANGE.value, message='Unit rate cannot be negative'))
            cleaned.append({'description': description, 'quantity': quantity, 'unit_rate': unit_rate})

        if errors:
            raise ValidationError("Invalid line items", fields=errors)
        return cleaned

    @staticmethod
    def _write_line_items(invoice: Invoice, items: List[Dict[str, Any]]):
        for idx, item in enumerate(items):
            InvoiceLineItem.objects.create(
                invoice=invoice,
                description=item['description'],
                quantity=item['quantity'],
                unit_rate=item['unit_rate'],
                sort_order=idx,
            )

    @staticmethod
    def _check_discount(invoice: Invoice):
        if invoice.discount_amount > invoice.subtotal:
            raise ValidationError(
                "Discount cannot exceed the subtotal",
                fields=[FieldError(field='discount_value', code=ErrorCode.FIELD_OUT_OF_RANGE.value, message='Discount cannot exceed the subtotal')],
            )

    @classmethod
    @transaction.atomic
    def create_invoice(cls, client, items: List[Dict[str, Any]], user=None, *, project=None, milestone=None,
                       issued_date: Optional[date] = None, due_date: Optional[date] = None,
                       invoice_type: str = Invoice.InvoiceType.STANDARD,
                       tax_rate: Decimal = Decimal('0.00'),
                       discount_type: str = Invoice.DiscountType.FIXED,
                       discount_value: Decimal = Decimal('0.00'),
                       late_fee_type: str = Invoice.LateFeeType.NONE,
                       late_fee_rate: Decimal = Decimal('0.0000'),
                       late_fee_flat_amount: Decimal = Decimal('0.00'),
                       late_fee_grace_days: int = 0,
                       notes: str = "", terms: str = "",
                       recurring_invoice=None, scheduled_invoice=None, payment_plan=None) -> Invoice:
        cleaned = cls.validate_line_items(items)

        issued_date = issued_date or timezone.localdate()
        due_date = due_date or issued_date + timedelta(days=settings.BILLING_DEFAULT_PAYMENT_TERMS_DAYS)
        if due_date < issued_date:
            raise ValidationError(
                "Due date cannot be before issue date",
                fields=[FieldError(field='due_date', code=ErrorCode.FIELD_INVALID.value, message='Due date cannot be before issue date')],
            )

        invoice = Invoice.objects.create(
            invoice_number=cls.generate_invoice_number(),
            client=client,
            project=project,
            milestone=milestone,
            created_by=user,
            invoice_type=invoice_type,
            status=Invoice.Status.DRAFT,
            issued_date=issued_date,
            due_date=due_date,
            tax_rate=Decimal(str(tax_rate)),
            discount_type=discount_type,
            discount_value=Decimal(str(discount_value)),
            late_fee_type=late_fee_type,
            late_fee_rate=Decimal(str(late_fee_rate)),
            late_fee_flat_amount=Decimal(str(late_fee_flat_amount)),
            late_fee_grace_days=late_fee_grace_days,
            notes=notes,
            terms=terms,
            recurring_invoice=recurring_invoice,
            scheduled_invoice=scheduled_invoice,
            payment_plan=payment_plan,
        )
        cls._write_line_items(invoice, cleaned)
        invoice.recalculate_totals()
        cls._check_discount(invoice)
        invoice.save()

        cls.log_activity(invoice, user, InvoiceActivity.ActionType.CREATED, f"Invoice {invoice.invoice_number} created")
        emit_on_commit(EventType.INVOICE_CREATED, invoice_event_data(invoice))

        logger.info(f"Invoice {invoice.id} ({invoice.invoice_number}) created for client {client.id}, total {invoice.total}")
        return invoice

    @classmethod
    @transaction.atomic
    def update_invoice(cls, invoice: Invoice, data: Dict[str, Any], items: Optional[List[Dict[str, Any]]] = None, user=None) -> Invoice:
        invoice = cls.lock(invoice)
        if invoice.status != Invoice.Status.DRAFT:
            raise ConflictError(
                f"Invoice in status '{invoice.status}' cannot be edited",
                code=ErrorCode.INVALID_STATE_TRANSITION,
            )

        editable = ['project', 'due_date', 'issued_date', 'tax_rate', 'discount_type', 'discount_value',
                    'invoice_type', 'late_fee_type', 'late_fee_rate', 'late_fee_flat_amount',
                    'late_fee_grace_days', 'notes', 'terms']
        changed = [name for name in editable if name in data]
        for name in changed:
            setattr(invoice, name, data[name])

        if invoice.due_date < invoice.issued_date:
            raise ValidationError(
                "Due date cannot be before issue date",
                fields=[FieldError(field='due_date', code=ErrorCode.FIELD_INVALID.value, message='Due date cannot be before issue date')],
            )

        if items is not None:
            cleaned = cls.validate_line_items(items)
            invoice.line_items.all().delete()
            cls._write_line_items(invoice, cleaned)

        invoice.recalculate_totals()
        cls._check_discount(invoice)
        invoice.save()

        cls.log_activity(invoice, user, InvoiceActivity.ActionType.UPDATED, "Invoice updated",
                         metadata={'fields': changed, 'line_items_replaced': items is not None})
        logger.info(f"Invoice {invoice.id} updated")
        return invoice

    @classmethod
    def _transition(cls, invoice: Invoice, new_status: str, user=None, reason: str = "") -> Invoice:
        """Apply a transition to an invoice the caller has already locked."""
        old_status = invoice.status
        if old_status == new_status:
            return invoice

        if not cls.can_transition(old_status, new_status):
            code = ErrorCode.INVOICE_ALREADY_PAID if old_status == Invoice.Status.PAID else ErrorCode.INVALID_STATE_TRANSITION
            raise ConflictError(f"Cannot transition invoice {invoice.invoice_number} from '{old_status}' to '{new_status}'", code=code)

        now = timezone.now()
        invoice.status = new_status
        if new_status == Invoice.Status.SENT and not invoice.sent_at:
            invoice.sent_at = now
        elif new_status == Invoice.Status.VIEWED and not invoice.viewed_at:
            invoice.viewed_at = now
        elif new_status == Invoice.Status.PAID:
            invoice.paid_at = now
            invoice.is_overdue = False
        elif new_status == Invoice.Status.VOID:
            invoice.voided_at = now
            invoice.void_reason = reason
            invoice.is_overdue = False
        invoice.save()

        action = InvoiceActivity.ActionType.VOIDED if new_status == Invoice.Status.VOID else InvoiceActivity.ActionType.STATUS_CHANGED
        cls.log_activity(
            invoice, user, action,
            f"Status changed from {old_status} to {new_status}. {reason}".strip(),
            metadata={'old_status': old_status, 'new_status': new_status},
        )

        logger.info(f"Invoice {invoice.id} transitioned from {old_status} to {new_status}")
        return invoice

    @classmethod
    @transaction.atomic
    def transition_status(cls, invoice: Invoice, new_status: str, user=None, reason: str = "") -> Invoice:
        return cls._transition(cls.lock(invoice), new_status, user=user, reason=reason)

    @classmethod
    @transaction.atomic
    def send_invoice(cls, invoice: Invoice, user=None) -> Invoice:
        invoice = cls.lock(invoice)
        if invoice.status != Invoice.Status.DRAFT:
            raise ConflictError(
                f"Only draft invoices can be sent; invoice is '{invoice.status}'",
                code=ErrorCode.INVALID_STATE_TRANSITION,
            )
        if not invoice.line_items.filter(amount__gt=0).exists():
            raise ValidationError(
                "An invoice needs at least one line item with a positive amount before it can be sent",
                fields=[FieldError(field='line_items', code=ErrorCode.FIELD_REQUIRED.value, message='At least one positive line item is required')],
            )

        cls._transition(invoice, Invoice.Status.SENT, user=user)
        cls.log_activity(invoice, user, InvoiceActivity.ActionType.SENT, f"Invoice sent to {invoice.client.email}")
        ReminderService.schedule_for_invoice(invoice)
        emit_on_commit(EventType.INVOICE_SENT, invoice_event_data(invoice))
        return invoice

    @classmethod
    @transaction.atomic
    def mark_viewed(cls, invoice: Invoice, user=None) -> Invoice:
        invoice = cls.lock(invoice)
        if invoice.status != Invoice.Status.SENT:
            # Repeat views and views after payment leave the status alone
            return invoice
        return cls._transition(invoice, Invoice.Status.VIEWED, user=user)

    @classmethod
    @transaction.atomic
    def void_invoice(cls, invoice: Invoice, user=None, reason: str = "") -> Invoice:
        invoice = cls.lock(invoice)
        if invoice.status == Invoice.Status.DRAFT:
            raise ConflictError(
                "Draft invoices have no financial trace; delete the draft instead of voiding it",
                code=ErrorCode.INVALID_STATE_TRANSITION,
            )
        cls._transition(invoice, Invoice.Status.VOID, user=user, reason=reason)
        ReminderService.skip_pending(invoice)
        emit_on_commit(EventType.INVOICE_CANCELLED, invoice_event_data(invoice))
        return invoice

    @classmethod
    @transaction.atomic
    def delete_or_void(cls, invoice: Invoice, user=None, reason: str = "") -> str:
        """
        Remove a draft outright or void an issued invoice.

        Returns "deleted" or "voided". Paid invoices are retained for accounting.
        """
        invoice = cls.lock(invoice)
        if invoice.status == Invoice.Status.PAID:
            raise ConflictError(
                "Paid invoices cannot be deleted or voided",
                code=ErrorCode.INVOICE_ALREADY_PAID,
            )

        if invoice.status in (Invoice.Status.DRAFT, Invoice.Status.CANCELLED):
            if invoice.status == Invoice.Status.DRAFT:
                cls._transition(invoice, Invoice.Status.CANCELLED, user=user, reason=reason)
            invoice_id, number = invoice.id, invoice.invoice_number
            invoice.reminders.all().delete()
            invoice.delete()
            logger.info(f"Invoice {invoice_id} ({number}) deleted")
            return "deleted"

        if invoice.status == Invoice.Status.VOID:
            raise ConflictError("Invoice is already void", code=ErrorCode.INVALID_STATE_TRANSITION)

        cls.void_invoice(invoice, user=user, reason=reason or "Voided on delete")
        return "voided"

    @classmethod
    @transaction.atomic
    def trash(cls, invoice: Invoice, user=None) -> Invoice:
        """Move an invoice to the trash, voiding it first if it was issued."""
        invoice = cls.lock(invoice)
        if invoice.status == Invoice.Status.PAID:
            raise ConflictError("Paid invoices cannot be moved to the trash", code=ErrorCode.INVOICE_ALREADY_PAID)
        if invoice.deleted_at:
            return invoice

        if invoice.status in Invoice.OPEN_STATUSES:
            cls._transition(invoice, Invoice.Status.VOID, user=user, reason="Moved to trash")
            ReminderService.skip_pending(invoice)
            emit_on_commit(EventType.INVOICE_CANCELLED, invoice_event_data(invoice))

        invoice.deleted_at = timezone.now()
        invoice.save(update_fields=['deleted_at', 'updated_at'])
        cls.log_activity(invoice, user, InvoiceActivity.ActionType.TRASHED, "Invoice moved to trash")
        logger.info(f"Invoice {invoice.id} moved to trash")
        return invoice

    @classmethod
    @transaction.atomic
    def restore(cls, invoice: Invoice, user=None) -> Invoice:
        invoice = cls.lock(invoice)
        if not invoice.deleted_at:
            return invoice
        invoice.deleted_at = None
        invoice.save(update_fields=['deleted_at', 'updated_at'])
        cls.log_activity(invoice, user, InvoiceActivity.ActionType.RESTORED, "Invoice restored from trash")
        logger.info(f"Invoice {invoice.id} restored from trash")
        return invoice

    @classmethod
    def refresh_overdue_flags(cls, today: Optional[date] = None) -> Dict[str, int]:
        """
        Recompute the cached overdue flag for every open invoice.

        Newly overdue invoices emit ``invoice.overdue`` once; the flag is what
        makes a second run a no-op.
        """
        today = today or timezone.localdate()
        results = {'flagged': 0, 'cleared': 0}

        newly_overdue = Invoice.objects.filter(
            status__in=Invoice.OPEN_STATUSES,
            due_date__lt=today,
            is_overdue=False,
        ).select_related('client')

        for invoice in newly_overdue:
            with transaction.atomic():
                locked = cls.lock(invoice)
                if locked.is_overdue or locked.status not in Invoice.OPEN_STATUSES:
                    continue
                locked.is_overdue = True
                locked.save(update_fields=['is_overdue', 'updated_at'])
                InvoiceActivity.objects.create(
                    invoice=locked,
                    action=InvoiceActivity.ActionType.MARKED_OVERDUE,
                    description=f"Invoice overdue by {locked.days_overdue(today)} days (automated)",
                    is_system=True,
                )
                emit_on_commit(EventType.INVOICE_OVERDUE, invoice_event_data(locked))
            results['flagged'] += 1

        # Flags that no longer hold: the invoice left the open states or its due date moved
        stale = Invoice.objects.filter(is_overdue=True).exclude(status__in=Invoice.OPEN_STATUSES, due_date__lt=today)
        results['cleared'] = stale.update(is_overdue=False)

        logger.info(f"Overdue refresh: {results['flagged']} flagged, {results['cleared']} cleared")
        return results

    @staticmethod
    def log_activity(invoice: Invoice, user, action: str, description: str, metadata: Dict = None):
        InvoiceActivity.objects.create(
            invoice=invoice,
            user=user,
            action=action,
            description=description,
            metadata=metadata or {},
            is_system=user is None,
        )
