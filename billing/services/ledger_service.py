import logging
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from django.db import transaction
from django.db.models import DecimalField, Sum, Value
from django.db.models.functions import Coalesce
from django.utils import timezone

from ..models import Invoice, InvoiceActivity, InvoiceCredit, InvoicePayment, quantize_money
from ..validation import ConflictError, ErrorCode, FieldError, ValidationError
from ..workflow.engine import emit_on_commit
from ..workflow.events import EventType
from .invoice_service import InvoiceService, invoice_event_data
from .reminder_service import ReminderService

logger = logging.getLogger(__name__)

AGING_BUCKETS = ('current', '1_30', '31_60', '61_90', '90_plus')


def _positive_amount(amount, field: str = 'amount') -> Decimal:
    try:
        value = quantize_money(amount)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(
            "Amount must be a number",
            fields=[FieldError(field=field, code=ErrorCode.FIELD_INVALID_FORMAT.value, message='Amount must be a number')],
            code=ErrorCode.INVALID_AMOUNT,
        )
    if value <= 0:
        raise ValidationError(
            "Amount must be greater than zero",
            fields=[FieldError(field=field, code=ErrorCode.FIELD_OUT_OF_RANGE.value, message='Amount must be greater than zero')],
            code=ErrorCode.INVALID_AMOUNT,
        )
    return value


class LedgerService:
    """Payments, deposit credits and the read-side aging view."""

    @staticmethod
    def _append_payment(invoice: Invoice, amount: Decimal, method: str, reference: str = "",
                        user=None, credit: Optional[InvoiceCredit] = None) -> InvoicePayment:
        """Append a payment to an invoice the caller has locked, then settle its status."""
        if not invoice.can_record_payment:
            code = ErrorCode.INVOICE_ALREADY_PAID if invoice.status == Invoice.Status.PAID else ErrorCode.INVALID_STATE_TRANSITION
            raise ConflictError(
                f"Cannot record a payment on a {invoice.status} invoice",
                code=code,
            )

        # Authoritative figure comes from the history, not the cached column
        already_paid = invoice.payment_history_total()
        if already_paid + amount > invoice.total:
            raise ConflictError(
                f"Payment of {amount} exceeds the outstanding balance of {invoice.total - already_paid}",
                code=ErrorCode.OVERPAYMENT,
            )

        payment = InvoicePayment.objects.create(
            invoice=invoice,
            amount=amount,
            method=method,
            reference=reference,
            credit=credit,
            recorded_by=user,
        )

        invoice.amount_paid = invoice.payment_history_total()
        invoice.save(update_fields=['amount_paid', 'updated_at'])

        InvoiceService.log_activity(
            invoice, user, InvoiceActivity.ActionType.PAYMENT_RECEIVED,
            f"Payment of {amount} received via {method}",
            metadata={'payment_id': payment.id, 'amount': str(amount), 'method': method},
        )

        if invoice.amount_paid >= invoice.total:
            InvoiceService._transition(invoice, Invoice.Status.PAID, user=user)
            LedgerService._write_receipt(invoice, payment, user)
            ReminderService.skip_pending(invoice)
            emit_on_commit(EventType.INVOICE_PAID, invoice_event_data(invoice))
        else:
            InvoiceService._transition(invoice, Invoice.Status.PARTIAL, user=user)

        logger.info(f"Payment {payment.id} of {amount} recorded on invoice {invoice.id}; paid {invoice.amount_paid}/{invoice.total}")
        return payment

    @staticmethod
    def _write_receipt(invoice: Invoice, payment: InvoicePayment, user=None):
        try:
            with transaction.atomic():
                InvoiceService.log_activity(
                    invoice, user, InvoiceActivity.ActionType.RECEIPT_GENERATED,
                    f"Receipt generated for invoice {invoice.invoice_number}",
                    metadata={'final_payment_id': payment.id, 'total': str(invoice.total)},
                )
        except Exception as e:
            logger.error(f"Receipt generation failed for invoice {invoice.id}: {e}")

    @classmethod
    @transaction.atomic
    def record_payment(cls, invoice: Invoice, amount, method: str = InvoicePayment.Method.BANK_TRANSFER,
                       reference: str = "", user=None) -> InvoicePayment:
        amount = _positive_amount(amount)
        if method not in InvoicePayment.Method.values or method == InvoicePayment.Method.CREDIT:
            raise ValidationError(
                f"Unsupported payment method '{method}'",
                fields=[FieldError(field='method', code=ErrorCode.FIELD_INVALID.value, message='Unsupported payment method')],
            )
        invoice = InvoiceService.lock(invoice)
        return cls._append_payment(invoice, amount, method, reference=reference, user=user)

    @staticmethod
    def available_credit(source: Invoice) -> Decimal:
        drawn = source.credits_drawn.aggregate(total=Sum('amount'))['total'] or Decimal('0.00')
        return quantize_money(source.payment_history_total() - drawn)

    @classmethod
    @transaction.atomic
    def apply_credit(cls, source: Invoice, target: Invoice, amount, user=None) -> InvoiceCredit:
        """
        Draw ``amount`` from a paid deposit invoice onto another invoice.

        The source row lock serializes concurrent draws, so the sum of credits
        drawn can never exceed what the deposit collected.
        """
        amount = _positive_amount(amount)
        if source.pk == target.pk:
            raise ValidationError(
                "An invoice cannot be credited from itself",
                fields=[FieldError(field='source_invoice_id', code=ErrorCode.FIELD_INVALID.value, message='Source and target must differ')],
                code=ErrorCode.INVALID_CREDIT_SOURCE,
            )

        # Lock in primary key order so two opposite draws cannot deadlock
        first, second = sorted([source, target], key=lambda inv: inv.pk)
        locked = {first.pk: InvoiceService.lock(first), second.pk: InvoiceService.lock(second)}
        source, target = locked[source.pk], locked[target.pk]

        if source.invoice_type != Invoice.InvoiceType.DEPOSIT or source.status != Invoice.Status.PAID:
            raise ValidationError(
                "Credits can only be drawn from a paid deposit invoice",
                fields=[FieldError(field='source_invoice_id', code=ErrorCode.FIELD_INVALID.value, message='Source must be a paid deposit invoice')],
                code=ErrorCode.INVALID_CREDIT_SOURCE,
            )
        if target.invoice_type == Invoice.InvoiceType.DEPOSIT:
            raise ValidationError(
                "Deposit credits cannot be applied to another deposit invoice",
                fields=[FieldError(field='target_invoice_id', code=ErrorCode.FIELD_INVALID.value, message='Target cannot be a deposit invoice')],
                code=ErrorCode.INVALID_CREDIT_SOURCE,
            )
        if source.client_id != target.client_id:
            raise ValidationError(
                "Deposit credits can only be applied to the same client's invoices",
                fields=[FieldError(field='source_invoice_id', code=ErrorCode.FIELD_INVALID.value, message='Source belongs to a different client')],
                code=ErrorCode.INVALID_CREDIT_SOURCE,
            )

        available = cls.available_credit(source)
        if amount > available:
            raise ConflictError(
                f"Credit of {amount} exceeds the {available} available on deposit {source.invoice_number}",
                code=ErrorCode.INSUFFICIENT_CREDIT,
            )

        credit = InvoiceCredit.objects.create(
            source_invoice=source,
            target_invoice=target,
            amount=amount,
            applied_by=user,
        )
        cls._append_payment(
            target, amount, InvoicePayment.Method.CREDIT,
            reference=f"Deposit {source.invoice_number}", user=user, credit=credit,
        )

        InvoiceService.log_activity(
            source, user, InvoiceActivity.ActionType.CREDIT_APPLIED,
            f"Credit of {amount} applied to invoice {target.invoice_number}",
            metadata={'credit_id': credit.id, 'target_invoice_id': target.id, 'amount': str(amount)},
        )
        logger.info(f"Credit {credit.id}: {amount} from deposit {source.id} to invoice {target.id}")
        return credit

    @classmethod
    def available_deposits(cls, client) -> List[Dict[str, Any]]:
        deposits = Invoice.objects.filter(
            client=client,
            invoice_type=Invoice.InvoiceType.DEPOSIT,
            status=Invoice.Status.PAID,
        ).order_by('paid_at', 'id')

        results = []
        for deposit in deposits:
            available = cls.available_credit(deposit)
            results.append({
                'invoice_id': deposit.id,
                'invoice_number': deposit.invoice_number,
                'total_amount': deposit.total,
                'amount_applied': quantize_money(deposit.amount_paid - available),
                'available_amount': available,
                'paid_date': deposit.paid_at.date().isoformat() if deposit.paid_at else None,
            })
        return results

    @staticmethod
    def aging_report(today: Optional[date] = None) -> Dict[str, Dict[str, Any]]:
        """Outstanding receivables bucketed by days past due."""
        today = today or timezone.localdate()
        report = {bucket: {'count': 0, 'outstanding': Decimal('0.00')} for bucket in AGING_BUCKETS}

        invoices = Invoice.objects.filter(status__in=Invoice.OPEN_STATUSES).annotate(
            paid_from_history=Coalesce(
                Sum('payments__amount'),
                Value(Decimal('0.00')),
                output_field=DecimalField(max_digits=15, decimal_places=2),
            ),
        )

        for invoice in invoices:
            outstanding = quantize_money(invoice.total - invoice.paid_from_history)
            if outstanding <= 0:
                continue
            days = (today - invoice.due_date).days
            if days <= 0:
                bucket = 'current'
            elif days <= 30:
                bucket = '1_30'
            elif days <= 60:
                bucket = '31_60'
            elif days <= 90:
                bucket = '61_90'
            else:
                bucket = '90_plus'
            report[bucket]['count'] += 1
            report[bucket]['outstanding'] += outstanding

        return report
