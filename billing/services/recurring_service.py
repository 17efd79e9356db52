import logging
from datetime import date, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Tuple

from django.db import transaction
from django.utils import timezone

from ..models import Invoice, Milestone, PaymentPlanTemplate, RecurringInvoice, ScheduledInvoice, quantize_money
from ..validation import ConflictError, ErrorCode, FieldError, ValidationError
from .invoice_service import InvoiceService

logger = logging.getLogger(__name__)


def _template_items(items: List[Dict[str, Any]]) -> List[Dict[str, str]]:
    """Validate line items and convert them to the JSON form stored on templates."""
    cleaned = InvoiceService.validate_line_items(items)
    return [
        {'description': item['description'], 'quantity': str(item['quantity']), 'unit_rate': str(item['unit_rate'])}
        for item in cleaned
    ]


def _empty_results() -> Dict[str, int]:
    return {'total': 0, 'success': 0, 'failed': 0, 'skipped': 0}


def _check_series_fields(frequency: str, start_date: date, end_date: Optional[date], day_of_month: Optional[int]):
    errors = []
    if frequency not in RecurringInvoice.Frequency.values:
        errors.append(FieldError(field='frequency', code=ErrorCode.FIELD_INVALID.value, message=f"Unknown frequency '{frequency}'"))
    if end_date and end_date < start_date:
        errors.append(FieldError(field='end_date', code=ErrorCode.FIELD_INVALID.value, message='End date cannot be before start date'))
    if day_of_month is not None and not 1 <= day_of_month <= 31:
        errors.append(FieldError(field='day_of_month', code=ErrorCode.FIELD_OUT_OF_RANGE.value, message='Day of month must be between 1 and 31'))
    if errors:
        raise ValidationError("Invalid recurring invoice", fields=errors, code=ErrorCode.RECURRING_INVALID)


def _roll_forward(series: RecurringInvoice, today: date) -> date:
    """First generation boundary on or after ``today``."""
    next_date = series.next_generation_date
    while next_date < today:
        next_date = series.calculate_next_generation_date(next_date)
    return next_date


class RecurringInvoiceService:
    UPDATABLE_FIELDS = ('project', 'frequency', 'day_of_month', 'line_items', 'tax_rate',
                        'payment_terms_days', 'notes', 'terms', 'end_date')

    @staticmethod
    @transaction.atomic
    def create_recurring(client, line_items: List[Dict[str, Any]], start_date: date, user=None, *,
                         frequency: str = RecurringInvoice.Frequency.MONTHLY,
                         project=None, end_date: Optional[date] = None,
                         day_of_month: Optional[int] = None,
                         tax_rate: Decimal = Decimal('0.00'),
                         payment_terms_days: int = 30,
                         notes: str = "", terms: str = "") -> RecurringInvoice:
        _check_series_fields(frequency, start_date, end_date, day_of_month)

        series = RecurringInvoice.objects.create(
            client=client,
            project=project,
            created_by=user,
            frequency=frequency,
            day_of_month=day_of_month,
            line_items=_template_items(line_items),
            tax_rate=Decimal(str(tax_rate)),
            payment_terms_days=payment_terms_days,
            notes=notes,
            terms=terms,
            start_date=start_date,
            end_date=end_date,
            next_generation_date=start_date,
        )
        logger.info(f"Created recurring series {series.id} for client {client.id} ({frequency}, from {start_date})")
        return series

    @staticmethod
    @transaction.atomic
    def pause(series: RecurringInvoice) -> RecurringInvoice:
        series = RecurringInvoice.objects.select_for_update().get(pk=series.pk)
        if not series.is_active:
            raise ConflictError("Recurring series is already paused", code=ErrorCode.INVALID_STATE_TRANSITION)
        series.is_active = False
        series.paused_at = timezone.now()
        series.save(update_fields=['is_active', 'paused_at', 'updated_at'])
        logger.info(f"Paused recurring series {series.id}")
        return series

    @staticmethod
    @transaction.atomic
    def resume(series: RecurringInvoice, today: Optional[date] = None) -> RecurringInvoice:
        """Reactivate a series; a past next date rolls forward to the first boundary on or after today."""
        today = today or timezone.localdate()
        series = RecurringInvoice.objects.select_for_update().get(pk=series.pk)
        if series.is_active:
            raise ConflictError("Recurring series is already active", code=ErrorCode.INVALID_STATE_TRANSITION)
        if series.end_date and series.end_date < today:
            raise ConflictError("Recurring series has ended and cannot be resumed", code=ErrorCode.INVALID_STATE_TRANSITION)

        next_date = _roll_forward(series, today)
        series.next_generation_date = next_date
        series.is_active = True
        series.paused_at = None
        series.save(update_fields=['next_generation_date', 'is_active', 'paused_at', 'updated_at'])
        logger.info(f"Resumed recurring series {series.id}; next generation {next_date}")
        return series

    @classmethod
    @transaction.atomic
    def update_recurring(cls, series: RecurringInvoice, data: Dict[str, Any],
                         today: Optional[date] = None) -> RecurringInvoice:
        """
        Change a series' template, cadence or end date.

        Invoices already generated are untouched and the stored next date
        stands; later periods follow the new cadence. An end date before the
        next date ends the series. Extending the end date of an ended series
        revives it from the first boundary on or after today. Paused series
        stay paused.
        """
        today = today or timezone.localdate()
        series = RecurringInvoice.objects.select_for_update().get(pk=series.pk)

        unknown = sorted(set(data) - set(cls.UPDATABLE_FIELDS))
        if unknown:
            raise ValidationError(
                "Some fields cannot be changed on a recurring invoice",
                fields=[FieldError(field=name, code=ErrorCode.FIELD_INVALID.value, message='Field cannot be changed') for name in unknown],
                code=ErrorCode.RECURRING_INVALID,
            )

        _check_series_fields(
            data.get('frequency', series.frequency),
            series.start_date,
            data['end_date'] if 'end_date' in data else series.end_date,
            data['day_of_month'] if 'day_of_month' in data else series.day_of_month,
        )

        changes = dict(data)
        if 'line_items' in changes:
            changes['line_items'] = _template_items(changes['line_items'])
        if 'tax_rate' in changes:
            changes['tax_rate'] = Decimal(str(changes['tax_rate']))
        for name, value in changes.items():
            setattr(series, name, value)

        ended = not series.is_active and series.paused_at is None
        if ended:
            next_date = _roll_forward(series, today)
            if not series.end_date or next_date <= series.end_date:
                series.next_generation_date = next_date
                series.is_active = True
                logger.info(f"Recurring series {series.id} revived; next generation {series.next_generation_date}")
        elif series.is_active and series.end_date and series.next_generation_date > series.end_date:
            series.is_active = False
            logger.info(f"Recurring series {series.id} ended by new end date {series.end_date}")

        series.save()
        logger.info(f"Updated recurring series {series.id}: {', '.join(sorted(changes)) or 'no changes'}")
        return series

    @staticmethod
    @transaction.atomic
    def delete_recurring(series: RecurringInvoice) -> int:
        """Delete a series. Invoices it generated stay and lose the link; returns how many."""
        kept = Invoice.all_objects.filter(recurring_invoice=series).count()
        series_id = series.id
        series.delete()
        logger.info(f"Deleted recurring series {series_id}; {kept} generated invoice(s) kept")
        return kept

    @staticmethod
    def due_series(today: date):
        return RecurringInvoice.objects.filter(
            is_active=True,
            next_generation_date__lte=today,
        ).exclude(end_date__lt=today).select_related('client', 'project')

    @staticmethod
    @transaction.atomic
    def generate_for_series(series: RecurringInvoice, today: Optional[date] = None) -> Optional[Invoice]:
        """
        Generate one invoice for the series and advance its next date.

        Returns None when the live row no longer qualifies. Any error rolls the
        whole unit back, so the date only advances with a committed invoice.
        """
        today = today or timezone.localdate()
        series = RecurringInvoice.objects.select_for_update().select_related('client').get(pk=series.pk)

        if not series.is_active or series.next_generation_date > today:
            logger.info(f"Skipping recurring series {series.id}: no longer due")
            return None
        if series.end_date and series.end_date < today:
            logger.info(f"Skipping recurring series {series.id}: ended {series.end_date}")
            return None

        invoice = InvoiceService.create_invoice(
            series.client,
            series.line_items,
            user=series.created_by,
            project=series.project,
            issued_date=today,
            due_date=today + timedelta(days=series.payment_terms_days),
            tax_rate=series.tax_rate,
            notes=series.notes,
            terms=series.terms,
            recurring_invoice=series,
        )

        series.next_generation_date = series.calculate_next_generation_date(series.next_generation_date)
        series.last_generated_at = timezone.now()
        if series.end_date and series.next_generation_date > series.end_date:
            series.is_active = False
            logger.info(f"Recurring series {series.id} reached its end date {series.end_date}")
        series.save(update_fields=['next_generation_date', 'last_generated_at', 'is_active', 'updated_at'])

        logger.info(f"Generated invoice {invoice.id} from recurring series {series.id}; next {series.next_generation_date}")
        return invoice

    @classmethod
    def process_recurring(cls, today: Optional[date] = None) -> Dict[str, int]:
        today = today or timezone.localdate()
        results = _empty_results()

        for series in cls.due_series(today):
            results['total'] += 1
            try:
                invoice = cls.generate_for_series(series, today)
            except Exception:
                logger.exception(f"Error generating invoice for recurring series {series.id}")
                results['failed'] += 1
                continue
            if invoice is None:
                results['skipped'] += 1
            else:
                results['success'] += 1

        return results


class ScheduledInvoiceService:

    @staticmethod
    @transaction.atomic
    def create_scheduled(client, line_items: List[Dict[str, Any]], user=None, *,
                         scheduled_date: Optional[date] = None,
                         trigger_type: str = ScheduledInvoice.TriggerType.DATE,
                         trigger_milestone=None, project=None,
                         tax_rate: Decimal = Decimal('0.00'),
                         payment_terms_days: int = 30,
                         notes: str = "", terms: str = "") -> ScheduledInvoice:
        errors = []
        if trigger_type == ScheduledInvoice.TriggerType.DATE and not scheduled_date:
            errors.append(FieldError(field='scheduled_date', code=ErrorCode.FIELD_REQUIRED.value, message='Scheduled date is required'))
        if trigger_type == ScheduledInvoice.TriggerType.MILESTONE_COMPLETE:
            if not trigger_milestone:
                errors.append(FieldError(field='trigger_milestone', code=ErrorCode.FIELD_REQUIRED.value, message='A milestone is required for milestone triggers'))
            elif trigger_milestone.is_completed:
                errors.append(FieldError(field='trigger_milestone', code=ErrorCode.FIELD_INVALID.value, message='Milestone is already completed'))
        if trigger_type not in ScheduledInvoice.TriggerType.values:
            errors.append(FieldError(field='trigger_type', code=ErrorCode.FIELD_INVALID.value, message=f"Unknown trigger type '{trigger_type}'"))
        if errors:
            raise ValidationError("Invalid scheduled invoice", fields=errors)

        scheduled = ScheduledInvoice.objects.create(
            client=client,
            project=project,
            created_by=user,
            scheduled_date=scheduled_date or timezone.localdate(),
            trigger_type=trigger_type,
            trigger_milestone=trigger_milestone,
            line_items=_template_items(line_items),
            tax_rate=Decimal(str(tax_rate)),
            payment_terms_days=payment_terms_days,
            notes=notes,
            terms=terms,
        )
        logger.info(f"Created scheduled invoice {scheduled.id} for client {client.id} ({trigger_type})")
        return scheduled

    @staticmethod
    @transaction.atomic
    def cancel_scheduled(scheduled: ScheduledInvoice) -> ScheduledInvoice:
        scheduled = ScheduledInvoice.objects.select_for_update().get(pk=scheduled.pk)
        if scheduled.status != ScheduledInvoice.Status.PENDING:
            raise ConflictError(
                f"Scheduled invoice is already {scheduled.status}",
                code=ErrorCode.INVALID_STATE_TRANSITION,
            )
        scheduled.status = ScheduledInvoice.Status.CANCELLED
        scheduled.cancelled_at = timezone.now()
        scheduled.save(update_fields=['status', 'cancelled_at', 'updated_at'])
        logger.info(f"Cancelled scheduled invoice {scheduled.id}")
        return scheduled

    @staticmethod
    @transaction.atomic
    def generate_scheduled(scheduled: ScheduledInvoice, today: Optional[date] = None) -> Optional[Invoice]:
        today = today or timezone.localdate()
        scheduled = ScheduledInvoice.objects.select_for_update().select_related('client').get(pk=scheduled.pk)
        if scheduled.status != ScheduledInvoice.Status.PENDING:
            logger.info(f"Skipping scheduled invoice {scheduled.id}: already {scheduled.status}")
            return None

        invoice = InvoiceService.create_invoice(
            scheduled.client,
            scheduled.line_items,
            user=scheduled.created_by,
            project=scheduled.project,
            milestone=scheduled.trigger_milestone,
            issued_date=today,
            due_date=today + timedelta(days=scheduled.payment_terms_days),
            tax_rate=scheduled.tax_rate,
            notes=scheduled.notes,
            terms=scheduled.terms,
            scheduled_invoice=scheduled,
        )

        scheduled.status = ScheduledInvoice.Status.GENERATED
        scheduled.generated_invoice = invoice
        scheduled.generated_at = timezone.now()
        scheduled.save(update_fields=['status', 'generated_invoice', 'generated_at', 'updated_at'])

        logger.info(f"Generated invoice {invoice.id} from scheduled invoice {scheduled.id}")
        return invoice

    @classmethod
    @transaction.atomic
    def generate_now(cls, scheduled: ScheduledInvoice, today: Optional[date] = None) -> Invoice:
        """Generate a pending schedule immediately instead of waiting for its date or milestone."""
        scheduled = ScheduledInvoice.objects.select_for_update().get(pk=scheduled.pk)
        if scheduled.status == ScheduledInvoice.Status.GENERATED:
            raise ConflictError(
                f"Scheduled invoice {scheduled.id} already generated invoice {scheduled.generated_invoice_id}",
                code=ErrorCode.DUPLICATE_GENERATION,
            )
        if scheduled.status == ScheduledInvoice.Status.CANCELLED:
            raise ConflictError("Scheduled invoice is cancelled", code=ErrorCode.INVALID_STATE_TRANSITION)
        return cls.generate_scheduled(scheduled, today)

    @classmethod
    def _run(cls, queryset, today: date) -> Dict[str, int]:
        results = _empty_results()
        for scheduled in queryset:
            results['total'] += 1
            try:
                invoice = cls.generate_scheduled(scheduled, today)
            except Exception:
                logger.exception(f"Error generating scheduled invoice {scheduled.id}")
                results['failed'] += 1
                continue
            if invoice is None:
                results['skipped'] += 1
            else:
                results['success'] += 1
        return results

    @classmethod
    def process_scheduled(cls, today: Optional[date] = None) -> Dict[str, int]:
        today = today or timezone.localdate()
        due = ScheduledInvoice.objects.filter(
            status=ScheduledInvoice.Status.PENDING,
            trigger_type=ScheduledInvoice.TriggerType.DATE,
            scheduled_date__lte=today,
        )
        return cls._run(due, today)

    @classmethod
    def generate_for_milestone(cls, milestone, today: Optional[date] = None) -> Dict[str, int]:
        """Generate every pending schedule waiting on ``milestone``."""
        waiting = ScheduledInvoice.objects.filter(
            status=ScheduledInvoice.Status.PENDING,
            trigger_type=ScheduledInvoice.TriggerType.MILESTONE_COMPLETE,
            trigger_milestone=milestone,
        )
        results = cls._run(waiting, today or timezone.localdate())
        logger.info(f"Milestone {milestone.id} schedules processed: {results}")
        return results


def _plan_payments(payments: Any) -> List[Dict[str, Any]]:
    """Validate installment entries and convert them to their stored JSON form."""
    if not isinstance(payments, list) or not payments:
        raise ValidationError(
            "At least one payment is required",
            fields=[FieldError(field='payments', code=ErrorCode.FIELD_REQUIRED.value, message='At least one payment is required')],
        )

    Trigger = PaymentPlanTemplate.PaymentTrigger
    errors = []
    cleaned = []
    total = Decimal('0')
    for i, payment in enumerate(payments):
        prefix = f'payments.{i}'
        if not isinstance(payment, dict):
            errors.append(FieldError(field=prefix, code=ErrorCode.FIELD_INVALID_FORMAT.value, message='Payment must be an object'))
            continue
        try:
            percentage = Decimal(str(payment.get('percentage')))
        except InvalidOperation:
            errors.append(FieldError(field=f'{prefix}.percentage', code=ErrorCode.FIELD_INVALID_FORMAT.value, message='Percentage must be a number'))
            continue
        if not Decimal('0') < percentage <= Decimal('100'):
            errors.append(FieldError(field=f'{prefix}.percentage', code=ErrorCode.FIELD_OUT_OF_RANGE.value, message='Percentage must be above 0 and at most 100'))
        trigger = payment.get('trigger', Trigger.DATE)
        if trigger not in Trigger.values:
            errors.append(FieldError(field=f'{prefix}.trigger', code=ErrorCode.FIELD_INVALID.value, message=f"Unknown trigger '{trigger}'"))
        days = payment.get('days_after_start')
        if days is not None and (not isinstance(days, int) or days < 0):
            errors.append(FieldError(field=f'{prefix}.days_after_start', code=ErrorCode.FIELD_OUT_OF_RANGE.value, message='Days after start must be a whole number of days'))

        entry = {'percentage': str(percentage), 'trigger': trigger, 'label': str(payment.get('label') or '')}
        if payment.get('milestone_id') is not None:
            entry['milestone_id'] = payment['milestone_id']
        if days is not None:
            entry['days_after_start'] = days
        cleaned.append(entry)
        total += percentage

    if not errors and total != Decimal('100'):
        errors.append(FieldError(field='payments', code=ErrorCode.FIELD_INVALID.value, message=f'Percentages must add up to 100, got {total}'))
    if errors:
        raise ValidationError("Invalid payment plan", fields=errors)
    return cleaned


class PaymentPlanService:
    """Payment plan templates and the installment invoices generated from them."""

    @staticmethod
    @transaction.atomic
    def create_template(name: str, payments: List[Dict[str, Any]], description: str = "",
                        is_default: bool = False) -> PaymentPlanTemplate:
        if not str(name or '').strip():
            raise ValidationError(
                "Name is required",
                fields=[FieldError(field='name', code=ErrorCode.FIELD_REQUIRED.value, message='Name is required')],
            )
        cleaned = _plan_payments(payments)
        if is_default:
            PaymentPlanTemplate.objects.filter(is_default=True).update(is_default=False)

        template = PaymentPlanTemplate.objects.create(
            name=name.strip(),
            description=description,
            payments=cleaned,
            is_default=is_default,
        )
        logger.info(f"Created payment plan template {template.id} '{template.name}' with {len(cleaned)} payment(s)")
        return template

    @staticmethod
    def delete_template(template: PaymentPlanTemplate):
        """Generated invoices keep existing and lose the link."""
        template_id = template.id
        template.delete()
        logger.info(f"Deleted payment plan template {template_id}")

    @staticmethod
    def split_amount(total: Decimal, payments: List[Dict[str, Any]]) -> List[Decimal]:
        """Installment amounts in cents; the last one absorbs rounding so they sum to ``total``."""
        amounts = [quantize_money(total * Decimal(p['percentage']) / Decimal('100')) for p in payments[:-1]]
        amounts.append(total - sum(amounts, Decimal('0.00')))
        return amounts

    @staticmethod
    def due_days(payment: Dict[str, Any]) -> int:
        if payment['trigger'] == PaymentPlanTemplate.PaymentTrigger.DATE and payment.get('days_after_start') is not None:
            return payment['days_after_start']
        return PaymentPlanTemplate.DUE_DAYS.get(payment['trigger'], PaymentPlanTemplate.DEFAULT_DUE_DAYS)

    @classmethod
    @transaction.atomic
    def generate_from_plan(cls, template: PaymentPlanTemplate, client, total_amount, *, project=None,
                           user=None, today: Optional[date] = None) -> List[Invoice]:
        """
        Create one draft invoice per installment of ``template``.

        Upfront installments are deposit invoices, so their payments can later
        be drawn as credits. A plan is generated at most once per project.
        """
        today = today or timezone.localdate()
        template = PaymentPlanTemplate.objects.select_for_update().get(pk=template.pk)

        try:
            total = quantize_money(total_amount)
        except (InvalidOperation, TypeError, ValueError):
            total = Decimal('0')
        if total <= 0:
            raise ValidationError(
                "Total amount must be greater than zero",
                fields=[FieldError(field='total_amount', code=ErrorCode.FIELD_OUT_OF_RANGE.value, message='Total amount must be greater than zero')],
                code=ErrorCode.INVALID_AMOUNT,
            )
        if project is not None and project.client_id != client.id:
            raise ValidationError(
                "Project belongs to a different client",
                fields=[FieldError(field='project', code=ErrorCode.FIELD_INVALID.value, message='Project belongs to a different client')],
            )
        if project is not None and Invoice.all_objects.filter(project=project, payment_plan=template).exists():
            raise ConflictError(
                f"Payment plan '{template.name}' was already generated for project {project.id}",
                code=ErrorCode.DUPLICATE_GENERATION,
            )

        Trigger = PaymentPlanTemplate.PaymentTrigger
        invoices = []
        for payment, amount in zip(template.payments, cls.split_amount(total, template.payments)):
            milestone = None
            if payment['trigger'] == Trigger.MILESTONE and payment.get('milestone_id') and project is not None:
                milestone = Milestone.objects.filter(pk=payment['milestone_id'], project=project).first()

            invoice = InvoiceService.create_invoice(
                client,
                [{'description': payment['label'] or f"Payment ({payment['percentage']}%)", 'quantity': 1, 'unit_rate': amount}],
                user=user,
                project=project,
                milestone=milestone,
                issued_date=today,
                due_date=today + timedelta(days=cls.due_days(payment)),
                invoice_type=Invoice.InvoiceType.DEPOSIT if payment['trigger'] == Trigger.UPFRONT else Invoice.InvoiceType.STANDARD,
                notes=f"Generated from payment plan: {template.name}",
                terms="Payment due by the date specified above.",
                payment_plan=template,
            )
            invoices.append(invoice)

        logger.info(f"Generated {len(invoices)} invoice(s) from payment plan {template.id} for client {client.id}, total {total}")
        return invoices


def process_due(today: Optional[date] = None) -> Dict[str, Dict[str, int]]:
    """Generation step of the daily tick: one-off schedules first, then recurring series."""
    today = today or timezone.localdate()
    scheduled = ScheduledInvoiceService.process_scheduled(today)
    recurring = RecurringInvoiceService.process_recurring(today)
    logger.info(f"Generation complete for {today}: scheduled={scheduled} recurring={recurring}")
    return {'scheduled': scheduled, 'recurring': recurring}


def preview_dates(series: RecurringInvoice, count: int = 6) -> List[date]:
    dates = []
    current = series.next_generation_date
    for _ in range(count):
        if series.end_date and current > series.end_date:
            break
        dates.append(current)
        current = series.calculate_next_generation_date(current)
    return dates


def generation_status(series: RecurringInvoice) -> Tuple[bool, str]:
    if not series.is_active:
        return False, "paused" if series.paused_at else "ended"
    return True, "active"
