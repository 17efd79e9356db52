import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Dict, Optional

from django.db import transaction
from django.utils import timezone

from ..models import Invoice, InvoiceActivity, quantize_money
from .invoice_service import InvoiceService

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LateFeePolicy:
    kind: str = Invoice.LateFeeType.NONE
    rate: Decimal = Decimal('0')
    flat_amount: Decimal = Decimal('0.00')
    grace_days: int = 0

    @classmethod
    def for_invoice(cls, invoice: Invoice) -> "LateFeePolicy":
        return cls(
            kind=invoice.late_fee_type,
            rate=invoice.late_fee_rate,
            flat_amount=invoice.late_fee_flat_amount,
            grace_days=invoice.late_fee_grace_days,
        )


def calculate_late_fee(days_overdue: int, policy: LateFeePolicy, outstanding: Decimal) -> Decimal:
    """
    Fee owed for an invoice ``days_overdue`` days past due.

    ``rate`` is a fraction (0.05 is 5%). The daily variant accrues linearly
    on the outstanding balance and is not compounded.
    """
    if policy.kind == Invoice.LateFeeType.NONE or days_overdue <= policy.grace_days or outstanding <= 0:
        return Decimal('0.00')

    if policy.kind == Invoice.LateFeeType.FLAT:
        fee = policy.flat_amount
    elif policy.kind == Invoice.LateFeeType.PERCENTAGE:
        fee = policy.rate * outstanding
    elif policy.kind == Invoice.LateFeeType.DAILY_PERCENTAGE:
        fee = policy.rate * days_overdue * outstanding
    else:
        raise ValueError(f"Unknown late fee type '{policy.kind}'")

    return quantize_money(fee)


class LateFeeService:
    @staticmethod
    @transaction.atomic
    def apply_late_fee(invoice: Invoice, today: Optional[date] = None, user=None) -> Optional[Decimal]:
        """Apply the invoice's late fee once. Returns the fee, or None when nothing was applied."""
        today = today or timezone.localdate()
        invoice = InvoiceService.lock(invoice)

        if invoice.late_fee_applied_at:
            return None
        if invoice.status not in Invoice.OPEN_STATUSES:
            return None

        outstanding = invoice.total - invoice.payment_history_total()
        fee = calculate_late_fee(invoice.days_overdue(today), LateFeePolicy.for_invoice(invoice), outstanding)
        if fee <= 0:
            return None

        invoice.late_fee_amount = fee
        invoice.late_fee_applied_at = timezone.now()
        invoice.recalculate_totals()
        invoice.save()

        InvoiceService.log_activity(
            invoice, user, InvoiceActivity.ActionType.LATE_FEE_APPLIED,
            f"Late fee of {fee} applied ({invoice.late_fee_type}, {invoice.days_overdue(today)} days overdue)",
            metadata={'fee': str(fee), 'days_overdue': invoice.days_overdue(today), 'policy': invoice.late_fee_type},
        )
        logger.info(f"Late fee {fee} applied to invoice {invoice.id}; new total {invoice.total}")
        return fee

    @classmethod
    def process_late_fees(cls, today: Optional[date] = None) -> Dict[str, int]:
        today = today or timezone.localdate()
        results = {'total': 0, 'applied': 0, 'skipped': 0, 'failed': 0}

        candidates = Invoice.objects.filter(
            status__in=Invoice.OPEN_STATUSES,
            due_date__lt=today,
            late_fee_applied_at__isnull=True,
        ).exclude(late_fee_type=Invoice.LateFeeType.NONE)

        for invoice in candidates:
            results['total'] += 1
            try:
                fee = cls.apply_late_fee(invoice, today=today)
                if fee is None:
                    results['skipped'] += 1
                else:
                    results['applied'] += 1
            except Exception as e:
                logger.error(f"Late fee failed for invoice {invoice.id}: {e}")
                results['failed'] += 1

        logger.info(f"Late fee run complete: {results}")
        return results
