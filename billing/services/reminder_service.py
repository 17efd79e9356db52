import logging
from datetime import date, timedelta
from typing import Dict, Optional

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from ..models import Invoice, InvoiceActivity, InvoiceReminder
from .email_service import EmailService

logger = logging.getLogger(__name__)


REMINDER_SUBJECTS = {
    InvoiceReminder.ReminderType.UPCOMING: "Invoice {number} is due in 3 days",
    InvoiceReminder.ReminderType.DUE: "Invoice {number} is due today",
    InvoiceReminder.ReminderType.OVERDUE_3: "Invoice {number} is 3 days overdue",
    InvoiceReminder.ReminderType.OVERDUE_7: "Invoice {number} is 7 days overdue",
    InvoiceReminder.ReminderType.OVERDUE_14: "Invoice {number} is 14 days overdue",
    InvoiceReminder.ReminderType.OVERDUE_30: "Invoice {number} is 30 days overdue",
}


class ReminderService:
    @staticmethod
    def schedule_for_invoice(invoice: Invoice) -> int:
        """Create the standard reminder ladder for a sent invoice. Existing rows are kept."""
        created = 0
        for reminder_type, offset in InvoiceReminder.OFFSETS.items():
            _, was_created = InvoiceReminder.objects.get_or_create(
                invoice=invoice,
                reminder_type=reminder_type,
                defaults={'scheduled_date': invoice.due_date + timedelta(days=offset)},
            )
            if was_created:
                created += 1
        logger.info(f"Scheduled {created} reminders for invoice {invoice.id}")
        return created

    @staticmethod
    def skip_pending(invoice: Invoice) -> int:
        skipped = InvoiceReminder.objects.filter(
            invoice=invoice,
            status=InvoiceReminder.Status.PENDING,
        ).update(status=InvoiceReminder.Status.SKIPPED)
        if skipped:
            logger.info(f"Skipped {skipped} pending reminders for invoice {invoice.id}")
        return skipped

    @staticmethod
    def render(reminder: InvoiceReminder) -> Dict[str, str]:
        invoice = reminder.invoice
        subject = REMINDER_SUBJECTS[reminder.reminder_type].format(number=invoice.invoice_number)
        body = (
            f"Hello {invoice.client.name},\n\n"
            f"This is a reminder about invoice {invoice.invoice_number}.\n"
            f"Amount due: {invoice.outstanding}\n"
            f"Due date: {invoice.due_date.isoformat()}\n"
        )
        if invoice.late_fee_amount:
            body += f"Late fee included: {invoice.late_fee_amount}\n"
        return {'subject': subject, 'body': body}

    @classmethod
    def process_due_reminders(cls, today: Optional[date] = None) -> Dict[str, int]:
        """Send every pending reminder scheduled on or before ``today``."""
        today = today or timezone.localdate()
        results = {'total': 0, 'sent': 0, 'skipped': 0, 'failed': 0}

        due = InvoiceReminder.objects.filter(
            status=InvoiceReminder.Status.PENDING,
            scheduled_date__lte=today,
        ).select_related('invoice', 'invoice__client')

        for reminder in due:
            results['total'] += 1
            invoice = reminder.invoice

            if invoice.status not in Invoice.OPEN_STATUSES or invoice.deleted_at:
                reminder.status = InvoiceReminder.Status.SKIPPED
                reminder.save(update_fields=['status'])
                results['skipped'] += 1
                continue

            message = cls.render(reminder)
            sent = EmailService.send(
                to=invoice.client.email,
                subject=message['subject'],
                body=message['body'],
                max_attempts=settings.BILLING_EMAIL_MAX_ATTEMPTS,
            )

            with transaction.atomic():
                if sent:
                    reminder.status = InvoiceReminder.Status.SENT
                    reminder.sent_at = timezone.now()
                    reminder.save(update_fields=['status', 'sent_at'])
                    InvoiceActivity.objects.create(
                        invoice=invoice,
                        action=InvoiceActivity.ActionType.REMINDER_SENT,
                        description=f"Reminder '{reminder.reminder_type}' sent to {invoice.client.email}",
                        metadata={'reminder_type': reminder.reminder_type},
                        is_system=True,
                    )
                    results['sent'] += 1
                else:
                    reminder.status = InvoiceReminder.Status.FAILED
                    reminder.error_message = "Email delivery failed after retries"
                    reminder.save(update_fields=['status', 'error_message'])
                    results['failed'] += 1

        logger.info(f"Reminder run complete: {results}")
        return results
