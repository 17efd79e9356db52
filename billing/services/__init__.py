from .cleanup_service import CleanupService
from .email_service import EmailService
from .invoice_service import InvoiceService
from .late_fee_service import LateFeePolicy, LateFeeService, calculate_late_fee
from .ledger_service import LedgerService
from .milestone_service import MilestoneService
from .recurring_service import PaymentPlanService, RecurringInvoiceService, ScheduledInvoiceService, process_due
from .reminder_service import ReminderService
from .scheduler_service import SchedulerService
from .webhook_service import WebhookService, sign, verify_signature

__all__ = [
    'CleanupService',
    'EmailService',
    'InvoiceService',
    'LateFeePolicy',
    'LateFeeService',
    'calculate_late_fee',
    'LedgerService',
    'MilestoneService',
    'PaymentPlanService',
    'PaymentPlanService',
    'RecurringInvoiceService',
    'ScheduledInvoiceService',
    'process_due',
    'ReminderService',
    'SchedulerService',
    'WebhookService',
    'sign',
    'verify_signature',
]
