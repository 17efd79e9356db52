"""
Daily and high-frequency scheduler ticks.

A tick claims a persisted per-job lock, runs its steps in a fixed order and
records a summary. Every step is idempotent, so a tick that crashed halfway
can simply be run again.
"""

import logging
import uuid
from datetime import date, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from django.conf import settings
from django.db.models import Q
from django.utils import timezone

from billingengine.middleware import bind_request_id

from ..models import Invoice, InvoiceReminder, RecurringInvoice, ScheduledInvoice, SchedulerRun, WebhookDelivery
from .cleanup_service import CleanupService
from .invoice_service import InvoiceService
from .late_fee_service import LateFeeService
from .recurring_service import process_due
from .reminder_service import ReminderService
from .webhook_service import WebhookService

logger = logging.getLogger(__name__)

DAILY_JOB = "daily"
REMINDERS_JOB = "reminders"


def _config(key: str):
    return settings.BILLING_SCHEDULER[key]


def _step_overdue(today: date):
    return InvoiceService.refresh_overdue_flags(today)


def _step_late_fees(today: date):
    return LateFeeService.process_late_fees(today)


def _step_generation(today: date):
    return process_due(today)


def _step_reminders(today: date):
    return ReminderService.process_due_reminders(today)


def _step_webhook_retries(today: date):
    return WebhookService.retry_due()


def _step_soft_delete_cleanup(today: date):
    return CleanupService.purge_expired(_config("SOFT_DELETE_RETENTION_DAYS"))


def _step_analytics_cleanup(today: date):
    return CleanupService.prune_analytics(_config("ANALYTICS_RETENTION_DAYS"))


Step = Tuple[str, str, Callable[[date], Any]]

DAILY_STEPS: List[Step] = [
    ("overdue", "OVERDUE_ENABLED", _step_overdue),
    ("late_fees", "LATE_FEES_ENABLED", _step_late_fees),
    ("generation", "GENERATION_ENABLED", _step_generation),
    ("reminders", "REMINDERS_ENABLED", _step_reminders),
    ("webhook_retries", "WEBHOOK_RETRIES_ENABLED", _step_webhook_retries),
    ("soft_delete_cleanup", "SOFT_DELETE_CLEANUP_ENABLED", _step_soft_delete_cleanup),
    ("analytics_cleanup", "ANALYTICS_CLEANUP_ENABLED", _step_analytics_cleanup),
]

REMINDER_STEPS: List[Step] = [
    ("reminders", "REMINDERS_ENABLED", _step_reminders),
    ("webhook_retries", "WEBHOOK_RETRIES_ENABLED", _step_webhook_retries),
]

JOBS = {
    DAILY_JOB: DAILY_STEPS,
    REMINDERS_JOB: REMINDER_STEPS,
}


class SchedulerService:

    @staticmethod
    def acquire_lock(job: str) -> bool:
        """
        Claim the job's run lock with a single conditional UPDATE.

        A lock held longer than LOCK_TIMEOUT_MINUTES belongs to a crashed run
        and is taken over.
        """
        run, _ = SchedulerRun.objects.get_or_create(job=job)
        now = timezone.now()
        stale_before = now - timedelta(minutes=_config("LOCK_TIMEOUT_MINUTES"))

        claimed = SchedulerRun.objects.filter(job=job).filter(
            Q(is_running=False) | Q(locked_at__lt=stale_before)
        ).update(is_running=True, locked_at=now, last_started_at=now)

        if claimed and run.is_running:
            logger.warning(f"Scheduler job '{job}' took over a stale lock from {run.locked_at}")
        return claimed == 1

    @staticmethod
    def release_lock(job: str, summary: Optional[Dict[str, Any]] = None):
        updates = {'is_running': False, 'locked_at': None, 'last_finished_at': timezone.now()}
        if summary is not None:
            updates['last_summary'] = summary
        SchedulerRun.objects.filter(job=job).update(**updates)

    @staticmethod
    def _run_step(name: str, func: Callable[[date], Any], today: date) -> Any:
        try:
            result = func(today)
        except Exception as e:
            logger.exception(f"Scheduler step '{name}' failed")
            return {'error': str(e)}
        logger.info(f"Scheduler step '{name}': {result}")
        return result

    @classmethod
    def run_tick(cls, today: Optional[date] = None, job: str = DAILY_JOB,
                 steps: Optional[List[str]] = None) -> Dict[str, Any]:
        """Run one tick of ``job``. ``steps`` restricts the run to the named steps."""
        today = today or timezone.localdate()
        request_id = f"sched-{uuid.uuid4()}"

        with bind_request_id(request_id):
            if not cls.acquire_lock(job):
                logger.warning(f"Scheduler job '{job}' is already running; skipping tick for {today}")
                return {'skipped': True, 'job': job, 'date': today.isoformat(), 'reason': 'already running'}

            summary: Dict[str, Any] = {'job': job, 'date': today.isoformat(), 'request_id': request_id, 'steps': {}}
            try:
                logger.info(f"Scheduler job '{job}' started for {today}")
                for name, flag, func in JOBS[job]:
                    if steps is not None and name not in steps:
                        continue
                    if not _config(flag):
                        summary['steps'][name] = {'disabled': True}
                        continue
                    summary['steps'][name] = cls._run_step(name, func, today)
                logger.info(f"Scheduler job '{job}' finished for {today}")
            finally:
                cls.release_lock(job, summary)

        return summary

    @classmethod
    def run_reminders_tick(cls, today: Optional[date] = None) -> Dict[str, Any]:
        return cls.run_tick(today, job=REMINDERS_JOB)

    @staticmethod
    def preview(today: Optional[date] = None) -> Dict[str, int]:
        """Counts of the work a daily tick would pick up, without changing anything."""
        today = today or timezone.localdate()
        now = timezone.now()
        return {
            'newly_overdue': Invoice.objects.filter(status__in=Invoice.OPEN_STATUSES, due_date__lt=today, is_overdue=False).count(),
            'late_fees': Invoice.objects.filter(
                status__in=Invoice.OPEN_STATUSES, due_date__lt=today, late_fee_applied_at__isnull=True,
            ).exclude(late_fee_type=Invoice.LateFeeType.NONE).count(),
            'scheduled': ScheduledInvoice.objects.filter(
                status=ScheduledInvoice.Status.PENDING,
                trigger_type=ScheduledInvoice.TriggerType.DATE,
                scheduled_date__lte=today,
            ).count(),
            'recurring': RecurringInvoice.objects.filter(
                is_active=True, next_generation_date__lte=today,
            ).exclude(end_date__lt=today).count(),
            'reminders': InvoiceReminder.objects.filter(status=InvoiceReminder.Status.PENDING, scheduled_date__lte=today).count(),
            'webhook_retries': WebhookDelivery.objects.filter(
                status__in=[WebhookDelivery.Status.PENDING, WebhookDelivery.Status.FAILED],
            ).filter(Q(next_retry_at__isnull=True) | Q(next_retry_at__lte=now)).count(),
        }
