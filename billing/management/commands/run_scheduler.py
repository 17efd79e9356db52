import logging
import time
from datetime import date

from django.core.management.base import BaseCommand, CommandError

from billing.services.scheduler_service import DAILY_JOB, JOBS, SchedulerService

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    help = "Run the billing scheduler: overdue flags, late fees, generation, reminders, webhook retries and cleanup"

    def add_arguments(self, parser):
        parser.add_argument(
            '--date',
            type=str,
            help='Target date for processing (YYYY-MM-DD). Defaults to today.',
        )
        parser.add_argument(
            '--job',
            choices=sorted(JOBS),
            default=DAILY_JOB,
            help='Which tick to run. "reminders" only sends reminders and retries webhooks.',
        )
        parser.add_argument(
            '--dry-run',
            action='store_true',
            help='Show what a daily tick would pick up without changing anything.',
        )
        parser.add_argument(
            '--loop',
            action='store_true',
            help='Keep running, one tick every --interval seconds.',
        )
        parser.add_argument(
            '--interval',
            type=int,
            default=3600,
            help='Seconds between ticks when --loop is set (default 3600).',
        )

    def handle(self, *args, **options):
        target_date = None
        if options['date']:
            try:
                target_date = date.fromisoformat(options['date'])
            except ValueError:
                raise CommandError(f"Invalid date format: {options['date']}")

        if options['dry_run']:
            counts = SchedulerService.preview(target_date)
            self.stdout.write(f"[DRY RUN] Work due{' on ' + target_date.isoformat() if target_date else ''}:")
            for name, count in counts.items():
                self.stdout.write(f"  - {name}: {count}")
            return

        if options['loop'] and options['interval'] <= 0:
            raise CommandError("--interval must be positive")

        while True:
            self._tick(options['job'], target_date)
            if not options['loop']:
                break
            time.sleep(options['interval'])

    def _tick(self, job, target_date):
        summary = SchedulerService.run_tick(target_date, job=job)

        if summary.get('skipped'):
            self.stdout.write(self.style.WARNING(f"Job '{job}' skipped: {summary['reason']}"))
            return

        failed = []
        for name, result in summary['steps'].items():
            if isinstance(result, dict) and 'error' in result:
                failed.append(name)
                self.stdout.write(self.style.ERROR(f"  {name}: {result['error']}"))
            else:
                self.stdout.write(f"  {name}: {result}")

        if failed:
            self.stdout.write(self.style.WARNING(
                f"Job '{job}' finished with {len(failed)} failed step(s): {', '.join(failed)}. Check logs for details."
            ))
        else:
            self.stdout.write(self.style.SUCCESS(f"Job '{job}' complete for {summary['date']}"))
