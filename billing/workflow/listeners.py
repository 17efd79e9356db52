"""In-code listeners registered on the workflow engine at app start."""

import logging

from .engine import engine
from .events import BaseEvent, EventType

logger = logging.getLogger(__name__)


def generate_milestone_invoices(event_type: str, event: BaseEvent):
    """Turn pending milestone-triggered schedules into invoices."""
    from billing.models import Milestone
    from billing.services.recurring_service import ScheduledInvoiceService

    milestone = Milestone.objects.filter(pk=event.get_field("milestone_id")).first()
    if milestone is None:
        logger.warning(f"Milestone {event.get_field('milestone_id')} vanished before its schedules ran")
        return
    ScheduledInvoiceService.generate_for_milestone(milestone)


def register_default_listeners():
    engine.on(EventType.MILESTONE_COMPLETED, generate_milestone_invoices)
