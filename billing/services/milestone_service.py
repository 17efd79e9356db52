import logging

from django.db import transaction
from django.utils import timezone

from ..models import Milestone
from ..validation import ConflictError, ErrorCode
from ..workflow.engine import emit_on_commit
from ..workflow.events import EventType

logger = logging.getLogger(__name__)


class MilestoneService:
    @staticmethod
    @transaction.atomic
    def complete(milestone: Milestone, user=None) -> Milestone:
        milestone = Milestone.objects.select_for_update().select_related('project__client').get(pk=milestone.pk)
        if milestone.is_completed:
            raise ConflictError(f"Milestone '{milestone.title}' is already completed", code=ErrorCode.INVALID_STATE_TRANSITION)

        milestone.is_completed = True
        milestone.completed_at = timezone.now()
        milestone.save(update_fields=['is_completed', 'completed_at'])

        client = milestone.project.client
        emit_on_commit(EventType.MILESTONE_COMPLETED, {
            'milestone_id': milestone.id,
            'project_id': milestone.project_id,
            'client_id': client.id,
            'title': milestone.title,
            'amount': str(milestone.amount),
            'has_payment_deliverable': milestone.has_payment_deliverable,
            'client_email': client.email,
        }, triggered_by=user.get_username() if user else "system")

        logger.info(f"Milestone {milestone.id} completed on project {milestone.project_id}")
        return milestone
