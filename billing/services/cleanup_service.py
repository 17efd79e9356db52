import logging
from datetime import timedelta
from typing import Dict

from django.db import transaction
from django.db.models import Exists, OuterRef
from django.utils import timezone

from ..models import (
    Client,
    InteractionEvent,
    Invoice,
    InvoiceCredit,
    InvoicePayment,
    PageView,
    Project,
    Task,
)
from ..validation import ConflictError, ErrorCode
from .invoice_service import InvoiceService

logger = logging.getLogger(__name__)


class CleanupService:
    """Trash handling for collaborators and retention purges run by the scheduler."""

    @staticmethod
    @transaction.atomic
    def soft_delete(instance):
        if isinstance(instance, Invoice):
            return InvoiceService.trash(instance)
        if isinstance(instance, Client) and Invoice.objects.filter(client=instance, status__in=Invoice.OPEN_STATUSES).exists():
            raise ConflictError(
                "Client has open invoices; void or settle them before deleting the client",
                code=ErrorCode.RESOURCE_CONFLICT,
            )
        instance.deleted_at = timezone.now()
        instance.save(update_fields=['deleted_at'])
        logger.info(f"{instance.__class__.__name__} {instance.pk} moved to trash")
        return instance

    @staticmethod
    @transaction.atomic
    def restore(instance):
        if isinstance(instance, Invoice):
            return InvoiceService.restore(instance)
        instance.deleted_at = None
        instance.save(update_fields=['deleted_at'])
        logger.info(f"{instance.__class__.__name__} {instance.pk} restored from trash")
        return instance

    @staticmethod
    def purge_expired(retention_days: int = 30) -> Dict[str, int]:
        """
        Hard-delete rows that have sat in the trash longer than ``retention_days``.

        Invoices with payments or credits are kept: the payment history is
        append-only and must survive.
        """
        cutoff = timezone.now() - timedelta(days=retention_days)
        results = {}

        with transaction.atomic():
            invoices = Invoice.all_objects.filter(deleted_at__lt=cutoff).exclude(
                Exists(InvoicePayment.objects.filter(invoice=OuterRef('pk')))
            ).exclude(
                Exists(InvoiceCredit.objects.filter(source_invoice=OuterRef('pk')))
            ).exclude(
                Exists(InvoiceCredit.objects.filter(target_invoice=OuterRef('pk')))
            )
            results['invoices'] = invoices.delete()[1].get('billing.Invoice', 0)
            results['tasks'] = Task.all_objects.filter(deleted_at__lt=cutoff).delete()[1].get('billing.Task', 0)
            results['projects'] = Project.all_objects.filter(deleted_at__lt=cutoff).delete()[1].get('billing.Project', 0)

            # Clients still referenced by retained invoices stay in the trash
            clients = Client.all_objects.filter(deleted_at__lt=cutoff).exclude(
                Exists(Invoice.all_objects.filter(client=OuterRef('pk')))
            )
            results['clients'] = clients.delete()[1].get('billing.Client', 0)

        logger.info(f"Purged trash older than {retention_days} days: {results}")
        return results

    @staticmethod
    def prune_analytics(retention_days: int = 365) -> Dict[str, int]:
        cutoff = timezone.now() - timedelta(days=retention_days)
        results = {
            'page_views': PageView.objects.filter(created_at__lt=cutoff).delete()[0],
            'interaction_events': InteractionEvent.objects.filter(created_at__lt=cutoff).delete()[0],
        }
        logger.info(f"Pruned analytics older than {retention_days} days: {results}")
        return results
