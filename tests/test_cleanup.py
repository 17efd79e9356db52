from datetime import timedelta
from decimal import Decimal

import pytest
from django.utils import timezone

from billing.models import Client, InteractionEvent, Invoice, PageView, Project, Task
from billing.services import CleanupService, LedgerService
from billing.validation import ConflictError
from tests.factories import ClientFactory, ProjectFactory, make_invoice, make_sent_invoice


def age(model, instance, days):
    model.all_objects.filter(pk=instance.pk).update(deleted_at=timezone.now() - timedelta(days=days))


@pytest.mark.django_db
class TestTrash:
    def test_soft_delete_and_restore_client(self):
        client = ClientFactory()
        CleanupService.soft_delete(client)

        assert not Client.objects.filter(pk=client.pk).exists()
        assert Client.all_objects.filter(pk=client.pk).exists()

        CleanupService.restore(client)
        assert Client.objects.filter(pk=client.pk).exists()

    def test_client_with_open_invoices_cannot_be_trashed(self):
        invoice = make_sent_invoice()
        with pytest.raises(ConflictError):
            CleanupService.soft_delete(invoice.client)

    def test_invoice_goes_through_invoice_trash(self):
        invoice = make_sent_invoice()
        CleanupService.soft_delete(invoice)
        invoice.refresh_from_db()
        assert invoice.status == Invoice.Status.VOID
        assert invoice.deleted_at is not None


@pytest.mark.django_db
class TestPurgeExpired:
    def test_purges_only_past_retention(self):
        old = make_invoice()
        recent = make_invoice()
        CleanupService.soft_delete(old)
        CleanupService.soft_delete(recent)
        age(Invoice, old, 45)

        results = CleanupService.purge_expired(retention_days=30)

        assert results["invoices"] == 1
        assert not Invoice.all_objects.filter(pk=old.pk).exists()
        assert Invoice.all_objects.filter(pk=recent.pk).exists()

    def test_invoice_with_payments_is_kept(self):
        invoice = make_sent_invoice(amounts=("200.00",))
        LedgerService.record_payment(invoice, Decimal("50.00"))
        CleanupService.soft_delete(invoice)
        age(Invoice, invoice, 90)

        assert CleanupService.purge_expired(30)["invoices"] == 0
        assert Invoice.all_objects.filter(pk=invoice.pk).exists()

    def test_client_referenced_by_invoices_is_kept(self):
        kept = ClientFactory()
        make_invoice(client=kept)
        gone = ClientFactory()
        for client in (kept, gone):
            CleanupService.soft_delete(client)
            age(Client, client, 60)

        results = CleanupService.purge_expired(30)

        assert results["clients"] == 1
        assert Client.all_objects.filter(pk=kept.pk).exists()
        assert not Client.all_objects.filter(pk=gone.pk).exists()

    def test_projects_and_tasks(self):
        project = ProjectFactory()
        task = Task.objects.create(project=ProjectFactory(), title="Chase signature")
        CleanupService.soft_delete(project)
        CleanupService.soft_delete(task)
        age(Project, project, 31)
        age(Task, task, 31)

        results = CleanupService.purge_expired(30)

        assert results["projects"] == 1
        assert results["tasks"] == 1


@pytest.mark.django_db
class TestPruneAnalytics:
    def test_prunes_old_rows(self):
        long_ago = timezone.now() - timedelta(days=400)
        PageView.objects.create(path="/old", created_at=long_ago)
        PageView.objects.create(path="/new")
        InteractionEvent.objects.create(event_type="click", created_at=long_ago)

        results = CleanupService.prune_analytics(365)

        assert results == {"page_views": 1, "interaction_events": 1}
        assert list(PageView.objects.values_list("path", flat=True)) == ["/new"]
