from datetime import timedelta
from decimal import Decimal

import factory
from django.contrib.auth import get_user_model
from django.utils import timezone

from billing.models import Client, Invoice, Milestone, Project, WorkflowTrigger
from billing.services import InvoiceService


class UserFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = get_user_model()

    username = factory.Sequence(lambda n: f"user{n}")
    email = factory.LazyAttribute(lambda o: f"{o.username}@example.com")
    password = factory.django.Password("testpass123")


class ClientFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = Client

    name = factory.Sequence(lambda n: f"Client {n}")
    email = factory.Sequence(lambda n: f"client{n}@example.com")
    company_name = factory.LazyAttribute(lambda o: f"{o.name} Ltd")


class ProjectFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = Project

    client = factory.SubFactory(ClientFactory)
    name = factory.Sequence(lambda n: f"Project {n}")
    status = Project.Status.ACTIVE


class MilestoneFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = Milestone

    project = factory.SubFactory(ProjectFactory)
    title = factory.Sequence(lambda n: f"Milestone {n}")
    amount = Decimal("500.00")


class WorkflowTriggerFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = WorkflowTrigger

    name = factory.Sequence(lambda n: f"Trigger {n}")
    event_type = "invoice.paid"
    conditions = factory.LazyFunction(list)
    actions = factory.LazyFunction(lambda: [{"type": "notify", "config": {"message": "Invoice {{invoice_number}} paid"}}])


def line_items(*amounts):
    amounts = amounts or ("100.00",)
    return [
        {"description": f"Item {i + 1}", "quantity": "1", "unit_rate": str(amount)}
        for i, amount in enumerate(amounts)
    ]


def make_invoice(client=None, amounts=("100.00",), **kwargs) -> Invoice:
    """Draft invoice built through the service so totals and numbering are real."""
    client = client or ClientFactory()
    return InvoiceService.create_invoice(client, line_items(*amounts), **kwargs)


def make_sent_invoice(client=None, amounts=("100.00",), **kwargs) -> Invoice:
    invoice = make_invoice(client, amounts, **kwargs)
    return InvoiceService.send_invoice(invoice)


def make_overdue_invoice(days=10, client=None, amounts=("100.00",), **kwargs) -> Invoice:
    today = timezone.localdate()
    due = today - timedelta(days=days)
    invoice = make_invoice(client, amounts, issued_date=due - timedelta(days=30), due_date=due, **kwargs)
    return InvoiceService.send_invoice(invoice)
