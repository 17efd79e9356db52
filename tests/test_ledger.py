import random
import threading
from datetime import timedelta
from decimal import Decimal

import pytest
from django.db import DatabaseError, connection
from django.utils import timezone

from billing.models import AppendOnlyError, Invoice, InvoiceActivity, InvoicePayment, WorkflowEventLog
from billing.services import LedgerService
from billing.validation import ConflictError, ErrorCode, ValidationError
from tests.factories import ClientFactory, make_invoice, make_sent_invoice


def paid_deposit(client, amount="1000.00"):
    deposit = make_sent_invoice(client, amounts=(amount,), invoice_type=Invoice.InvoiceType.DEPOSIT)
    LedgerService.record_payment(deposit, Decimal(amount))
    deposit.refresh_from_db()
    return deposit


@pytest.mark.django_db
class TestRecordPayment:
    def test_partial_then_paid(self, django_capture_on_commit_callbacks):
        invoice = make_sent_invoice(amounts=("500.00",))

        LedgerService.record_payment(invoice, Decimal("300.00"))
        invoice.refresh_from_db()
        assert invoice.status == Invoice.Status.PARTIAL
        assert invoice.amount_paid == Decimal("300.00")

        with django_capture_on_commit_callbacks(execute=True):
            LedgerService.record_payment(invoice, Decimal("200.00"))

        invoice.refresh_from_db()
        assert invoice.status == Invoice.Status.PAID
        assert invoice.amount_paid == Decimal("500.00")
        assert invoice.paid_at is not None
        assert WorkflowEventLog.objects.filter(event_type="invoice.paid", entity_id=str(invoice.id)).count() == 1

    def test_full_payment_writes_receipt_activity(self):
        invoice = make_sent_invoice()
        LedgerService.record_payment(invoice, invoice.total)
        assert invoice.activities.filter(action=InvoiceActivity.ActionType.RECEIPT_GENERATED).exists()

    def test_overpayment_is_rejected_without_mutation(self):
        invoice = make_sent_invoice(amounts=("500.00",))
        LedgerService.record_payment(invoice, Decimal("300.00"))

        with pytest.raises(ConflictError) as exc_info:
            LedgerService.record_payment(invoice, Decimal("250.00"))

        assert exc_info.value.code == ErrorCode.OVERPAYMENT.value
        invoice.refresh_from_db()
        assert invoice.amount_paid == Decimal("300.00")
        assert invoice.status == Invoice.Status.PARTIAL
        assert invoice.payments.count() == 1

    @pytest.mark.parametrize("amount", ["0", "-5.00", "abc"])
    def test_invalid_amounts(self, amount):
        invoice = make_sent_invoice()
        with pytest.raises(ValidationError) as exc_info:
            LedgerService.record_payment(invoice, amount)
        assert exc_info.value.code == ErrorCode.INVALID_AMOUNT.value
        assert invoice.payments.count() == 0

    def test_draft_invoice_rejects_payment(self):
        invoice = make_invoice()
        with pytest.raises(ConflictError) as exc_info:
            LedgerService.record_payment(invoice, Decimal("10.00"))
        assert exc_info.value.code == ErrorCode.INVALID_STATE_TRANSITION.value

    def test_paid_invoice_rejects_payment(self):
        invoice = make_sent_invoice()
        LedgerService.record_payment(invoice, invoice.total)
        with pytest.raises(ConflictError) as exc_info:
            LedgerService.record_payment(invoice, Decimal("1.00"))
        assert exc_info.value.code == ErrorCode.INVOICE_ALREADY_PAID.value

    def test_credit_method_is_reserved(self):
        invoice = make_sent_invoice()
        with pytest.raises(ValidationError):
            LedgerService.record_payment(invoice, Decimal("10.00"), method=InvoicePayment.Method.CREDIT)

    def test_amount_paid_never_exceeds_total(self):
        rng = random.Random(20240601)
        for _ in range(5):
            invoice = make_sent_invoice(amounts=(str(rng.randint(50, 500)) + ".00",))
            for _ in range(12):
                amount = Decimal(rng.randint(1, 20000)) / 100
                try:
                    LedgerService.record_payment(invoice, amount)
                except ConflictError:
                    pass
                invoice.refresh_from_db()
                assert invoice.amount_paid <= invoice.total
                assert invoice.amount_paid == invoice.payment_history_total()
                if invoice.status == Invoice.Status.PAID:
                    assert invoice.amount_paid == invoice.total
                    break


@pytest.mark.django_db
class TestPaymentHistory:
    def test_payments_cannot_be_edited(self):
        invoice = make_sent_invoice()
        payment = LedgerService.record_payment(invoice, Decimal("10.00"))
        payment.amount = Decimal("5.00")
        with pytest.raises(AppendOnlyError):
            payment.save()

    def test_payments_cannot_be_deleted(self):
        invoice = make_sent_invoice()
        payment = LedgerService.record_payment(invoice, Decimal("10.00"))
        with pytest.raises(AppendOnlyError):
            payment.delete()


@pytest.mark.django_db
class TestApplyCredit:
    def test_credit_pays_target(self):
        client = ClientFactory()
        deposit = paid_deposit(client, "1000.00")
        target = make_sent_invoice(client, amounts=("400.00",))

        credit = LedgerService.apply_credit(deposit, target, Decimal("400.00"))

        target.refresh_from_db()
        assert target.status == Invoice.Status.PAID
        assert credit.payment.method == InvoicePayment.Method.CREDIT
        assert LedgerService.available_credit(deposit) == Decimal("600.00")

    def test_credits_drawn_never_exceed_deposit(self):
        client = ClientFactory()
        deposit = paid_deposit(client, "500.00")
        first = make_sent_invoice(client, amounts=("300.00",))
        second = make_sent_invoice(client, amounts=("300.00",))

        LedgerService.apply_credit(deposit, first, Decimal("300.00"))
        with pytest.raises(ConflictError) as exc_info:
            LedgerService.apply_credit(deposit, second, Decimal("300.00"))

        assert exc_info.value.code == ErrorCode.INSUFFICIENT_CREDIT.value
        second.refresh_from_db()
        assert second.amount_paid == Decimal("0.00")
        assert LedgerService.available_credit(deposit) == Decimal("200.00")

    def test_partial_credit_leaves_target_partial(self):
        client = ClientFactory()
        deposit = paid_deposit(client, "100.00")
        target = make_sent_invoice(client, amounts=("300.00",))
        LedgerService.apply_credit(deposit, target, Decimal("100.00"))
        target.refresh_from_db()
        assert target.status == Invoice.Status.PARTIAL

    def test_credit_larger_than_target_balance_is_overpayment(self):
        client = ClientFactory()
        deposit = paid_deposit(client, "1000.00")
        target = make_sent_invoice(client, amounts=("100.00",))
        with pytest.raises(ConflictError) as exc_info:
            LedgerService.apply_credit(deposit, target, Decimal("150.00"))
        assert exc_info.value.code == ErrorCode.OVERPAYMENT.value
        assert deposit.credits_drawn.count() == 0

    def test_source_must_be_paid_deposit(self):
        client = ClientFactory()
        unpaid_deposit = make_sent_invoice(client, invoice_type=Invoice.InvoiceType.DEPOSIT)
        standard = make_sent_invoice(client)
        standard_paid = make_sent_invoice(client)
        LedgerService.record_payment(standard_paid, standard_paid.total)
        target = make_sent_invoice(client)

        for source in (unpaid_deposit, standard_paid):
            with pytest.raises(ValidationError) as exc_info:
                LedgerService.apply_credit(source, target, Decimal("10.00"))
            assert exc_info.value.code == ErrorCode.INVALID_CREDIT_SOURCE.value
        assert standard.payments.count() == 0

    def test_target_cannot_be_deposit_or_source(self):
        client = ClientFactory()
        deposit = paid_deposit(client)
        other_deposit = make_sent_invoice(client, invoice_type=Invoice.InvoiceType.DEPOSIT)
        with pytest.raises(ValidationError):
            LedgerService.apply_credit(deposit, other_deposit, Decimal("10.00"))
        with pytest.raises(ValidationError):
            LedgerService.apply_credit(deposit, deposit, Decimal("10.00"))

    def test_other_clients_invoice_rejected(self):
        deposit = paid_deposit(ClientFactory())
        target = make_sent_invoice(ClientFactory())
        with pytest.raises(ValidationError):
            LedgerService.apply_credit(deposit, target, Decimal("10.00"))

    def test_available_deposits(self):
        client = ClientFactory()
        deposit = paid_deposit(client, "800.00")
        target = make_sent_invoice(client, amounts=("300.00",))
        LedgerService.apply_credit(deposit, target, Decimal("300.00"))

        deposits = LedgerService.available_deposits(client)
        assert len(deposits) == 1
        assert deposits[0]["invoice_id"] == deposit.id
        assert deposits[0]["available_amount"] == Decimal("500.00")
        assert deposits[0]["amount_applied"] == Decimal("300.00")


@pytest.mark.django_db(transaction=True)
class TestConcurrentCredit:
    def test_parallel_draws_cannot_overspend_a_deposit(self):
        client = ClientFactory()
        deposit = paid_deposit(client, "500.00")
        targets = [make_sent_invoice(client, amounts=("300.00",)) for _ in range(2)]
        barrier = threading.Barrier(len(targets))
        credits, failures = [], []

        def draw(target_id):
            try:
                source = Invoice.objects.get(pk=deposit.pk)
                target = Invoice.objects.get(pk=target_id)
                barrier.wait(timeout=5)
                credits.append(LedgerService.apply_credit(source, target, Decimal("300.00")))
            except (ConflictError, DatabaseError) as exc:
                failures.append(exc)
            finally:
                connection.close()

        workers = [threading.Thread(target=draw, args=(target.pk,)) for target in targets]
        for worker in workers:
            worker.start()
        for worker in workers:
            worker.join(timeout=30)

        assert len(credits) <= 1
        assert len(credits) + len(failures) == 2
        for exc in failures:
            if isinstance(exc, ConflictError):
                assert exc.code == ErrorCode.INSUFFICIENT_CREDIT.value
        deposit.refresh_from_db()
        drawn = sum((credit.amount for credit in deposit.credits_drawn.all()), Decimal("0.00"))
        assert drawn <= deposit.amount_paid
        assert LedgerService.available_credit(deposit) >= Decimal("0.00")


@pytest.mark.django_db
class TestAgingReport:
    def test_buckets(self):
        today = timezone.localdate()
        client = ClientFactory()

        def open_invoice(days_past_due, amount):
            due = today - timedelta(days=days_past_due)
            return make_sent_invoice(client, amounts=(amount,), issued_date=due - timedelta(days=30), due_date=due)

        open_invoice(-5, "100.00")
        open_invoice(10, "200.00")
        open_invoice(45, "300.00")
        open_invoice(75, "400.00")
        partial = open_invoice(120, "500.00")
        LedgerService.record_payment(partial, Decimal("100.00"))
        paid = open_invoice(20, "50.00")
        LedgerService.record_payment(paid, paid.total)

        report = LedgerService.aging_report(today)

        assert report["current"] == {"count": 1, "outstanding": Decimal("100.00")}
        assert report["1_30"] == {"count": 1, "outstanding": Decimal("200.00")}
        assert report["31_60"] == {"count": 1, "outstanding": Decimal("300.00")}
        assert report["61_90"] == {"count": 1, "outstanding": Decimal("400.00")}
        assert report["90_plus"] == {"count": 1, "outstanding": Decimal("400.00")}
