from __future__ import annotations

from datetime import timedelta
from decimal import Decimal, ROUND_HALF_UP

from dateutil.relativedelta import relativedelta
from django.conf import settings
from django.db import models
from django.utils import timezone

CENTS = Decimal('0.01')


def quantize_money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP)


class SoftDeleteManager(models.Manager):
    """Hides rows that have been moved to the trash."""

    def get_queryset(self):
        return super().get_queryset().filter(deleted_at__isnull=True)


# ---------------------------------------------------------------------------
# Collaborators owned by the surrounding CRM. Only the fields the engine reads.
# ---------------------------------------------------------------------------

class Client(models.Model):
    class Status(models.TextChoices):
        ACTIVE = "active", "Active"
        INACTIVE = "inactive", "Inactive"

    name = models.CharField(max_length=255)
    email = models.EmailField()
    company_name = models.CharField(max_length=255, blank=True)
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.ACTIVE)
    deleted_at = models.DateTimeField(null=True, blank=True, db_index=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    objects = SoftDeleteManager()
    all_objects = models.Manager()

    class Meta:
        ordering = ['name']

    def __str__(self):
        return self.company_name or self.name


class Project(models.Model):
    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        ACTIVE = "active", "Active"
        ON_HOLD = "on_hold", "On Hold"
        COMPLETED = "completed", "Completed"
        CANCELLED = "cancelled", "Cancelled"

    client = models.ForeignKey(Client, on_delete=models.CASCADE, related_name="projects")
    name = models.CharField(max_length=255)
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.PENDING)
    deleted_at = models.DateTimeField(null=True, blank=True, db_index=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    objects = SoftDeleteManager()
    all_objects = models.Manager()

    class Meta:
        ordering = ['-created_at']

    def __str__(self):
        return self.name


class Milestone(models.Model):
    project = models.ForeignKey(Project, on_delete=models.CASCADE, related_name="milestones")
    title = models.CharField(max_length=255)
    amount = models.DecimalField(max_digits=15, decimal_places=2, default=Decimal('0.00'))
    has_payment_deliverable = models.BooleanField(default=False)
    is_completed = models.BooleanField(default=False)
    completed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ['id']

    def __str__(self):
        return f"{self.project.name}: {self.title}"


# ---------------------------------------------------------------------------
# Invoice ledger
# ---------------------------------------------------------------------------

class Invoice(models.Model):
    class Status(models.TextChoices):
        DRAFT = "draft", "Draft"
        SENT = "sent", "Sent"
        VIEWED = "viewed", "Viewed"
        PARTIAL = "partial", "Partially Paid"
        PAID = "paid", "Paid"
        VOID = "void", "Void"
        CANCELLED = "cancelled", "Cancelled"

    class InvoiceType(models.TextChoices):
        STANDARD = "standard", "Standard"
        DEPOSIT = "deposit", "Deposit"

    class DiscountType(models.TextChoices):
        PERCENTAGE = "percentage", "Percentage"
        FIXED = "fixed", "Fixed Amount"

    class LateFeeType(models.TextChoices):
        NONE = "none", "No Late Fee"
        FLAT = "flat", "Flat Amount"
        PERCENTAGE = "percentage", "Percentage of Outstanding"
        DAILY_PERCENTAGE = "daily_percentage", "Daily Percentage of Outstanding"

    OPEN_STATUSES = (Status.SENT, Status.VIEWED, Status.PARTIAL)
    TERMINAL_STATUSES = (Status.PAID, Status.VOID, Status.CANCELLED)

    invoice_number = models.CharField(max_length=50, unique=True)
    client = models.ForeignKey(Client, on_delete=models.PROTECT, related_name="invoices")
    project = models.ForeignKey(Project, on_delete=models.SET_NULL, null=True, blank=True, related_name="invoices")
    milestone = models.ForeignKey(Milestone, on_delete=models.SET_NULL, null=True, blank=True, related_name="invoices")
    created_by = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True, related_name="created_invoices")
    invoice_type = models.CharField(max_length=20, choices=InvoiceType.choices, default=InvoiceType.STANDARD)
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.DRAFT, db_index=True)

    recurring_invoice = models.ForeignKey('RecurringInvoice', on_delete=models.SET_NULL, null=True, blank=True, related_name="generated_invoices")
    scheduled_invoice = models.ForeignKey('ScheduledInvoice', on_delete=models.SET_NULL, null=True, blank=True, related_name="+")
    payment_plan = models.ForeignKey('PaymentPlanTemplate', on_delete=models.SET_NULL, null=True, blank=True, related_name="generated_invoices")

    issued_date = models.DateField(default=timezone.localdate)
    due_date = models.DateField()
    sent_at = models.DateTimeField(null=True, blank=True)
    viewed_at = models.DateTimeField(null=True, blank=True)
    paid_at = models.DateTimeField(null=True, blank=True)
    voided_at = models.DateTimeField(null=True, blank=True)
    void_reason = models.TextField(blank=True)

    subtotal = models.DecimalField(max_digits=15, decimal_places=2, default=Decimal('0.00'))
    tax_rate = models.DecimalField(max_digits=5, decimal_places=2, default=Decimal('0.00'))
    tax_amount = models.DecimalField(max_digits=15, decimal_places=2, default=Decimal('0.00'))
    discount_type = models.CharField(max_length=20, choices=DiscountType.choices, default=DiscountType.FIXED)
    discount_value = models.DecimalField(max_digits=15, decimal_places=2, default=Decimal('0.00'))
    discount_amount = models.DecimalField(max_digits=15, decimal_places=2, default=Decimal('0.00'))
    late_fee_amount = models.DecimalField(max_digits=15, decimal_places=2, default=Decimal('0.00'))
    total = models.DecimalField(max_digits=15, decimal_places=2, default=Decimal('0.00'))
    amount_paid = models.DecimalField(max_digits=15, decimal_places=2, default=Decimal('0.00'))

    # Late-fee policy snapshot, copied onto the invoice when it is created
    late_fee_type = models.CharField(max_length=20, choices=LateFeeType.choices, default=LateFeeType.NONE)
    late_fee_rate = models.DecimalField(max_digits=7, decimal_places=4, default=Decimal('0.0000'), help_text="Fraction, e.g. 0.05 for 5%")
    late_fee_flat_amount = models.DecimalField(max_digits=15, decimal_places=2, default=Decimal('0.00'))
    late_fee_grace_days = models.PositiveIntegerField(default=0)
    late_fee_applied_at = models.DateTimeField(null=True, blank=True)

    is_overdue = models.BooleanField(default=False, db_index=True)

    notes = models.TextField(blank=True)
    terms = models.TextField(blank=True)

    deleted_at = models.DateTimeField(null=True, blank=True, db_index=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    objects = SoftDeleteManager()
    all_objects = models.Manager()

    class Meta:
        ordering = ['-created_at', '-id']
        indexes = [
            models.Index(fields=['status', 'due_date'], name='invoice_status_due_idx'),
            models.Index(fields=['client', 'status'], name='invoice_client_status_idx'),
        ]

    def __str__(self):
        return f"{self.invoice_number} - {self.client}"

    @property
    def outstanding(self) -> Decimal:
        return self.total - self.amount_paid

    @property
    def overdue(self) -> bool:
        return self.status in self.OPEN_STATUSES and self.due_date < timezone.localdate()

    def days_overdue(self, today=None) -> int:
        today = today or timezone.localdate()
        return max((today - self.due_date).days, 0)

    @property
    def can_record_payment(self) -> bool:
        return self.status in self.OPEN_STATUSES

    def recalculate_totals(self):
        """
        Recompute every derived amount from line items and the payment history.

        total = subtotal - discount_amount + tax_amount + late_fee_amount
        """
        subtotal = sum((item.amount for item in self.line_items.all()), Decimal('0.00'))
        subtotal = quantize_money(subtotal)

        if self.discount_type == self.DiscountType.PERCENTAGE:
            discount_amount = quantize_money(subtotal * self.discount_value / Decimal('100'))
        else:
            discount_amount = quantize_money(self.discount_value)

        taxable = subtotal - discount_amount
        tax_amount = quantize_money(taxable * self.tax_rate / Decimal('100'))

        self.subtotal = subtotal
        self.discount_amount = discount_amount
        self.tax_amount = tax_amount
        self.total = quantize_money(taxable + tax_amount + self.late_fee_amount)
        self.amount_paid = self.payment_history_total()

    def payment_history_total(self) -> Decimal:
        if not self.pk:
            return Decimal('0.00')
        total = sum((p.amount for p in self.payments.order_by('created_at', 'id')), Decimal('0.00'))
        return quantize_money(total)


class InvoiceLineItem(models.Model):
    invoice = models.ForeignKey(Invoice, on_delete=models.CASCADE, related_name="line_items")
    description = models.CharField(max_length=500)
    quantity = models.DecimalField(max_digits=15, decimal_places=4, default=Decimal('1.0000'))
    unit_rate = models.DecimalField(max_digits=15, decimal_places=2, default=Decimal('0.00'))
    amount = models.DecimalField(max_digits=15, decimal_places=2, default=Decimal('0.00'))
    sort_order = models.IntegerField(default=0)

    class Meta:
        ordering = ['sort_order', 'id']

    def save(self, *args, **kwargs):
        self.amount = quantize_money(self.quantity * self.unit_rate)
        super().save(*args, **kwargs)


class AppendOnlyError(Exception):
    pass


class InvoicePayment(models.Model):
    """
    A single entry in an invoice's payment history.

    Entries are never edited or removed. A correction is a new entry.
    """

    class Method(models.TextChoices):
        BANK_TRANSFER = "bank_transfer", "Bank Transfer"
        CARD = "card", "Card"
        CASH = "cash", "Cash"
        CHECK = "check", "Check"
        CREDIT = "credit", "Deposit Credit"
        OTHER = "other", "Other"

    invoice = models.ForeignKey(Invoice, on_delete=models.PROTECT, related_name="payments")
    amount = models.DecimalField(max_digits=15, decimal_places=2)
    method = models.CharField(max_length=20, choices=Method.choices, default=Method.BANK_TRANSFER)
    reference = models.CharField(max_length=255, blank=True)
    credit = models.OneToOneField('InvoiceCredit', on_delete=models.PROTECT, null=True, blank=True, related_name="payment")
    recorded_by = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True)
    created_at = models.DateTimeField(default=timezone.now, db_index=True)

    class Meta:
        ordering = ['created_at', 'id']

    def __str__(self):
        return f"{self.amount} on {self.invoice.invoice_number}"

    def save(self, *args, **kwargs):
        if self.pk is not None:
            raise AppendOnlyError("Payments are append-only; record a correcting entry instead")
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise AppendOnlyError("Payments are append-only and cannot be deleted")


class InvoiceCredit(models.Model):
    source_invoice = models.ForeignKey(Invoice, on_delete=models.PROTECT, related_name="credits_drawn")
    target_invoice = models.ForeignKey(Invoice, on_delete=models.PROTECT, related_name="credits_received")
    amount = models.DecimalField(max_digits=15, decimal_places=2)
    applied_by = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True)
    applied_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['applied_at', 'id']

    def __str__(self):
        return f"{self.amount} from {self.source_invoice_id} to {self.target_invoice_id}"


class InvoiceActivity(models.Model):
    class ActionType(models.TextChoices):
        CREATED = "created", "Invoice Created"
        UPDATED = "updated", "Invoice Updated"
        SENT = "sent", "Invoice Sent"
        VIEWED = "viewed", "Invoice Viewed"
        PAYMENT_RECEIVED = "payment_received", "Payment Received"
        CREDIT_APPLIED = "credit_applied", "Credit Applied"
        RECEIPT_GENERATED = "receipt_generated", "Receipt Generated"
        LATE_FEE_APPLIED = "late_fee_applied", "Late Fee Applied"
        STATUS_CHANGED = "status_changed", "Status Changed"
        MARKED_OVERDUE = "marked_overdue", "Marked Overdue"
        REMINDER_SENT = "reminder_sent", "Reminder Sent"
        VOIDED = "voided", "Invoice Voided"
        TRASHED = "trashed", "Moved to Trash"
        RESTORED = "restored", "Restored from Trash"

    invoice = models.ForeignKey(Invoice, on_delete=models.CASCADE, related_name="activities")
    user = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True)
    action = models.CharField(max_length=50, choices=ActionType.choices)
    description = models.TextField()
    metadata = models.JSONField(default=dict, blank=True)
    is_system = models.BooleanField(default=False)
    timestamp = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-timestamp', '-id']
        verbose_name_plural = "Invoice activities"


# ---------------------------------------------------------------------------
# Generation sources
# ---------------------------------------------------------------------------

class RecurringInvoice(models.Model):
    class Frequency(models.TextChoices):
        WEEKLY = "weekly", "Weekly"
        BIWEEKLY = "biweekly", "Every 2 Weeks"
        MONTHLY = "monthly", "Monthly"
        QUARTERLY = "quarterly", "Quarterly"

    client = models.ForeignKey(Client, on_delete=models.CASCADE, related_name="recurring_invoices")
    project = models.ForeignKey(Project, on_delete=models.SET_NULL, null=True, blank=True, related_name="recurring_invoices")
    created_by = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True)

    frequency = models.CharField(max_length=20, choices=Frequency.choices, default=Frequency.MONTHLY)
    day_of_month = models.PositiveSmallIntegerField(null=True, blank=True, help_text="Billing day for monthly/quarterly series (1-31)")
    line_items = models.JSONField(default=list, help_text="Template line items: description, quantity, unit_rate")
    tax_rate = models.DecimalField(max_digits=5, decimal_places=2, default=Decimal('0.00'))
    payment_terms_days = models.PositiveIntegerField(default=30)
    notes = models.TextField(blank=True)
    terms = models.TextField(blank=True)

    start_date = models.DateField()
    end_date = models.DateField(null=True, blank=True)
    next_generation_date = models.DateField(db_index=True)
    last_generated_at = models.DateTimeField(null=True, blank=True)
    is_active = models.BooleanField(default=True, db_index=True)
    paused_at = models.DateTimeField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['is_active', 'next_generation_date'], name='recurring_active_next_idx'),
        ]

    def __str__(self):
        return f"Recurring #{self.id} - {self.client} ({self.frequency})"

    def save(self, *args, **kwargs):
        if not self.day_of_month and self.start_date:
            self.day_of_month = self.start_date.day
        super().save(*args, **kwargs)

    def calculate_next_generation_date(self, from_date=None):
        """
        One period after ``from_date``. Monthly and quarterly periods keep the
        series' billing day and clamp it to the end of shorter months.
        """
        base = from_date or self.next_generation_date
        if self.frequency == self.Frequency.WEEKLY:
            return base + timedelta(days=7)
        elif self.frequency == self.Frequency.BIWEEKLY:
            return base + timedelta(days=14)
        anchor = self.day_of_month or base.day
        if self.frequency == self.Frequency.QUARTERLY:
            return base + relativedelta(months=3, day=anchor)
        return base + relativedelta(months=1, day=anchor)

    @property
    def template_total(self) -> Decimal:
        total = Decimal('0.00')
        for item in self.line_items:
            total += quantize_money(Decimal(str(item.get('quantity', 1))) * Decimal(str(item.get('unit_rate', 0))))
        return total


class ScheduledInvoice(models.Model):
    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        GENERATED = "generated", "Generated"
        CANCELLED = "cancelled", "Cancelled"

    class TriggerType(models.TextChoices):
        DATE = "date", "On Date"
        MILESTONE_COMPLETE = "milestone_complete", "On Milestone Completion"

    client = models.ForeignKey(Client, on_delete=models.CASCADE, related_name="scheduled_invoices")
    project = models.ForeignKey(Project, on_delete=models.SET_NULL, null=True, blank=True, related_name="scheduled_invoices")
    created_by = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True)

    scheduled_date = models.DateField(db_index=True)
    trigger_type = models.CharField(max_length=30, choices=TriggerType.choices, default=TriggerType.DATE)
    trigger_milestone = models.ForeignKey(Milestone, on_delete=models.SET_NULL, null=True, blank=True, related_name="scheduled_invoices")
    line_items = models.JSONField(default=list)
    tax_rate = models.DecimalField(max_digits=5, decimal_places=2, default=Decimal('0.00'))
    payment_terms_days = models.PositiveIntegerField(default=30)
    notes = models.TextField(blank=True)
    terms = models.TextField(blank=True)

    status = models.CharField(max_length=20, choices=Status.choices, default=Status.PENDING, db_index=True)
    generated_invoice = models.ForeignKey(Invoice, on_delete=models.SET_NULL, null=True, blank=True, related_name="+")
    generated_at = models.DateTimeField(null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['scheduled_date', 'id']
        indexes = [
            models.Index(fields=['status', 'scheduled_date'], name='scheduled_status_date_idx'),
        ]

    def __str__(self):
        return f"Scheduled #{self.id} - {self.client} on {self.scheduled_date}"


class PaymentPlanTemplate(models.Model):
    """
    Reusable split of a project total into installment invoices.

    ``payments`` holds one entry per installment: ``percentage``, ``trigger``
    and optionally ``label``, ``milestone_id`` and ``days_after_start``.
    """

    class PaymentTrigger(models.TextChoices):
        UPFRONT = "upfront", "Upfront"
        MIDPOINT = "midpoint", "Midpoint"
        COMPLETION = "completion", "On Completion"
        MILESTONE = "milestone", "On Milestone"
        DATE = "date", "On Date"

    # Days from generation until an installment falls due
    DUE_DAYS = {
        PaymentTrigger.UPFRONT: 7,
        PaymentTrigger.MIDPOINT: 45,
        PaymentTrigger.COMPLETION: 90,
    }
    DEFAULT_DUE_DAYS = 30

    name = models.CharField(max_length=255)
    description = models.TextField(blank=True)
    payments = models.JSONField(default=list)
    is_default = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-is_default', 'name']

    def __str__(self):
        return self.name


class InvoiceReminder(models.Model):
    class ReminderType(models.TextChoices):
        UPCOMING = "upcoming", "Upcoming"
        DUE = "due", "Due Today"
        OVERDUE_3 = "overdue_3", "3 Days Overdue"
        OVERDUE_7 = "overdue_7", "7 Days Overdue"
        OVERDUE_14 = "overdue_14", "14 Days Overdue"
        OVERDUE_30 = "overdue_30", "30 Days Overdue"

    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        SENT = "sent", "Sent"
        SKIPPED = "skipped", "Skipped"
        FAILED = "failed", "Failed"

    # Offset from the due date in days
    OFFSETS = {
        ReminderType.UPCOMING: -3,
        ReminderType.DUE: 0,
        ReminderType.OVERDUE_3: 3,
        ReminderType.OVERDUE_7: 7,
        ReminderType.OVERDUE_14: 14,
        ReminderType.OVERDUE_30: 30,
    }

    invoice = models.ForeignKey(Invoice, on_delete=models.CASCADE, related_name="reminders")
    reminder_type = models.CharField(max_length=20, choices=ReminderType.choices)
    scheduled_date = models.DateField(db_index=True)
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.PENDING, db_index=True)
    sent_at = models.DateTimeField(null=True, blank=True)
    error_message = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['scheduled_date', 'id']
        constraints = [
            models.UniqueConstraint(fields=['invoice', 'reminder_type'], name='unique_invoice_reminder_type'),
        ]


# ---------------------------------------------------------------------------
# Action targets
# ---------------------------------------------------------------------------

class Task(models.Model):
    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        IN_PROGRESS = "in_progress", "In Progress"
        COMPLETED = "completed", "Completed"

    project = models.ForeignKey(Project, on_delete=models.CASCADE, related_name="tasks")
    title = models.CharField(max_length=255)
    description = models.TextField(blank=True)
    assigned_to = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True, related_name="billing_tasks")
    due_date = models.DateField(null=True, blank=True)
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.PENDING)
    deleted_at = models.DateTimeField(null=True, blank=True, db_index=True)
    created_at = models.DateTimeField(auto_now_add=True)

    objects = SoftDeleteManager()
    all_objects = models.Manager()

    class Meta:
        ordering = ['due_date', 'id']

    def __str__(self):
        return self.title


class Notification(models.Model):
    user = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, null=True, blank=True, related_name="billing_notifications")
    channel = models.CharField(max_length=50, default="admin")
    message = models.TextField()
    metadata = models.JSONField(default=dict, blank=True)
    is_read = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-created_at']


# ---------------------------------------------------------------------------
# Scheduler state and analytics retention
# ---------------------------------------------------------------------------

class SchedulerRun(models.Model):
    """Persisted run lock and last summary for one scheduler job."""

    job = models.CharField(max_length=50, unique=True)
    is_running = models.BooleanField(default=False)
    locked_at = models.DateTimeField(null=True, blank=True)
    last_started_at = models.DateTimeField(null=True, blank=True)
    last_finished_at = models.DateTimeField(null=True, blank=True)
    last_summary = models.JSONField(default=dict, blank=True)

    def __str__(self):
        return f"{self.job} ({'running' if self.is_running else 'idle'})"


class PageView(models.Model):
    path = models.CharField(max_length=500)
    created_at = models.DateTimeField(default=timezone.now, db_index=True)


class InteractionEvent(models.Model):
    event_type = models.CharField(max_length=100)
    metadata = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(default=timezone.now, db_index=True)


from .workflow_models import (  # noqa: E402,F401
    WebhookDelivery,
    WorkflowDedupeKey,
    WorkflowEventLog,
    WorkflowTrigger,
    WorkflowTriggerLog,
)
