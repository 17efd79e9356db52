from decimal import Decimal

from rest_framework import serializers

from billing.models import (
    Client,
    Invoice,
    InvoiceActivity,
    InvoiceLineItem,
    InvoicePayment,
    Milestone,
    PaymentPlanTemplate,
    Project,
    RecurringInvoice,
    ScheduledInvoice,
    WebhookDelivery,
    WorkflowEventLog,
    WorkflowTrigger,
    WorkflowTriggerLog,
)
from billing.services.invoice_service import InvoiceService
from billing.services.recurring_service import generation_status, preview_dates
from billing.workflow.actions import validate_actions
from billing.workflow.conditions import validate_conditions
from billing.workflow.events import EventType


class LineItemSerializer(serializers.ModelSerializer):
    class Meta:
        model = InvoiceLineItem
        fields = ["id", "description", "quantity", "unit_rate", "amount"]
        read_only_fields = fields


class LineItemInputSerializer(serializers.Serializer):
    description = serializers.CharField(max_length=500, min_length=1)
    quantity = serializers.DecimalField(max_digits=15, decimal_places=4, min_value=Decimal("0.0001"), default=Decimal("1"))
    unit_rate = serializers.DecimalField(max_digits=15, decimal_places=2, min_value=Decimal("0"))


class InvoicePaymentSerializer(serializers.ModelSerializer):
    class Meta:
        model = InvoicePayment
        fields = ["id", "amount", "method", "reference", "credit", "recorded_by", "created_at"]
        read_only_fields = fields


class InvoiceListSerializer(serializers.ModelSerializer):
    outstanding = serializers.DecimalField(max_digits=15, decimal_places=2, read_only=True)
    overdue = serializers.BooleanField(read_only=True)

    class Meta:
        model = Invoice
        fields = [
            "id",
            "invoice_number",
            "client",
            "invoice_type",
            "status",
            "issued_date",
            "due_date",
            "total",
            "amount_paid",
            "outstanding",
            "overdue",
            "created_at",
        ]
        read_only_fields = fields


class InvoiceDetailSerializer(serializers.ModelSerializer):
    line_items = LineItemSerializer(many=True, read_only=True)
    payments = InvoicePaymentSerializer(many=True, read_only=True)
    outstanding = serializers.DecimalField(max_digits=15, decimal_places=2, read_only=True)
    overdue = serializers.BooleanField(read_only=True)
    available_transitions = serializers.SerializerMethodField()

    class Meta:
        model = Invoice
        fields = [
            "id",
            "invoice_number",
            "client",
            "project",
            "milestone",
            "invoice_type",
            "status",
            "available_transitions",
            "issued_date",
            "due_date",
            "sent_at",
            "viewed_at",
            "paid_at",
            "voided_at",
            "void_reason",
            "subtotal",
            "discount_type",
            "discount_value",
            "discount_amount",
            "tax_rate",
            "tax_amount",
            "late_fee_type",
            "late_fee_rate",
            "late_fee_flat_amount",
            "late_fee_grace_days",
            "late_fee_amount",
            "late_fee_applied_at",
            "total",
            "amount_paid",
            "outstanding",
            "overdue",
            "recurring_invoice",
            "scheduled_invoice",
            "payment_plan",
            "notes",
            "terms",
            "line_items",
            "payments",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields

    def get_available_transitions(self, obj) -> list:
        return InvoiceService.available_transitions(obj)


class InvoiceWriteSerializer(serializers.Serializer):
    client = serializers.PrimaryKeyRelatedField(queryset=Client.objects.all())
    project = serializers.PrimaryKeyRelatedField(queryset=Project.objects.all(), required=False, allow_null=True)
    milestone = serializers.PrimaryKeyRelatedField(queryset=Milestone.objects.all(), required=False, allow_null=True)
    line_items = LineItemInputSerializer(many=True)
    invoice_type = serializers.ChoiceField(choices=Invoice.InvoiceType.choices, default=Invoice.InvoiceType.STANDARD)
    issued_date = serializers.DateField(required=False)
    due_date = serializers.DateField(required=False)
    tax_rate = serializers.DecimalField(max_digits=5, decimal_places=2, min_value=Decimal("0"), max_value=Decimal("100"), default=Decimal("0"))
    discount_type = serializers.ChoiceField(choices=Invoice.DiscountType.choices, default=Invoice.DiscountType.FIXED)
    discount_value = serializers.DecimalField(max_digits=15, decimal_places=2, min_value=Decimal("0"), default=Decimal("0"))
    late_fee_type = serializers.ChoiceField(choices=Invoice.LateFeeType.choices, default=Invoice.LateFeeType.NONE)
    late_fee_rate = serializers.DecimalField(max_digits=7, decimal_places=4, min_value=Decimal("0"), max_value=Decimal("1"), default=Decimal("0"))
    late_fee_flat_amount = serializers.DecimalField(max_digits=15, decimal_places=2, min_value=Decimal("0"), default=Decimal("0"))
    late_fee_grace_days = serializers.IntegerField(min_value=0, default=0)
    notes = serializers.CharField(required=False, allow_blank=True, default="")
    terms = serializers.CharField(required=False, allow_blank=True, default="")

    def validate(self, attrs):
        if attrs.get("discount_type") == Invoice.DiscountType.PERCENTAGE and attrs.get("discount_value", 0) > 100:
            raise serializers.ValidationError({"discount_value": "Percentage discount cannot exceed 100."})
        return attrs


class RecordPaymentSerializer(serializers.Serializer):
    amount = serializers.DecimalField(max_digits=15, decimal_places=2)
    method = serializers.ChoiceField(
        choices=[c for c in InvoicePayment.Method.choices if c[0] != InvoicePayment.Method.CREDIT],
        default=InvoicePayment.Method.BANK_TRANSFER,
    )
    reference = serializers.CharField(max_length=255, required=False, allow_blank=True, default="")


class ApplyCreditSerializer(serializers.Serializer):
    source_invoice_id = serializers.IntegerField()
    amount = serializers.DecimalField(max_digits=15, decimal_places=2)


class VoidInvoiceSerializer(serializers.Serializer):
    reason = serializers.CharField(required=False, allow_blank=True, default="")


class TargetDateSerializer(serializers.Serializer):
    date = serializers.DateField(required=False)


class InvoiceActivitySerializer(serializers.ModelSerializer):
    class Meta:
        model = InvoiceActivity
        fields = ["id", "action", "description", "user", "metadata", "is_system", "timestamp"]
        read_only_fields = fields


class RecurringInvoiceSerializer(serializers.ModelSerializer):
    upcoming_dates = serializers.SerializerMethodField()
    state = serializers.SerializerMethodField()
    template_total = serializers.DecimalField(max_digits=15, decimal_places=2, read_only=True)

    class Meta:
        model = RecurringInvoice
        fields = [
            "id",
            "client",
            "project",
            "frequency",
            "day_of_month",
            "line_items",
            "template_total",
            "tax_rate",
            "payment_terms_days",
            "notes",
            "terms",
            "start_date",
            "end_date",
            "next_generation_date",
            "last_generated_at",
            "is_active",
            "paused_at",
            "state",
            "upcoming_dates",
            "created_at",
        ]
        read_only_fields = fields

    def get_upcoming_dates(self, obj) -> list:
        if not obj.is_active:
            return []
        return [d.isoformat() for d in preview_dates(obj)]

    def get_state(self, obj) -> str:
        return generation_status(obj)[1]


class RecurringInvoiceCreateSerializer(serializers.Serializer):
    client = serializers.PrimaryKeyRelatedField(queryset=Client.objects.all())
    project = serializers.PrimaryKeyRelatedField(queryset=Project.objects.all(), required=False, allow_null=True)
    frequency = serializers.ChoiceField(choices=RecurringInvoice.Frequency.choices, default=RecurringInvoice.Frequency.MONTHLY)
    day_of_month = serializers.IntegerField(min_value=1, max_value=31, required=False, allow_null=True)
    line_items = LineItemInputSerializer(many=True)
    tax_rate = serializers.DecimalField(max_digits=5, decimal_places=2, min_value=Decimal("0"), max_value=Decimal("100"), default=Decimal("0"))
    payment_terms_days = serializers.IntegerField(min_value=0, default=30)
    start_date = serializers.DateField()
    end_date = serializers.DateField(required=False, allow_null=True)
    notes = serializers.CharField(required=False, allow_blank=True, default="")
    terms = serializers.CharField(required=False, allow_blank=True, default="")


class RecurringInvoiceUpdateSerializer(serializers.Serializer):
    project = serializers.PrimaryKeyRelatedField(queryset=Project.objects.all(), required=False, allow_null=True)
    frequency = serializers.ChoiceField(choices=RecurringInvoice.Frequency.choices, required=False)
    day_of_month = serializers.IntegerField(min_value=1, max_value=31, required=False, allow_null=True)
    line_items = LineItemInputSerializer(many=True, required=False)
    tax_rate = serializers.DecimalField(max_digits=5, decimal_places=2, min_value=Decimal("0"), max_value=Decimal("100"), required=False)
    payment_terms_days = serializers.IntegerField(min_value=0, required=False)
    end_date = serializers.DateField(required=False, allow_null=True)
    notes = serializers.CharField(required=False, allow_blank=True)
    terms = serializers.CharField(required=False, allow_blank=True)


class ScheduledInvoiceSerializer(serializers.ModelSerializer):
    class Meta:
        model = ScheduledInvoice
        fields = [
            "id",
            "client",
            "project",
            "scheduled_date",
            "trigger_type",
            "trigger_milestone",
            "line_items",
            "tax_rate",
            "payment_terms_days",
            "notes",
            "terms",
            "status",
            "generated_invoice",
            "generated_at",
            "cancelled_at",
            "created_at",
        ]
        read_only_fields = fields


class ScheduledInvoiceCreateSerializer(serializers.Serializer):
    client = serializers.PrimaryKeyRelatedField(queryset=Client.objects.all())
    project = serializers.PrimaryKeyRelatedField(queryset=Project.objects.all(), required=False, allow_null=True)
    scheduled_date = serializers.DateField(required=False)
    trigger_type = serializers.ChoiceField(choices=ScheduledInvoice.TriggerType.choices, default=ScheduledInvoice.TriggerType.DATE)
    trigger_milestone = serializers.PrimaryKeyRelatedField(queryset=Milestone.objects.all(), required=False, allow_null=True)
    line_items = LineItemInputSerializer(many=True)
    tax_rate = serializers.DecimalField(max_digits=5, decimal_places=2, min_value=Decimal("0"), max_value=Decimal("100"), default=Decimal("0"))
    payment_terms_days = serializers.IntegerField(min_value=0, default=30)
    notes = serializers.CharField(required=False, allow_blank=True, default="")
    terms = serializers.CharField(required=False, allow_blank=True, default="")


class PaymentPlanTemplateSerializer(serializers.ModelSerializer):
    invoice_count = serializers.SerializerMethodField()

    class Meta:
        model = PaymentPlanTemplate
        fields = ["id", "name", "description", "payments", "is_default", "invoice_count", "created_at"]
        read_only_fields = fields

    def get_invoice_count(self, obj) -> int:
        return obj.generated_invoices.count()


class PaymentPlanTemplateCreateSerializer(serializers.Serializer):
    name = serializers.CharField(max_length=255)
    description = serializers.CharField(required=False, allow_blank=True, default="")
    payments = serializers.ListField(child=serializers.DictField(), allow_empty=False)
    is_default = serializers.BooleanField(default=False)


class GenerateFromPlanSerializer(serializers.Serializer):
    template = serializers.PrimaryKeyRelatedField(queryset=PaymentPlanTemplate.objects.all())
    client = serializers.PrimaryKeyRelatedField(queryset=Client.objects.all())
    project = serializers.PrimaryKeyRelatedField(queryset=Project.objects.all(), required=False, allow_null=True)
    total_amount = serializers.DecimalField(max_digits=15, decimal_places=2)


class WorkflowTriggerSerializer(serializers.ModelSerializer):
    class Meta:
        model = WorkflowTrigger
        fields = [
            "id",
            "name",
            "description",
            "event_type",
            "conditions",
            "actions",
            "priority",
            "is_active",
            "created_by",
            "created_at",
            "updated_at",
        ]
        read_only_fields = ["id", "created_by", "created_at", "updated_at"]

    def validate(self, attrs):
        event_type = attrs.get("event_type") or getattr(self.instance, "event_type", None)
        conditions = attrs.get("conditions", getattr(self.instance, "conditions", []))
        actions = attrs.get("actions", getattr(self.instance, "actions", None))
        # Both lists are re-checked on every write since they depend on the event type
        attrs["conditions"] = validate_conditions(event_type, conditions)
        attrs["actions"] = validate_actions(event_type, actions)
        return attrs


class WorkflowTriggerLogSerializer(serializers.ModelSerializer):
    trigger_name = serializers.CharField(source="trigger.name", read_only=True)

    class Meta:
        model = WorkflowTriggerLog
        fields = [
            "id",
            "trigger",
            "trigger_name",
            "event_log",
            "event_type",
            "action_index",
            "action_type",
            "result",
            "detail",
            "error_message",
            "execution_time_ms",
            "created_at",
        ]
        read_only_fields = fields


class WorkflowEventLogSerializer(serializers.ModelSerializer):
    class Meta:
        model = WorkflowEventLog
        fields = ["id", "event_type", "entity_type", "entity_id", "payload", "triggered_by", "created_at"]
        read_only_fields = fields


class EmitEventSerializer(serializers.Serializer):
    event_type = serializers.ChoiceField(choices=EventType.choices)
    data = serializers.DictField()


class WebhookDeliverySerializer(serializers.ModelSerializer):
    class Meta:
        model = WebhookDelivery
        fields = [
            "id",
            "trigger",
            "event_log",
            "url",
            "method",
            "status",
            "attempts",
            "max_attempts",
            "next_retry_at",
            "response_status",
            "last_error",
            "delivered_at",
            "created_at",
        ]
        read_only_fields = fields
