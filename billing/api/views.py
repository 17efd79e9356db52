import logging
from typing import Optional

from django.shortcuts import get_object_or_404
from django.utils import timezone
from drf_spectacular.types import OpenApiTypes
from drf_spectacular.utils import OpenApiParameter, extend_schema, extend_schema_view
from rest_framework import filters, mixins, viewsets
from rest_framework.decorators import action
from rest_framework.permissions import IsAuthenticated
from rest_framework.request import Request
from rest_framework.response import Response

from billing.models import (
    Client,
    Invoice,
    Milestone,
    PaymentPlanTemplate,
    RecurringInvoice,
    ScheduledInvoice,
    WebhookDelivery,
    WorkflowEventLog,
    WorkflowTrigger,
    WorkflowTriggerLog,
)
from billing.services import (
    InvoiceService,
    LateFeeService,
    LedgerService,
    MilestoneService,
    PaymentPlanService,
    RecurringInvoiceService,
    ScheduledInvoiceService,
    WebhookService,
)
from billing.validation import BusinessRuleError, ErrorCode
from billing.workflow.actions import describe_actions
from billing.workflow.engine import engine
from billing.workflow.events import EventType, payload_class

from .response import APIResponse
from .serializers import (
    ApplyCreditSerializer,
    EmitEventSerializer,
    GenerateFromPlanSerializer,
    InvoiceActivitySerializer,
    InvoiceDetailSerializer,
    InvoiceListSerializer,
    InvoicePaymentSerializer,
    InvoiceWriteSerializer,
    PaymentPlanTemplateCreateSerializer,
    PaymentPlanTemplateSerializer,
    RecordPaymentSerializer,
    RecurringInvoiceCreateSerializer,
    RecurringInvoiceSerializer,
    RecurringInvoiceUpdateSerializer,
    ScheduledInvoiceCreateSerializer,
    ScheduledInvoiceSerializer,
    TargetDateSerializer,
    VoidInvoiceSerializer,
    WebhookDeliverySerializer,
    WorkflowEventLogSerializer,
    WorkflowTriggerLogSerializer,
    WorkflowTriggerSerializer,
)

logger = logging.getLogger(__name__)

INVOICE_ID_PARAM = OpenApiParameter(
    name="pk",
    description="Invoice ID",
    required=True,
    type=OpenApiTypes.INT,
    location=OpenApiParameter.PATH,
)

DATE_PARAM = OpenApiParameter(
    name="date",
    description="Target date (YYYY-MM-DD). Defaults to today.",
    required=False,
    type=OpenApiTypes.DATE,
)


class EnvelopeMixin:
    """List and retrieve wrapped in the standard success envelope."""

    def list(self, request: Request, *args, **kwargs) -> Response:
        queryset = self.filter_queryset(self.get_queryset())
        page = self.paginate_queryset(queryset)
        if page is not None:
            data = self.get_serializer(page, many=True).data
            return APIResponse.paginated(data, self.paginator)
        return APIResponse.success(data=self.get_serializer(queryset, many=True).data)

    def retrieve(self, request: Request, *args, **kwargs) -> Response:
        return APIResponse.success(data=self.get_serializer(self.get_object()).data)


def _target_date(request: Request):
    serializer = TargetDateSerializer(data=request.data if request.method == "POST" else request.query_params)
    serializer.is_valid(raise_exception=True)
    return serializer.validated_data.get("date") or timezone.localdate()


# ------------------------------
# Invoice ViewSet
# ------------------------------
@extend_schema_view(
    list=extend_schema(
        summary="List invoices",
        parameters=[
            OpenApiParameter(name="status", description="Filter by status", required=False, type=str),
            OpenApiParameter(name="client", description="Filter by client ID", required=False, type=int),
            OpenApiParameter(name="overdue", description="Only overdue invoices when true", required=False, type=bool),
        ],
    ),
    retrieve=extend_schema(summary="Get invoice details", parameters=[INVOICE_ID_PARAM]),
    create=extend_schema(summary="Create draft invoice", request=InvoiceWriteSerializer, responses={201: InvoiceDetailSerializer}),
    update=extend_schema(summary="Update draft invoice", request=InvoiceWriteSerializer, parameters=[INVOICE_ID_PARAM]),
    partial_update=extend_schema(summary="Partially update draft invoice", request=InvoiceWriteSerializer, parameters=[INVOICE_ID_PARAM]),
    destroy=extend_schema(
        summary="Delete or void invoice",
        description="Drafts are deleted, issued invoices are voided, paid invoices are refused.",
        parameters=[INVOICE_ID_PARAM],
    ),
)
class InvoiceViewSet(EnvelopeMixin, viewsets.ModelViewSet):
    permission_classes = [IsAuthenticated]
    filter_backends = [filters.SearchFilter, filters.OrderingFilter]
    search_fields = ["invoice_number", "client__name", "client__email"]
    ordering_fields = ["created_at", "issued_date", "due_date", "total", "status"]
    ordering = ["-created_at"]
    lookup_value_regex = r"\d+"

    def get_serializer_class(self):
        if self.action == "list":
            return InvoiceListSerializer
        if self.action in ["create", "update", "partial_update"]:
            return InvoiceWriteSerializer
        return InvoiceDetailSerializer

    def get_queryset(self):
        queryset = Invoice.objects.select_related("client").prefetch_related("line_items", "payments")
        params = self.request.query_params
        if params.get("status"):
            queryset = queryset.filter(status=params["status"])
        if params.get("client"):
            queryset = queryset.filter(client_id=params["client"])
        if params.get("overdue") in ("true", "1"):
            queryset = queryset.filter(status__in=Invoice.OPEN_STATUSES, due_date__lt=timezone.localdate())
        return queryset

    def _detail(self, invoice: Invoice, message: str, status_code: int = 200) -> Response:
        invoice = Invoice.all_objects.prefetch_related("line_items", "payments").get(pk=invoice.pk)
        return APIResponse.success(data=InvoiceDetailSerializer(invoice).data, message=message, status_code=status_code)

    def create(self, request: Request, *args, **kwargs) -> Response:
        serializer = InvoiceWriteSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = dict(serializer.validated_data)
        client = data.pop("client")
        items = data.pop("line_items")
        invoice = InvoiceService.create_invoice(client, items, user=request.user, **data)
        return self._detail(invoice, "Invoice created.", status_code=201)

    def update(self, request: Request, *args, **kwargs) -> Response:
        invoice = self.get_object()
        partial = kwargs.pop("partial", False)
        serializer = InvoiceWriteSerializer(data=request.data, partial=partial)
        serializer.is_valid(raise_exception=True)
        data = dict(serializer.validated_data)
        data.pop("client", None)
        items = data.pop("line_items", None)
        invoice = InvoiceService.update_invoice(invoice, data, items=items, user=request.user)
        return self._detail(invoice, "Invoice updated.")

    def destroy(self, request: Request, *args, **kwargs) -> Response:
        invoice = self.get_object()
        outcome = InvoiceService.delete_or_void(invoice, user=request.user)
        return APIResponse.success(data={"id": int(kwargs["pk"]), "outcome": outcome}, message=f"Invoice {outcome}.")

    @extend_schema(summary="Send invoice", request=None, responses={200: InvoiceDetailSerializer}, parameters=[INVOICE_ID_PARAM])
    @action(detail=True, methods=["post"], url_path="send")
    def send(self, request: Request, pk: Optional[int] = None) -> Response:
        invoice = InvoiceService.send_invoice(self.get_object(), user=request.user)
        return self._detail(invoice, "Invoice sent.")

    @extend_schema(summary="Mark invoice viewed", request=None, responses={200: InvoiceDetailSerializer}, parameters=[INVOICE_ID_PARAM])
    @action(detail=True, methods=["post"], url_path="view")
    def mark_viewed(self, request: Request, pk: Optional[int] = None) -> Response:
        invoice = InvoiceService.mark_viewed(self.get_object(), user=request.user)
        return self._detail(invoice, "Invoice marked as viewed.")

    @extend_schema(summary="Void invoice", request=VoidInvoiceSerializer, responses={200: InvoiceDetailSerializer}, parameters=[INVOICE_ID_PARAM])
    @action(detail=True, methods=["post"], url_path="void")
    def void(self, request: Request, pk: Optional[int] = None) -> Response:
        serializer = VoidInvoiceSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        invoice = InvoiceService.void_invoice(self.get_object(), user=request.user, reason=serializer.validated_data["reason"])
        return self._detail(invoice, "Invoice voided.")

    @extend_schema(summary="Record payment", request=RecordPaymentSerializer, responses={201: InvoiceDetailSerializer}, parameters=[INVOICE_ID_PARAM])
    @action(detail=True, methods=["post"], url_path="record-payment")
    def record_payment(self, request: Request, pk: Optional[int] = None) -> Response:
        serializer = RecordPaymentSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        payment = LedgerService.record_payment(self.get_object(), user=request.user, **serializer.validated_data)
        return self._detail(payment.invoice, "Payment recorded.", status_code=201)

    @extend_schema(summary="Apply deposit credit", request=ApplyCreditSerializer, responses={201: InvoiceDetailSerializer}, parameters=[INVOICE_ID_PARAM])
    @action(detail=True, methods=["post"], url_path="apply-credit")
    def apply_credit(self, request: Request, pk: Optional[int] = None) -> Response:
        serializer = ApplyCreditSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        target = self.get_object()
        source = get_object_or_404(Invoice, pk=serializer.validated_data["source_invoice_id"])
        credit = LedgerService.apply_credit(source, target, serializer.validated_data["amount"], user=request.user)
        return self._detail(credit.target_invoice, "Credit applied.", status_code=201)

    @extend_schema(summary="Apply late fee", request=None, responses={200: InvoiceDetailSerializer}, parameters=[INVOICE_ID_PARAM])
    @action(detail=True, methods=["post"], url_path="apply-late-fee")
    def apply_late_fee(self, request: Request, pk: Optional[int] = None) -> Response:
        invoice = self.get_object()
        if invoice.status not in Invoice.OPEN_STATUSES:
            raise BusinessRuleError(
                f"Late fees only apply to issued, unpaid invoices; invoice is '{invoice.status}'",
                code=ErrorCode.LATE_FEE_NOT_APPLICABLE,
            )
        fee = LateFeeService.apply_late_fee(invoice, user=request.user)
        message = f"Late fee of {fee} applied." if fee is not None else "No late fee applicable."
        return self._detail(invoice, message)

    @extend_schema(summary="List payments", responses={200: InvoicePaymentSerializer(many=True)}, parameters=[INVOICE_ID_PARAM])
    @action(detail=True, methods=["get"], url_path="payments")
    def payments(self, request: Request, pk: Optional[int] = None) -> Response:
        invoice = self.get_object()
        return APIResponse.success(data=InvoicePaymentSerializer(invoice.payments.all(), many=True).data)

    @extend_schema(summary="Invoice activity log", responses={200: InvoiceActivitySerializer(many=True)}, parameters=[INVOICE_ID_PARAM])
    @action(detail=True, methods=["get"], url_path="history")
    def history(self, request: Request, pk: Optional[int] = None) -> Response:
        invoice = self.get_object()
        return APIResponse.success(data=InvoiceActivitySerializer(invoice.activities.all(), many=True).data)

    @extend_schema(summary="Apply due late fees", request=TargetDateSerializer)
    @action(detail=False, methods=["post"], url_path="process-late-fees")
    def process_late_fees(self, request: Request) -> Response:
        results = LateFeeService.process_late_fees(_target_date(request))
        return APIResponse.success(data=results, message="Late fees processed.")

    @extend_schema(summary="Receivables aging report", parameters=[DATE_PARAM])
    @action(detail=False, methods=["get"], url_path="aging")
    def aging(self, request: Request) -> Response:
        today = _target_date(request)
        report = LedgerService.aging_report(today)
        data = {bucket: {"count": v["count"], "outstanding": str(v["outstanding"])} for bucket, v in report.items()}
        return APIResponse.success(data=data, meta={"as_of": today.isoformat()})

    @extend_schema(
        summary="Available deposit credits",
        parameters=[OpenApiParameter(name="client", description="Client ID", required=True, type=int)],
    )
    @action(detail=False, methods=["get"], url_path="deposits")
    def deposits(self, request: Request) -> Response:
        client = get_object_or_404(Client, pk=request.query_params.get("client") or 0)
        deposits = LedgerService.available_deposits(client)
        for entry in deposits:
            for key in ("total_amount", "amount_applied", "available_amount"):
                entry[key] = str(entry[key])
        return APIResponse.success(data=deposits)


# ------------------------------
# Recurring / Scheduled
# ------------------------------
@extend_schema_view(
    list=extend_schema(summary="List recurring invoice series"),
    retrieve=extend_schema(summary="Get recurring invoice series"),
    create=extend_schema(summary="Create recurring invoice series", request=RecurringInvoiceCreateSerializer),
    update=extend_schema(summary="Update recurring invoice series", request=RecurringInvoiceUpdateSerializer),
    partial_update=extend_schema(summary="Partially update recurring invoice series", request=RecurringInvoiceUpdateSerializer),
    destroy=extend_schema(summary="Delete recurring invoice series"),
)
class RecurringInvoiceViewSet(EnvelopeMixin, mixins.ListModelMixin, mixins.RetrieveModelMixin,
                              mixins.CreateModelMixin, mixins.UpdateModelMixin, mixins.DestroyModelMixin,
                              viewsets.GenericViewSet):
    permission_classes = [IsAuthenticated]
    serializer_class = RecurringInvoiceSerializer
    queryset = RecurringInvoice.objects.select_related("client").order_by("-created_at")
    lookup_value_regex = r"\d+"

    def create(self, request: Request, *args, **kwargs) -> Response:
        serializer = RecurringInvoiceCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = dict(serializer.validated_data)
        series = RecurringInvoiceService.create_recurring(
            data.pop("client"), data.pop("line_items"), data.pop("start_date"), user=request.user, **data,
        )
        return APIResponse.success(data=RecurringInvoiceSerializer(series).data, message="Recurring invoice created.", status_code=201)

    def update(self, request: Request, *args, **kwargs) -> Response:
        kwargs.pop("partial", False)
        serializer = RecurringInvoiceUpdateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        series = RecurringInvoiceService.update_recurring(self.get_object(), dict(serializer.validated_data))
        return APIResponse.success(data=RecurringInvoiceSerializer(series).data, message="Recurring invoice updated.")

    def destroy(self, request: Request, *args, **kwargs) -> Response:
        series = self.get_object()
        series_id = series.id
        kept = RecurringInvoiceService.delete_recurring(series)
        return APIResponse.success(data={"id": series_id, "invoices_kept": kept}, message="Recurring invoice deleted.")

    @extend_schema(summary="Pause series", request=None)
    @action(detail=True, methods=["post"], url_path="pause")
    def pause(self, request: Request, pk: Optional[int] = None) -> Response:
        series = RecurringInvoiceService.pause(self.get_object())
        return APIResponse.success(data=RecurringInvoiceSerializer(series).data, message="Recurring invoice paused.")

    @extend_schema(summary="Resume series", request=None)
    @action(detail=True, methods=["post"], url_path="resume")
    def resume(self, request: Request, pk: Optional[int] = None) -> Response:
        series = RecurringInvoiceService.resume(self.get_object())
        return APIResponse.success(data=RecurringInvoiceSerializer(series).data, message="Recurring invoice resumed.")


@extend_schema_view(
    list=extend_schema(summary="List scheduled invoices"),
    retrieve=extend_schema(summary="Get scheduled invoice"),
    create=extend_schema(summary="Schedule a one-off invoice", request=ScheduledInvoiceCreateSerializer),
    destroy=extend_schema(summary="Cancel scheduled invoice"),
)
class ScheduledInvoiceViewSet(EnvelopeMixin, mixins.ListModelMixin, mixins.RetrieveModelMixin,
                              mixins.CreateModelMixin, mixins.DestroyModelMixin, viewsets.GenericViewSet):
    permission_classes = [IsAuthenticated]
    serializer_class = ScheduledInvoiceSerializer
    queryset = ScheduledInvoice.objects.select_related("client")
    lookup_value_regex = r"\d+"

    def get_queryset(self):
        queryset = super().get_queryset()
        if self.request.query_params.get("status"):
            queryset = queryset.filter(status=self.request.query_params["status"])
        return queryset

    def create(self, request: Request, *args, **kwargs) -> Response:
        serializer = ScheduledInvoiceCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = dict(serializer.validated_data)
        scheduled = ScheduledInvoiceService.create_scheduled(
            data.pop("client"), data.pop("line_items"), user=request.user, **data,
        )
        return APIResponse.success(data=ScheduledInvoiceSerializer(scheduled).data, message="Invoice scheduled.", status_code=201)

    def destroy(self, request: Request, *args, **kwargs) -> Response:
        scheduled = ScheduledInvoiceService.cancel_scheduled(self.get_object())
        return APIResponse.success(data=ScheduledInvoiceSerializer(scheduled).data, message="Scheduled invoice cancelled.")

    @extend_schema(summary="Generate scheduled invoice now", request=None)
    @action(detail=True, methods=["post"], url_path="generate")
    def generate(self, request: Request, pk: Optional[int] = None) -> Response:
        invoice = ScheduledInvoiceService.generate_now(self.get_object())
        return APIResponse.success(data=InvoiceDetailSerializer(invoice).data, message="Invoice generated.", status_code=201)


@extend_schema_view(
    list=extend_schema(summary="List payment plan templates"),
    retrieve=extend_schema(summary="Get payment plan template"),
    create=extend_schema(summary="Create payment plan template", request=PaymentPlanTemplateCreateSerializer),
    destroy=extend_schema(summary="Delete payment plan template"),
)
class PaymentPlanTemplateViewSet(EnvelopeMixin, mixins.ListModelMixin, mixins.RetrieveModelMixin,
                                 mixins.CreateModelMixin, mixins.DestroyModelMixin, viewsets.GenericViewSet):
    permission_classes = [IsAuthenticated]
    serializer_class = PaymentPlanTemplateSerializer
    queryset = PaymentPlanTemplate.objects.all()
    lookup_value_regex = r"\d+"

    def create(self, request: Request, *args, **kwargs) -> Response:
        serializer = PaymentPlanTemplateCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = dict(serializer.validated_data)
        template = PaymentPlanService.create_template(data.pop("name"), data.pop("payments"), **data)
        return APIResponse.success(data=PaymentPlanTemplateSerializer(template).data, message="Payment plan created.", status_code=201)

    def destroy(self, request: Request, *args, **kwargs) -> Response:
        template = self.get_object()
        template_id = template.id
        PaymentPlanService.delete_template(template)
        return APIResponse.success(data={"id": template_id}, message="Payment plan deleted.")

    @extend_schema(
        summary="Generate invoices from a payment plan",
        description="Creates one draft invoice per installment. Upfront installments are deposit invoices.",
        request=GenerateFromPlanSerializer,
    )
    @action(detail=False, methods=["post"], url_path="generate")
    def generate(self, request: Request) -> Response:
        serializer = GenerateFromPlanSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        invoices = PaymentPlanService.generate_from_plan(
            data["template"], data["client"], data["total_amount"], project=data.get("project"), user=request.user,
        )
        return APIResponse.success(
            data={"invoices": InvoiceListSerializer(invoices, many=True).data},
            message=f"Generated {len(invoices)} invoice(s).",
            status_code=201,
        )


class MilestoneViewSet(viewsets.GenericViewSet):
    permission_classes = [IsAuthenticated]
    queryset = Milestone.objects.select_related("project")
    lookup_value_regex = r"\d+"

    @extend_schema(summary="Complete milestone", description="Emits milestone.completed and generates milestone-triggered invoices.", request=None)
    @action(detail=True, methods=["post"], url_path="complete")
    def complete(self, request: Request, pk: Optional[int] = None) -> Response:
        milestone = MilestoneService.complete(self.get_object(), user=request.user)
        return APIResponse.success(
            data={"id": milestone.id, "is_completed": milestone.is_completed, "completed_at": milestone.completed_at},
            message="Milestone completed.",
        )


# ------------------------------
# Workflow triggers
# ------------------------------
@extend_schema_view(
    list=extend_schema(summary="List workflow triggers"),
    retrieve=extend_schema(summary="Get workflow trigger"),
    create=extend_schema(summary="Create workflow trigger"),
    update=extend_schema(summary="Update workflow trigger"),
    partial_update=extend_schema(summary="Partially update workflow trigger"),
    destroy=extend_schema(summary="Delete workflow trigger"),
)
class WorkflowTriggerViewSet(EnvelopeMixin, viewsets.ModelViewSet):
    permission_classes = [IsAuthenticated]
    serializer_class = WorkflowTriggerSerializer
    queryset = WorkflowTrigger.objects.all()
    lookup_value_regex = r"\d+"

    def get_queryset(self):
        queryset = super().get_queryset()
        if self.request.query_params.get("event_type"):
            queryset = queryset.filter(event_type=self.request.query_params["event_type"])
        return queryset

    def create(self, request: Request, *args, **kwargs) -> Response:
        serializer = self.get_serializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        trigger = serializer.save(created_by=request.user)
        logger.info(f"Workflow trigger {trigger.id} created for {trigger.event_type}")
        return APIResponse.success(data=self.get_serializer(trigger).data, message="Trigger created.", status_code=201)

    def update(self, request: Request, *args, **kwargs) -> Response:
        partial = kwargs.pop("partial", False)
        serializer = self.get_serializer(self.get_object(), data=request.data, partial=partial)
        serializer.is_valid(raise_exception=True)
        trigger = serializer.save()
        return APIResponse.success(data=self.get_serializer(trigger).data, message="Trigger updated.")

    def destroy(self, request: Request, *args, **kwargs) -> Response:
        trigger = self.get_object()
        trigger_id = trigger.id
        trigger.delete()
        logger.info(f"Workflow trigger {trigger_id} deleted")
        return APIResponse.success(data={"id": trigger_id}, message="Trigger deleted.")

    @extend_schema(summary="Toggle trigger on or off", request=None)
    @action(detail=True, methods=["post"], url_path="toggle")
    def toggle(self, request: Request, pk: Optional[int] = None) -> Response:
        trigger = self.get_object()
        trigger.is_active = not trigger.is_active
        trigger.save(update_fields=["is_active", "updated_at"])
        state = "enabled" if trigger.is_active else "disabled"
        return APIResponse.success(data=self.get_serializer(trigger).data, message=f"Trigger {state}.")

    @extend_schema(summary="List event types and their payload fields")
    @action(detail=False, methods=["get"], url_path="event-types")
    def event_types(self, request: Request) -> Response:
        data = [
            {"value": value, "label": label, "fields": list(payload_class(value).field_names())}
            for value, label in EventType.choices
        ]
        return APIResponse.success(data=data)

    @extend_schema(summary="List action types")
    @action(detail=False, methods=["get"], url_path="action-types")
    def action_types(self, request: Request) -> Response:
        return APIResponse.success(data=describe_actions())

    @extend_schema(
        summary="Trigger execution logs",
        parameters=[OpenApiParameter(name="trigger", description="Filter by trigger ID", required=False, type=int)],
    )
    @action(detail=False, methods=["get"], url_path="logs")
    def logs(self, request: Request) -> Response:
        queryset = WorkflowTriggerLog.objects.select_related("trigger")
        if request.query_params.get("trigger"):
            queryset = queryset.filter(trigger_id=request.query_params["trigger"])
        page = self.paginate_queryset(queryset)
        if page is not None:
            return APIResponse.paginated(WorkflowTriggerLogSerializer(page, many=True).data, self.paginator)
        return APIResponse.success(data=WorkflowTriggerLogSerializer(queryset, many=True).data)

    @extend_schema(
        summary="Emitted system events",
        parameters=[OpenApiParameter(name="event_type", description="Filter by event type", required=False, type=str)],
    )
    @action(detail=False, methods=["get"], url_path="events")
    def events(self, request: Request) -> Response:
        queryset = WorkflowEventLog.objects.all()
        if request.query_params.get("event_type"):
            queryset = queryset.filter(event_type=request.query_params["event_type"])
        page = self.paginate_queryset(queryset)
        if page is not None:
            return APIResponse.paginated(WorkflowEventLogSerializer(page, many=True).data, self.paginator)
        return APIResponse.success(data=WorkflowEventLogSerializer(queryset, many=True).data)

    @extend_schema(summary="Emit an event", description="Runs matching triggers synchronously and returns the outcome.", request=EmitEventSerializer)
    @action(detail=False, methods=["post"], url_path="emit")
    def emit(self, request: Request) -> Response:
        serializer = EmitEventSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        result = engine.emit(
            serializer.validated_data["event_type"],
            serializer.validated_data["data"],
            triggered_by=request.user.get_username(),
        )
        return APIResponse.success(data=result.to_dict(), message="Event emitted.")


# ------------------------------
# Webhook deliveries
# ------------------------------
@extend_schema_view(
    list=extend_schema(
        summary="List webhook deliveries",
        parameters=[OpenApiParameter(name="status", description="Filter by delivery status", required=False, type=str)],
    ),
    retrieve=extend_schema(summary="Get webhook delivery"),
)
class WebhookDeliveryViewSet(EnvelopeMixin, viewsets.ReadOnlyModelViewSet):
    permission_classes = [IsAuthenticated]
    serializer_class = WebhookDeliverySerializer
    queryset = WebhookDelivery.objects.all()
    lookup_value_regex = r"\d+"

    def get_queryset(self):
        queryset = super().get_queryset()
        if self.request.query_params.get("status"):
            queryset = queryset.filter(status=self.request.query_params["status"])
        return queryset

    @extend_schema(summary="Retry webhook delivery now", request=None)
    @action(detail=True, methods=["post"], url_path="retry")
    def retry(self, request: Request, pk: Optional[int] = None) -> Response:
        delivery = WebhookService.retry(self.get_object())
        return APIResponse.success(data=self.get_serializer(delivery).data, message=f"Delivery {delivery.status}.")
