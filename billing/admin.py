from django.contrib import admin

from .models import (
    Client, Project, Milestone, Invoice, InvoicePayment, InvoiceCredit,
    InvoiceActivity, RecurringInvoice, ScheduledInvoice, PaymentPlanTemplate, InvoiceReminder,
    Task, Notification, SchedulerRun, WorkflowTrigger, WorkflowTriggerLog,
    WorkflowEventLog, WebhookDelivery,
)


@admin.register(Client)
class ClientAdmin(admin.ModelAdmin):
    list_display = ('name', 'email', 'status', 'deleted_at', 'created_at')
    search_fields = ('name', 'email', 'company_name')
    list_filter = ('status',)

    def get_queryset(self, request):
        return Client.all_objects.all()


@admin.register(Invoice)
class InvoiceAdmin(admin.ModelAdmin):
    list_display = ('invoice_number', 'client', 'invoice_type', 'status', 'total', 'amount_paid', 'due_date', 'is_overdue')
    list_filter = ('status', 'invoice_type', 'is_overdue', 'late_fee_type')
    search_fields = ('invoice_number', 'client__name')
    readonly_fields = ('subtotal', 'discount_amount', 'tax_amount', 'late_fee_amount', 'total', 'amount_paid', 'created_at', 'updated_at')

    def get_queryset(self, request):
        return Invoice.all_objects.select_related('client')


@admin.register(InvoicePayment)
class InvoicePaymentAdmin(admin.ModelAdmin):
    list_display = ('invoice', 'amount', 'method', 'reference', 'created_at')
    list_filter = ('method',)

    # Payment history is append-only
    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(InvoiceActivity)
class InvoiceActivityAdmin(admin.ModelAdmin):
    list_display = ('invoice', 'action', 'user', 'timestamp')
    list_filter = ('action',)


@admin.register(RecurringInvoice)
class RecurringInvoiceAdmin(admin.ModelAdmin):
    list_display = ('id', 'client', 'frequency', 'is_active', 'next_generation_date', 'last_generated_at')
    list_filter = ('frequency', 'is_active')
    search_fields = ('client__name',)


@admin.register(ScheduledInvoice)
class ScheduledInvoiceAdmin(admin.ModelAdmin):
    list_display = ('id', 'client', 'trigger_type', 'scheduled_date', 'status', 'generated_invoice')
    list_filter = ('status', 'trigger_type')


@admin.register(PaymentPlanTemplate)
class PaymentPlanTemplateAdmin(admin.ModelAdmin):
    list_display = ('id', 'name', 'is_default', 'created_at')
    search_fields = ('name',)


@admin.register(WorkflowTrigger)
class WorkflowTriggerAdmin(admin.ModelAdmin):
    list_display = ('name', 'event_type', 'priority', 'is_active', 'updated_at')
    list_filter = ('event_type', 'is_active')
    search_fields = ('name',)


@admin.register(WorkflowTriggerLog)
class WorkflowTriggerLogAdmin(admin.ModelAdmin):
    list_display = ('trigger', 'event_type', 'action_type', 'result', 'execution_time_ms', 'created_at')
    list_filter = ('result', 'event_type')


@admin.register(WebhookDelivery)
class WebhookDeliveryAdmin(admin.ModelAdmin):
    list_display = ('id', 'url', 'status', 'attempts', 'max_attempts', 'next_retry_at', 'response_status')
    list_filter = ('status',)
    exclude = ('secret',)


admin.site.register(Project)
admin.site.register(Milestone)
admin.site.register(InvoiceCredit)
admin.site.register(InvoiceReminder)
admin.site.register(Task)
admin.site.register(Notification)
admin.site.register(SchedulerRun)
admin.site.register(WorkflowEventLog)
