"""API URL routing for the billing engine."""
from django.urls import path
from rest_framework.routers import DefaultRouter

from .views import (
    InvoiceViewSet,
    MilestoneViewSet,
    PaymentPlanTemplateViewSet,
    RecurringInvoiceViewSet,
    ScheduledInvoiceViewSet,
    WebhookDeliveryViewSet,
    WorkflowTriggerViewSet,
)

router = DefaultRouter()
# Nested prefixes first so they win over the invoice detail routes
router.register(r'invoices/recurring', RecurringInvoiceViewSet, basename='api-recurring-invoices')
router.register(r'invoices/scheduled', ScheduledInvoiceViewSet, basename='api-scheduled-invoices')
router.register(r'invoices/payment-plans', PaymentPlanTemplateViewSet, basename='api-payment-plans')
router.register(r'invoices', InvoiceViewSet, basename='api-invoices')
router.register(r'milestones', MilestoneViewSet, basename='api-milestones')
router.register(r'triggers', WorkflowTriggerViewSet, basename='api-triggers')
router.register(r'webhook-deliveries', WebhookDeliveryViewSet, basename='api-webhook-deliveries')

urlpatterns = [
    path('invoices/schedule/', ScheduledInvoiceViewSet.as_view({'post': 'create'}), name='api-invoices-schedule'),
    path('invoices/generate-from-plan/', PaymentPlanTemplateViewSet.as_view({'post': 'generate'}), name='api-invoices-generate-from-plan'),
] + router.urls
