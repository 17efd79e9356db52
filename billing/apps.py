from django.apps import AppConfig


class BillingConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "billing"
    verbose_name = "Billing Engine"

    def ready(self):
        from .workflow.listeners import register_default_listeners
        register_default_listeners()
