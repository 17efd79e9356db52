import pytest
from rest_framework.test import APIClient

from billing.workflow.engine import engine
from tests.factories import UserFactory


@pytest.fixture(autouse=True)
def billing_settings(settings):
    settings.WEBHOOK_DISPATCH_MODE = "sync"
    settings.BILLING_EMAIL_BACKOFF_SECONDS = 0
    settings.EMAIL_BACKEND = "django.core.mail.backends.locmem.EmailBackend"
    return settings


@pytest.fixture(autouse=True)
def restore_listeners():
    listeners = {key: list(value) for key, value in engine._listeners.items()}
    yield
    engine._listeners = listeners


@pytest.fixture
def user(db):
    return UserFactory(username="billing-admin", email="admin@example.com")


@pytest.fixture
def api_client(user):
    client = APIClient()
    client.force_authenticate(user=user)
    return client
