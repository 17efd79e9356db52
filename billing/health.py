"""Health check endpoint for the billing engine."""

import os
import time
from typing import Any, Dict

import psutil
from django.conf import settings
from django.db import connections
from django.db.utils import OperationalError
from django.http import JsonResponse
from django.utils import timezone

APP_VERSION = os.environ.get("APP_VERSION", "1.0.0")
APP_START_TIME = time.time()


def _get_memory_metrics() -> Dict[str, Any]:
    try:
        memory_info = psutil.Process().memory_info()
        return {"rss_mb": round(memory_info.rss / 1024 / 1024, 2)}
    except psutil.Error as e:
        return {"error": str(e)}


def _get_scheduler_status() -> Dict[str, Any]:
    from billing.models import SchedulerRun

    status = {}
    for run in SchedulerRun.objects.all():
        status[run.job] = {
            "is_running": run.is_running,
            "last_started_at": run.last_started_at.isoformat() if run.last_started_at else None,
            "last_finished_at": run.last_finished_at.isoformat() if run.last_finished_at else None,
        }
    return status


def health_check(request):
    """
    Health check for load balancers and the operator dashboard.
    Returns 503 when the database is unreachable.
    """
    try:
        connections["default"].cursor()
    except OperationalError:
        return JsonResponse({"status": "unhealthy", "database": "down"}, status=503)

    response = JsonResponse(
        {
            "status": "healthy",
            "version": APP_VERSION,
            "environment": "production" if not settings.DEBUG else "development",
            "timestamp": timezone.now().isoformat(),
            "uptime_seconds": int(time.time() - APP_START_TIME),
            "database": "up",
            "memory": _get_memory_metrics(),
            "scheduler": _get_scheduler_status(),
        }
    )
    # Health status must never be cached
    response["Cache-Control"] = "no-cache, no-store, must-revalidate, max-age=0"
    return response
