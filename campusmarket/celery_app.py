from __future__ import annotations

import json
import os
from datetime import datetime

from celery import Celery
from celery.signals import task_failure, task_retry


NOTIFICATIONS_QUEUE = "notifications"
_SIGNALS_BOUND = False


def _broker_url(flask_app) -> str:
    return (
        str(flask_app.config.get("CELERY_BROKER_URL") or "").strip()
        or (os.getenv("CELERY_BROKER_URL") or "").strip()
        or (os.getenv("REDIS_URL") or "").strip()
        or "redis://localhost:6379/0"
    )


def _result_backend(broker_url: str) -> str:
    return (os.getenv("CELERY_RESULT_BACKEND") or "").strip() or broker_url


def _task_event(event: str, *, task_name: str, task_id, kwargs, retries, **extra) -> str:
    """One JSON log line per task signal, carrying the request's trace id."""
    trace_id = ""
    if isinstance(kwargs, dict):
        trace_id = str(kwargs.get("trace_id") or "").strip()
    payload = {
        "event": event,
        "task_name": task_name,
        "task_id": str(task_id or ""),
        "trace_id": trace_id,
        "retry_count": int(retries or 0),
        "timestamp": datetime.utcnow().isoformat(),
    }
    payload.update({k: str(v) for k, v in extra.items() if v is not None})
    return json.dumps(payload)


def _bind_task_observers(flask_app) -> None:
    global _SIGNALS_BOUND
    if _SIGNALS_BOUND:
        return

    @task_failure.connect(weak=False)
    def _on_task_failure(sender=None, task_id=None, exception=None, args=None, kwargs=None, einfo=None, **extra):
        # Notification rows are lost at this point; the ledger is not.
        flask_app.logger.error(
            _task_event(
                "celery_task_failure",
                task_name=getattr(sender, "name", "") if sender is not None else "",
                task_id=task_id,
                kwargs=kwargs,
                retries=getattr(getattr(sender, "request", None), "retries", 0),
                exception=exception,
                einfo=einfo,
            )
        )

    @task_retry.connect(weak=False)
    def _on_task_retry(request=None, reason=None, einfo=None, **extra):
        flask_app.logger.warning(
            _task_event(
                "celery_task_retry",
                task_name=str(getattr(request, "task", "") or ""),
                task_id=getattr(request, "id", ""),
                kwargs=getattr(request, "kwargs", None),
                retries=getattr(request, "retries", 0),
                reason=reason,
            )
        )

    _SIGNALS_BOUND = True


def create_celery_app(flask_app) -> Celery:
    broker = _broker_url(flask_app)
    celery = Celery(flask_app.import_name, broker=broker, backend=_result_backend(broker))
    celery.conf.update(
        task_serializer="json",
        accept_content=["json"],
        result_serializer="json",
        task_ignore_result=True,
        task_acks_late=True,
        worker_prefetch_multiplier=1,
        broker_connection_retry_on_startup=True,
        timezone="UTC",
        enable_utc=True,
        task_default_queue=NOTIFICATIONS_QUEUE,
        task_routes={"campusmarket.tasks.notification_tasks.*": {"queue": NOTIFICATIONS_QUEUE}},
    )

    class FlaskContextTask(celery.Task):
        def __call__(self, *args, **kwargs):
            with flask_app.app_context():
                return self.run(*args, **kwargs)

    celery.Task = FlaskContextTask
    celery.autodiscover_tasks(["campusmarket.tasks"], related_name="notification_tasks")
    _bind_task_observers(flask_app)
    return celery
