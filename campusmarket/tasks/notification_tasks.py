from __future__ import annotations

import json
import time
from datetime import datetime

from celery import shared_task
from flask import current_app

from campusmarket.utils.notify import write_notifications


def _task_log(task_name: str, *, status: str, started_at: float, trace_id: str = "", **extra):
    payload = {
        "task_name": task_name,
        "status": status,
        "duration_ms": int(max(0.0, time.perf_counter() - float(started_at)) * 1000.0),
        "trace_id": str(trace_id or ""),
        "timestamp": datetime.utcnow().isoformat(),
    }
    payload.update(extra or {})
    current_app.logger.info(json.dumps(payload))


def _retry_countdown(retries: int) -> int:
    # Exponential backoff with cap.
    return int(min(300, max(5, 5 * (2 ** int(max(0, retries))))))


@shared_task(
    bind=True,
    name="campusmarket.tasks.notification_tasks.deliver_notifications",
    max_retries=3,
)
def deliver_notifications(self, *, items: list[dict], trace_id: str = ""):
    started = time.perf_counter()
    written = write_notifications(items)
    # Nothing landed at all usually means the database was unreachable.
    if items and written == 0 and int(self.request.retries or 0) < int(self.max_retries or 0):
        countdown = _retry_countdown(int(self.request.retries or 0))
        _task_log(
            "deliver_notifications",
            status="retrying",
            started_at=started,
            trace_id=trace_id,
            count=len(items),
            countdown=countdown,
        )
        raise self.retry(countdown=countdown)
    _task_log(
        "deliver_notifications",
        status="ok" if written == len(items or []) else "partial",
        started_at=started,
        trace_id=trace_id,
        written=written,
        count=len(items or []),
    )
    return {"ok": True, "written": written}
