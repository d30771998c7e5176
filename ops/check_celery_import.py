from __future__ import annotations

import sys
from pathlib import Path


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

REQUIRED_TASKS = ("campusmarket.tasks.notification_tasks.deliver_notifications",)


def main() -> int:
    """Fail a deploy early when the worker would start without its tasks."""
    try:
        from celery_app import celery
    except Exception as exc:
        print(f"error: failed to import celery_app:celery -> {exc}", file=sys.stderr)
        return 1

    missing = [name for name in REQUIRED_TASKS if name not in celery.tasks]
    if missing:
        print(f"error: tasks not registered: {', '.join(missing)}", file=sys.stderr)
        return 1
    print(f"ok: broker={celery.conf.broker_url} queue={celery.conf.task_default_queue} tasks={len(REQUIRED_TASKS)}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
