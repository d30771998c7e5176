from campusmarket import create_app
from campusmarket.celery_app import create_celery_app

# Worker entry point: celery -A celery_app.celery worker
flask_app = create_app()
celery = create_celery_app(flask_app)

import campusmarket.tasks.notification_tasks  # noqa: E402,F401
