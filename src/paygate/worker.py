"""
Celery worker entrypoint.

    celery -A paygate.worker worker --loglevel=info

Settings come from ``PAYMENTS_`` environment variables; the broker is
``PAYMENTS_WEBHOOK__BROKER_URL``, falling back to ``PAYMENTS_REDIS_URL``.
"""

from .config import PaymentsSettings
from .webhooks.tasks import create_celery

settings = PaymentsSettings()
celery_app = create_celery(settings)
