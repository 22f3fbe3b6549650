"""Webhook authentication, processing and events."""

from .events import EventDispatcher, WebhookReceived
from .processor import WebhookJob, WebhookProcessor, authenticate_webhook
from .tasks import PROCESS_WEBHOOK_TASK, CoroutineRunner, create_celery, webhook_task

__all__ = [
    "EventDispatcher",
    "WebhookReceived",
    "WebhookJob",
    "WebhookProcessor",
    "authenticate_webhook",
    "PROCESS_WEBHOOK_TASK",
    "CoroutineRunner",
    "create_celery",
    "webhook_task",
]
