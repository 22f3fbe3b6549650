"""
Celery task that processes authenticated webhook deliveries.

Usage:
    from paygate.webhooks.tasks import create_celery, webhook_task

    celery_app = create_celery(settings)
    webhook_task(celery_app).delay("paystack", payload)

A failed delivery is retried ``webhook.max_attempts - 1`` times, each after
``webhook.backoff_seconds``. PaymentError failures (unknown provider, bad
configuration) are dropped without retry.
"""

import asyncio
import logging
import threading
from typing import Any, Awaitable, Dict, Optional, TypeVar

from celery import Celery, Task

from ..cache import create_cache
from ..config import PaymentsSettings
from ..database import DatabaseManager, TransactionStore
from ..exceptions import PaymentError
from ..orchestrator import PaymentOrchestrator
from .events import EventDispatcher
from .processor import WebhookJob, WebhookProcessor

logger = logging.getLogger(__name__)

PROCESS_WEBHOOK_TASK = "paygate.process_webhook"

T = TypeVar("T")


class CoroutineRunner:
    """
    Runs coroutines to completion from synchronous task code.

    Coroutines are submitted to a single long-lived event loop so engine pools
    and locks created on it stay usable across tasks. The API binds its own
    loop; a worker process gets a loop on a background thread.
    """

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop
        self._lock = threading.Lock()

    def bind(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop

    def _ensure_loop(self) -> asyncio.AbstractEventLoop:
        with self._lock:
            if self._loop is None or self._loop.is_closed():
                self._loop = asyncio.new_event_loop()
                thread = threading.Thread(target=self._loop.run_forever, name="paygate-tasks", daemon=True)
                thread.start()
            return self._loop

    def run(self, coro: Awaitable[T]) -> T:
        loop = self._ensure_loop()
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            coro.close()
            raise RuntimeError("Webhook tasks cannot block the event loop they run on")
        return asyncio.run_coroutine_threadsafe(coro, loop).result()


async def build_processor(
    settings: PaymentsSettings,
    dispatcher: Optional[EventDispatcher] = None,
) -> WebhookProcessor:
    """Processor for a worker process, with its own orchestrator and database."""
    orchestrator = PaymentOrchestrator(settings, cache=create_cache(settings.redis_url))
    if settings.logging.enabled:
        database = DatabaseManager(settings.database_url)
        await database.initialize()
        orchestrator.store = TransactionStore(database.session_factory)
    return WebhookProcessor(orchestrator, dispatcher)


def create_celery(
    settings: PaymentsSettings,
    processor: Optional[WebhookProcessor] = None,
    *,
    runner: Optional[CoroutineRunner] = None,
    dispatcher: Optional[EventDispatcher] = None,
) -> Celery:
    """
    Build the Celery app with the webhook task registered.

    Without ``processor`` one is built from settings on first use.
    """
    app = Celery("paygate", broker=settings.broker_url())
    app.conf.update(
        task_serializer="json",
        accept_content=["json"],
        task_acks_late=True,
        task_always_eager=settings.webhook.task_always_eager,
        task_ignore_result=True,
    )
    runner = runner or CoroutineRunner()
    processor_lock = threading.Lock()
    state: Dict[str, Any] = {"processor": processor}

    def current_processor() -> WebhookProcessor:
        with processor_lock:
            if state["processor"] is None:
                state["processor"] = runner.run(build_processor(settings, dispatcher))
            return state["processor"]

    @app.task(
        bind=True,
        name=PROCESS_WEBHOOK_TASK,
        acks_late=True,
        max_retries=max(settings.webhook.max_attempts - 1, 0),
        default_retry_delay=settings.webhook.backoff_seconds,
    )
    def process_webhook(self: Task, provider: str, payload: Dict[str, Any]) -> bool:
        job = WebhookJob(provider=provider, payload=payload, attempts=self.request.retries + 1)
        try:
            return runner.run(current_processor().handle(job))
        except PaymentError as e:
            logger.error(f"Dropping {provider} webhook: {e}")
            return False
        except Exception as e:
            if self.request.retries >= self.max_retries:
                logger.error(f"{provider} webhook failed after {job.attempts} attempts: {e}")
                raise
            logger.warning(
                f"{provider} webhook attempt {job.attempts} failed: {e}; "
                f"retrying in {self.default_retry_delay}s"
            )
            raise self.retry(exc=e)

    return app


def webhook_task(app: Celery) -> Task:
    return app.tasks[PROCESS_WEBHOOK_TASK]