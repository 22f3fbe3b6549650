"""HTTP surface: provider webhooks and the health report."""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from kombu.exceptions import OperationalError
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from .cache import create_cache
from .config import PaymentsSettings
from .database import DatabaseManager, TransactionStore
from .drivers.support import load_payload
from .exceptions import DriverNotFoundError, PaymentError, WebhookAuthError
from .orchestrator import PaymentOrchestrator
from .webhooks import (
    CoroutineRunner,
    EventDispatcher,
    WebhookProcessor,
    authenticate_webhook,
    create_celery,
    webhook_task,
)

logger = logging.getLogger(__name__)


async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    logger.warning(f"Rate limit exceeded for {get_remote_address(request)} on {request.url.path}")
    return JSONResponse(status_code=429, content={"message": f"Rate limit exceeded: {exc.detail}"})


def create_app(
    settings: Optional[PaymentsSettings] = None,
    *,
    orchestrator: Optional[PaymentOrchestrator] = None,
    dispatcher: Optional[EventDispatcher] = None,
    database: Optional[DatabaseManager] = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    When no orchestrator is given one is built from settings; if it has no
    transaction store and logging is enabled, a DatabaseManager is opened
    in the lifespan and its store attached. Webhooks are handed to the
    Celery task; with ``webhook.task_always_eager`` they run in-process on
    this app's orchestrator and dispatcher.
    """
    settings = settings or (orchestrator.settings if orchestrator else PaymentsSettings())
    orchestrator = orchestrator or PaymentOrchestrator(settings, cache=create_cache(settings.redis_url))
    dispatcher = dispatcher or EventDispatcher()
    if database is None and orchestrator.store is None and settings.logging.enabled:
        database = DatabaseManager(settings.database_url)

    runner = CoroutineRunner()
    celery_app = create_celery(settings, WebhookProcessor(orchestrator, dispatcher), runner=runner)
    task = webhook_task(celery_app)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        runner.bind(asyncio.get_running_loop())
        if database is not None:
            await database.initialize()
            orchestrator.store = TransactionStore(database.session_factory)
        try:
            yield
        finally:
            if database is not None:
                await database.shutdown()

    # one limiter per app; slowapi keys route limits by function name
    limiter = Limiter(key_func=get_remote_address)

    app = FastAPI(title="paygate", lifespan=lifespan)
    app.state.limiter = limiter
    app.state.settings = settings
    app.state.orchestrator = orchestrator
    app.state.dispatcher = dispatcher
    app.state.celery = celery_app
    app.state.webhook_task = task
    app.add_exception_handler(RateLimitExceeded, rate_limit_handler)

    @app.post(f"{settings.webhook.path.rstrip('/')}/{{provider}}")
    @limiter.limit(lambda: settings.webhook.rate_limit)
    async def receive_webhook(provider: str, request: Request):
        """
        Authenticate a provider webhook and queue it for processing.

        Processing happens off the request; a 202 only means the delivery
        was authentic and accepted.
        """
        provider = provider.lower()
        try:
            orchestrator.driver(provider)
        except DriverNotFoundError:
            raise HTTPException(status_code=404, detail=f"Unknown payment provider '{provider}'")

        body = await request.body()
        headers = {k.lower(): v for k, v in request.headers.items()}
        try:
            # some providers confirm webhooks over HTTP
            await asyncio.to_thread(authenticate_webhook, orchestrator, provider, headers, body)
        except WebhookAuthError:
            logger.warning(f"Rejected {provider} webhook with invalid signature")
            return JSONResponse(status_code=401, content={"message": "Invalid webhook signature"})

        payload = load_payload(body)
        if payload is None:
            raise HTTPException(status_code=400, detail="Invalid JSON payload")

        try:
            # eager tasks block, so publishing happens off the event loop
            await asyncio.to_thread(task.apply_async, args=(provider, payload))
        except OperationalError as e:
            logger.error(f"Failed to queue {provider} webhook: {e}")
            return JSONResponse(status_code=500, content={"message": "Failed to queue webhook"})

        return JSONResponse(status_code=202, content={"status": "queued"})

    @app.get("/payments/health")
    async def health() -> Dict[str, Any]:
        providers: Dict[str, Dict[str, Any]] = {}
        for name in orchestrator.enabled_providers():
            try:
                driver = orchestrator.driver(name)
                healthy = await asyncio.to_thread(driver.get_cached_health_check)
            except PaymentError as e:
                providers[name] = {"healthy": False, "error": str(e)}
                continue
            providers[name] = {"healthy": healthy, "currencies": driver.supported_currencies()}
        return {"status": "operational", "providers": providers}

    return app
