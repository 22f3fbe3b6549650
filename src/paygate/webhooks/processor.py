"""Turns authenticated webhook payloads into canonical transaction updates."""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from ..exceptions import WebhookAuthError
from ..orchestrator import PaymentOrchestrator
from .events import EventDispatcher, WebhookReceived

logger = logging.getLogger(__name__)


@dataclass
class WebhookJob:
    provider: str
    payload: Dict[str, Any]
    attempts: int = 0


def authenticate_webhook(orchestrator: PaymentOrchestrator, provider: str, headers: Dict[str, str], body: bytes) -> None:
    """
    Raise WebhookAuthError unless the provider's driver accepts the signature
    and timestamp. Skipped when signature verification is disabled in config.
    """
    if not orchestrator.settings.webhook.verify_signature:
        return
    driver = orchestrator.driver(provider)
    if not driver.validate_webhook(headers, body):
        raise WebhookAuthError("Invalid webhook signature", provider=provider)


class WebhookProcessor:
    """
    Processes one webhook job: extract, normalize, update under the
    per-reference lock and emit WebhookReceived the first time a webhook
    reports that status for the transaction.
    """

    def __init__(self, orchestrator: PaymentOrchestrator, dispatcher: Optional[EventDispatcher] = None):
        self.orchestrator = orchestrator
        self.dispatcher = dispatcher or EventDispatcher()

    async def handle(self, job: WebhookJob) -> bool:
        """Returns True when an event was emitted."""
        driver = self.orchestrator.driver(job.provider)
        reference = driver.extract_webhook_reference(job.payload)
        raw_status = driver.extract_webhook_status(job.payload)
        channel = driver.extract_webhook_channel(job.payload)
        status = self.orchestrator.factory.normalizer.normalize(raw_status, driver.name)

        logger.info(f"Processing {job.provider} webhook for {reference or 'unknown reference'}: {status}")

        if reference and self.orchestrator.logging_enabled:
            changed = await self.orchestrator.store.apply_status_update(reference, status, channel)
            if not changed:
                return False

        await self.dispatcher.dispatch(
            WebhookReceived(provider=job.provider, payload=job.payload, reference=reference, status=status)
        )
        return True
