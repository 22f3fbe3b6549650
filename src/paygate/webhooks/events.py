"""
Webhook domain events.

Events are plain dataclasses handed to listeners registered on an
EventDispatcher; listeners may be sync functions or coroutines.
"""

import inspect
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Type, Union

logger = logging.getLogger(__name__)


@dataclass
class WebhookReceived:
    provider: str
    payload: Dict[str, Any]
    reference: Optional[str] = None
    status: Optional[str] = None
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


Listener = Callable[[Any], Union[None, Awaitable[None]]]


class EventDispatcher:
    """Routes events to listeners subscribed by event type."""

    def __init__(self):
        self._listeners: Dict[Type, List[Listener]] = {}

    def subscribe(self, event_type: Type, listener: Listener) -> None:
        self._listeners.setdefault(event_type, []).append(listener)

    def listeners(self, event_type: Type) -> List[Listener]:
        return list(self._listeners.get(event_type, []))

    async def dispatch(self, event: Any) -> None:
        for listener in self.listeners(type(event)):
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                # the transaction update is already committed; a listener must not undo it
                logger.exception(f"Listener {getattr(listener, '__name__', listener)} failed for {type(event).__name__}")
