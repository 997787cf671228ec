import logging
import threading
from typing import Callable, List

from agent_relay.domain.contracts import SinkEvent
from agent_relay.domain.events import (
    AUTH_FALLBACK_CHANNEL,
    CHUNK_CHANNEL,
    AuthFallbackNotice,
    StreamEvent,
    chunk_event,
    done_event,
    error_event,
)

logger = logging.getLogger(__name__)

Subscriber = Callable[[SinkEvent], None]


def channel_for(event: SinkEvent) -> str:
    if isinstance(event, AuthFallbackNotice):
        return AUTH_FALLBACK_CHANNEL
    return CHUNK_CHANNEL


class EventBus:
    """Synchronous fan-out of stream events to subscribers.

    A subscriber that raises is logged and skipped; delivery to the others
    continues.
    """

    def __init__(self):
        self._subscribers: List[Subscriber] = []
        self._lock = threading.Lock()

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(subscriber)

        def _unsubscribe() -> None:
            with self._lock:
                if subscriber in self._subscribers:
                    self._subscribers.remove(subscriber)

        return _unsubscribe

    def publish(self, event: SinkEvent) -> SinkEvent:
        with self._lock:
            subscribers = list(self._subscribers)
        for subscriber in subscribers:
            try:
                subscriber(event)
            except Exception:
                logger.exception("event subscriber failed on %s", channel_for(event))
        return event

    def emitter_for(self, response_id: str) -> "ResponseEmitter":
        return ResponseEmitter(self, response_id)


class ResponseEmitter:
    """Publishes the events of one response.

    Chunks keep their order, at most one fallback notice goes out, and the
    first terminal event closes the emitter: everything after it is dropped.
    """

    def __init__(self, bus: EventBus, response_id: str):
        self._bus = bus
        self.response_id = response_id
        self._finished = False
        self._notice_sent = False
        self.chunks_emitted = 0

    @property
    def finished(self) -> bool:
        return self._finished

    def chunk(self, text: str) -> None:
        if self._finished or not text:
            return
        self.chunks_emitted += 1
        self._bus.publish(chunk_event(self.response_id, text))

    def notice(self, provider: str, message: str) -> None:
        if self._finished or self._notice_sent:
            return
        self._notice_sent = True
        self._bus.publish(AuthFallbackNotice(response_id=self.response_id, provider=provider, message=message))

    def done(self) -> None:
        self._terminal(done_event(self.response_id))

    def fail(self, message: str) -> None:
        self._terminal(error_event(self.response_id, message or "Agent failed."))

    def _terminal(self, event: StreamEvent) -> None:
        if self._finished:
            return
        self._finished = True
        self._bus.publish(event)
