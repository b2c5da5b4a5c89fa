"""Outbound events for operational dashboards.

Publishing is fire-and-forget: in-process receivers are reached through
blinker signals and connected dashboards through bounded per-subscriber
queues drained by a Server-Sent Events stream. A full queue drops the event
for that subscriber instead of blocking the request that published it.
"""

import json
import logging
import queue
import threading
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional, Set

from blinker import Namespace

NEW_ORDER = "newOrder"

shop_signals = Namespace()
new_order = shop_signals.signal(NEW_ORDER)


def format_sse_event(event_type: str, data: Any, event_id: Optional[str] = None) -> str:
    payload = {
        "type": event_type,
        "payload": data,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    lines = []
    if event_id:
        lines.append(f"id: {event_id}")
    lines.append(f"event: {event_type}")
    lines.append(f"data: {json.dumps(payload, default=str)}")
    return "\n".join(lines) + "\n\n"


class EventBus:
    def __init__(self, logger: Optional[logging.Logger] = None, queue_size: int = 100):
        self.logger = logger or logging.getLogger(__name__)
        self.queue_size = max(1, int(queue_size))
        self._subscribers: Set[queue.Queue] = set()
        self._lock = threading.Lock()

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def subscribe(self) -> queue.Queue:
        subscriber: queue.Queue = queue.Queue(maxsize=self.queue_size)
        with self._lock:
            self._subscribers.add(subscriber)
        return subscriber

    def unsubscribe(self, subscriber: queue.Queue):
        with self._lock:
            self._subscribers.discard(subscriber)

    def publish(self, event_type: str, payload: Dict[str, Any]) -> int:
        """Deliver an event; returns how many dashboard subscribers received it."""
        signal = shop_signals.signal(event_type)
        for receiver in signal.receivers_for(self):
            try:
                receiver(self, payload=payload)
            except Exception as exc:
                self.logger.warning("A %s receiver failed: %s", event_type, exc)

        with self._lock:
            subscribers = list(self._subscribers)

        delivered = 0
        for subscriber in subscribers:
            try:
                subscriber.put_nowait((event_type, payload))
                delivered += 1
            except queue.Full:
                self.logger.warning("Dropping %s event for a slow dashboard subscriber", event_type)
        return delivered

    def stream(self, heartbeat_seconds: float = 15.0) -> Iterator[str]:
        subscriber = self.subscribe()
        try:
            yield format_sse_event("connected", {"status": "connected"})
            while True:
                try:
                    event_type, payload = subscriber.get(timeout=heartbeat_seconds)
                except queue.Empty:
                    yield format_sse_event("heartbeat", {"status": "connected"})
                    continue
                event_id = str(payload.get("id") or "") if isinstance(payload, dict) else None
                yield format_sse_event(event_type, payload, event_id=event_id)
        finally:
            self.unsubscribe(subscriber)
