from __future__ import annotations
import json
import logging
import time
import uuid
from typing import Callable, List, Optional

from .models import IncidentMessage, source_value
from .store import Store

logger = logging.getLogger(__name__)

TOPIC_TRIGGERED = "incident.triggered"
TOPIC_CLEARED = "incident.cleared"
TOPICS = (TOPIC_TRIGGERED, TOPIC_CLEARED)

Subscriber = Callable[[IncidentMessage], None]


def make_message(topic: str, source, origin: str, sent_at: Optional[float] = None,
                 incident_id: Optional[str] = None) -> IncidentMessage:
    if topic not in TOPICS:
        raise ValueError(f"unknown topic {topic!r}")
    return IncidentMessage(
        topic=topic,
        source=source_value(source),
        origin=origin,
        sent_at=time.time() if sent_at is None else sent_at,
        message_id=uuid.uuid4().hex,
        incident_id=incident_id,
    )


class LocalChannel:
    """In-process pub/sub. Delivery is synchronous and includes the sender."""

    def __init__(self):
        self._subs: List[Subscriber] = []

    def subscribe(self, fn: Subscriber) -> None:
        self._subs.append(fn)

    def publish(self, msg: IncidentMessage) -> None:
        for fn in list(self._subs):
            fn(msg)

    def poll(self) -> int:
        return 0


class StoreChannel:
    """
    Cross-process channel backed by the shared SQLite database.

    Each process polls for rows it has not seen yet. A fresh channel starts
    at the current tail so history from earlier sessions is never replayed.
    Delivery is at-least-once; receivers dedupe by message_id.
    """

    def __init__(self, store: Store, retention_seconds: int = 3600,
                 clock: Callable[[], float] = time.time):
        self.store = store
        self.retention_seconds = retention_seconds
        self.clock = clock
        self._subs: List[Subscriber] = []
        self._last_id = store.last_channel_id()

    def subscribe(self, fn: Subscriber) -> None:
        self._subs.append(fn)

    def publish(self, msg: IncidentMessage) -> None:
        self.store.add_channel_message(msg)

    def poll(self) -> int:
        """Deliver new rows to subscribers. Returns how many were delivered."""
        delivered = 0
        for row_id, topic, origin, sent_at, payload in self.store.channel_messages_after(self._last_id):
            self._last_id = row_id
            msg = _decode(topic, origin, sent_at, payload)
            if msg is None:
                continue
            for fn in list(self._subs):
                fn(msg)
            delivered += 1
        return delivered

    def prune(self) -> None:
        self.store.prune_channel(self.clock() - self.retention_seconds)


def _decode(topic, origin, sent_at, payload) -> Optional[IncidentMessage]:
    try:
        data = json.loads(payload)
        if topic not in TOPICS:
            raise ValueError(f"unknown topic {topic!r}")
        return IncidentMessage(
            topic=topic,
            source=str(data["source"]),
            origin=str(origin),
            sent_at=float(sent_at),
            message_id=str(data["message_id"]),
            incident_id=data.get("incident_id"),
        )
    except (ValueError, KeyError, TypeError, AttributeError) as e:
        logger.warning("[Channel] Dropping malformed message from %s: %s", origin, e)
        return None
