"""Real-time broadcast of queue events.

Successful status transitions publish ``patient-called``,
``patient-served`` or ``patient-updated``.  Events go to every in-process
subscriber (the SSE endpoint) and, when ``REDIS_URL`` is set, to the
``clinic:updates`` pub/sub channel so other processes see them too.
Delivery is best effort: a slow or broken subscriber never fails the
transition that produced the event.
"""

from __future__ import annotations

import json
import logging
import queue
import threading
from typing import Any, Dict, Optional, Tuple

import redis

import config
from models import PatientStatus, utcnow

logger = logging.getLogger(__name__)

PATIENT_CALLED = "patient-called"
PATIENT_SERVED = "patient-served"
PATIENT_UPDATED = "patient-updated"

EVENT_FOR_STATUS = {
    PatientStatus.in_progress: PATIENT_CALLED,
    PatientStatus.served: PATIENT_SERVED,
}

_redis_client: Optional[redis.Redis] = None


def get_redis() -> Optional[redis.Redis]:
    """Get the Redis client if configured and reachable."""
    global _redis_client
    if not config.REDIS_URL:
        return None

    if _redis_client is None:
        try:
            client = redis.from_url(config.REDIS_URL, decode_responses=True)
            client.ping()
        except redis.RedisError as e:
            logger.warning("Redis connection failed: %s", e)
            return None
        _redis_client = client

    return _redis_client


def transition_event(ticket_number: str, status: PatientStatus, staff_id: Optional[int]) -> Tuple[str, Dict[str, Any]]:
    status = PatientStatus(status)
    payload = {
        "ticketNumber": ticket_number,
        "status": status.value,
        "staffId": staff_id,
        "timestamp": utcnow().isoformat(),
    }
    return EVENT_FOR_STATUS.get(status, PATIENT_UPDATED), payload


def format_sse(event: str, data: Dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


def decode_update(raw: str) -> Tuple[str, Dict[str, Any]]:
    """Inverse of what ``publish`` writes to the updates channel."""
    message = json.loads(raw)
    return message["type"], message["data"]


class EventBroadcaster:
    def __init__(self, redis_client: Optional[redis.Redis] = None, max_backlog: int = 100) -> None:
        self.redis_client = redis_client
        self.max_backlog = max_backlog
        self._subscribers: Dict[int, queue.Queue] = {}
        self._lock = threading.Lock()
        self._next_id = 1

    def subscribe(self) -> Tuple[int, queue.Queue]:
        with self._lock:
            subscriber_id = self._next_id
            self._next_id += 1
            self._subscribers[subscriber_id] = queue.Queue(maxsize=self.max_backlog)
            inbox = self._subscribers[subscriber_id]
        logger.info("SSE client connected: %s", subscriber_id)
        return subscriber_id, inbox

    def unsubscribe(self, subscriber_id: int) -> None:
        with self._lock:
            self._subscribers.pop(subscriber_id, None)
        logger.info("SSE client disconnected: %s", subscriber_id)

    def client_count(self) -> int:
        return len(self._subscribers)

    def publish(self, event: str, payload: Dict[str, Any]) -> None:
        with self._lock:
            subscribers = list(self._subscribers.items())
        for subscriber_id, inbox in subscribers:
            try:
                inbox.put_nowait((event, payload))
            except queue.Full:
                # Client stopped reading; drop it rather than block the caller.
                logger.warning("Dropping SSE client %s: backlog full", subscriber_id)
                self.unsubscribe(subscriber_id)

        if self.redis_client is not None:
            try:
                self.redis_client.publish(
                    config.UPDATES_CHANNEL, json.dumps({"type": event, "data": payload})
                )
            except redis.RedisError as e:
                logger.error("Redis publish error: %s", e)


broadcaster = EventBroadcaster(redis_client=get_redis())
