"""Patient notifications.

Whether to notify is a pure decision on status and position.  Sending is
best effort and never blocks or fails a queue operation: messages are pushed
to a Redis list for ``notification_worker.py`` when Redis is configured,
otherwise handed to an executor, otherwise sent inline.  Any transport
failure is logged and swallowed.
"""

from __future__ import annotations

import json
import logging
import threading
from collections import deque
from concurrent.futures import Executor
from datetime import timedelta
from typing import Any, Deque, Dict, List, Optional

import redis
from sqlmodel import Session
from twilio.base.exceptions import TwilioException
from twilio.rest import Client

import config
from clinic_settings import get_settings
from estimator import format_wait
from models import PatientStatus, utcnow
from services import list_waiting

logger = logging.getLogger(__name__)

SendResult = Dict[str, Any]


def mask_phone(phone: str) -> str:
    """Last 4 digits only, for logs."""
    return f"***{phone[-4:]}"


class MockSmsTransport:
    """Records messages instead of sending them.  Used without Twilio credentials.

    Only the most recent ``history_size`` messages are kept.
    """

    def __init__(self, history_size: int = 500) -> None:
        self.history_size = history_size
        self.sent: Deque[Dict[str, Any]] = deque(maxlen=history_size)
        self._count = 0
        self._lock = threading.Lock()

    def send(self, phone: str, message: str) -> SendResult:
        now = utcnow()
        with self._lock:
            self._count += 1
            notification = {
                "id": f"mock-{self._count}",
                "phone": phone,
                "message": message,
                "timestamp": now,
                "status": "sent",
            }
            self.sent.append(notification)
        logger.info("[SIMULATION] SMS to %s: %s", mask_phone(phone), message)
        return {"success": True, "id": notification["id"], "timestamp": now.isoformat()}

    def history(self, limit: int = 50) -> List[Dict[str, Any]]:
        with self._lock:
            return list(reversed(self.sent))[:limit]

    def clear_older_than(self, hours: int = 24) -> None:
        cutoff = utcnow() - timedelta(hours=hours)
        with self._lock:
            self.sent = deque((n for n in self.sent if n["timestamp"] > cutoff), maxlen=self.history_size)


class TwilioSmsTransport:
    def __init__(self, account_sid: str, auth_token: str, from_number: str, client: Optional[Client] = None) -> None:
        self.from_number = from_number
        self.client = client or Client(account_sid, auth_token)

    def send(self, phone: str, message: str) -> SendResult:
        try:
            message_obj = self.client.messages.create(from_=self.from_number, body=message, to=phone)
        except TwilioException as e:
            logger.error("Failed to send SMS to %s: %s", mask_phone(phone), e)
            return {"success": False, "error": str(e)}
        logger.info("SMS sent to %s: %s", mask_phone(phone), message_obj.sid)
        return {"success": True, "id": message_obj.sid, "timestamp": utcnow().isoformat()}


def build_transport():
    if config.TWILIO_ACCOUNT_SID and config.TWILIO_AUTH_TOKEN and config.TWILIO_FROM_NUMBER:
        return TwilioSmsTransport(
            config.TWILIO_ACCOUNT_SID, config.TWILIO_AUTH_TOKEN, config.TWILIO_FROM_NUMBER
        )
    logger.warning("Twilio not configured - SMS will be simulated")
    return MockSmsTransport()


def should_notify(status: PatientStatus, position: int, within: int = config.NOTIFY_WITHIN) -> bool:
    return PatientStatus(status) == PatientStatus.waiting and position <= within


def compose_message(ticket_number: str, position: int, avg_service_minutes: int = config.AVERAGE_SERVICE_MINUTES) -> str:
    if position == 0:
        return f"Your turn is now! Please proceed to the counter. Ticket: {ticket_number}"
    if position == 1:
        return f"You're next in line! Please get ready. Ticket: {ticket_number}"
    if position <= 3:
        return f"You're {position} patients away. Ticket: {ticket_number}"
    wait = format_wait(position * avg_service_minutes)
    return f"Your estimated wait: {wait}. Ticket: {ticket_number}"


class NotificationDispatcher:
    def __init__(
        self,
        transport,
        redis_client: Optional[redis.Redis] = None,
        executor: Optional[Executor] = None,
        notify_within: int = config.NOTIFY_WITHIN,
    ) -> None:
        self.transport = transport
        self.redis_client = redis_client
        self.executor = executor
        self.notify_within = notify_within
        # Last position each ticket was told about; one message per position.
        self._last_position: Dict[str, int] = {}
        self._lock = threading.Lock()

    def notify(
        self,
        ticket_number: str,
        status: PatientStatus,
        position: int,
        phone: Optional[str],
        avg_service_minutes: int = config.AVERAGE_SERVICE_MINUTES,
    ) -> bool:
        """Send a queue update if this position warrants one.  Returns whether it was sent."""
        if not phone or not should_notify(status, position, self.notify_within):
            return False
        with self._lock:
            if self._last_position.get(ticket_number) == position:
                return False
            self._last_position[ticket_number] = position
        self.dispatch(phone, compose_message(ticket_number, position, avg_service_minutes), ticket_number)
        return True

    def forget(self, ticket_number: str) -> None:
        with self._lock:
            self._last_position.pop(ticket_number, None)

    def clear_history(self, hours: int) -> None:
        """Drop simulated messages older than ``hours``.  Real transports keep no history."""
        if isinstance(self.transport, MockSmsTransport):
            self.transport.clear_older_than(hours)

    def dispatch(self, phone: str, message: str, ticket_number: Optional[str] = None) -> None:
        if self.redis_client is not None:
            notification_data = {
                "phone": phone,
                "message": message,
                "ticket_number": ticket_number,
                "timestamp": utcnow().isoformat(),
            }
            try:
                self.redis_client.lpush(config.NOTIFICATION_LIST, json.dumps(notification_data))
                logger.info("Queued notification for %s", mask_phone(phone))
                return
            except redis.RedisError as e:
                logger.error("Failed to queue notification, sending directly: %s", e)

        if self.executor is not None:
            self.executor.submit(self.send, phone, message)
        else:
            self.send(phone, message)

    def send(self, phone: str, message: str) -> Optional[SendResult]:
        try:
            result = self.transport.send(phone, message)
        except Exception:
            # Notifications are best effort; the transport must not fail the caller.
            logger.exception("Notification to %s failed", mask_phone(phone))
            return None
        if not result.get("success"):
            logger.error("Notification to %s failed: %s", mask_phone(phone), result.get("error"))
        return result


def notify_queue_front(session: Session, dispatcher: NotificationDispatcher) -> int:
    """Notify the waiting patients close enough to the front.  Returns how many were sent."""
    avg = get_settings(session).avg_service_minutes
    front = list_waiting(session)[: dispatcher.notify_within + 1]
    sent = 0
    for position, patient in enumerate(front):
        if dispatcher.notify(patient.ticket_number, patient.status, position, patient.phone, avg):
            sent += 1
    return sent
