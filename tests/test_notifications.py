import json
from datetime import timedelta
from types import SimpleNamespace

import pytest
import redis
from twilio.base.exceptions import TwilioException

import config
from notification_worker import NotificationWorker
from notifications import (
    MockSmsTransport,
    NotificationDispatcher,
    TwilioSmsTransport,
    compose_message,
    mask_phone,
    notify_queue_front,
    should_notify,
)
from models import PatientStatus
from services import create


class StubRedis:
    """Just enough of a Redis client for list based queues."""

    def __init__(self, fail=False):
        self.lists = {}
        self.fail = fail

    def lpush(self, key, value):
        if self.fail:
            raise redis.ConnectionError("connection refused")
        self.lists.setdefault(key, []).insert(0, value)
        return len(self.lists[key])

    def brpop(self, key, timeout=0):
        items = self.lists.get(key)
        if not items:
            return None
        return key, items.pop()

    def llen(self, key):
        return len(self.lists.get(key, []))


class BrokenTransport:
    def send(self, phone, message):
        raise ConnectionError("network down")


class FailingTransport:
    def __init__(self):
        self.calls = 0

    def send(self, phone, message):
        self.calls += 1
        return {"success": False, "error": "undeliverable"}


class RecordingExecutor:
    def __init__(self):
        self.submitted = []

    def submit(self, fn, *args):
        self.submitted.append((fn, args))


@pytest.mark.parametrize(
    "status, position, expected",
    [
        (PatientStatus.waiting, 0, True),
        (PatientStatus.waiting, 3, True),
        (PatientStatus.waiting, 4, False),
        (PatientStatus.in_progress, 0, False),
        (PatientStatus.served, 1, False),
        (PatientStatus.no_show, 1, False),
    ],
)
def test_should_notify(status, position, expected):
    assert should_notify(status, position) is expected


def test_compose_message():
    assert compose_message("CLINIC-101", 0) == (
        "Your turn is now! Please proceed to the counter. Ticket: CLINIC-101"
    )
    assert compose_message("CLINIC-101", 1) == "You're next in line! Please get ready. Ticket: CLINIC-101"
    assert compose_message("CLINIC-101", 2) == "You're 2 patients away. Ticket: CLINIC-101"
    assert compose_message("CLINIC-101", 5, 15) == "Your estimated wait: 1h 15m. Ticket: CLINIC-101"


def test_mask_phone():
    assert mask_phone("+15551234567") == "***4567"


def test_dispatcher_sends_inline_once_per_position():
    transport = MockSmsTransport()
    dispatcher = NotificationDispatcher(transport)

    assert dispatcher.notify("CLINIC-101", PatientStatus.waiting, 1, "+15550001111") is True
    assert dispatcher.notify("CLINIC-101", PatientStatus.waiting, 1, "+15550001111") is False
    assert dispatcher.notify("CLINIC-101", PatientStatus.waiting, 0, "+15550001111") is True

    messages = [n["message"] for n in transport.history()]
    assert messages == [
        "Your turn is now! Please proceed to the counter. Ticket: CLINIC-101",
        "You're next in line! Please get ready. Ticket: CLINIC-101",
    ]


def test_dispatcher_forget_allows_a_repeat():
    transport = MockSmsTransport()
    dispatcher = NotificationDispatcher(transport)
    dispatcher.notify("CLINIC-101", PatientStatus.waiting, 2, "+15550001111")

    dispatcher.forget("CLINIC-101")

    assert dispatcher.notify("CLINIC-101", PatientStatus.waiting, 2, "+15550001111") is True
    assert len(transport.sent) == 2


def test_dispatcher_skips_patients_without_phone_or_too_far_back():
    transport = MockSmsTransport()
    dispatcher = NotificationDispatcher(transport)

    assert dispatcher.notify("CLINIC-101", PatientStatus.waiting, 0, None) is False
    assert dispatcher.notify("CLINIC-102", PatientStatus.waiting, 7, "+15550001111") is False
    assert dispatcher.notify("CLINIC-103", PatientStatus.in_progress, 0, "+15550001111") is False
    assert not transport.sent


def test_transport_errors_are_swallowed():
    dispatcher = NotificationDispatcher(BrokenTransport())

    assert dispatcher.notify("CLINIC-101", PatientStatus.waiting, 0, "+15550001111") is True
    assert dispatcher.send("+15550001111", "hello") is None


def test_dispatcher_queues_to_redis():
    stub = StubRedis()
    transport = MockSmsTransport()
    dispatcher = NotificationDispatcher(transport, redis_client=stub)

    dispatcher.notify("CLINIC-101", PatientStatus.waiting, 1, "+15550001111")

    assert not transport.sent
    queued = json.loads(stub.lists[config.NOTIFICATION_LIST][0])
    assert queued["phone"] == "+15550001111"
    assert queued["ticket_number"] == "CLINIC-101"
    assert queued["message"].startswith("You're next in line!")


def test_dispatcher_falls_back_when_redis_is_down():
    transport = MockSmsTransport()
    dispatcher = NotificationDispatcher(transport, redis_client=StubRedis(fail=True))

    dispatcher.notify("CLINIC-101", PatientStatus.waiting, 1, "+15550001111")

    assert len(transport.sent) == 1


def test_dispatcher_hands_off_to_executor():
    transport = MockSmsTransport()
    executor = RecordingExecutor()
    dispatcher = NotificationDispatcher(transport, executor=executor)

    dispatcher.notify("CLINIC-101", PatientStatus.waiting, 0, "+15550001111")

    assert not transport.sent
    fn, args = executor.submitted[0]
    assert args[0] == "+15550001111"
    fn(*args)
    assert len(transport.sent) == 1


def test_notify_queue_front(session):
    for i in range(6):
        create(session, phone=f"+1555000000{i}")
    create(session, email="nophone@example.com")
    transport = MockSmsTransport()
    dispatcher = NotificationDispatcher(transport)

    assert notify_queue_front(session, dispatcher) == 4
    assert notify_queue_front(session, dispatcher) == 0
    assert transport.sent[0]["message"] == (
        "Your turn is now! Please proceed to the counter. Ticket: CLINIC-101"
    )


def test_twilio_transport():
    created = []

    def create_message(**kwargs):
        created.append(kwargs)
        return SimpleNamespace(sid="SM123")

    client = SimpleNamespace(messages=SimpleNamespace(create=create_message))
    transport = TwilioSmsTransport("AC1", "token", "+15559990000", client=client)

    result = transport.send("+15550001111", "hello")

    assert result["success"] is True
    assert result["id"] == "SM123"
    assert created == [{"from_": "+15559990000", "body": "hello", "to": "+15550001111"}]


def test_twilio_errors_are_reported_not_raised():
    def create_message(**kwargs):
        raise TwilioException("invalid number")

    client = SimpleNamespace(messages=SimpleNamespace(create=create_message))
    transport = TwilioSmsTransport("AC1", "token", "+15559990000", client=client)

    assert transport.send("+15550001111", "hello") == {"success": False, "error": "invalid number"}


def test_worker_sends_queued_notification():
    stub = StubRedis()
    transport = MockSmsTransport()
    NotificationDispatcher(transport, redis_client=stub).dispatch("+15550001111", "hello", "CLINIC-101")
    worker = NotificationWorker(stub, transport)

    assert worker.process_one() is True
    assert worker.process_one() is None
    assert transport.sent[0]["message"] == "hello"
    assert worker.get_stats()["queue_length"] == 0


def test_worker_retries_once_then_gives_up():
    stub = StubRedis()
    transport = FailingTransport()
    worker = NotificationWorker(stub, transport)
    stub.lpush(config.NOTIFICATION_LIST, json.dumps({"phone": "+15550001111", "message": "hello"}))

    assert worker.process_one() is False
    retry = json.loads(stub.lists[config.NOTIFICATION_LIST][0])
    assert retry["attempts"] == 2

    assert worker.process_one() is False
    assert worker.process_one() is None
    assert transport.calls == 2


def test_worker_drops_bad_notifications():
    stub = StubRedis()
    worker = NotificationWorker(stub, BrokenTransport())
    stub.lpush(config.NOTIFICATION_LIST, "not json")
    stub.lpush(config.NOTIFICATION_LIST, json.dumps({"phone": "+15550001111"}))

    assert worker.process_one() is False
    assert worker.process_one() is False
    assert stub.llen(config.NOTIFICATION_LIST) == 0


def test_mock_history_is_bounded():
    transport = MockSmsTransport(history_size=3)
    for i in range(5):
        transport.send("+15550001111", f"message {i}")

    assert len(transport.sent) == 3
    assert [n["message"] for n in transport.history()] == ["message 4", "message 3", "message 2"]
    assert transport.history(limit=1)[0]["id"] == "mock-5"


def test_clear_history_drops_old_simulated_messages():
    transport = MockSmsTransport()
    dispatcher = NotificationDispatcher(transport)
    dispatcher.send("+15550001111", "old")
    dispatcher.send("+15550001111", "new")
    transport.sent[0]["timestamp"] -= timedelta(hours=30)

    dispatcher.clear_history(24)

    assert [n["message"] for n in transport.sent] == ["new"]
