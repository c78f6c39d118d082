from datetime import timedelta, timezone

import pytest
from sqlalchemy.exc import OperationalError

import services
from database import get_session
from errors import DuplicateActiveTicket, StoreUnavailable, TicketNotFound
from models import Patient, PatientStatus, utcnow
from services import (
    cleanup,
    create,
    find_active_by_contact,
    find_by_ticket,
    get_patient,
    list_active,
    list_waiting,
    mark_no_show,
    stats,
)
from transitions import transition


def test_create_puts_patient_in_queue(session):
    first = create(session, phone="0820000001")
    second = create(session, phone="0820000002")

    assert first.ticket_number == "CLINIC-101"
    assert first.status == PatientStatus.waiting
    assert first.estimated_wait_minutes == 0
    assert first.served_at is None
    assert first.actual_wait_minutes is None
    assert second.ticket_number == "CLINIC-102"
    assert second.estimated_wait_minutes == 15


def test_duplicate_phone_is_rejected_without_using_a_ticket(session):
    create(session, phone="555")

    with pytest.raises(DuplicateActiveTicket) as excinfo:
        create(session, phone="555")

    assert excinfo.value.ticket_number == "CLINIC-101"
    assert create(session, phone="556").ticket_number == "CLINIC-102"


def test_duplicate_email_ignores_case_and_whitespace(session):
    create(session, email="Thandi@example.com")

    with pytest.raises(DuplicateActiveTicket):
        create(session, email="  thandi@EXAMPLE.com ")


def test_duplicate_matches_either_contact(session):
    create(session, phone="555", email="a@example.com")

    with pytest.raises(DuplicateActiveTicket):
        create(session, phone="999", email="a@example.com")


def test_in_progress_ticket_still_blocks_a_new_join(session):
    patient = create(session, phone="555")
    transition(session, patient.ticket_number, PatientStatus.in_progress, staff_id=1)

    with pytest.raises(DuplicateActiveTicket):
        create(session, phone="555")


def test_patient_can_rejoin_after_being_served(session):
    patient = create(session, phone="555")
    transition(session, patient.ticket_number, PatientStatus.in_progress, staff_id=1)
    transition(session, patient.ticket_number, PatientStatus.served, staff_id=1)

    again = create(session, phone="555")

    assert again.ticket_number == "CLINIC-102"
    assert get_patient(session, patient.ticket_number).status == PatientStatus.served


def test_walk_ins_without_contact_are_not_deduplicated(session):
    create(session)
    create(session, phone="  ")

    assert len(list_waiting(session)) == 2


def test_find_by_ticket(session):
    create(session, phone="1")
    second = create(session, phone="2")

    found = find_by_ticket(session, second.ticket_number)

    assert found.phone == "2"
    assert found.estimated_wait_minutes == 15
    assert find_by_ticket(session, "CLINIC-999") is None
    with pytest.raises(TicketNotFound):
        get_patient(session, "CLINIC-999")



def test_refreshed_estimate_is_not_written_back(session, engine):
    first = create(session, phone="1")
    second = create(session, phone="2")
    transition(session, first.ticket_number, PatientStatus.in_progress, staff_id=1)

    assert find_by_ticket(session, second.ticket_number).estimated_wait_minutes == 0
    list_waiting(session)

    other = get_session(engine)
    try:
        stored = other.get(Patient, second.id)
        assert stored.estimated_wait_minutes == 15
    finally:
        other.close()


def test_find_active_by_contact(session):
    patient = create(session, phone="555")

    assert find_active_by_contact(session, phone="555").ticket_number == patient.ticket_number
    assert find_active_by_contact(session, phone="777") is None
    assert find_active_by_contact(session) is None


def test_list_waiting_orders_by_arrival(session, arrivals):
    a = create(session, phone="1")
    b = create(session, phone="2")
    c = create(session, phone="3")
    now = utcnow()
    arrivals((a.ticket_number, now - timedelta(minutes=1)), (b.ticket_number, now - timedelta(minutes=10)), (c.ticket_number, now - timedelta(minutes=5)))

    assert [p.ticket_number for p in list_waiting(session)] == [b.ticket_number, c.ticket_number, a.ticket_number]


def test_list_active_oldest_call_first(session, set_patient_fields):
    a = create(session, phone="1")
    b = create(session, phone="2")
    transition(session, a.ticket_number, PatientStatus.in_progress, staff_id=1)
    transition(session, b.ticket_number, PatientStatus.in_progress, staff_id=2)
    set_patient_fields(b.ticket_number, updated_at=utcnow() - timedelta(minutes=3))

    active = list_active(session)

    assert [p.ticket_number for p in active] == [b.ticket_number, a.ticket_number]
    assert list_waiting(session) == []


def test_stats(session, arrivals):
    a = create(session, phone="1")
    b = create(session, phone="2")
    c = create(session, phone="3")
    d = create(session, phone="4")
    oldest = utcnow() - timedelta(minutes=30)
    arrivals((c.ticket_number, oldest))
    transition(session, a.ticket_number, PatientStatus.in_progress, staff_id=1)
    transition(session, a.ticket_number, PatientStatus.served, staff_id=1)
    transition(session, b.ticket_number, PatientStatus.in_progress, staff_id=1)
    mark_no_show(session, d.ticket_number)

    result = stats(session)

    assert result.total == 4
    assert result.waiting_count == 1
    assert result.active_count == 1
    assert result.served_count_today == 1
    assert result.oldest_waiting == oldest


def test_stats_on_empty_queue(session):
    result = stats(session)

    assert result.to_dict() == {
        "total": 0,
        "waiting_count": 0,
        "active_count": 0,
        "served_count_today": 0,
        "oldest_waiting": None,
    }


def test_stats_falls_back_to_zeroes_when_store_fails(session, monkeypatch):
    create(session, phone="1")

    def broken(_session):
        raise OperationalError("SELECT count(*)", {}, Exception("database is locked"))

    monkeypatch.setattr(services, "waiting_count", broken)

    assert stats(session).waiting_count == 0
    with pytest.raises(StoreUnavailable):
        stats(session, strict=True)


def test_mark_no_show_only_once(session):
    patient = create(session, phone="1")

    assert mark_no_show(session, patient.ticket_number) is True
    assert mark_no_show(session, patient.ticket_number) is False
    assert get_patient(session, patient.ticket_number).status == PatientStatus.no_show


def test_mark_no_show_ignores_called_and_unknown_tickets(session):
    patient = create(session, phone="1")
    transition(session, patient.ticket_number, PatientStatus.in_progress, staff_id=1)

    assert mark_no_show(session, patient.ticket_number) is False
    assert mark_no_show(session, "CLINIC-999") is False
    assert get_patient(session, patient.ticket_number).status == PatientStatus.in_progress


def test_cleanup_removes_only_old_finished_records(session, arrivals):
    old_served = create(session, phone="1")
    old_no_show = create(session, phone="2")
    old_waiting = create(session, phone="3")
    recent_served = create(session, phone="4")
    for ticket in (old_served, recent_served):
        transition(session, ticket.ticket_number, PatientStatus.in_progress, staff_id=1)
        transition(session, ticket.ticket_number, PatientStatus.served, staff_id=1)
    mark_no_show(session, old_no_show.ticket_number)
    day_ago = utcnow() - timedelta(hours=25)
    arrivals((old_served.ticket_number, day_ago), (old_no_show.ticket_number, day_ago), (old_waiting.ticket_number, day_ago))

    assert cleanup(session, retention_hours=24) == 2

    remaining = {t for t in ("CLINIC-101", "CLINIC-102", "CLINIC-103", "CLINIC-104") if find_by_ticket(session, t)}
    assert remaining == {old_waiting.ticket_number, recent_served.ticket_number}


def test_timestamps_come_back_timezone_aware(session, set_patient_fields):
    patient = create(session, phone="1")
    transition(session, patient.ticket_number, PatientStatus.in_progress, staff_id=1)
    transition(session, patient.ticket_number, PatientStatus.served, staff_id=1)
    arrived = utcnow() - timedelta(hours=2)
    set_patient_fields(patient.ticket_number, created_at=arrived.astimezone(timezone(timedelta(hours=5))))

    served = get_patient(session, patient.ticket_number)

    for value in (served.created_at, served.updated_at, served.called_at, served.served_at):
        assert value.tzinfo is not None
        assert value.utcoffset() == timedelta(0)
    assert served.created_at == arrived
    assert stats(session).served_count_today == 1
