"""FastAPI application for the clinic queue system.

The app is a thin JSON layer over the queue core: patients join and check
their position, staff call and serve tickets, and an SSE stream carries
queue events to the staff board.  Authentication sits in front of this app
and is not handled here.

A fresh database session is opened for each request and closed right after
it, so no connection is shared between concurrent requests.
"""

from __future__ import annotations

import asyncio
import logging
import os
import queue
import sys
from concurrent.futures import ThreadPoolExecutor
from typing import Any, AsyncIterator, Dict, Optional

import redis
from fastapi import BackgroundTasks, Body, Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse
from sqlalchemy.engine import Engine
from sqlmodel import Session

import config
import estimator
import services
from admission import check_admission
from clinic_settings import (
    get_settings,
    is_open,
    operating_hours,
    refresh_average_service_minutes,
    update_settings,
)
from database import get_db, get_session, init_db
from errors import ClinicQueueError
from events import broadcaster, decode_update, format_sse, get_redis
from models import Patient, PatientStatus, utcnow
from notifications import NotificationDispatcher, build_transport, notify_queue_front
from schemas import JoinRequest, MaintenanceRequest, StaffAction, TransitionRequest
from sequence import peek_next, reset_counter
from transitions import call_next, transition

logging.basicConfig(
    level=config.LOG_LEVEL,
    format=config.LOG_FORMAT,
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger(__name__)

KEEPALIVE_SECONDS = 15

app = FastAPI(title="Clinic Queue")

dispatcher = NotificationDispatcher(
    build_transport(),
    redis_client=get_redis(),
    executor=ThreadPoolExecutor(max_workers=2, thread_name_prefix="notify"),
)


@app.on_event("startup")
def on_startup() -> None:
    init_db()
    logger.info("Clinic Queue started (clinic code %s)", config.CLINIC_CODE)


@app.exception_handler(ClinicQueueError)
async def queue_error_handler(request: Request, exc: ClinicQueueError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("Error %s: %s - %s %s", exc.status_code, exc.message, request.method, request.url.path)
    else:
        logger.info("Rejected %s %s: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.error, "message": exc.message},
    )


def patient_view(patient: Patient) -> Dict[str, Any]:
    return patient.model_dump(mode="json", exclude={"id"})


def notify_front_of_queue(engine: Engine) -> None:
    """Background task: tell the patients near the front where they stand."""
    session = get_session(engine)
    try:
        notify_queue_front(session, dispatcher)
    except ClinicQueueError as exc:
        logger.error("Position notifications skipped: %s", exc)
    finally:
        session.close()


@app.get("/health")
def health_check(session: Session = Depends(get_db)) -> Dict[str, Any]:
    queue_stats = services.stats(session, strict=True)
    return {
        "status": "healthy",
        "waiting": queue_stats.waiting_count,
        "sse_clients": broadcaster.client_count(),
        "timestamp": utcnow().isoformat(),
    }


@app.post("/api/queue/join", status_code=201)
def join_queue(request: JoinRequest, session: Session = Depends(get_db)) -> Dict[str, Any]:
    check_admission(get_settings(session), services.stats(session))
    patient = services.create(session, phone=request.phone, email=request.email)
    wait = estimator.estimate(session, patient.ticket_number)
    return {
        "success": True,
        "message": f"Your ticket number is {patient.ticket_number}. Estimated wait: {wait.display}",
        "ticket": {
            "number": patient.ticket_number,
            "estimatedWait": wait.estimated_minutes,
            "estimatedDisplay": wait.display,
            "patientsAhead": wait.patients_ahead,
        },
        "joinTime": patient.created_at.isoformat(),
    }


@app.get("/api/queue")
def queue_status(session: Session = Depends(get_db)) -> Dict[str, Any]:
    settings = get_settings(session)
    return {
        "success": True,
        "queue": {
            "waiting": [patient_view(p) for p in services.list_waiting(session)],
            "active": [patient_view(p) for p in services.list_active(session)],
            "stats": services.stats(session).to_dict(),
        },
        "clinic": {
            "name": settings.clinic_name,
            "isOpen": is_open(settings),
            "operatingHours": operating_hours(settings),
            "nextTicket": peek_next(session),
        },
        "timestamp": utcnow().isoformat(),
    }


@app.get("/api/queue/stats")
def queue_stats(session: Session = Depends(get_db)) -> Dict[str, Any]:
    settings = get_settings(session)
    return {
        "success": True,
        "stats": services.stats(session).to_dict(),
        "clinic": {
            "name": settings.clinic_name,
            "avgServiceTime": settings.avg_service_minutes,
            "isOpen": is_open(settings),
        },
        "timestamp": utcnow().isoformat(),
    }


@app.get("/api/queue/tickets/{ticket_number}")
def ticket_details(ticket_number: str, session: Session = Depends(get_db)) -> Dict[str, Any]:
    return {"success": True, "patient": patient_view(services.get_patient(session, ticket_number))}


@app.get("/api/queue/lookup")
def lookup_ticket(
    phone: Optional[str] = None, email: Optional[str] = None, session: Session = Depends(get_db)
) -> Dict[str, Any]:
    """Find the active ticket for a phone number or email."""
    patient = services.find_active_by_contact(session, phone=phone, email=email)
    if patient is None:
        raise HTTPException(status_code=404, detail="No active ticket for this contact")
    return {"success": True, "patient": patient_view(patient)}


@app.get("/api/queue/position/{ticket_number}")
def patient_position(ticket_number: str, session: Session = Depends(get_db)) -> Dict[str, Any]:
    """Position and estimate for a ticket; may send a "you're almost up" SMS."""
    patient = services.get_patient(session, ticket_number)
    wait = estimator.estimate(session, ticket_number)
    notified = dispatcher.notify(
        ticket_number,
        patient.status,
        wait.patients_ahead,
        patient.phone,
        get_settings(session).avg_service_minutes,
    )
    return {
        "success": True,
        "ticketNumber": ticket_number,
        "status": patient.status.value,
        "patientsAhead": wait.patients_ahead,
        "estimatedWait": wait.estimated_minutes,
        "estimatedDisplay": wait.display,
        "notified": notified,
        "lastUpdated": utcnow().isoformat(),
    }


@app.get("/api/queue/estimate")
def general_estimate(session: Session = Depends(get_db)) -> Dict[str, Any]:
    wait = estimator.estimate(session)
    return {
        "success": True,
        "type": "general",
        "waitingCount": wait.patients_ahead,
        "estimatedWait": wait.estimated_minutes,
        "estimatedDisplay": wait.display,
    }


@app.get("/api/queue/estimate/{ticket_number}")
def ticket_estimate(ticket_number: str, session: Session = Depends(get_db)) -> Dict[str, Any]:
    wait = estimator.estimate(session, ticket_number)
    return {"success": True, "type": "specific", "ticketNumber": ticket_number, **wait.to_dict()}


@app.post("/api/staff/call-next")
def call_next_patient(
    request: StaffAction, background_tasks: BackgroundTasks, session: Session = Depends(get_db)
) -> Dict[str, Any]:
    result = call_next(session, request.staff_id, broadcaster)
    if result is None:
        raise HTTPException(status_code=404, detail="No patients waiting in queue")
    dispatcher.forget(result.ticket_number)
    background_tasks.add_task(notify_front_of_queue, session.get_bind())
    return {"success": True, "message": f"Patient {result.ticket_number} called", "result": result.to_dict()}


@app.post("/api/staff/tickets/{ticket_number}/status")
def change_status(
    ticket_number: str,
    request: TransitionRequest,
    background_tasks: BackgroundTasks,
    session: Session = Depends(get_db),
) -> Dict[str, Any]:
    result = transition(session, ticket_number, request.status, request.staff_id, broadcaster)
    dispatcher.forget(ticket_number)
    background_tasks.add_task(notify_front_of_queue, session.get_bind())
    return {"success": True, "result": result.to_dict()}


@app.post("/api/staff/tickets/{ticket_number}/no-show")
def no_show(ticket_number: str, background_tasks: BackgroundTasks, session: Session = Depends(get_db)) -> Dict[str, Any]:
    marked = services.mark_no_show(session, ticket_number, broadcaster)
    if marked:
        dispatcher.forget(ticket_number)
        background_tasks.add_task(notify_front_of_queue, session.get_bind())
    return {"success": marked, "ticketNumber": ticket_number, "status": PatientStatus.no_show.value if marked else None}


def require_admin(passcode: str) -> None:
    if passcode != config.ADMIN_PASS:
        raise HTTPException(status_code=401, detail="Invalid passcode")


@app.patch("/admin/settings")
def change_settings(
    passcode: str, changes: Dict[str, Any] = Body(...), session: Session = Depends(get_db)
) -> Dict[str, Any]:
    require_admin(passcode)
    settings = update_settings(session, changes)
    return {"success": True, "settings": settings.model_dump(mode="json")}


@app.post("/admin/maintenance")
def maintenance(request: MaintenanceRequest, session: Session = Depends(get_db)) -> Dict[str, Any]:
    """Run one maintenance action: reset_queue, cleanup_patients or refresh_average."""
    require_admin(request.passcode)
    if request.action == "reset_queue":
        start = config.DEFAULT_QUEUE_NUMBER if request.start_number is None else request.start_number
        reset_counter(session, start)
        result: Any = f"Queue number reset to {start}"
    elif request.action == "cleanup_patients":
        hours = config.CLEANUP_RETENTION_HOURS if request.retention_hours is None else request.retention_hours
        result = services.cleanup(session, hours)
        dispatcher.clear_history(hours)
    elif request.action == "refresh_average":
        result = refresh_average_service_minutes(session)
    else:
        raise HTTPException(status_code=400, detail="Invalid action")
    return {"success": True, "action": request.action, "result": result}


async def local_event_stream(request: Request) -> AsyncIterator[str]:
    """Events published by this process only.  Used when Redis is not configured."""
    subscriber_id, inbox = broadcaster.subscribe()
    try:
        yield ": SSE Connection Established\n\n"
        while not await request.is_disconnected():
            try:
                event, payload = await asyncio.to_thread(inbox.get, True, KEEPALIVE_SECONDS)
            except queue.Empty:
                yield ": keep-alive\n\n"
                continue
            yield format_sse(event, payload)
    finally:
        broadcaster.unsubscribe(subscriber_id)


async def redis_event_stream(request: Request, redis_client: redis.Redis) -> AsyncIterator[str]:
    """Events from every API process, read from the updates channel."""
    pubsub = redis_client.pubsub(ignore_subscribe_messages=True)
    pubsub.subscribe(config.UPDATES_CHANNEL)
    try:
        yield ": SSE Connection Established\n\n"
        while not await request.is_disconnected():
            try:
                message = await asyncio.to_thread(pubsub.get_message, timeout=KEEPALIVE_SECONDS)
            except redis.RedisError as e:
                logger.error("Redis subscription lost: %s", e)
                break
            if not message or message.get("type") != "message":
                yield ": keep-alive\n\n"
                continue
            try:
                event, payload = decode_update(message["data"])
            except (ValueError, KeyError):
                logger.warning("Ignoring malformed update: %r", message["data"])
                continue
            yield format_sse(event, payload)
    finally:
        pubsub.close()


@app.get("/api/events")
async def queue_events(request: Request) -> StreamingResponse:
    """Server-Sent Events stream of patient-called / -served / -updated."""
    redis_client = get_redis()
    if redis_client is not None:
        stream = redis_event_stream(request, redis_client)
    else:
        stream = local_event_stream(request)
    return StreamingResponse(
        stream,
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )



if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", 8000)))
