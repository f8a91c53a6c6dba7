import logging
import uuid
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel
from sqlalchemy import select

from .db import SessionLocal
from .deps import get_event_directory, get_scan_log, get_ticket_store
from .errors import InvalidQuantity, NothingGenerated, StorageFailure
from .issuance import BatchRequest, issue_batch, issue_single
from .models import Booking, Event, EventStaff
from .rendering import BulkRenderer, BulkRenderRequest
from .schemas import TicketRecord, TicketStatus
from .store import EventDirectory, ScanLogSink, TicketStore, as_utc

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


# -------------------------
# Helpers
# -------------------------
def _gen_event_id() -> str:
    return f"evt_{uuid.uuid4().hex[:8]}"


def _gen_booking_id() -> str:
    return f"bkg_{uuid.uuid4().hex[:12]}"


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


def _ticket_row(r: TicketRecord) -> dict:
    return {
        "ticket_id": r.ticket_id,
        "ticket_number": r.ticket_number,
        "event_id": r.identity.event_id,
        "booking_id": r.identity.booking_id,
        "owner_id": r.identity.owner_id,
        "ticket_type": r.identity.ticket_type,
        "attendee_name": r.attendee_name,
        "status": r.status.value,
        "valid_until": _iso(r.identity.valid_until),
        "checked_in_at": _iso(r.checked_in_at),
        "checked_in_by": r.checked_in_by,
        "scan_count": r.scan_count,
    }


# -------------------------
# Events, staff, bookings
# -------------------------
class CreateEventReq(BaseModel):
    name: str
    organizer_id: str = "org_1"
    starts_at: Optional[datetime] = None
    venue: Optional[str] = None


@router.post("/events")
def create_event(req: CreateEventReq):
    event_id = _gen_event_id()

    db = SessionLocal()
    try:
        db.add(Event(id=event_id, name=req.name, organizer_id=req.organizer_id, starts_at=req.starts_at, venue=req.venue))
        db.commit()
        logger.info("created event_id=%s organizer=%s", event_id, req.organizer_id)
        return {
            "ok": True,
            "event_id": event_id,
            "name": req.name,
            "organizer_id": req.organizer_id,
            "starts_at": _iso(req.starts_at),
            "venue": req.venue,
        }
    finally:
        db.close()


@router.get("/events")
def list_events():
    db = SessionLocal()
    try:
        rows = db.execute(select(Event).order_by(Event.created_at.desc())).scalars().all()
        return [
            {
                "event_id": e.id,
                "name": e.name,
                "organizer_id": e.organizer_id,
                "starts_at": _iso(as_utc(e.starts_at)),
                "venue": e.venue,
                "created_at": str(e.created_at),
            }
            for e in rows
        ]
    finally:
        db.close()


class StaffReq(BaseModel):
    user_id: str
    role: str = "staff"
    can_scan: bool = True


@router.post("/events/{event_id}/staff")
def grant_staff(event_id: str, req: StaffReq):
    db = SessionLocal()
    try:
        if db.get(Event, event_id) is None:
            return {"ok": False, "error": "event not found"}

        staff = db.execute(
            select(EventStaff).where(EventStaff.event_id == event_id, EventStaff.user_id == req.user_id)
        ).scalar_one_or_none()
        if staff is None:
            staff = EventStaff(event_id=event_id, user_id=req.user_id)
            db.add(staff)
        staff.role = req.role
        staff.can_scan = req.can_scan
        db.commit()
        return {"ok": True, "event_id": event_id, "user_id": req.user_id, "role": req.role, "can_scan": req.can_scan}
    finally:
        db.close()


class BookingReq(BaseModel):
    event_id: str
    owner_id: str
    order_id: Optional[str] = None


@router.post("/bookings")
def create_booking(req: BookingReq):
    booking_id = _gen_booking_id()

    db = SessionLocal()
    try:
        if db.get(Event, req.event_id) is None:
            return {"ok": False, "error": "event not found"}
        db.add(Booking(id=booking_id, event_id=req.event_id, owner_id=req.owner_id, order_id=req.order_id))
        db.commit()
        return {"ok": True, "booking_id": booking_id, "order_id": req.order_id, "payment_status": "pending"}
    finally:
        db.close()


# -------------------------
# Issuance
# -------------------------
class IssueReq(BaseModel):
    event_id: str
    owner_id: str
    booking_id: str
    ticket_type: str = "Bronze"
    event_date: Optional[datetime] = None
    attendee_name: Optional[str] = None
    compact: bool = False


@router.post("/tickets")
def issue_ticket(
    req: IssueReq,
    store: TicketStore = Depends(get_ticket_store),
    events: EventDirectory = Depends(get_event_directory),
):
    event = events.get_event(req.event_id)
    if event is None:
        return {"ok": False, "error": "event not found"}

    try:
        issued = issue_single(
            store,
            req.owner_id,
            req.event_id,
            req.booking_id,
            req.ticket_type,
            req.event_date or event.starts_at,
            attendee_name=req.attendee_name,
            compact=req.compact,
        )
    except StorageFailure:
        logger.exception("ticket issuance failed event_id=%s booking_id=%s", req.event_id, req.booking_id)
        return JSONResponse(status_code=503, content={"ok": False, "error": "ticket could not be stored"})
    return {"ok": True, **_ticket_row(issued.record), "qr_token": issued.token}


@router.post("/tickets/batch")
async def issue_tickets_batch(
    req: BatchRequest,
    store: TicketStore = Depends(get_ticket_store),
    events: EventDirectory = Depends(get_event_directory),
):
    event = events.get_event(req.event_id)
    if event is None:
        return {"ok": False, "error": "event not found"}
    if req.event_date is None:
        req = req.model_copy(update={"event_date": event.starts_at})

    try:
        result = await issue_batch(store, req)
    except InvalidQuantity as e:
        return {"ok": False, "error": str(e)}

    return {
        "ok": True,
        "issued": len(result.tickets),
        "failed": len(result.failures),
        "tickets": [{"ticket_number": t.ticket_number, "qr_token": t.token} for t in result.tickets],
        "failures": [f.model_dump() for f in result.failures],
    }


@router.post("/tickets/bulk-render")
async def bulk_render(
    req: BulkRenderRequest,
    store: TicketStore = Depends(get_ticket_store),
    events: EventDirectory = Depends(get_event_directory),
):
    if events.get_event(req.event_id) is None:
        return JSONResponse(status_code=404, content={"ok": False, "error": "event not found"})

    try:
        result = await BulkRenderer(store).run(req)
    except (InvalidQuantity, ValueError) as e:
        return JSONResponse(status_code=400, content={"ok": False, "error": str(e)})
    except NothingGenerated as e:
        return JSONResponse(status_code=500, content={"ok": False, "error": str(e)})

    stamp = datetime.now().strftime("%Y%m%d%H%M%S")
    return Response(
        content=result.archive,
        media_type="application/zip",
        headers={
            "Content-Disposition": f'attachment; filename="tickets-{req.event_id}-{stamp}.zip"',
            "X-Generated-Count": str(len(result.generated)),
            "X-Failed-Count": str(len(result.failures)),
            "X-Partial-Count": str(len(result.partial)),
        },
    )


# -------------------------
# Tickets
# -------------------------
@router.get("/events/{event_id}/tickets")
def list_tickets(event_id: str, limit: int = 500, store: TicketStore = Depends(get_ticket_store)):
    return [_ticket_row(r) for r in store.list_for_event(event_id, limit=limit)]


@router.post("/tickets/{ticket_number}/cancel")
def cancel_ticket(ticket_number: str, store: TicketStore = Depends(get_ticket_store)):
    record = store.get(ticket_number)
    if record is None:
        return {"ok": False, "error": "ticket not found"}

    if not store.conditional_transition(record.ticket_id, TicketStatus.VALID, {"status": TicketStatus.CANCELLED}):
        current = store.get_by_id(record.ticket_id) or record
        return {"ok": False, "error": f"ticket is {current.status.value}"}

    logger.info("cancelled ticket_number=%s", ticket_number)
    return {"ok": True, "ticket_number": ticket_number, "status": TicketStatus.CANCELLED.value}


# -------------------------
# Logs
# -------------------------
@router.get("/audit")
def get_audit(
    limit: int = 80,
    event_id: Optional[str] = None,
    scan_log: ScanLogSink = Depends(get_scan_log),
    events: EventDirectory = Depends(get_event_directory),
):
    try:
        rows = scan_log.recent(limit=limit, event_id=event_id)
    except StorageFailure:
        logger.exception("audit read failed")
        return JSONResponse(status_code=503, content={"ok": False, "error": "audit log unavailable"})

    names: dict[str, Optional[str]] = {}
    out = []
    for a in rows:
        if a.event_id and a.event_id not in names:
            ev = events.get_event(a.event_id)
            names[a.event_id] = ev.name if ev else None
        out.append({
            "created_at": _iso(a.timestamp),
            "ticket_id": a.ticket_id,
            "ticket_number": a.ticket_number,
            "event_id": a.event_id,
            "event_name": names.get(a.event_id) if a.event_id else None,
            "scanned_by": a.scanned_by,
            "result": a.result.value,
            "ip": a.device_info.get("ip"),
        })
    return out
