import asyncio
import logging
import math
import re
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Optional

from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool

from .config import BULK_DEFAULT_BATCH_SIZE, MAX_BULK_QUANTITY, SECRET, TICKET_VALIDITY_DAYS
from .errors import InvalidQuantity, StorageFailure
from .schemas import TicketIdentity, TicketRecord, TicketStatus
from .security import encode_ticket_token, payload_for
from .store import TicketStore

logger = logging.getLogger(__name__)

BASE36 = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"


# -------------------------
# Ticket numbers
# -------------------------
def _base36(n: int) -> str:
    if n == 0:
        return "0"
    out = []
    while n:
        n, r = divmod(n, 36)
        out.append(BASE36[r])
    return "".join(reversed(out))


def generate_ticket_number(event_id: str, now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    prefix = re.sub(r"[^A-Za-z0-9]", "", event_id)[:4].upper() or "TKT"
    stamp = _base36(int(now.timestamp() * 1000))
    rand = "".join(secrets.choice(BASE36) for _ in range(4))
    # EVTA-MF3K2J1Q-7XQ2
    return f"{prefix}-{stamp}-{rand}"


# -------------------------
# Single issuance
# -------------------------
class IssuedTicket(BaseModel):
    record: TicketRecord
    token: str

    @property
    def ticket_number(self) -> str:
        return self.record.ticket_number


def build_ticket(
    owner_id: str,
    event_id: str,
    booking_id: str,
    ticket_type: str,
    event_date: Optional[datetime] = None,
    *,
    secret: str = SECRET,
    now: Optional[datetime] = None,
    ticket_number: Optional[str] = None,
    attendee_name: Optional[str] = None,
    compact: bool = False,
) -> IssuedTicket:
    """Allocate identity and QR token for one ticket without persisting it."""
    now = now or datetime.now(timezone.utc)
    identity = TicketIdentity(
        ticket_id=str(uuid.uuid4()),
        event_id=event_id,
        booking_id=booking_id,
        owner_id=owner_id,
        ticket_number=ticket_number or generate_ticket_number(event_id, now),
        ticket_type=ticket_type,
        event_date=event_date,
        valid_until=now + timedelta(days=TICKET_VALIDITY_DAYS),
    )
    token = encode_ticket_token(payload_for(identity, secret, compact=compact), secret, now=now)
    record = TicketRecord(
        identity=identity,
        status=TicketStatus.VALID,
        scan_count=0,
        attendee_name=attendee_name,
        qr_token=token,
    )
    return IssuedTicket(record=record, token=token)


def issue_single(
    store: TicketStore,
    owner_id: str,
    event_id: str,
    booking_id: str,
    ticket_type: str,
    event_date: Optional[datetime] = None,
    **kw,
) -> IssuedTicket:
    issued = build_ticket(owner_id, event_id, booking_id, ticket_type, event_date, **kw)
    if not store.insert(issued.record):
        raise StorageFailure(f"ticket identity already exists: {issued.ticket_number}")
    logger.info("issued ticket_number=%s event_id=%s booking_id=%s", issued.ticket_number, event_id, booking_id)
    return issued


# -------------------------
# Batched issuance
# -------------------------
class BatchRequest(BaseModel):
    event_id: str
    owner_id: str
    quantity: int
    ticket_type: str = "Bronze"
    event_date: Optional[datetime] = None
    # None -> one booking per ticket, as bulk tickets are sold individually
    booking_id: Optional[str] = None
    batch_size: int = BULK_DEFAULT_BATCH_SIZE
    name_prefix: str = "Guest"
    compact: bool = False


class ItemFailure(BaseModel):
    index: int
    ticket_number: Optional[str] = None
    reason: str


class BatchOutcome(BaseModel):
    number: int
    tickets: list[IssuedTicket] = Field(default_factory=list)
    failures: list[ItemFailure] = Field(default_factory=list)


class BatchResult(BaseModel):
    tickets: list[IssuedTicket] = Field(default_factory=list)
    failures: list[ItemFailure] = Field(default_factory=list)


class PersistOutcome(BaseModel):
    ticket_number: str
    ok: bool
    reason: Optional[str] = None


def validate_quantity(quantity: int, ceiling: int = MAX_BULK_QUANTITY) -> None:
    if quantity < 1 or quantity > ceiling:
        raise InvalidQuantity(f"quantity must be between 1 and {ceiling}")


def inter_batch_delay(quantity: int) -> float:
    # shorter pauses for big runs so they stay inside the request budget
    return 0.05 if quantity > 100 else 0.1


def attendee_name(prefix: str, seq: int) -> str:
    return f"{prefix}-{seq:04d}"


async def iter_batches(
    store: TicketStore,
    req: BatchRequest,
    *,
    persist: bool = True,
    batch_size: Optional[int] = None,
    delay: Optional[float] = None,
    secret: str = SECRET,
) -> AsyncIterator[BatchOutcome]:
    """Issue ``req.quantity`` tickets in sequential batches.

    Storage failures are recorded per item and never abort a batch. With
    ``persist=False`` tickets are only built; the caller persists them later
    through ``persist_batch``.
    """
    validate_quantity(req.quantity)

    size = max(1, batch_size or req.batch_size)
    batches = math.ceil(req.quantity / size)
    pause = inter_batch_delay(req.quantity) if delay is None else delay
    logger.info("issuing %d tickets in %d batches of %d event_id=%s", req.quantity, batches, size, req.event_id)

    for b in range(batches):
        start = b * size
        end = min(start + size, req.quantity)
        outcome = BatchOutcome(number=b + 1)

        for i in range(start, end):
            seq = i + 1
            number = f"{generate_ticket_number(req.event_id)}-{seq:04d}"
            try:
                issued = build_ticket(
                    req.owner_id,
                    req.event_id,
                    req.booking_id or str(uuid.uuid4()),
                    req.ticket_type,
                    req.event_date,
                    secret=secret,
                    ticket_number=number,
                    attendee_name=attendee_name(req.name_prefix, seq),
                    compact=req.compact,
                )
                if persist and not await run_in_threadpool(store.insert, issued.record):
                    raise StorageFailure("ticket identity already exists")
            except StorageFailure as e:
                logger.warning("ticket %d (%s) not issued: %s", seq, number, e)
                outcome.failures.append(ItemFailure(index=seq, ticket_number=number, reason=str(e)))
                continue
            outcome.tickets.append(issued)

        yield outcome

        if b < batches - 1:
            await asyncio.sleep(pause)


async def issue_batch(store: TicketStore, req: BatchRequest, **kw) -> BatchResult:
    result = BatchResult()
    async for outcome in iter_batches(store, req, **kw):
        result.tickets.extend(outcome.tickets)
        result.failures.extend(outcome.failures)
    logger.info("batch issuance done: %d issued, %d failed", len(result.tickets), len(result.failures))
    return result


def persist_batch(store: TicketStore, tickets: list[IssuedTicket]) -> list[PersistOutcome]:
    out = []
    for t in tickets:
        try:
            ok = store.insert(t.record)
            reason = None if ok else "ticket identity already exists"
        except StorageFailure as e:
            ok, reason = False, str(e)
        out.append(PersistOutcome(ticket_number=t.ticket_number, ok=ok, reason=reason))
    return out
