"""Storage seams used by the gate.

The abstract classes describe what issuance, verification and the webhook
guard need from persistence. ``Sql*`` classes implement them on top of the
SQLAlchemy models; ``memstore`` has in-process equivalents.
"""
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from .errors import StorageFailure
from .models import Booking, Event, EventStaff, ScanLog, Ticket, WebhookRecord
from .schemas import (
    EventInfo,
    ScanAttempt,
    ScanResultCode,
    TicketIdentity,
    TicketRecord,
    TicketStatus,
    WebhookIdentity,
)

SessionFactory = Callable[[], Session]


def as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything we store is UTC
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


# -------------------------
# Interfaces
# -------------------------
class TicketStore(ABC):
    @abstractmethod
    def insert(self, record: TicketRecord) -> bool:
        """Persist a new record. False if the id or ticket number is taken."""

    @abstractmethod
    def get(self, ticket_number: str) -> Optional[TicketRecord]: ...

    @abstractmethod
    def get_by_id(self, ticket_id: str) -> Optional[TicketRecord]: ...

    @abstractmethod
    def conditional_transition(
        self,
        ticket_id: str,
        expected_status: TicketStatus,
        new_fields: dict[str, Any],
        scanned_at: Optional[datetime] = None,
    ) -> bool:
        """Apply ``new_fields`` only if the stored status is ``expected_status``.

        When ``scanned_at`` is given the scan counter and first/last scan
        timestamps are bumped in the same write.
        """

    @abstractmethod
    def record_scan(self, ticket_id: str, scanned_at: datetime) -> None: ...

    @abstractmethod
    def cancel_for_booking(self, booking_id: str) -> int: ...

    @abstractmethod
    def list_for_event(self, event_id: str, limit: int = 500) -> list[TicketRecord]: ...


class ScanLogSink(ABC):
    @abstractmethod
    def append(self, attempt: ScanAttempt) -> None: ...

    @abstractmethod
    def recent(self, limit: int = 80, event_id: Optional[str] = None) -> list[ScanAttempt]: ...


class EventDirectory(ABC):
    @abstractmethod
    def get_event(self, event_id: str) -> Optional[EventInfo]: ...

    @abstractmethod
    def can_scan(self, event_id: str, actor_id: str) -> bool: ...


class WebhookLedger(ABC):
    @abstractmethod
    def check_and_insert(self, identity: WebhookIdentity, payload: dict, **meta: str) -> bool:
        """True when the identity was newly recorded, False when already present."""

    @abstractmethod
    def mark(self, identity: WebhookIdentity, status: str) -> None: ...


class BookingStore(ABC):
    @abstractmethod
    def set_payment_status(self, order_id: str, status: str) -> Optional[str]:
        """Set the absolute payment status; returns the booking id or None."""


# -------------------------
# SQL implementations
# -------------------------
class _SqlBase:
    def __init__(self, session_factory: SessionFactory):
        self.session_factory = session_factory

    @contextmanager
    def _session(self):
        db = self.session_factory()
        try:
            yield db
        except SQLAlchemyError as e:
            db.rollback()
            raise StorageFailure(str(e)) from e
        finally:
            db.close()


def _to_record(t: Ticket) -> TicketRecord:
    return TicketRecord(
        identity=TicketIdentity(
            ticket_id=t.id,
            event_id=t.event_id,
            booking_id=t.booking_id,
            owner_id=t.owner_id,
            ticket_number=t.ticket_number,
            ticket_type=t.ticket_type,
            event_date=as_utc(t.event_date),
            valid_until=as_utc(t.valid_until),
        ),
        status=TicketStatus(t.status),
        checked_in_at=as_utc(t.checked_in_at),
        checked_in_by=t.checked_in_by,
        scan_count=t.scan_count or 0,
        first_scanned_at=as_utc(t.first_scanned_at),
        last_scanned_at=as_utc(t.last_scanned_at),
        attendee_name=t.attendee_name,
        qr_token=t.qr_token,
    )


class SqlTicketStore(_SqlBase, TicketStore):
    def insert(self, record: TicketRecord) -> bool:
        ident = record.identity
        with self._session() as db:
            db.add(Ticket(
                id=ident.ticket_id,
                ticket_number=ident.ticket_number,
                event_id=ident.event_id,
                booking_id=ident.booking_id,
                owner_id=ident.owner_id,
                ticket_type=ident.ticket_type,
                event_date=ident.event_date,
                valid_until=ident.valid_until,
                attendee_name=record.attendee_name,
                qr_token=record.qr_token,
                status=record.status.value,
                scan_count=record.scan_count,
            ))
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                return False
            return True

    def get(self, ticket_number: str) -> Optional[TicketRecord]:
        with self._session() as db:
            t = db.execute(select(Ticket).where(Ticket.ticket_number == ticket_number)).scalar_one_or_none()
            return _to_record(t) if t else None

    def get_by_id(self, ticket_id: str) -> Optional[TicketRecord]:
        with self._session() as db:
            t = db.get(Ticket, ticket_id)
            return _to_record(t) if t else None

    def conditional_transition(self, ticket_id, expected_status, new_fields, scanned_at=None) -> bool:
        values = {}
        for k, v in new_fields.items():
            values[k] = v.value if isinstance(v, TicketStatus) else v
        if scanned_at is not None:
            values.update(
                scan_count=Ticket.scan_count + 1,
                first_scanned_at=func.coalesce(Ticket.first_scanned_at, scanned_at),
                last_scanned_at=scanned_at,
            )

        with self._session() as db:
            res = db.execute(
                update(Ticket)
                .where(Ticket.id == ticket_id, Ticket.status == expected_status.value)
                .values(**values)
            )
            db.commit()
            return res.rowcount == 1

    def record_scan(self, ticket_id: str, scanned_at: datetime) -> None:
        with self._session() as db:
            db.execute(
                update(Ticket)
                .where(Ticket.id == ticket_id)
                .values(
                    scan_count=Ticket.scan_count + 1,
                    first_scanned_at=func.coalesce(Ticket.first_scanned_at, scanned_at),
                    last_scanned_at=scanned_at,
                )
            )
            db.commit()

    def cancel_for_booking(self, booking_id: str) -> int:
        with self._session() as db:
            res = db.execute(
                update(Ticket)
                .where(Ticket.booking_id == booking_id, Ticket.status == TicketStatus.VALID.value)
                .values(status=TicketStatus.CANCELLED.value)
            )
            db.commit()
            return res.rowcount

    def list_for_event(self, event_id: str, limit: int = 500) -> list[TicketRecord]:
        with self._session() as db:
            rows = db.execute(
                select(Ticket).where(Ticket.event_id == event_id).order_by(Ticket.ticket_number).limit(limit)
            ).scalars().all()
            return [_to_record(t) for t in rows]


class SqlScanLog(_SqlBase, ScanLogSink):
    def append(self, attempt: ScanAttempt) -> None:
        with self._session() as db:
            db.add(ScanLog(
                ticket_id=attempt.ticket_id,
                ticket_number=attempt.ticket_number,
                event_id=attempt.event_id,
                scanned_by=attempt.scanned_by,
                result=attempt.result.value,
                user_agent=str(attempt.device_info.get("user_agent", "")),
                ip=str(attempt.device_info.get("ip", "unknown")),
                created_at=attempt.timestamp,
            ))
            db.commit()

    def recent(self, limit: int = 80, event_id: Optional[str] = None) -> list[ScanAttempt]:
        with self._session() as db:
            q = select(ScanLog)
            if event_id:
                q = q.where(ScanLog.event_id == event_id)
            rows = db.execute(q.order_by(ScanLog.id.desc()).limit(limit)).scalars().all()
            return [
                ScanAttempt(
                    ticket_id=r.ticket_id,
                    ticket_number=r.ticket_number,
                    event_id=r.event_id,
                    scanned_by=r.scanned_by,
                    result=ScanResultCode(r.result),
                    timestamp=as_utc(r.created_at),
                    device_info={"user_agent": r.user_agent, "ip": r.ip},
                )
                for r in rows
            ]


class SqlEventDirectory(_SqlBase, EventDirectory):
    def get_event(self, event_id: str) -> Optional[EventInfo]:
        with self._session() as db:
            e = db.get(Event, event_id)
            if not e:
                return None
            return EventInfo(
                event_id=e.id,
                name=e.name,
                organizer_id=e.organizer_id,
                starts_at=as_utc(e.starts_at),
                venue=e.venue,
            )

    def can_scan(self, event_id: str, actor_id: str) -> bool:
        with self._session() as db:
            e = db.get(Event, event_id)
            if e and e.organizer_id == actor_id:
                return True
            staff = db.execute(
                select(EventStaff).where(EventStaff.event_id == event_id, EventStaff.user_id == actor_id)
            ).scalar_one_or_none()
            return bool(staff and staff.can_scan)


class SqlWebhookLedger(_SqlBase, WebhookLedger):
    def check_and_insert(self, identity: WebhookIdentity, payload: dict, **meta: str) -> bool:
        with self._session() as db:
            db.add(WebhookRecord(
                webhook_id=identity.webhook_id,
                event_type=identity.event_type,
                order_id=identity.order_id,
                signature_hash=identity.signature_hash,
                raw_event_data=payload,
                ip_address=meta.get("ip_address", "unknown"),
                user_agent=meta.get("user_agent", ""),
                processing_status="received",
            ))
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                return False
            return True

    def mark(self, identity: WebhookIdentity, status: str) -> None:
        with self._session() as db:
            db.execute(
                update(WebhookRecord)
                .where(
                    WebhookRecord.webhook_id == identity.webhook_id,
                    WebhookRecord.event_type == identity.event_type,
                    WebhookRecord.order_id == identity.order_id,
                    WebhookRecord.signature_hash == identity.signature_hash,
                )
                .values(processing_status=status)
            )
            db.commit()


class SqlBookingStore(_SqlBase, BookingStore):
    def set_payment_status(self, order_id: str, status: str) -> Optional[str]:
        with self._session() as db:
            b = db.execute(
                select(Booking).where(Booking.order_id == order_id)
            ).scalar_one_or_none()
            if not b:
                return None
            b.payment_status = status
            db.commit()
            return b.id
