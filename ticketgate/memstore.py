"""In-process stores guarded by a lock. Used by the test-suite and local runs."""
import threading
from datetime import datetime
from typing import Any, Optional

from .schemas import EventInfo, ScanAttempt, TicketRecord, TicketStatus, WebhookIdentity
from .store import BookingStore, EventDirectory, ScanLogSink, TicketStore, WebhookLedger


class InMemoryTicketStore(TicketStore):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._by_id: dict[str, TicketRecord] = {}
        self._number_index: dict[str, str] = {}

    def insert(self, record: TicketRecord) -> bool:
        with self._lock:
            if record.ticket_id in self._by_id or record.ticket_number in self._number_index:
                return False
            self._by_id[record.ticket_id] = record.model_copy(deep=True)
            self._number_index[record.ticket_number] = record.ticket_id
            return True

    def get(self, ticket_number: str) -> Optional[TicketRecord]:
        with self._lock:
            tid = self._number_index.get(ticket_number)
            if tid is None:
                return None
            return self._by_id[tid].model_copy(deep=True)

    def get_by_id(self, ticket_id: str) -> Optional[TicketRecord]:
        with self._lock:
            rec = self._by_id.get(ticket_id)
            return rec.model_copy(deep=True) if rec else None

    def conditional_transition(self, ticket_id, expected_status, new_fields, scanned_at=None) -> bool:
        with self._lock:
            rec = self._by_id.get(ticket_id)
            if rec is None or rec.status != expected_status:
                return False
            update: dict[str, Any] = dict(new_fields)
            if scanned_at is not None:
                update.update(self._scan_fields(rec, scanned_at))
            self._by_id[ticket_id] = rec.model_copy(update=update)
            return True

    def record_scan(self, ticket_id: str, scanned_at: datetime) -> None:
        with self._lock:
            rec = self._by_id.get(ticket_id)
            if rec is not None:
                self._by_id[ticket_id] = rec.model_copy(update=self._scan_fields(rec, scanned_at))

    def cancel_for_booking(self, booking_id: str) -> int:
        n = 0
        with self._lock:
            for tid, rec in list(self._by_id.items()):
                if rec.identity.booking_id == booking_id and rec.status == TicketStatus.VALID:
                    self._by_id[tid] = rec.model_copy(update={"status": TicketStatus.CANCELLED})
                    n += 1
        return n

    def list_for_event(self, event_id: str, limit: int = 500) -> list[TicketRecord]:
        with self._lock:
            rows = [r for r in self._by_id.values() if r.identity.event_id == event_id]
        rows.sort(key=lambda r: r.ticket_number)
        return [r.model_copy(deep=True) for r in rows[:limit]]

    @staticmethod
    def _scan_fields(rec: TicketRecord, scanned_at: datetime) -> dict[str, Any]:
        return {
            "scan_count": rec.scan_count + 1,
            "first_scanned_at": rec.first_scanned_at or scanned_at,
            "last_scanned_at": scanned_at,
        }


class InMemoryScanLog(ScanLogSink):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.entries: list[ScanAttempt] = []

    def append(self, attempt: ScanAttempt) -> None:
        with self._lock:
            self.entries.append(attempt)

    def recent(self, limit: int = 80, event_id: Optional[str] = None) -> list[ScanAttempt]:
        with self._lock:
            rows = [e for e in self.entries if not event_id or e.event_id == event_id]
        return list(reversed(rows))[:limit]


class InMemoryEventDirectory(EventDirectory):
    def __init__(self) -> None:
        self.events: dict[str, EventInfo] = {}
        self.scanners: set[tuple[str, str]] = set()

    def add_event(self, event: EventInfo) -> None:
        self.events[event.event_id] = event

    def grant_scan(self, event_id: str, user_id: str) -> None:
        self.scanners.add((event_id, user_id))

    def get_event(self, event_id: str) -> Optional[EventInfo]:
        return self.events.get(event_id)

    def can_scan(self, event_id: str, actor_id: str) -> bool:
        event = self.events.get(event_id)
        if event and event.organizer_id == actor_id:
            return True
        return (event_id, actor_id) in self.scanners


class InMemoryWebhookLedger(WebhookLedger):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.records: dict[WebhookIdentity, dict[str, Any]] = {}

    def check_and_insert(self, identity: WebhookIdentity, payload: dict, **meta: str) -> bool:
        with self._lock:
            if identity in self.records:
                return False
            self.records[identity] = {"payload": payload, "processing_status": "received", **meta}
            return True

    def mark(self, identity: WebhookIdentity, status: str) -> None:
        with self._lock:
            if identity in self.records:
                self.records[identity]["processing_status"] = status


class InMemoryBookingStore(BookingStore):
    def __init__(self) -> None:
        # order_id -> (booking_id, payment_status)
        self.bookings: dict[str, tuple[str, str]] = {}

    def add(self, booking_id: str, order_id: str, status: str = "pending") -> None:
        self.bookings[order_id] = (booking_id, status)

    def set_payment_status(self, order_id: str, status: str) -> Optional[str]:
        row = self.bookings.get(order_id)
        if row is None:
            return None
        self.bookings[order_id] = (row[0], status)
        return row[0]
