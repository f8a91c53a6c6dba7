"""Scan-time verification.

One call to :meth:`VerificationEngine.verify` handles one scan:

1. decode the QR token (integrity only)
2. look the ticket up by number
3. re-derive the verification id from the stored record
4. authorize the scanning actor
5. match the expected event
6. check status, business expiry and the early check-in window
7. commit ``valid -> used`` as one conditional write

Every branch appends exactly one scan log entry. Once the ticket is found,
every branch bumps its scan counter exactly once. Expected outcomes come back
as :class:`ScanResult`; only ``StorageFailure`` escapes, after a best-effort
log entry tagged ``storage_failure``.
"""
import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from .config import CHECKIN_EARLY_WINDOW_HOURS, SECRET
from .errors import ExpiredToken, InvalidToken, StorageFailure
from .schemas import EventInfo, ScanAttempt, ScanResult, ScanResultCode, TicketRecord, TicketStatus
from .security import TicketPayloadV1, ct_equal, decode_ticket_token, verification_id
from .store import EventDirectory, ScanLogSink, TicketStore

logger = logging.getLogger(__name__)

R = ScanResultCode


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class VerificationEngine:
    def __init__(
        self,
        tickets: TicketStore,
        events: EventDirectory,
        scan_log: ScanLogSink,
        secret: str = SECRET,
        early_window_hours: float = CHECKIN_EARLY_WINDOW_HOURS,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.tickets = tickets
        self.events = events
        self.scan_log = scan_log
        self.secret = secret
        self.early_window_hours = early_window_hours
        self.clock = clock

    # -------------------------
    # Entry point
    # -------------------------
    def verify(
        self,
        token: str,
        actor_id: str,
        expected_event_id: Optional[str] = None,
        device_info: Optional[dict[str, Any]] = None,
    ) -> ScanResult:
        now = self.clock()
        scan = _Scan(self, actor_id, now, device_info or {}, expected_event_id)
        try:
            return self._run(scan, token, actor_id, expected_event_id, now)
        except StorageFailure:
            # keep the attempt in the audit trail if the log itself still works
            if not scan.logged:
                scan.finish(R.INVALID, "storage unavailable", error="storage_failure")
            raise

    def _run(self, scan, token: str, actor_id: str, expected_event_id: Optional[str], now: datetime) -> ScanResult:
        # 1. decode
        try:
            payload = decode_ticket_token(token, self.secret, now=now)
        except ExpiredToken:
            return scan.finish(R.EXPIRED, "This QR code has expired")
        except InvalidToken as e:
            known = self.tickets.get(e.ticket_number) if e.ticket_number else None
            if known is not None:
                logger.warning("signature mismatch for known ticket_number=%s actor=%s", known.ticket_number, actor_id)
                self.tickets.record_scan(known.ticket_id, now)
                return scan.finish(R.TAMPERED, "Invalid ticket - could not be verified", record=known)
            return scan.finish(R.INVALID, "Invalid ticket - could not be verified")

        # 2. lookup
        record = self.tickets.get(payload.ticket_number)
        if record is None:
            return scan.finish(R.INVALID, "Invalid ticket - not found in system", ticket_number=payload.ticket_number)
        scan.record = record

        # 3. bind the token to this stored record
        if not self._bound_to(payload, record):
            logger.warning("verification id mismatch ticket_number=%s actor=%s", record.ticket_number, actor_id)
            self.tickets.record_scan(record.ticket_id, now)
            return scan.finish(R.TAMPERED, "Security alert - this QR code has been tampered with", record=record)

        event = self.events.get_event(record.identity.event_id)

        # 4. authorize
        if not self.events.can_scan(record.identity.event_id, actor_id):
            self.tickets.record_scan(record.ticket_id, now)
            return scan.finish(R.UNAUTHORIZED, "You are not authorized to verify tickets for this event", record=record)

        # 5. event match
        if expected_event_id and expected_event_id != record.identity.event_id:
            self.tickets.record_scan(record.ticket_id, now)
            return scan.finish(
                R.WRONG_EVENT,
                "This ticket is for a different event",
                record=record,
                info={
                    "event_name": event.name if event else None,
                    "correct_event_id": record.identity.event_id,
                },
            )

        # 6. status, expiry, early window
        blocked = self._blocked(record, event, now)
        if blocked is not None:
            self.tickets.record_scan(record.ticket_id, now)
            code, message, info = blocked
            return scan.finish(code, message, record=record, info=info)

        # 7. commit
        committed = self.tickets.conditional_transition(
            record.ticket_id,
            TicketStatus.VALID,
            {"status": TicketStatus.USED, "checked_in_at": now, "checked_in_by": actor_id},
            scanned_at=now,
        )
        if not committed:
            # another scanner got there first
            self.tickets.record_scan(record.ticket_id, now)
            current = self.tickets.get_by_id(record.ticket_id) or record
            blocked = self._blocked(current, event, now)
            if blocked is None:
                blocked = (R.ALREADY_USED, "Ticket already checked in", self._used_info(current))
            code, message, info = blocked
            return scan.finish(code, message, record=current, info=info)

        logger.info("check-in ticket_number=%s event_id=%s actor=%s", record.ticket_number, record.identity.event_id, actor_id)
        return scan.finish(
            R.SUCCESS,
            "Check-in successful!",
            record=record,
            success=True,
            info={
                "ticket_number": record.ticket_number,
                "ticket_type": record.identity.ticket_type,
                "attendee_name": record.attendee_name,
                "event_name": event.name if event else None,
                "event_date": _iso(record.identity.event_date or (event.starts_at if event else None)),
                "venue": event.venue if event else None,
                "checked_in_at": _iso(now),
            },
        )

    # -------------------------
    # Checks
    # -------------------------
    def _bound_to(self, payload, record: TicketRecord) -> bool:
        ident = record.identity
        expected = verification_id(ident.ticket_number, ident.ticket_id, ident.owner_id, self.secret)
        if not ct_equal(expected, payload.verification_id):
            return False
        if isinstance(payload, TicketPayloadV1):
            return (
                payload.ticket_id == ident.ticket_id
                and payload.event_id == ident.event_id
                and payload.owner_id == ident.owner_id
            )
        return True

    @staticmethod
    def _used_info(record: TicketRecord) -> dict[str, Any]:
        return {
            "ticket_number": record.ticket_number,
            "checked_in_at": _iso(record.checked_in_at),
            "checked_in_by": record.checked_in_by,
            "attendee_name": record.attendee_name,
        }

    def _blocked(self, record: TicketRecord, event: Optional[EventInfo], now: datetime):
        if record.status == TicketStatus.USED:
            when = _iso(record.checked_in_at) or "an earlier scan"
            return R.ALREADY_USED, f"Ticket already checked in at {when}", self._used_info(record)

        if record.status == TicketStatus.CANCELLED:
            return R.CANCELLED, "This ticket has been cancelled", {"ticket_number": record.ticket_number}

        if record.status == TicketStatus.EXPIRED or record.identity.valid_until < now:
            return R.EXPIRED, "This ticket has expired", {
                "ticket_number": record.ticket_number,
                "valid_until": _iso(record.identity.valid_until),
            }

        if event is not None and event.starts_at is not None:
            opens_at = event.starts_at - timedelta(hours=self.early_window_hours)
            if now < opens_at:
                hours_left = math.ceil((opens_at - now).total_seconds() / 3600)
                return R.TOO_EARLY, (
                    f"Check-in opens {self.early_window_hours:g} hours before the event. "
                    f"Please come back in {hours_left} hours."
                ), {
                    "event_date": _iso(event.starts_at),
                    "check_in_opens_at": _iso(opens_at),
                }

        return None


class _Scan:
    """Collects what every log entry for one scan needs."""

    def __init__(self, engine: VerificationEngine, actor_id: str, now: datetime, device_info: dict, expected_event_id):
        self.engine = engine
        self.actor_id = actor_id
        self.now = now
        self.device_info = device_info
        self.expected_event_id = expected_event_id
        self.record: Optional[TicketRecord] = None
        self.logged = False

    def finish(
        self,
        code: ScanResultCode,
        message: str,
        record: Optional[TicketRecord] = None,
        ticket_number: Optional[str] = None,
        info: Optional[dict[str, Any]] = None,
        success: bool = False,
        error: Optional[str] = None,
    ) -> ScanResult:
        record = record or self.record
        device_info = {**self.device_info, "error": error} if error else self.device_info
        attempt = ScanAttempt(
            ticket_id=record.ticket_id if record else None,
            ticket_number=record.ticket_number if record else ticket_number,
            event_id=record.identity.event_id if record else self.expected_event_id,
            scanned_by=self.actor_id,
            result=code,
            timestamp=self.now,
            device_info=device_info,
        )
        self.logged = True
        try:
            self.engine.scan_log.append(attempt)
        except StorageFailure:
            logger.exception("scan log append failed result=%s ticket_id=%s", code.value, attempt.ticket_id)

        return ScanResult(success=success, result=code, message=message, ticket_info=info or {})
