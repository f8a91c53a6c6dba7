from datetime import datetime
from enum import Enum
from typing import Any, NamedTuple, Optional

from pydantic import BaseModel, ConfigDict, Field


class TicketStatus(str, Enum):
    VALID = "valid"
    USED = "used"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class ScanResultCode(str, Enum):
    SUCCESS = "success"
    ALREADY_USED = "already_used"
    INVALID = "invalid"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    WRONG_EVENT = "wrong_event"
    UNAUTHORIZED = "unauthorized"
    TAMPERED = "tampered"
    TOO_EARLY = "too_early"


class TicketIdentity(BaseModel):
    model_config = ConfigDict(frozen=True)

    ticket_id: str
    event_id: str
    booking_id: str
    owner_id: str
    ticket_number: str
    ticket_type: str
    event_date: Optional[datetime] = None
    valid_until: datetime


class TicketRecord(BaseModel):
    identity: TicketIdentity
    status: TicketStatus = TicketStatus.VALID
    checked_in_at: Optional[datetime] = None
    checked_in_by: Optional[str] = None
    scan_count: int = Field(default=0, ge=0)
    first_scanned_at: Optional[datetime] = None
    last_scanned_at: Optional[datetime] = None
    attendee_name: Optional[str] = None
    qr_token: Optional[str] = None

    @property
    def ticket_id(self) -> str:
        return self.identity.ticket_id

    @property
    def ticket_number(self) -> str:
        return self.identity.ticket_number


class EventInfo(BaseModel):
    event_id: str
    name: str
    organizer_id: str
    starts_at: Optional[datetime] = None
    venue: Optional[str] = None


class ScanAttempt(BaseModel):
    """One row of the append-only scan log."""

    ticket_id: Optional[str] = None
    ticket_number: Optional[str] = None
    event_id: Optional[str] = None
    scanned_by: str
    result: ScanResultCode
    timestamp: datetime
    device_info: dict[str, Any] = Field(default_factory=dict)


class ScanResult(BaseModel):
    success: bool
    result: ScanResultCode
    message: str
    ticket_info: dict[str, Any] = Field(default_factory=dict)


class WebhookIdentity(NamedTuple):
    webhook_id: str
    event_type: str
    order_id: str
    signature_hash: str
