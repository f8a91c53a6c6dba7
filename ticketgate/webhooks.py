import base64
import hashlib
import hmac
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional
from urllib.parse import quote, unquote

from pydantic import BaseModel, ConfigDict

from .errors import StorageFailure
from .schemas import WebhookIdentity
from .security import ct_equal
from .store import BookingStore, TicketStore, WebhookLedger

logger = logging.getLogger(__name__)

# characters encodeURIComponent leaves alone
_URI_SAFE = "-_.!~*'()"

PAYMENT_STATUS_BY_EVENT = {
    "success": "completed",
    "failed": "failed",
    "pending": "pending",
    "refunded": "refunded",
}


class PaymentNotification(BaseModel):
    model_config = ConfigDict(extra="allow")

    webhook_id: Optional[str] = None
    event_id: Optional[str] = None
    event_type: str
    order_id: str
    status: Optional[str] = None
    amount: Optional[Any] = None
    transaction_id: Optional[str] = None
    signature: Optional[str] = None
    timestamp: Optional[str] = None


# -------------------------
# Composite identity
# -------------------------
def composite_identity(n: PaymentNotification, received_at: datetime) -> WebhookIdentity:
    received_ms = int(received_at.timestamp() * 1000)
    webhook_id = n.webhook_id or n.event_id or f"{n.order_id}_{n.event_type}_{received_ms}"
    signature_hash = hashlib.sha256(n.signature.encode()).hexdigest() if n.signature else "no_signature"
    return WebhookIdentity(webhook_id, n.event_type, n.order_id, signature_hash)


# -------------------------
# Signature
# -------------------------
def _field(v: Any) -> str:
    if v is None:
        return "null"
    if isinstance(v, bool):
        return "true" if v else "false"
    return str(v)


def signature_base(fields: dict[str, Any]) -> str:
    filtered = {k: v for k, v in fields.items() if k not in ("signature", "signature_algorithm")}
    params = "&".join(f"{k}={_field(filtered[k])}" for k in sorted(filtered))
    return quote(params, safe=_URI_SAFE)


def sign_notification(fields: dict[str, Any], secret: str) -> str:
    mac = hmac.new(secret.encode(), signature_base(fields).encode(), hashlib.sha256).digest()
    return base64.b64encode(mac).decode()


def verify_notification_signature(fields: dict[str, Any], secret: str) -> bool:
    received = fields.get("signature")
    if not received or not isinstance(received, str):
        return False
    computed = sign_notification(fields, secret)
    # gateways send the base64 value either URL-encoded or raw
    return ct_equal(received, quote(computed, safe=_URI_SAFE)) or ct_equal(unquote(received), computed)


# -------------------------
# Replay guard
# -------------------------
class Admission(str, Enum):
    ACCEPTED = "accepted"
    REPLAY = "replay"


class ReplayGuard:
    """Check-and-insert in front of every payment notification.

    If the ledger cannot answer, the notification is treated as a replay.
    """

    def __init__(self, ledger: WebhookLedger):
        self.ledger = ledger

    def admit(self, identity: WebhookIdentity, raw: dict[str, Any], **meta: str) -> Admission:
        try:
            inserted = self.ledger.check_and_insert(identity, raw, **meta)
        except Exception:
            logger.exception("webhook ledger unavailable, rejecting order_id=%s", identity.order_id)
            return Admission.REPLAY

        if not inserted:
            logger.error(
                "WEBHOOK REPLAY DETECTED webhook_id=%s order_id=%s event_type=%s ip=%s",
                identity.webhook_id, identity.order_id, identity.event_type, meta.get("ip_address", "unknown"),
            )
            return Admission.REPLAY
        return Admission.ACCEPTED


# -------------------------
# Business effects
# -------------------------
class PaymentEventHandler:
    """Per-event-type effects. Each one writes absolute state."""

    def __init__(self, bookings: BookingStore, tickets: TicketStore):
        self.bookings = bookings
        self.tickets = tickets

    def handle(self, n: PaymentNotification) -> Optional[str]:
        status = PAYMENT_STATUS_BY_EVENT.get(n.event_type)
        if status is None:
            logger.warning("unknown payment event type=%s order_id=%s", n.event_type, n.order_id)
            return None

        booking_id = self.bookings.set_payment_status(n.order_id, status)
        if booking_id is None:
            logger.warning("no booking for order_id=%s", n.order_id)
            return None

        if n.event_type == "refunded":
            cancelled = self.tickets.cancel_for_booking(booking_id)
            logger.info("refund cancelled %d tickets booking_id=%s", cancelled, booking_id)

        logger.info("payment %s order_id=%s booking_id=%s", status, n.order_id, booking_id)
        return status


# -------------------------
# Pipeline
# -------------------------
class WebhookOutcome(BaseModel):
    status_code: int
    body: dict[str, Any]


def _mark(ledger: WebhookLedger, identity: WebhookIdentity, status: str) -> None:
    try:
        ledger.mark(identity, status)
    except StorageFailure:
        logger.exception("could not mark webhook %s as %s", identity.webhook_id, status)


def process_notification(
    raw: dict[str, Any],
    guard: ReplayGuard,
    handler: PaymentEventHandler,
    secret: str,
    received_at: Optional[datetime] = None,
    verify: Callable[[dict[str, Any], str], bool] = verify_notification_signature,
    **meta: str,
) -> WebhookOutcome:
    try:
        n = PaymentNotification.model_validate(raw)
    except ValueError:
        return WebhookOutcome(status_code=400, body={"status": "error", "message": "Malformed notification"})

    identity = composite_identity(n, received_at or datetime.now(timezone.utc))

    if guard.admit(identity, raw, **meta) is Admission.REPLAY:
        return WebhookOutcome(
            status_code=409,
            body={"status": "error", "message": "Duplicate webhook - replay attack detected"},
        )

    if not verify(raw, secret):
        logger.error("webhook signature verification failed order_id=%s webhook_id=%s", n.order_id, identity.webhook_id)
        _mark(guard.ledger, identity, "signature_failed")
        return WebhookOutcome(status_code=400, body={"status": "error", "message": "Invalid signature"})

    try:
        handler.handle(n)
    except StorageFailure:
        logger.exception("webhook processing failed order_id=%s", n.order_id)
        _mark(guard.ledger, identity, "failed")
        return WebhookOutcome(status_code=500, body={"status": "error", "message": "Failed to process webhook"})

    _mark(guard.ledger, identity, "processed")
    return WebhookOutcome(status_code=200, body={"status": "success", "message": "Webhook processed successfully"})
