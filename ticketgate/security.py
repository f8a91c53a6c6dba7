import base64
import binascii
import hashlib
import hmac
import json
from datetime import datetime, timezone
from typing import Annotated, Literal, Optional, Union

from jose import jwe
from jose.constants import ALGORITHMS
from jose.exceptions import JOSEError
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from .config import QR_MAX_TOKEN_AGE_SECONDS
from .errors import ExpiredToken, InvalidToken
from .schemas import TicketIdentity

# Scanners use this to recognise our tokens without trying a JSON parse first.
TOKEN_MARKER = "EVTKT:"


# -------------------------
# Payload formats
# -------------------------
class TicketPayloadV1(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    v: Literal["ticket.v1"] = "ticket.v1"
    ticket_id: str
    event_id: str
    booking_id: str
    owner_id: str
    ticket_number: str
    ticket_type: str
    event_date: Optional[datetime] = None
    valid_until: datetime
    verification_id: str


class CompactPayloadV1(BaseModel):
    """Ticket number plus verification id; keeps printed codes sparse."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    v: Literal["ticket.compact.v1"] = "ticket.compact.v1"
    ticket_number: str
    verification_id: str


TicketPayload = Annotated[Union[TicketPayloadV1, CompactPayloadV1], Field(discriminator="v")]
_payload_adapter = TypeAdapter(TicketPayload)


# -------------------------
# Helpers
# -------------------------
def ct_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())


def _content_key(secret: str) -> bytes:
    # A256GCM with direct key agreement needs exactly 32 bytes
    return hashlib.sha256(secret.encode()).digest()


def _canonical(payload: BaseModel) -> str:
    return json.dumps(payload.model_dump(mode="json"), sort_keys=True, separators=(",", ":"))


def sign_plaintext(plain: str, secret: str) -> str:
    return hmac.new(secret.encode(), plain.encode(), hashlib.sha256).hexdigest()


def verification_id(ticket_number: str, ticket_id: str, owner_id: str, secret: str) -> str:
    msg = f"{ticket_number}-{ticket_id}-{owner_id}"
    return hmac.new(secret.encode(), msg.encode(), hashlib.sha256).hexdigest()


def payload_for(identity: TicketIdentity, secret: str, compact: bool = False):
    vid = verification_id(identity.ticket_number, identity.ticket_id, identity.owner_id, secret)
    if compact:
        return CompactPayloadV1(ticket_number=identity.ticket_number, verification_id=vid)
    return TicketPayloadV1(
        ticket_id=identity.ticket_id,
        event_id=identity.event_id,
        booking_id=identity.booking_id,
        owner_id=identity.owner_id,
        ticket_number=identity.ticket_number,
        ticket_type=identity.ticket_type,
        event_date=identity.event_date,
        valid_until=identity.valid_until,
        verification_id=vid,
    )


def _ticket_number_hint(plain: str) -> Optional[str]:
    try:
        data = json.loads(plain)
    except ValueError:
        return None
    if isinstance(data, dict) and isinstance(data.get("ticket_number"), str):
        return data["ticket_number"]
    return None


# -------------------------
# Codec
# -------------------------
def encode_ticket_token(payload: BaseModel, secret: str, now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    plain = _canonical(payload)

    cipher = jwe.encrypt(plain, _content_key(secret), algorithm=ALGORITHMS.DIR, encryption=ALGORITHMS.A256GCM)
    if isinstance(cipher, bytes):
        cipher = cipher.decode("ascii")

    envelope = {
        "data": cipher,
        "signature": sign_plaintext(plain, secret),
        "timestamp": int(now.timestamp() * 1000),
    }
    packed = base64.b64encode(json.dumps(envelope, separators=(",", ":")).encode()).decode("ascii")
    return TOKEN_MARKER + packed


def decode_ticket_token(
    token: str,
    secret: str,
    now: Optional[datetime] = None,
    max_age_seconds: int = QR_MAX_TOKEN_AGE_SECONDS,
):
    """Decode and authenticate a QR token.

    Raises ``InvalidToken`` for anything malformed, undecryptable or
    mis-signed, and ``ExpiredToken`` when the token is older than
    ``max_age_seconds``. Business expiry (``valid_until``) is not checked here.
    """
    raw = (token or "").strip()
    if raw.startswith(TOKEN_MARKER):
        raw = raw[len(TOKEN_MARKER):]

    try:
        envelope = json.loads(base64.b64decode(raw, validate=True))
        cipher = envelope["data"]
        signature = envelope["signature"]
        issued_ms = envelope["timestamp"]
    except (ValueError, KeyError, TypeError, binascii.Error):
        raise InvalidToken("MALFORMED")

    # millis are always a JSON integer; 1e400 parses to inf
    if not isinstance(issued_ms, int) or isinstance(issued_ms, bool):
        raise InvalidToken("MALFORMED")
    if not isinstance(cipher, str) or not isinstance(signature, str):
        raise InvalidToken("MALFORMED")

    try:
        decrypted = jwe.decrypt(cipher, _content_key(secret))
    except (JOSEError, ValueError, KeyError, TypeError):
        raise InvalidToken("UNDECRYPTABLE")
    if decrypted is None:
        raise InvalidToken("UNDECRYPTABLE")

    try:
        plain = decrypted.decode("utf-8")
    except UnicodeDecodeError:
        raise InvalidToken("UNDECRYPTABLE")

    if not ct_equal(sign_plaintext(plain, secret), signature):
        raise InvalidToken("SIGNATURE_MISMATCH", ticket_number=_ticket_number_hint(plain))

    try:
        payload = _payload_adapter.validate_json(plain)
    except ValidationError:
        raise InvalidToken("UNKNOWN_FORMAT")

    now = now or datetime.now(timezone.utc)
    if int(now.timestamp() * 1000) - issued_ms > max_age_seconds * 1000:
        raise ExpiredToken("EXPIRED")

    return payload
