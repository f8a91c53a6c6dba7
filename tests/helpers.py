import base64
import io
import json
from datetime import datetime, timedelta, timezone

import httpx
from jose import jwe
from jose.constants import ALGORITHMS
from PIL import Image

from ticketgate.memstore import InMemoryEventDirectory, InMemoryScanLog, InMemoryTicketStore
from ticketgate.schemas import EventInfo
from ticketgate.security import TOKEN_MARKER, _content_key, sign_plaintext
from ticketgate.verification import VerificationEngine

SECRET = "unit_test_secret"
EVENT_ID = "evt_launch"
ORGANIZER = "org_1"


# -------------------------
# In-memory world
# -------------------------
class World:
    def __init__(self, starts_in: timedelta = timedelta(hours=1), secret: str = SECRET):
        self.secret = secret
        self.tickets = InMemoryTicketStore()
        self.events = InMemoryEventDirectory()
        self.scan_log = InMemoryScanLog()
        self.events.add_event(EventInfo(
            event_id=EVENT_ID,
            name="Launch Party",
            organizer_id=ORGANIZER,
            starts_at=datetime.now(timezone.utc) + starts_in,
            venue="Hall A",
        ))
        self.engine = VerificationEngine(self.tickets, self.events, self.scan_log, secret=secret)


def seal(plain: str, secret: str, signing_secret: str | None = None, ts_ms: int | None = None) -> str:
    """Wrap an arbitrary plaintext the way the codec does."""
    cipher = jwe.encrypt(plain, _content_key(secret), algorithm=ALGORITHMS.DIR, encryption=ALGORITHMS.A256GCM)
    if isinstance(cipher, bytes):
        cipher = cipher.decode("ascii")
    envelope = {
        "data": cipher,
        "signature": sign_plaintext(plain, signing_secret or secret),
        "timestamp": ts_ms if ts_ms is not None else int(datetime.now(timezone.utc).timestamp() * 1000),
    }
    return TOKEN_MARKER + base64.b64encode(json.dumps(envelope).encode()).decode()


def template_data_url(size=(600, 400), color="#3355aa") -> str:
    buf = io.BytesIO()
    Image.new("RGB", size, color).save(buf, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buf.getvalue()).decode()


# -------------------------
# HTTP
# -------------------------
async def create_event(client: httpx.AsyncClient, name="Test Event", organizer_id=ORGANIZER, starts_in_hours=1.0) -> str:
    starts_at = datetime.now(timezone.utc) + timedelta(hours=starts_in_hours)
    r = await client.post("/admin/events", json={
        "name": name,
        "organizer_id": organizer_id,
        "starts_at": starts_at.isoformat(),
        "venue": "Main Hall",
    })
    r.raise_for_status()
    data = r.json()
    assert data.get("ok") is True, data
    return data["event_id"]


async def grant_staff(client: httpx.AsyncClient, event_id: str, user_id: str, can_scan=True):
    r = await client.post(f"/admin/events/{event_id}/staff", json={"user_id": user_id, "can_scan": can_scan})
    r.raise_for_status()
    assert r.json()["ok"] is True


async def create_booking(client: httpx.AsyncClient, event_id: str, owner_id="user_1", order_id=None) -> str:
    r = await client.post("/admin/bookings", json={"event_id": event_id, "owner_id": owner_id, "order_id": order_id})
    r.raise_for_status()
    data = r.json()
    assert data.get("ok") is True, data
    return data["booking_id"]


async def issue_ticket(client: httpx.AsyncClient, event_id: str, booking_id: str, owner_id="user_1") -> dict:
    r = await client.post("/admin/tickets", json={"event_id": event_id, "owner_id": owner_id, "booking_id": booking_id})
    r.raise_for_status()
    data = r.json()
    assert data.get("ok") is True, data
    return data


async def list_tickets(client: httpx.AsyncClient, event_id: str, limit: int = 500):
    r = await client.get(f"/admin/events/{event_id}/tickets", params={"limit": limit})
    r.raise_for_status()
    data = r.json()
    assert isinstance(data, list)
    return data


async def scan(client: httpx.AsyncClient, token: str, actor: str, event_id=None, headers=None):
    h = {"X-Actor-Id": actor, **(headers or {})}
    return await client.post("/tickets/verify", json={"qr_token": token, "event_id": event_id}, headers=h)
