import threading
from datetime import datetime, timezone
from urllib.parse import quote

import pytest

from ticketgate.errors import StorageFailure
from ticketgate.issuance import issue_single
from ticketgate.memstore import InMemoryBookingStore, InMemoryTicketStore, InMemoryWebhookLedger
from ticketgate.schemas import TicketStatus
from ticketgate.webhooks import (
    Admission,
    PaymentEventHandler,
    PaymentNotification,
    ReplayGuard,
    composite_identity,
    process_notification,
    sign_notification,
    verify_notification_signature,
)
from tests.helpers import EVENT_ID, SECRET

WEBHOOK_SECRET = "gateway_secret"


def signed(**fields):
    fields.setdefault("order_id", "ORD-1")
    fields.setdefault("event_type", "success")
    fields.setdefault("amount", "500.00")
    fields["signature"] = sign_notification(fields, WEBHOOK_SECRET)
    return fields


class Spy:
    def __init__(self):
        self.calls = 0

    def __call__(self, fields, secret):
        self.calls += 1
        return verify_notification_signature(fields, secret)


class BrokenLedger(InMemoryWebhookLedger):
    def check_and_insert(self, identity, payload, **meta):
        raise RuntimeError("connection reset")


class BrokenBookings(InMemoryBookingStore):
    def set_payment_status(self, order_id, status):
        raise StorageFailure("database is locked")


@pytest.fixture
def bookings():
    b = InMemoryBookingStore()
    b.add("bkg_1", "ORD-1")
    return b


@pytest.fixture
def tickets():
    return InMemoryTicketStore()


@pytest.fixture
def ledger():
    return InMemoryWebhookLedger()


def run(raw, ledger, bookings, tickets, **kw):
    return process_notification(raw, ReplayGuard(ledger), PaymentEventHandler(bookings, tickets), WEBHOOK_SECRET, **kw)


def test_signature_accepts_raw_and_url_encoded():
    fields = signed(webhook_id="W1")
    assert verify_notification_signature(fields, WEBHOOK_SECRET)

    encoded = dict(fields, signature=quote(fields["signature"], safe="-_.!~*'()"))
    assert verify_notification_signature(encoded, WEBHOOK_SECRET)


def test_signature_rejects_changed_field_and_wrong_secret():
    fields = signed(webhook_id="W1")
    assert not verify_notification_signature(dict(fields, amount="1.00"), WEBHOOK_SECRET)
    assert not verify_notification_signature(fields, "other")
    assert not verify_notification_signature({k: v for k, v in fields.items() if k != "signature"}, WEBHOOK_SECRET)


def test_signature_ignores_algorithm_field():
    fields = signed(webhook_id="W1")
    assert verify_notification_signature(dict(fields, signature_algorithm="HMAC-SHA256"), WEBHOOK_SECRET)


def test_identity_falls_back_to_order_and_time():
    at = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)
    n = PaymentNotification(order_id="ORD-9", event_type="failed")
    ident = composite_identity(n, at)
    assert ident.webhook_id == f"ORD-9_failed_{int(at.timestamp() * 1000)}"
    assert ident.signature_hash == "no_signature"

    n2 = PaymentNotification(order_id="ORD-9", event_type="failed", event_id="E-7", signature="abc")
    ident2 = composite_identity(n2, at)
    assert ident2.webhook_id == "E-7"
    assert ident2.signature_hash != "no_signature"


def test_replay_is_rejected_before_signature_check(ledger, bookings, tickets):
    spy = Spy()
    raw = signed(webhook_id="W1")

    first = run(raw, ledger, bookings, tickets, verify=spy)
    assert first.status_code == 200
    assert spy.calls == 1
    assert bookings.bookings["ORD-1"] == ("bkg_1", "completed")

    second = run(dict(raw), ledger, bookings, tickets, verify=spy)
    assert second.status_code == 409
    assert "replay" in second.body["message"]
    assert spy.calls == 1
    assert len(ledger.records) == 1
    assert next(iter(ledger.records.values()))["processing_status"] == "processed"


def test_distinct_event_types_are_distinct_deliveries(ledger, bookings, tickets):
    assert run(signed(webhook_id="W1", event_type="pending"), ledger, bookings, tickets).status_code == 200
    assert run(signed(webhook_id="W1", event_type="success"), ledger, bookings, tickets).status_code == 200
    assert len(ledger.records) == 2


def test_bad_signature_is_recorded_and_rejected(ledger, bookings, tickets):
    raw = dict(signed(webhook_id="W2"), amount="1.00")

    out = run(raw, ledger, bookings, tickets)
    assert out.status_code == 400
    assert bookings.bookings["ORD-1"] == ("bkg_1", "pending")
    assert next(iter(ledger.records.values()))["processing_status"] == "signature_failed"

    # the forged delivery stays burned
    assert run(dict(raw), ledger, bookings, tickets).status_code == 409


def test_ledger_failure_fails_secure(bookings, tickets):
    spy = Spy()
    out = run(signed(webhook_id="W3"), BrokenLedger(), bookings, tickets, verify=spy)
    assert out.status_code == 409
    assert spy.calls == 0
    assert bookings.bookings["ORD-1"] == ("bkg_1", "pending")


def test_admit_reports_replay(ledger):
    guard = ReplayGuard(ledger)
    ident = composite_identity(PaymentNotification(order_id="ORD-1", event_type="success", webhook_id="W"), datetime.now(timezone.utc))
    assert guard.admit(ident, {}) is Admission.ACCEPTED
    assert guard.admit(ident, {}) is Admission.REPLAY


def test_malformed_notification(ledger, bookings, tickets):
    out = run({"event_type": "success"}, ledger, bookings, tickets)
    assert out.status_code == 400
    assert not ledger.records


def test_handler_storage_failure(ledger, tickets):
    out = run(signed(webhook_id="W4"), ledger, BrokenBookings(), tickets)
    assert out.status_code == 500
    assert next(iter(ledger.records.values()))["processing_status"] == "failed"


def test_refund_cancels_valid_tickets(ledger, bookings, tickets):
    t1 = issue_single(tickets, "user_1", EVENT_ID, "bkg_1", "Gold", secret=SECRET)
    t2 = issue_single(tickets, "user_1", EVENT_ID, "bkg_other", "Gold", secret=SECRET)

    out = run(signed(webhook_id="W5", event_type="refunded"), ledger, bookings, tickets)
    assert out.status_code == 200
    assert bookings.bookings["ORD-1"] == ("bkg_1", "refunded")
    assert tickets.get(t1.ticket_number).status == TicketStatus.CANCELLED
    assert tickets.get(t2.ticket_number).status == TicketStatus.VALID


def test_unknown_event_type_is_acknowledged(ledger, bookings, tickets):
    out = run(signed(webhook_id="W6", event_type="chargeback_review"), ledger, bookings, tickets)
    assert out.status_code == 200
    assert bookings.bookings["ORD-1"] == ("bkg_1", "pending")


class CountingBookings(InMemoryBookingStore):
    def __init__(self):
        super().__init__()
        self.writes = 0
        self._lock = threading.Lock()

    def set_payment_status(self, order_id, status):
        with self._lock:
            self.writes += 1
        return super().set_payment_status(order_id, status)


def test_concurrent_redelivery_has_one_effect(ledger, tickets):
    bookings = CountingBookings()
    bookings.add("bkg_1", "ORD-1")
    raw = signed(webhook_id="W7")
    codes = []
    lock = threading.Lock()
    start = threading.Barrier(16)

    def one():
        start.wait()
        out = run(dict(raw), ledger, bookings, tickets)
        with lock:
            codes.append(out.status_code)

    threads = [threading.Thread(target=one) for _ in range(16)]
    for th in threads:
        th.start()
    for th in threads:
        th.join()

    assert codes.count(200) == 1, f"Expected exactly 1 accepted delivery, got {codes}"
    assert codes.count(409) == 15
    assert bookings.writes == 1
    assert len(ledger.records) == 1
