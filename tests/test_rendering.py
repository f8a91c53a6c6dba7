import io
import threading
import zipfile

import pytest
from PIL import Image

from ticketgate import rendering
from ticketgate.errors import NothingGenerated
from ticketgate.memstore import InMemoryTicketStore
from ticketgate.rendering import (
    BulkRenderer,
    BulkRenderRequest,
    QRPosition,
    choose_batch_size,
    load_template,
    render_ticket,
    safe_position,
)
from tests.helpers import EVENT_ID, SECRET, template_data_url

PNG_MAGIC = b"\x89PNG\r\n\x1a\n"


class RefusingStore(InMemoryTicketStore):
    def insert(self, record):
        return False


def _request(quantity=6, **kw):
    return BulkRenderRequest(event_id=EVENT_ID, owner_id="org_1", quantity=quantity, template=template_data_url(), **kw)


def test_choose_batch_size():
    assert choose_batch_size(50, 25) == 10
    assert choose_batch_size(300, 25) == 25
    assert choose_batch_size(300, 5) == 5
    assert choose_batch_size(3000, 100) == 50


def test_safe_position_clamps_into_template():
    assert safe_position(QRPosition(x=550, y=10, size=200), 600, 400) == (400, 10)
    assert safe_position(QRPosition(x=-20, y=-20, size=100), 600, 400) == (0, 0)
    # y beyond the template drops to the bottom-left corner
    assert safe_position(QRPosition(x=300, y=900, size=100), 600, 400) == (50, 250)


def test_load_template_rejects_non_images():
    with pytest.raises(ValueError):
        load_template("https://example.com/t.png")
    with pytest.raises(ValueError):
        load_template("data:image/png;base64,bm90IGFuIGltYWdl")


def test_render_ticket_png_and_pdf():
    template = load_template(template_data_url())
    png = render_ticket(template, "EVTKT:abc", "EVTL-1-AAAA-0001", QRPosition())
    assert png.startswith(PNG_MAGIC)
    assert Image.open(io.BytesIO(png)).size == (600, 400)

    pdf = render_ticket(template, "EVTKT:abc", "EVTL-1-AAAA-0001", QRPosition(), output="pdf")
    assert pdf.startswith(b"%PDF")


@pytest.mark.asyncio
async def test_bulk_render_archive():
    store = InMemoryTicketStore()
    result = await BulkRenderer(store, secret=SECRET, delay=0).run(_request(quantity=6))

    assert len(result.generated) == 6
    assert not result.failures
    assert not result.partial

    with zipfile.ZipFile(io.BytesIO(result.archive)) as zf:
        names = sorted(zf.namelist())
        assert names == sorted(f"tickets/ticket-{n}.png" for n in result.generated)
        assert zf.read(names[0]).startswith(PNG_MAGIC)

    stored = store.list_for_event(EVENT_ID)
    assert len(stored) == 6
    assert all(r.qr_token for r in stored)


@pytest.mark.asyncio
async def test_bookkeeping_failure_is_partial_success():
    result = await BulkRenderer(RefusingStore(), secret=SECRET, delay=0).run(_request(quantity=4))

    assert len(result.generated) == 4
    assert len(result.partial) == 4
    assert result.partial[0].primary == "ok"
    assert result.partial[0].secondary == "failed"
    with zipfile.ZipFile(io.BytesIO(result.archive)) as zf:
        assert len(zf.namelist()) == 4


@pytest.mark.asyncio
async def test_render_failures_are_per_item(monkeypatch):
    real = rendering.render_ticket
    calls = {"n": 0}

    def flaky(*a, **kw):
        calls["n"] += 1
        if calls["n"] == 2:
            raise ValueError("bad pixels")
        return real(*a, **kw)

    monkeypatch.setattr(rendering, "render_ticket", flaky)
    store = InMemoryTicketStore()
    result = await BulkRenderer(store, secret=SECRET, delay=0).run(_request(quantity=3))

    assert len(result.generated) == 2
    assert [f.reason for f in result.failures] == ["bad pixels"]
    assert result.failures[0].index == 2
    # nothing is stored for the ticket that failed to render
    assert len(store.list_for_event(EVENT_ID)) == 2


@pytest.mark.asyncio
async def test_nothing_generated(monkeypatch):
    def broken(*a, **kw):
        raise OSError("disk full")

    monkeypatch.setattr(rendering, "render_ticket", broken)
    with pytest.raises(NothingGenerated):
        await BulkRenderer(InMemoryTicketStore(), secret=SECRET, delay=0).run(_request(quantity=2))


@pytest.mark.asyncio
async def test_rendering_and_inserts_run_off_the_event_loop(monkeypatch):
    loop_thread = threading.get_ident()
    seen = []
    real = rendering.render_ticket

    def watched(*a, **kw):
        seen.append(threading.get_ident())
        return real(*a, **kw)

    class WatchedStore(InMemoryTicketStore):
        def insert(self, record):
            seen.append(threading.get_ident())
            return super().insert(record)

    monkeypatch.setattr(rendering, "render_ticket", watched)
    await BulkRenderer(WatchedStore(), secret=SECRET, delay=0).run(_request(quantity=2))

    assert len(seen) == 4
    assert loop_thread not in seen
