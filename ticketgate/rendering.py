import base64
import binascii
import io
import logging
import zipfile
from typing import Literal, Optional

import qrcode
from PIL import Image, ImageDraw, ImageFont
from pydantic import BaseModel, Field
from qrcode.exceptions import DataOverflowError
from starlette.concurrency import run_in_threadpool

from .config import BULK_DEFAULT_BATCH_SIZE, SECRET
from .errors import NothingGenerated
from .issuance import BatchRequest, ItemFailure, iter_batches, persist_batch
from .store import TicketStore

logger = logging.getLogger(__name__)


class QRPosition(BaseModel):
    x: int = 50
    y: int = 50
    size: int = Field(default=200, ge=32)


class BulkRenderRequest(BaseModel):
    event_id: str
    owner_id: str
    quantity: int
    template: str
    qr_position: QRPosition = Field(default_factory=QRPosition)
    ticket_type: str = "Bronze"
    template_name: str = "Bulk Template"
    batch_size: int = BULK_DEFAULT_BATCH_SIZE
    name_prefix: str = "Guest"
    output: Literal["png", "pdf"] = "png"


class PartialSuccess(BaseModel):
    """Artifact rendered, bookkeeping write failed."""

    ticket_number: str
    primary: Literal["ok"] = "ok"
    secondary: Literal["failed"] = "failed"
    reason: str


class BulkRenderResult(BaseModel):
    archive: bytes
    generated: list[str] = Field(default_factory=list)
    failures: list[ItemFailure] = Field(default_factory=list)
    partial: list[PartialSuccess] = Field(default_factory=list)


def choose_batch_size(quantity: int, requested: int = BULK_DEFAULT_BATCH_SIZE) -> int:
    if quantity <= 100:
        cap = 10
    elif quantity <= 500:
        cap = 25
    else:
        cap = 50
    return max(1, min(requested, cap))


def load_template(template: str) -> Image.Image:
    if not template.startswith("data:image"):
        raise ValueError("Invalid template format")
    try:
        raw = base64.b64decode(template.split(",", 1)[1], validate=True)
        img = Image.open(io.BytesIO(raw))
        img.load()
    except (IndexError, binascii.Error, OSError) as e:
        raise ValueError("Invalid template format") from e
    return img.convert("RGB")


def safe_position(pos: QRPosition, width: int, height: int) -> tuple[int, int]:
    x = min(max(0, pos.x), width - pos.size)
    y = min(max(0, pos.y), height - pos.size)
    if pos.y >= height:
        x, y = 50, height - pos.size - 50
    return max(0, x), max(0, y)


def render_ticket(
    template: Image.Image,
    token: str,
    ticket_number: str,
    pos: QRPosition,
    output: str = "png",
) -> bytes:
    qr = qrcode.QRCode(error_correction=qrcode.constants.ERROR_CORRECT_M, border=2, box_size=8)
    qr.add_data(token)
    qr.make(fit=True)
    code = qr.make_image(fill_color="black", back_color="white").get_image().convert("RGB")
    code = code.resize((pos.size, pos.size), Image.NEAREST)

    canvas = template.copy()
    width, height = canvas.size
    x, y = safe_position(pos, width, height)

    # white pad so the code stays scannable on busy artwork
    canvas.paste(Image.new("RGB", (pos.size + 10, pos.size + 10), "white"), (x - 5, y - 5))
    canvas.paste(code, (x, y))

    draw = ImageDraw.Draw(canvas)
    font = ImageFont.load_default()
    label = f"Ticket: {ticket_number}"
    draw.rectangle((width - 250, height - 45, width - 20, height - 10), fill="white", outline="black", width=1)
    draw.text((width - 25 - draw.textlength(label, font=font), height - 33), label, fill="black", font=font)

    buf = io.BytesIO()
    canvas.save(buf, format="PDF" if output == "pdf" else "PNG")
    return buf.getvalue()


def _seq(ticket_number: str) -> int:
    try:
        return int(ticket_number.rsplit("-", 1)[1])
    except (IndexError, ValueError):
        return 0


class BulkRenderer:
    def __init__(self, store: TicketStore, secret: str = SECRET, delay: Optional[float] = None):
        self.store = store
        self.secret = secret
        self.delay = delay

    async def run(self, req: BulkRenderRequest) -> BulkRenderResult:
        template = load_template(req.template)
        batch_req = BatchRequest(
            event_id=req.event_id,
            owner_id=req.owner_id,
            quantity=req.quantity,
            ticket_type=req.ticket_type,
            batch_size=choose_batch_size(req.quantity, req.batch_size),
            name_prefix=req.name_prefix,
            compact=True,
        )

        generated: list[str] = []
        failures: list[ItemFailure] = []
        partial: list[PartialSuccess] = []
        buf = io.BytesIO()

        with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=6) as zf:
            async for outcome in iter_batches(self.store, batch_req, persist=False, delay=self.delay, secret=self.secret):
                logger.info("rendering batch %d (%d tickets)", outcome.number, len(outcome.tickets))
                failures.extend(outcome.failures)

                rendered = []
                for t in outcome.tickets:
                    try:
                        data = await run_in_threadpool(
                            render_ticket, template, t.token, t.ticket_number, req.qr_position, req.output,
                        )
                    except (OSError, ValueError, DataOverflowError) as e:
                        logger.warning("render failed ticket_number=%s: %s", t.ticket_number, e)
                        failures.append(ItemFailure(index=_seq(t.ticket_number), ticket_number=t.ticket_number, reason=str(e)))
                        continue
                    zf.writestr(f"tickets/ticket-{t.ticket_number}.{req.output}", data)
                    rendered.append(t)
                    generated.append(t.ticket_number)

                for saved in await run_in_threadpool(persist_batch, self.store, rendered):
                    if not saved.ok:
                        logger.error("ticket insert failed (non-fatal) ticket_number=%s: %s", saved.ticket_number, saved.reason)
                        partial.append(PartialSuccess(ticket_number=saved.ticket_number, reason=saved.reason or "unknown"))

        if not generated:
            raise NothingGenerated("No tickets were generated")

        logger.info("bulk render done: %d generated, %d failed, %d partial", len(generated), len(failures), len(partial))
        return BulkRenderResult(archive=buf.getvalue(), generated=generated, failures=failures, partial=partial)
