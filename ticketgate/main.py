from typing import Optional

from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from redis.asyncio import Redis
from starlette.concurrency import run_in_threadpool

from .admin import router as admin_router
from .config import SCAN_RATE_PER_MIN, WEBHOOK_SECRET
from .db import Base, engine
from .deps import get_payment_handler, get_redis, get_replay_guard, get_verification_engine
from .errors import StorageFailure
from .idempotency import IdempotencyCache
from .logs import setup_logging
from .rate_limit import per_minute, token_bucket
from .verification import VerificationEngine
from .webhooks import PaymentEventHandler, ReplayGuard, process_notification

logger = setup_logging()

# Create FastAPI app FIRST
app = FastAPI(title="Ticket Gate", version="1.0.0")
app.include_router(admin_router)

# Create DB tables (fine to do at import-time)
Base.metadata.create_all(bind=engine)


def _client(request: Request) -> tuple[str, str]:
    ip = request.client.host if request.client else "unknown"
    return ip, request.headers.get("user-agent", "")


class VerifyReq(BaseModel):
    qr_token: str
    event_id: Optional[str] = None


@app.post("/tickets/verify")
async def verify_ticket(
    req: VerifyReq,
    request: Request,
    actor_id: str = Header(alias="X-Actor-Id"),
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    redis: Redis = Depends(get_redis),
    gate: VerificationEngine = Depends(get_verification_engine),
):
    ip, ua = _client(request)
    cache = IdempotencyCache(redis)

    # Idempotency
    if idempotency_key:
        cached = await cache.get(idempotency_key)
        if cached:
            return cached

    # Rate limit per scanner and device
    capacity, refill = per_minute(SCAN_RATE_PER_MIN)
    if not await token_bucket(redis, key=f"{actor_id}:{ip}", capacity=capacity, refill_per_sec=refill):
        logger.warning("scan rate limited actor=%s ip=%s", actor_id, ip)
        return {"success": False, "result": "rate_limited", "message": "Too many scans, slow down", "ticket_info": {}}

    try:
        # sync DB work; keep it off the event loop
        result = await run_in_threadpool(gate.verify, req.qr_token, actor_id, req.event_id, {"ip": ip, "user_agent": ua})
    except StorageFailure:
        logger.exception("verification storage failure actor=%s", actor_id)
        return JSONResponse(
            status_code=503,
            content={"success": False, "result": "error", "message": "Verification temporarily unavailable"},
        )

    resp = result.model_dump(mode="json")
    if idempotency_key:
        await cache.put(idempotency_key, resp)
    return resp


@app.post("/payments/webhook")
async def payment_webhook(
    request: Request,
    guard: ReplayGuard = Depends(get_replay_guard),
    handler: PaymentEventHandler = Depends(get_payment_handler),
):
    ip, ua = _client(request)
    try:
        raw = await request.json()
    except ValueError:
        raw = None
    if not isinstance(raw, dict):
        return JSONResponse(status_code=400, content={"status": "error", "message": "Malformed notification"})

    outcome = await run_in_threadpool(
        process_notification, raw, guard, handler, WEBHOOK_SECRET, ip_address=ip, user_agent=ua,
    )
    return JSONResponse(status_code=outcome.status_code, content=outcome.body)
