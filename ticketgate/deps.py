"""FastAPI dependency providers. Tests swap these via ``app.dependency_overrides``."""
from redis.asyncio import Redis

from .config import REDIS_URL
from .db import SessionLocal
from .store import SqlBookingStore, SqlEventDirectory, SqlScanLog, SqlTicketStore, SqlWebhookLedger
from .verification import VerificationEngine
from .webhooks import PaymentEventHandler, ReplayGuard

# connects lazily on first command
redis = Redis.from_url(REDIS_URL, decode_responses=True)


def get_redis() -> Redis:
    return redis


def get_ticket_store() -> SqlTicketStore:
    return SqlTicketStore(SessionLocal)


def get_event_directory() -> SqlEventDirectory:
    return SqlEventDirectory(SessionLocal)


def get_scan_log() -> SqlScanLog:
    return SqlScanLog(SessionLocal)


def get_verification_engine() -> VerificationEngine:
    return VerificationEngine(get_ticket_store(), get_event_directory(), get_scan_log())


def get_replay_guard() -> ReplayGuard:
    return ReplayGuard(SqlWebhookLedger(SessionLocal))


def get_payment_handler() -> PaymentEventHandler:
    return PaymentEventHandler(SqlBookingStore(SessionLocal), get_ticket_store())
