import os

# --- Storage ---
DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///./ticketgate.db")
REDIS_URL = os.environ.get("REDIS_URL", "redis://127.0.0.1:6379/0")

# --- Secrets ---
SECRET = os.environ.get("TICKET_SIGNING_SECRET", "dev_secret_change_me")
WEBHOOK_SECRET = os.environ.get("PAYMENT_WEBHOOK_SECRET", "dev_webhook_secret_change_me")

# --- Ticket lifecycle ---
TICKET_VALIDITY_DAYS = int(os.environ.get("TICKET_VALIDITY_DAYS", "365"))
CHECKIN_EARLY_WINDOW_HOURS = float(os.environ.get("CHECKIN_EARLY_WINDOW_HOURS", "4"))
# codec ceiling sits one day past the validity window so it never fires first
QR_MAX_TOKEN_AGE_SECONDS = int(
    os.environ.get("QR_MAX_TOKEN_AGE_SECONDS", str((TICKET_VALIDITY_DAYS + 1) * 24 * 3600))
)

# --- Bulk issuance ---
MAX_BULK_QUANTITY = int(os.environ.get("MAX_BULK_QUANTITY", "5000"))
BULK_DEFAULT_BATCH_SIZE = int(os.environ.get("BULK_DEFAULT_BATCH_SIZE", "25"))

# --- Gate ---
SCAN_RATE_PER_MIN = int(os.environ.get("SCAN_RATE_PER_MIN", "120"))
IDEMPOTENCY_TTL_SECONDS = int(os.environ.get("IDEMPOTENCY_TTL_SECONDS", "300"))

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
