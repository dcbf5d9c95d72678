import os

DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///./ticketdesk.db")
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379/0")
SECRET = os.environ.get("TICKET_SIGNING_SECRET", "dev_secret_change_me")
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()

SCAN_RATE_LIMIT_PER_MIN = int(os.environ.get("SCAN_RATE_LIMIT_PER_MIN", "120"))
IDEMPOTENCY_TTL_SECONDS = int(os.environ.get("IDEMPOTENCY_TTL_SECONDS", "300"))
TICKET_ID_ATTEMPTS = int(os.environ.get("TICKET_ID_ATTEMPTS", "5"))

# Outbound mail, used by the notification worker only
SMTP_HOST = os.environ.get("SMTP_HOST", "")
SMTP_PORT = int(os.environ.get("SMTP_PORT", "587"))
SMTP_USER = os.environ.get("SMTP_USER", "")
SMTP_PASSWORD = os.environ.get("SMTP_PASSWORD", "")
MAIL_FROM = os.environ.get("MAIL_FROM", "Felicity Events <no-reply@localhost>")

NOTIFICATION_STREAM = "outbound_notifications"
