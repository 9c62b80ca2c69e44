import os
from dotenv import load_dotenv

load_dotenv()

DATABASE_URL   = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./detention.db")
REDIS_URL      = os.getenv("REDIS_URL", "redis://localhost:6379")
ALERT_STREAM   = os.getenv("ALERT_STREAM", "detention-alerts")
ALERT_STREAM_ENABLED = os.getenv("ALERT_STREAM_ENABLED", "true").lower() in {"1", "true", "yes"}
ALERT_STREAM_MAXLEN  = int(os.getenv("ALERT_STREAM_MAXLEN", 10000))

ALERT_CHECK_INTERVAL_SEC = max(1, int(os.getenv("ALERT_CHECK_INTERVAL_SEC", 10)))
RUN_ALERT_WORKER = os.getenv("RUN_ALERT_WORKER", "true").lower() in {"1", "true", "yes"}

ALERT_PURGE_HOUR     = int(os.getenv("ALERT_PURGE_HOUR", 3))
ALERT_PURGE_TIMEZONE = os.getenv("ALERT_PURGE_TIMEZONE", "America/Chicago")

REPORT_TIMEZONE = os.getenv("REPORT_TIMEZONE", "America/Chicago")
REPORT_DIR      = os.getenv("REPORT_DIR", "reports")
LOG_DIR         = os.getenv("LOG_DIR", "logs")
LOG_LEVEL       = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_MAX_BYTES   = int(os.getenv("LOG_MAX_BYTES", 5_000_000))
LOG_BACKUP_COUNT = int(os.getenv("LOG_BACKUP_COUNT", 3))
