"""Runtime configuration for the clinic queue.

Everything is read from environment variables once, at import time.  When a
variable is missing the default below applies, so a fresh checkout runs
against a local SQLite file with the mock SMS transport and no Redis.
"""

from __future__ import annotations

import os

PROJECT_DIR = os.path.dirname(os.path.abspath(__file__))
DEFAULT_DB_FILENAME = os.path.join(PROJECT_DIR, "queue.db")

# Database.  A bare file path is accepted as well as a full SQLAlchemy URL;
# Railway/Heroku style ``postgres://`` URLs are normalised in database.py.
DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{DEFAULT_DB_FILENAME}")
DB_BUSY_TIMEOUT = float(os.getenv("DB_BUSY_TIMEOUT", "30"))

# Redis is optional: event publishing and the notification list.
REDIS_URL = os.getenv("REDIS_URL")
UPDATES_CHANNEL = "clinic:updates"
NOTIFICATION_LIST = "clinic:notifications"

# Clinic
CLINIC_NAME = os.getenv("CLINIC_NAME", "Community Health Clinic")
CLINIC_CODE = os.getenv("CLINIC_CODE", "CLINIC")
DEFAULT_QUEUE_NUMBER = 100
AVERAGE_SERVICE_MINUTES = int(os.getenv("AVERAGE_SERVICE_TIME", "15"))
# Unset means open around the clock, e.g. OPENING_TIME=08:00:00.
OPENING_TIME = os.getenv("OPENING_TIME")
CLOSING_TIME = os.getenv("CLOSING_TIME")
MAX_QUEUE_LENGTH = int(os.getenv("MAX_QUEUE_LENGTH", "50"))
NOTIFY_WITHIN = int(os.getenv("NOTIFY_WITHIN", "3"))
CLEANUP_RETENTION_HOURS = int(os.getenv("CLEANUP_RETENTION_HOURS", "24"))

# Twilio SMS.  Without credentials the mock transport is used.
TWILIO_ACCOUNT_SID = os.getenv("TWILIO_ACCOUNT_SID")
TWILIO_AUTH_TOKEN = os.getenv("TWILIO_AUTH_TOKEN")
TWILIO_FROM_NUMBER = os.getenv("TWILIO_FROM_NUMBER")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Maintenance endpoints are guarded by a shared passcode, nothing more.
ADMIN_PASS = os.getenv("ADMIN_PASS", "demo")
