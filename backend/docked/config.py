"""Runtime configuration read from the environment."""

import os
from datetime import timedelta

# Database URL from environment or default
# Default to /data/docked.db (production path mounted as volume)
default_db = "sqlite+aiosqlite:////data/docked.db"
DATABASE_URL = os.getenv("DATABASE_URL", default_db)

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Cache lifetimes (seconds)
DIGEST_CACHE_TTL = int(os.getenv("DOCKED_DIGEST_CACHE_TTL", str(24 * 60 * 60)))
RELEASE_CACHE_TTL = int(os.getenv("DOCKED_RELEASE_CACHE_TTL", str(60 * 60)))

# Timeouts (seconds)
REGISTRY_HTTP_TIMEOUT = float(os.getenv("DOCKED_HTTP_TIMEOUT", "10"))
DIGEST_TOOL_TIMEOUT = float(os.getenv("DOCKED_DIGEST_TOOL_TIMEOUT", "30"))
IMAGE_CHECK_TIMEOUT = float(os.getenv("DOCKED_IMAGE_CHECK_TIMEOUT", "300"))

# Consecutive 429 tracking
RATE_LIMIT_ERROR_THRESHOLD = 5
RATE_LIMIT_ERROR_WINDOW = 60.0
RATE_LIMIT_BASE_DELAY = 5.0

# Max concurrent image lookups in a batch run
CHECK_CONCURRENCY = int(os.getenv("DOCKED_CHECK_CONCURRENCY", "5"))

# A running row older than LOCK_STALE_THRESHOLD is reaped when the lock is
# requested again. STARTUP_STALE_THRESHOLD is the slower sweep run at boot.
LOCK_STALE_THRESHOLD = timedelta(minutes=5)
STARTUP_STALE_THRESHOLD = timedelta(hours=1)

RUN_RETENTION_DAYS = int(os.getenv("DOCKED_RUN_RETENTION_DAYS", "30"))

DEFAULT_INTERVAL_MINUTES = 60
MIN_INTERVAL_MINUTES = 1
MAX_INTERVAL_MINUTES = 1440

METRICS_PORT = os.getenv("DOCKED_METRICS_PORT")

USER_AGENT = "docked/1.0"
