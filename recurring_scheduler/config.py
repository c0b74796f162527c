import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./recurring_scheduler.db")

# Timezone used when a pattern does not name one
DEFAULT_TIMEZONE = os.getenv("DEFAULT_TIMEZONE", "America/New_York")

# Generation bounds - one pass never looks further than the horizon
# and never creates more than MAX_OCCURRENCES_PER_PASS bookings
SCHEDULE_HORIZON_DAYS = int(os.getenv("SCHEDULE_HORIZON_DAYS", "90"))
MAX_OCCURRENCES_PER_PASS = int(os.getenv("MAX_OCCURRENCES_PER_PASS", "10"))

# Conflict detection
CONFLICT_BUFFER_MINUTES = int(os.getenv("CONFLICT_BUFFER_MINUTES", "30"))
CONFLICT_STRATEGY = os.getenv("CONFLICT_STRATEGY", "skip")  # skip, reschedule or error
MAX_RESCHEDULE_ATTEMPTS = int(os.getenv("MAX_RESCHEDULE_ATTEMPTS", "10"))
DEFAULT_SERVICE_DURATION_MINUTES = int(os.getenv("DEFAULT_SERVICE_DURATION_MINUTES", "60"))

# Sweeper
SWEEP_BATCH_SIZE = int(os.getenv("SWEEP_BATCH_SIZE", "50"))
SWEEP_MAX_WORKERS = int(os.getenv("SWEEP_MAX_WORKERS", "4"))
SWEEP_INTERVAL_SECONDS = int(os.getenv("SWEEP_INTERVAL_SECONDS", "3600"))

# Retry / escalation
RETRY_ESCALATION_THRESHOLD = int(os.getenv("RETRY_ESCALATION_THRESHOLD", "3"))

# Operators who receive escalation alerts (comma-separated user ids)
OPERATOR_USER_IDS = [
    int(value) for value in os.getenv("OPERATOR_USER_IDS", "").split(",") if value.strip()
]
