"""Centralized constants for reciter.

All magic numbers and configuration defaults live here so every layer
imports from a single source of truth.
"""

# ---------- Scheduler ----------
DEFAULT_EASE = 2.5
MIN_EASE = 1.3
STRONG_SCORE = 0.9
SHAKY_SCORE = 0.75
SHAKY_EASE_PENALTY = 0.2
FAILED_EASE_PENALTY = 0.5
SHAKY_INTERVAL_FACTOR = 0.5
FIRST_INTERVAL_DAYS = 1
SECOND_INTERVAL_DAYS = 6
MASTERED_REP_THRESHOLD = 3
SUPPRESSION_HOURS = 24

# ---------- Identity ----------
FALLBACK_SLUG = "untitled"

# ---------- Local storage ----------
STORAGE_KEY = "reciter_v2_state"
DATABASE_FILENAME = "reciter.sqlite3"

# ---------- Remote mirror / HTTP ----------
REQUEST_TIMEOUT = 30.0
POLL_INTERVAL = 2.0  # seconds
RESUBSCRIBE_DELAY = 1.0  # seconds, doubled per failed attempt
MAX_RETRY_DELAY = 60.0
DEBOUNCE_SECONDS = 2.0
DEFAULT_MIRROR_URL = "http://127.0.0.1:8787"
CHANGE_LOG_LIMIT = 10_000  # changes retained for cursor polling

# ---------- Progress ----------
MAX_DUE_LISTING = 20
