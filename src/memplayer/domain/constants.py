"""Centralized constants for memplayer.

All magic numbers and configuration defaults live here so every layer
imports from a single source of truth.
"""

# ---------- Cloze ----------
OCCURRENCE_WARNING_THRESHOLD = 5

# ---------- Scheduling (FSRS-4.5) ----------
DEFAULT_WEIGHTS = (
    0.4872,
    1.4003,
    3.7145,
    13.8206,
    5.1618,
    1.2298,
    0.8975,
    0.031,
    1.6474,
    0.1367,
    1.0461,
    2.1072,
    0.0793,
    0.3246,
    1.587,
    0.2272,
    2.8755,
)
DECAY = -0.5
FACTOR = 0.9 ** (1 / DECAY) - 1  # 19/81
REQUEST_RETENTION = 0.9
MAXIMUM_INTERVAL = 36500
MIN_STABILITY = 0.1
MIN_DIFFICULTY = 1.0
MAX_DIFFICULTY = 10.0
LEARNING_STEPS_MINUTES = (1, 5, 10)  # Again, Hard, Good while learning
RELEARNING_STEP_MINUTES = 5
LEECH_THRESHOLD = 5

# ---------- Queue ----------
DEFAULT_FORECAST_DAYS = 7
NEW_CARDS_PER_DAY = 20
REVIEWS_PER_DAY = 200

# ---------- Remote / HTTP ----------
REQUEST_TIMEOUT = 30.0
SYNC_CONCURRENCY = 4
CHUNK_SIZE = 500
