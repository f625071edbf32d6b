"""
Shared constants for the KWH event indexer.

Cursor namespaces, sync defaults, and sentinel values used across all modules.
"""

# ---------------------------------------------------------------------------
# Numeric Constants
# ---------------------------------------------------------------------------

MAX_SAFE_INTEGER = 2**53 - 1  # IEEE 754 double precision safe integer limit

# ---------------------------------------------------------------------------
# Cursor keys
# ---------------------------------------------------------------------------

CURSOR_NAMESPACE = "events:"  # per-contract keys: "events:" + lowercased address
BOOTSTRAP_CURSOR_KEY = "bootstrap"  # seeded once at storage initialization

# ---------------------------------------------------------------------------
# Backfill defaults
# ---------------------------------------------------------------------------

DEFAULT_BATCH_SIZE = 2000  # blocks per getLogs range, end-inclusive
DEFAULT_FALLBACK_WINDOW = 2000  # blocks behind safe tip when no progress exists
DEFAULT_CONFIRMATIONS = 0
DEFAULT_FAILED_BATCH_RETRIES = 3  # attempts on a batch with failing event names before moving past it

# ---------------------------------------------------------------------------
# RPC defaults
# ---------------------------------------------------------------------------

DEFAULT_RETRY_ATTEMPTS = 3
DEFAULT_RETRY_BACKOFF_SECONDS = 0.2  # linear: 0.2s, 0.4s, 0.6s
DEFAULT_BLOCK_CACHE_SIZE = 5000
DEFAULT_POLL_INTERVAL_SECONDS = 5.0
DEFAULT_HTTP_RPC_URL = "http://127.0.0.1:8545"
DEFAULT_CHAIN_ID = 31337

# ---------------------------------------------------------------------------
# Record values
# ---------------------------------------------------------------------------

NULL_LOG_INDEX = -1  # record not tied to a specific log
STATUS_CONFIRMED = "confirmed"

# Keys injected by array-like decoders that carry no semantic data
ARTIFACT_KEY_LENGTH = "length"
