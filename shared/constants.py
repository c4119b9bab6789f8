"""
Shared constants for the oracle feeder.

Wire-format constants and default values used across all modules.
"""

# ---------------------------------------------------------------------------
# Request event layout
# ---------------------------------------------------------------------------

NEW_REQUEST_DISCRIMINANT = 0  # Event::NewUpdateRequest variant index
REQUEST_ID_OFFSET = 1
REQUEST_ID_FIELD_SIZE = 16  # u128 slot on the wire
REQUEST_ID_SIZE = 8  # u64 id occupies the low bytes of the slot
REQUEST_CALLER_OFFSET = REQUEST_ID_OFFSET + REQUEST_ID_FIELD_SIZE  # 17

# Generic "message sent" log emitted by programs; payload is ABI `bytes`
USER_MESSAGE_SENT_SIGNATURE = "UserMessageSent(address,bytes)"

# ---------------------------------------------------------------------------
# Program state queries / handle variants
# ---------------------------------------------------------------------------

STATE_QUERY_REQUESTS_QUEUE = "GetRequestsQueue"
STATE_RESPONSE_REQUESTS_QUEUE = "RequestsQueue"
STATE_QUERY_LAST_ROUND = "GetLastRound"
STATE_RESPONSE_LAST_ROUND = "LastRound"

# ---------------------------------------------------------------------------
# Value production
# ---------------------------------------------------------------------------

DEFAULT_RANDOM_VALUE_BOUND = 9_999_999_999_999  # exclusive, < 10**13
DEFAULT_BEACON_URL = "https://api.drand.sh/public/latest"
DEFAULT_BEACON_INTERVAL_SECONDS = 30

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

DEFAULT_ENDPOINT_URL = "http://127.0.0.1:8545"
DEFAULT_ENDPOINT_WS_URL = "ws://127.0.0.1:8546"
DEFAULT_META_PATH = "config/schemas/oracle.json"
GAS_PRICE_BUFFER = 1.1  # 10% safety buffer on base gas price
