HTTP_BAD_REQUEST = 400
HTTP_NOT_FOUND = 404
HTTP_BAD_GATEWAY = 502

API_MAX_RETRIES = 3

DEDUP_TTL = 300
# Memory bound on the dedup window; past it the oldest ids are evicted early.
DEDUP_CACHE_MAX = 100_000

SUBSCRIBER_WARN_THRESHOLD = 40

NAME_CACHE_MAX = 1000
NAME_CACHE_TTL = 3600
DM_CHANNEL_CACHE_MAX = 1000

DEFAULT_DEVICE_HOST = "0.0.0.0"
DEFAULT_DEVICE_PORT = 8081
WS_HEARTBEAT = 30.0
DEVICE_QUEUE_MAX = 100
DEVICE_CLOSE_TIMEOUT = 5.0
DEFAULT_HTTP_HOST = "0.0.0.0"
DEFAULT_HTTP_PORT = 3000

STORE_RETENTION = 24 * 3600
STORE_MAX_MESSAGES = 1000
STORE_SWEEP_INTERVAL = 300

LOG_TEXT_MAX = 200
REDACTED_TEXT = "[REDACTED]"

# Slack read-cursor event types; im_marked is the canonical one for DMs.
READ_EVENT_TYPES = frozenset({"im_marked", "channel_marked", "group_marked", "mpim_marked"})
