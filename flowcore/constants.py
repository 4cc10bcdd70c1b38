"""Engine-wide constants."""

STARTED_EVENT = "workflow.started"
CANCELLED_EVENT = "workflow.cancelled"
MARKER_EVENTS = frozenset({STARTED_EVENT, CANCELLED_EVENT})

DEFAULT_LOCK_TTL_SECONDS = 30.0
DEFAULT_LOCK_WAIT_SECONDS = 10.0
DEFAULT_LOCK_RETRY_INTERVAL_SECONDS = 0.1

DEFAULT_SNAPSHOT_EVENT_THRESHOLD = 20
DEFAULT_SNAPSHOT_INTERVAL_SECONDS = 300.0
DEFAULT_SNAPSHOTS_KEPT = 3

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_ACTION_TIMEOUT_SECONDS = 30.0

DEFAULT_EVENT_TOPIC = "flowcore.events"
