"""Default values shared across waypoint modules."""

DEFAULT_MAX_RETRIES = 3
DEFAULT_RUN_QUEUE = "runs"
DEFAULT_MAX_CONCURRENT_RUNS = 10
DEFAULT_DEPLOYMENT_ID = "local"

DEFAULT_BACKOFF_BASE = 1.5
DEFAULT_BACKOFF_JITTER = 0.5
DEFAULT_MAX_BACKOFF = 60.0
