"""Default values shared across the engine."""

DEFAULT_CONCURRENCY = 5
DEFAULT_MAX_ITERATIONS = 10
DEFAULT_OUTPUT_KEY = "result"
DEFAULT_RETRY_DELAY_MS = 1000
DEFAULT_HISTORY_LIMIT = 50
DEFAULT_WORKFLOW_VERSION = "1.0.0"
