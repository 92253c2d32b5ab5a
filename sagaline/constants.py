"""Default values shared across sagaline modules."""

DEFAULT_STEP_TIMEOUT = 30.0
DEFAULT_MAX_RETRY_DELAY = 300.0
DEFAULT_PERSISTENCE_ATTEMPTS = 3
DEFAULT_OUTCOME_TOPIC = "sagaline.outcomes"
QUEUE_PREFIX = "sagaline"
