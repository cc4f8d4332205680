"""Shared defaults for the execution and compliance core."""

DEFAULT_LOCK_TTL_SECONDS = 30.0
DEFAULT_APPROVAL_WINDOW_HOURS = 24.0
DEFAULT_IDEMPOTENCY_RETENTION_HOURS = 24.0
DEFAULT_MAX_RUN_RETRIES = 5
DEFAULT_STEP_TIMEOUT_SECONDS = 30.0
MAX_STEP_TIMEOUT_SECONDS = 60.0
MAX_STEP_ATTEMPTS = 3

GENESIS_DIGEST = ""
REDACTION_MASK = "[REDACTED]"
