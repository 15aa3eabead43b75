import os

TESTING = os.getenv("TESTING") == "1"
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Background loop intervals (seconds)
WORKER_POLL_SECONDS = float(os.getenv("WORKER_POLL_SECONDS", "0.5"))
WORKFLOW_PAUSE_POLL_SECONDS = float(os.getenv("WORKFLOW_PAUSE_POLL_SECONDS", "1.0"))
BATCH_POLL_SECONDS = float(os.getenv("BATCH_POLL_SECONDS", "5.0"))
CLEANUP_INTERVAL_SECONDS = float(os.getenv("CLEANUP_INTERVAL_SECONDS", "3600"))
ADAPTIVE_INTERVAL_SECONDS = float(os.getenv("ADAPTIVE_INTERVAL_SECONDS", "300"))

# Retention
DLQ_MAX_SIZE = int(os.getenv("DLQ_MAX_SIZE", "1000"))
DLQ_RETENTION_SECONDS = float(os.getenv("DLQ_RETENTION_SECONDS", str(7 * 24 * 3600)))
JOB_RETENTION_SECONDS = float(os.getenv("JOB_RETENTION_SECONDS", str(24 * 3600)))

# Pattern API used by api-test jobs and stages
API_BASE_URL = os.getenv("API_BASE_URL", "http://localhost:3001")
API_TEST_TIMEOUT_SECONDS = float(os.getenv("API_TEST_TIMEOUT_SECONDS", "30"))

# Admission limit per pattern for single-evaluation and api-test jobs
PATTERN_RATE_LIMIT_PER_MINUTE = int(os.getenv("PATTERN_RATE_LIMIT_PER_MINUTE", "60"))

# Scheduled runs execute a whole batch, so they get a longer job timeout
SCHEDULED_JOB_TIMEOUT_MS = int(os.getenv("SCHEDULED_JOB_TIMEOUT_MS", str(2 * 3600 * 1000)))

EVENT_QUEUE_SIZE = int(os.getenv("EVENT_QUEUE_SIZE", "1000"))

# Simulated runner used when no evaluation engine is wired in
DRY_RUN_FAILURE_RATE = float(os.getenv("DRY_RUN_FAILURE_RATE", "0.1"))

# Install the stock schedules and workflow at startup
INSTALL_DEFAULTS = os.getenv("INSTALL_DEFAULTS", "0" if TESTING else "1") == "1"
