from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST
from starlette.responses import Response

# Keep metrics module-level singletons
request_latency_seconds = Histogram("request_latency_seconds", "HTTP request latency seconds")

# Job queue
jobs_enqueued_total = Counter("jobs_enqueued_total", "Jobs added to the evaluation queue", ["type"])
jobs_completed_total = Counter("jobs_completed_total", "Jobs completed by the queue worker", ["type"])
jobs_failed_total = Counter("jobs_failed_total", "Job attempts that raised", ["type"])
jobs_dead_lettered_total = Counter("jobs_dead_lettered_total", "Jobs moved to the dead-letter store")
execution_latency_seconds = Histogram("execution_latency_seconds", "Job execution latency seconds")
dead_letter_size = Gauge("dead_letter_size", "Entries currently held in the dead-letter store")

# Batches
batches_executed_total = Counter("batches_executed_total", "Batch jobs executed", ["status"])
batch_pair_failures_total = Counter("batch_pair_failures_total", "Pattern x suite pairs that raised")

# Schedules
schedule_runs_total = Counter("schedule_runs_total", "Scheduled evaluation runs", ["status"])

# Workflows
workflow_runs_total = Counter("workflow_runs_total", "Workflow executions", ["status"])
workflow_stages_total = Counter("workflow_stages_total", "Workflow stage outcomes", ["status"])

# Admission control / resilience
ratelimit_violations_total = Counter("ratelimit_violations_total", "Rate limit violations", ["type"])
circuit_breaker_transitions_total = Counter(
    "circuit_breaker_transitions_total", "Circuit breaker state transitions", ["state"]
)


def metrics_response():
    # Return prometheus metrics as a Response
    payload = generate_latest()
    return Response(content=payload, media_type=CONTENT_TYPE_LATEST)
