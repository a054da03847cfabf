from prometheus_client import Counter, Gauge, Histogram

# Terminal job outcomes
JOB_COUNT = Counter(
    "comment_job_total",
    "Total number of comment jobs that reached a terminal state",
    ["status"]
)

# Processing time
STAGE_DURATION = Histogram(
    "comment_job_stage_duration_seconds",
    "Time spent in each pipeline stage",
    ["stage"]
)

# Retried external calls
RETRY_COUNT = Counter(
    "comment_external_call_failure_total",
    "Total number of failed attempts at an external call",
    ["operation"]
)

# Media analysis downgrades to caption-only
MEDIA_FALLBACK_COUNT = Counter(
    "comment_media_fallback_total",
    "Total number of jobs that fell back to caption-only context",
    ["reason"]
)

# Waiting jobs
QUEUE_DEPTH = Gauge(
    "comment_queue_depth",
    "Number of jobs waiting in the queue"
)
