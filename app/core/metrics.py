"""Prometheus metric inventory for exam-service.

Every metric the service exports is declared here; the modules that own
the behavior import the object and increment/observe it in place.
Counters only go up, so tests assert on deltas.
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

# ---------------------------------------------------------------------------
# HTTP metrics (populated by the MetricsMiddleware)
# ---------------------------------------------------------------------------

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests by method, endpoint, and status code",
    ["method", "endpoint", "status_code"],
)

REQUEST_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
)

ACTIVE_REQUESTS = Gauge(
    "http_active_requests",
    "Number of HTTP requests currently being processed",
)

# ---------------------------------------------------------------------------
# Attempt lifecycle metrics (populated by AttemptService)
# ---------------------------------------------------------------------------

ATTEMPTS_STARTED = Counter(
    "exam_attempts_started_total",
    "Exam attempts created",
)

ATTEMPTS_FINISHED = Counter(
    "exam_attempts_finished_total",
    "Exam attempts finalized and scored",
)

ANSWERS_GRADED = Counter(
    "exam_answers_graded_total",
    "Answers graded and saved, by stage (submit or finish) and result",
    ["stage", "result"],  # stage: "submit" | "finish"; result: "correct" | "incorrect"
)

TRANSITION_CONFLICTS = Counter(
    "exam_attempt_transition_conflicts_total",
    "Writes rejected because the attempt left in_progress concurrently",
    ["operation"],  # "submit" or "finish"
)

ATTEMPT_SCORE = Histogram(
    "exam_attempt_score",
    "Final attempt score (0-100)",
    buckets=[10, 20, 30, 40, 50, 60, 70, 80, 90, 100],
)
