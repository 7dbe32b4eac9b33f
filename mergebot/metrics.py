import os
from prometheus_client import CollectorRegistry, CONTENT_TYPE_LATEST, generate_latest, Counter, Gauge, Histogram

try:
    from prometheus_client import multiprocess
except Exception:  # pragma: no cover
    multiprocess = None  # type: ignore


def build_registry() -> CollectorRegistry:
    """Build a Prometheus registry, supporting multiprocess if PROMETHEUS_MULTIPROC_DIR is set."""
    registry = CollectorRegistry()
    mp_dir = os.getenv("PROMETHEUS_MULTIPROC_DIR")
    if mp_dir and multiprocess is not None:
        multiprocess.MultiProcessCollector(registry)
    return registry


REGISTRY: CollectorRegistry = build_registry()

# Webhook ingress metrics
webhook_requests_total = Counter(
    "webhook_requests_total",
    "Webhook requests received over HTTP",
    labelnames=("event", "code"),
    registry=REGISTRY,
)
webhook_invalid_signatures_total = Counter(
    "webhook_invalid_signatures_total",
    "Deliveries dropped for a missing or invalid HMAC signature",
    labelnames=("source",),
    registry=REGISTRY,
)
webhook_duplicates_total = Counter(
    "webhook_duplicates_total",
    "Deliveries dropped because their delivery id was already seen",
    labelnames=("source",),
    registry=REGISTRY,
)
webhook_parse_failures_total = Counter(
    "webhook_parse_failures_total",
    "Deliveries whose body could not be decoded into a typed event",
    labelnames=("event",),
    registry=REGISTRY,
)
webhook_unroutable_total = Counter(
    "webhook_unroutable_total",
    "Decoded events that matched no registered repository",
    labelnames=("event",),
    registry=REGISTRY,
)
events_enqueued_total = Counter(
    "events_enqueued_total",
    "Events accepted and handed to the event processor",
    labelnames=("event",),
    registry=REGISTRY,
)

# Relay metrics
relay_reconnects_total = Counter(
    "relay_reconnects_total",
    "Times the event-stream relay session was restarted after an error",
    registry=REGISTRY,
)
relay_frames_total = Counter(
    "relay_frames_total",
    "Server-sent frames received from the relay by kind",
    labelnames=("kind",),
    registry=REGISTRY,
)

# Event processor metrics
processor_queue_depth = Gauge(
    "processor_queue_depth",
    "Requests waiting for the event processor",
    registry=REGISTRY,
)
processor_failures_total = Counter(
    "processor_failures_total",
    "Requests whose handling raised an exception",
    registry=REGISTRY,
)
processor_handling_seconds = Histogram(
    "processor_handling_seconds",
    "Time spent handling one request, merge queue included",
    registry=REGISTRY,
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, 60, 120, 300),
)
commands_total = Counter(
    "commands_total",
    "Commands seen in comments by kind and outcome",
    labelnames=("kind", "result"),
    registry=REGISTRY,
)
pull_requests_tracked = Gauge(
    "pull_requests_tracked",
    "Open pull requests held in memory",
    registry=REGISTRY,
)

# Merge queue metrics
queue_testing = Gauge(
    "queue_testing",
    "1 while a pull request occupies the test branch; 0 otherwise",
    registry=REGISTRY,
)
queue_admissions_total = Counter(
    "queue_admissions_total",
    "Pull requests rebased and pushed to the test branch",
    registry=REGISTRY,
)
queue_conflicts_total = Counter(
    "queue_conflicts_total",
    "Admissions abandoned because the rebase conflicted",
    registry=REGISTRY,
)
queue_landings_total = Counter(
    "queue_landings_total",
    "Landing attempts by result",
    labelnames=("result",),
    registry=REGISTRY,
)
git_command_seconds = Histogram(
    "git_command_seconds",
    "Git subprocess durations",
    labelnames=("command",),
    registry=REGISTRY,
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, 60, 120),
)

# GitHub API metrics
github_api_requests_total = Counter(
    "github_api_requests_total",
    "Outbound GitHub API requests",
    labelnames=("endpoint", "status"),
    registry=REGISTRY,
)
github_api_latency_seconds = Histogram(
    "github_api_latency_seconds",
    "Latency of GitHub API requests",
    labelnames=("endpoint",),
    registry=REGISTRY,
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10),
)
github_rate_limit_remaining = Gauge(
    "github_rate_limit_remaining",
    "GitHub REST API remaining requests",
    registry=REGISTRY,
)
github_rate_limit_reset = Gauge(
    "github_rate_limit_reset",
    "Epoch seconds when GitHub rate limit resets",
    registry=REGISTRY,
)

# Build info (set from environment)
service_info = Gauge(
    "service_info",
    "Service build/version info labeled on 1",
    labelnames=("version",),
    registry=REGISTRY,
)
service_info.labels(version=os.getenv("SERVICE_VERSION", "dev")).set(1)


def metrics_response():
    data = generate_latest(REGISTRY)
    return CONTENT_TYPE_LATEST, data
