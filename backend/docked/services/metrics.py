"""Prometheus metrics for Docked."""

from prometheus_client import Counter, Histogram, Info, start_http_server

app_info = Info("docked_app", "Docked application information")
app_info.info({"version": "1.0.0", "name": "Docked"})

# Registry lookups
registry_lookups_total = Counter(
    "docked_registry_lookups_total",
    "Registry digest lookups by provider and outcome",
    ["provider", "outcome"],
)
registry_cache_hits = Counter(
    "docked_registry_cache_hits_total", "Digest cache hits", ["provider"]
)
registry_rate_limit_errors = Counter(
    "docked_registry_rate_limit_errors_total", "HTTP 429 responses", ["provider"]
)
fallback_lookups_total = Counter(
    "docked_fallback_lookups_total",
    "Lookups answered by the GitHub releases fallback",
    ["outcome"],
)

# Batch runs
batch_runs_total = Counter(
    "docked_batch_runs_total", "Finished batch runs", ["job_type", "status"]
)
batch_run_duration = Histogram(
    "docked_batch_run_duration_seconds",
    "Batch run duration",
    ["job_type"],
    buckets=[1, 5, 15, 30, 60, 120, 300, 600, 1800],
)
batch_items_checked = Counter(
    "docked_batch_items_checked_total", "Items checked by batch runs", ["job_type"]
)
batch_updates_found = Counter(
    "docked_batch_updates_found_total", "Updates found by batch runs", ["job_type"]
)


def start_metrics_server(port: int) -> None:
    """Expose /metrics on a dedicated port."""
    start_http_server(port)
