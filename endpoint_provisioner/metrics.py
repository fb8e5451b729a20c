# File: metrics.py

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, write_to_textfile

REGISTRY = CollectorRegistry()

METRICS = {
    "step_outcomes": Counter(
        "provisioner_step_outcomes_total",
        "Count of step outcomes",
        ["mode", "status"],
        registry=REGISTRY,
    ),
    "step_duration": Histogram(
        "provisioner_step_duration_seconds",
        "Time taken by a single step",
        ["mode"],
        buckets=(0.5, 1, 2.5, 5, 10, 30, 60, 120, 300),
        registry=REGISTRY,
    ),
    "provider_errors": Counter(
        "provisioner_provider_errors_total",
        "Provider calls that were rejected or timed out",
        ["operation"],
        registry=REGISTRY,
    ),
    "resources_tracked": Gauge(
        "provisioner_resources_tracked",
        "Roles currently recorded in the state store",
        registry=REGISTRY,
    ),
    "last_run_timestamp": Gauge(
        "provisioner_last_run_timestamp_seconds",
        "Unix time the last run finished",
        ["command"],
        registry=REGISTRY,
    ),
}


def export_textfile(path: str):
    """Write the registry for a node_exporter textfile collector."""
    write_to_textfile(path, REGISTRY)
