"""
Metric registry using prometheus_client.

Provides pre-defined metrics describing what the harness provisioned and how
the chains under test behaved. The CLI can dump them in Prometheus text format
at the end of a run.
"""

from __future__ import annotations

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

# Create a dedicated registry for harness metrics.
#
# Using a dedicated registry avoids pollution from default Python process metrics.
REGISTRY = CollectorRegistry()

# -----------------------------------------------------------------------------
# Container Runtime
# -----------------------------------------------------------------------------

containers_created = Counter(
    "harness_containers_created_total",
    "Containers created through the broker",
    registry=REGISTRY,
)

containers_removed = Counter(
    "harness_containers_removed_total",
    "Containers removed through the broker",
    registry=REGISTRY,
)

exec_duration = Histogram(
    "harness_exec_seconds",
    "Duration of commands executed inside containers",
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
    registry=REGISTRY,
)

# -----------------------------------------------------------------------------
# Chains
# -----------------------------------------------------------------------------

chain_height = Gauge(
    "harness_chain_height",
    "Latest observed block height",
    ["chain"],
    registry=REGISTRY,
)

users_funded = Counter(
    "harness_users_funded_total",
    "Test users funded from the faucet",
    ["chain"],
    registry=REGISTRY,
)

transactions_sent = Counter(
    "harness_transactions_sent_total",
    "Transactions submitted by chain drivers",
    ["chain"],
    registry=REGISTRY,
)

# -----------------------------------------------------------------------------
# Lifecycle
# -----------------------------------------------------------------------------

build_duration = Histogram(
    "harness_build_seconds",
    "Interchain build duration",
    buckets=(5.0, 10.0, 30.0, 60.0, 120.0, 300.0, 600.0),
    registry=REGISTRY,
)

cleanup_failures = Counter(
    "harness_cleanup_failures_total",
    "Cleanup steps that raised during close",
    registry=REGISTRY,
)


def generate_metrics() -> bytes:
    """
    Generate Prometheus metrics output.

    Returns:
        Prometheus text format output as bytes.
    """
    return generate_latest(REGISTRY)
