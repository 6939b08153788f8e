"""
Metrics module for observability.

Provides counters, gauges, and histograms for tracking what the harness does.
Exposes metrics in Prometheus text format.
"""

from .registry import (
    REGISTRY,
    build_duration,
    chain_height,
    cleanup_failures,
    containers_created,
    containers_removed,
    exec_duration,
    generate_metrics,
    transactions_sent,
    users_funded,
)

__all__ = [
    "REGISTRY",
    "build_duration",
    "chain_height",
    "cleanup_failures",
    "containers_created",
    "containers_removed",
    "exec_duration",
    "generate_metrics",
    "transactions_sent",
    "users_funded",
]
