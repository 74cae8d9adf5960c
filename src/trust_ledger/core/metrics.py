# SPDX-License-Identifier: MPL-2.0
"""Prometheus metrics shared by the services."""

from prometheus_client import Counter, Histogram

INTEGRITY_LATENCY = Histogram(
    "trust_ledger_integrity_check_latency_ms",
    "Blob download and digest recomputation latency in milliseconds",
    buckets=(10, 50, 100, 250, 500, 1000, 2500, 5000, 10000, 20000),
)

INTEGRITY_CHECKS = Counter(
    "trust_ledger_integrity_checks_total",
    "Integrity checks by outcome",
    ["outcome"],
)

ATTESTATIONS = Counter(
    "trust_ledger_attestations_total",
    "Enclave attestation requests by outcome",
    ["outcome"],
)

LEDGER_SUBMISSIONS = Counter(
    "trust_ledger_ledger_submissions_total",
    "Ledger submissions by action and mode",
    ["action", "mode"],
)

INDEXED_EVENTS = Counter(
    "trust_ledger_indexed_events_total",
    "Ledger events seen by the indexer, by type and outcome",
    ["event_type", "outcome"],
)
