# SPDX-License-Identifier: MPL-2.0
"""Trust score computation.

A dataset's trust score is the sum of four factors, each worth 0-25 points:

* provenance: how many timeline events record the dataset's history,
* integrity: whether the stored bytes still match the recorded digests,
* audit: 25 points minus deductions for open allegations,
* usage: how often the dataset has been accessed.

:func:`compute_trust_score` is pure. Scoring the same evidence twice gives
identical sub-scores and explanations; only ``last_updated`` differs, and
callers that need full determinism pass ``now``.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from trust_ledger.core.models import (
    AuditFactor,
    DatasetRecord,
    IntegrityCheckResult,
    IntegrityFactor,
    ProvenanceFactor,
    RootStatus,
    Severity,
    TrustFactors,
    TrustScore,
    UsageFactor,
    utcnow,
)

MAX_FACTOR_SCORE = 25

CRITICAL_PENALTY = 10
WARNING_PENALTY = 5
INFO_PENALTY = 2


def provenance_points(timeline_events: int) -> tuple[int, str]:
    """Points for provenance tracking, stepped by timeline length."""
    if timeline_events >= 5:
        return 25, "Excellent provenance tracking (5+ events)"
    elif timeline_events >= 3:
        return 20, "Good provenance tracking (3-4 events)"
    elif timeline_events == 2:
        return 15, "Moderate provenance tracking (2 events)"
    elif timeline_events == 1:
        return 10, "Minimal provenance tracking (1 event)"
    return 0, "No provenance tracking"


def integrity_points(sha256_ok: bool, secondary_ok: bool, root_ok: bool) -> tuple[int, str]:
    if sha256_ok and secondary_ok and root_ok:
        return 25, "Full integrity verification (SHA256 + secondary hash + root)"
    elif sha256_ok and secondary_ok:
        return 20, "Dual hash verification (SHA256 + secondary hash)"
    elif sha256_ok:
        return 15, "Basic hash verification (SHA256 only)"
    return 0, "No integrity verification"


def audit_points(critical: int, warning: int, info: int) -> tuple[int, str]:
    """25 minus per-claim penalties, never below zero."""
    points = MAX_FACTOR_SCORE - critical * CRITICAL_PENALTY - warning * WARNING_PENALTY - info * INFO_PENALTY
    points = max(0, points)
    if critical == 0 and warning == 0 and info == 0:
        return points, "No audit claims (perfect score)"
    return points, f"Audit claims: {critical} critical, {warning} warning, {info} info"


def usage_points(downloads: int) -> tuple[int, str]:
    if downloads >= 100:
        return 25, "Highly trusted (100+ downloads)"
    elif downloads >= 50:
        return 20, "Well trusted (50-99 downloads)"
    elif downloads >= 20:
        return 15, "Moderately trusted (20-49 downloads)"
    elif downloads >= 5:
        return 10, "Some trust established (5-19 downloads)"
    elif downloads >= 1:
        return 5, "Minimal usage (1-4 downloads)"
    return 0, "No usage history"


def _describe_live_check(check: IntegrityCheckResult, sha256_ok: bool, secondary_ok: bool, root_ok: bool) -> str:
    if sha256_ok and secondary_ok and root_ok:
        detail = "Blob verified: SHA256, secondary hash and integrity root match"
    else:
        issues = []
        if not sha256_ok:
            issues.append("SHA256 mismatch")
        if not secondary_ok:
            issues.append("secondary hash mismatch")
        if not root_ok:
            issues.append("integrity root missing")
        detail = "Blob verification issues: " + ", ".join(issues)
    if check.root_status == RootStatus.ASSUMED and root_ok:
        detail += " (integrity root assumed, lookup unavailable)"
    if check.error:
        detail += f" [{check.error}]"
    return detail


def _count_claims(evidence: DatasetRecord) -> tuple[int, int, int]:
    critical = warning = info = 0
    for claim in evidence.claims or []:
        severity = getattr(claim, "severity", None)
        if severity == Severity.CRITICAL:
            critical += 1
        elif severity == Severity.WARNING:
            warning += 1
        elif severity == Severity.INFO:
            info += 1
    return critical, warning, info


def compute_trust_score(
    evidence: DatasetRecord,
    verified_by_enclave: bool = False,
    integrity_check: Optional[IntegrityCheckResult] = None,
    now: Optional[datetime] = None,
) -> TrustScore:
    """Score ``evidence``.

    Args:
        evidence: The dataset's evidence bundle. Missing fields score as the
            lowest tier rather than raising.
        verified_by_enclave: Whether an enclave proof backs this score.
        integrity_check: A live verification result. Without one, a
            non-empty recorded digest counts as verified (a weak proxy).
        now: Timestamp to stamp on the score.

    Returns:
        A new :class:`TrustScore`.
    """
    timeline_events = len(evidence.timeline or [])
    provenance_score, provenance_details = provenance_points(timeline_events)

    hashes = evidence.hashes
    blob = evidence.blob
    if integrity_check is not None:
        sha256_ok = integrity_check.sha256_match
        secondary_ok = integrity_check.secondary_match
        root_ok = integrity_check.integrity_root_valid
    else:
        sha256_ok = bool(hashes and hashes.sha256)
        secondary_ok = bool(hashes and hashes.secondary)
        root_ok = bool(blob and blob.integrity_root)
    integrity_score, integrity_details = integrity_points(sha256_ok, secondary_ok, root_ok)
    if integrity_check is not None:
        integrity_details = _describe_live_check(integrity_check, sha256_ok, secondary_ok, root_ok)

    critical, warning, info = _count_claims(evidence)
    audit_score, audit_details = audit_points(critical, warning, info)

    downloads = evidence.metrics.downloads if evidence.metrics else 0
    usage_score, usage_details = usage_points(max(0, downloads or 0))

    return TrustScore(
        dataset_id=evidence.id,
        score=provenance_score + integrity_score + audit_score + usage_score,
        provenance_score=provenance_score,
        integrity_score=integrity_score,
        audit_score=audit_score,
        usage_score=usage_score,
        verified_by_enclave=verified_by_enclave,
        integrity_check=integrity_check,
        factors=TrustFactors(
            provenance=ProvenanceFactor(timeline_events, provenance_score, provenance_details),
            integrity=IntegrityFactor(sha256_ok, secondary_ok, root_ok, integrity_score, integrity_details),
            audit=AuditFactor(critical, warning, info, audit_score, audit_details),
            usage=UsageFactor(max(0, downloads or 0), usage_score, usage_details),
        ),
        last_updated=now or utcnow(),
    )
