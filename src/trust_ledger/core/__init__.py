# SPDX-License-Identifier: MPL-2.0
"""Core functionality for the trust ledger."""
from trust_ledger.core.canonicalization import canonical_bytes, canonicalize
from trust_ledger.core.crypto import KeyPair, digest_primary, digest_secondary
from trust_ledger.core.scoring import compute_trust_score

__all__ = [
    "canonicalize",
    "canonical_bytes",
    "KeyPair",
    "digest_primary",
    "digest_secondary",
    "compute_trust_score",
]
