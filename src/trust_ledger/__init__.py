# SPDX-License-Identifier: MPL-2.0
"""
Trust Ledger - provenance, integrity and trust scoring for datasets.

Datasets are stored in a content-addressed blob store, certified on a ledger
and scored from their evidence: provenance timeline, recomputed digests,
claims filed against them and usage.
"""

import contextlib
from importlib.metadata import version

__version__ = "0.1.0"

with contextlib.suppress(Exception):
    __version__ = version("trust-ledger")


from trust_ledger.core import canonicalize, compute_trust_score

__all__ = [
    "canonicalize",
    "compute_trust_score",
    "__version__",
]
