# SPDX-License-Identifier: MPL-2.0
"""Integrity verification of stored dataset blobs."""
from trust_ledger.services.verifier.integrity import IntegrityVerifier

__all__ = ["IntegrityVerifier"]
