# SPDX-License-Identifier: MPL-2.0
"""Blob store client."""
from trust_ledger.services.blobstore.client import BlobStoreClient, BlobStoreResult

__all__ = ["BlobStoreClient", "BlobStoreResult"]
