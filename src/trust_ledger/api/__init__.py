# SPDX-License-Identifier: MPL-2.0
"""HTTP surface."""
from trust_ledger.api.main import create_app

__all__ = ["create_app"]
