# SPDX-License-Identifier: MPL-2.0
"""Remote enclave attestation."""
from trust_ledger.services.attestor.enclave import EnclaveAttestor, merge_proof

__all__ = ["EnclaveAttestor", "merge_proof"]
