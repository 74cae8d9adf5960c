# SPDX-License-Identifier: MPL-2.0
"""Custom exceptions for the trust ledger.

The hierarchy follows the four failure classes the system distinguishes:
transient I/O failures, security failures, validation failures and
not-found conditions. Callers branch on the class, never on the message.
"""

from typing import Any, Dict, Optional


class TrustLedgerError(Exception):
    """Base exception for all trust ledger errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        """Initialize the exception.

        Args:
            message: Error message
            details: Optional dictionary with additional error details
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ConfigurationError(TrustLedgerError):
    """Raised when configuration is invalid or missing."""

    pass


class CanonicalizationError(TrustLedgerError):
    """Raised when data cannot be canonicalized."""

    pass


class DatabaseError(TrustLedgerError):
    """Raised when the projection database rejects an operation."""

    pass


# Transient I/O failures


class TransientError(TrustLedgerError):
    """Base exception for recoverable network failures."""

    pass


class BlobStoreError(TransientError):
    """Raised when the blob store cannot be reached."""

    pass


class LedgerTransportError(TransientError):
    """Raised when a ledger RPC call fails at the transport level."""

    pass


class EnclaveUnavailableError(TransientError):
    """Raised when the attestation enclave is unreachable or answers with an error."""

    pass


# Security failures


class SecurityError(TrustLedgerError):
    """Base exception for failures that must abort an operation entirely."""

    pass


class SignatureVerificationError(SecurityError):
    """Raised when signature verification fails."""

    pass


class UnregisteredKeyError(SecurityError):
    """Raised when a proof is signed by a key that is not registered."""

    pass


class MeasurementMismatchError(SecurityError):
    """Raised when an enclave reports PCR values other than the expected set."""

    pass


class AttestationError(SecurityError):
    """Raised when an attestation envelope is malformed or does not match the request."""

    pass


# Validation failures


class ValidationError(TrustLedgerError):
    """Raised when input validation fails."""

    pass


class InsufficientStakeError(ValidationError):
    """Raised when an offered stake is below the dataset's minimum."""

    def __init__(
        self,
        message: str = "Insufficient stake for access",
        required: int = 0,
        offered: int = 0,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, details)
        self.required = required
        self.offered = offered


class TokenGateError(ValidationError):
    """Raised when a requester holds none of the allowed tokens."""

    pass


class InvalidTransitionError(ValidationError):
    """Raised when a dataset status change is not permitted."""

    pass


class TransactionRejectedError(ValidationError):
    """Raised when the ledger aborts a transaction on a contract rule."""

    def __init__(
        self,
        message: str,
        abort_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, details)
        self.abort_code = abort_code


class MalformedEventError(ValidationError):
    """Raised when a ledger event payload does not match its schema."""

    pass


# Not found


class NotFoundError(TrustLedgerError):
    """Base exception for missing resources."""

    pass


class DatasetNotFoundError(NotFoundError):
    """Raised when a dataset does not exist in the projection."""

    pass


class UploadSessionNotFoundError(NotFoundError):
    """Raised when an upload session is unknown or was already used."""

    pass


class ClaimNotFoundError(NotFoundError):
    """Raised when a claim does not exist."""

    pass
