# SPDX-License-Identifier: MPL-2.0
"""JSON Schemas for ledger event payloads.

The indexer validates every payload before applying it; a payload that does
not match is rejected rather than half-applied.
"""

from typing import Any, Dict

from jsonschema import ValidationError, validate

from trust_ledger.core.db import MAX_INTEGER
from trust_ledger.core.exceptions import MalformedEventError
from trust_ledger.services.ledger.client import (
    ACCESS_GRANTED,
    CERTIFICATE_MINTED,
    CLAIM_RAISED,
    TRUST_SCORE_UPDATED,
)

_AMOUNT = {
    "anyOf": [
        {"type": "integer", "minimum": 0, "maximum": MAX_INTEGER},
        {"type": "string", "pattern": "^[0-9]{1,19}$"},
    ]
}
_SUB_SCORE = {"type": "integer", "minimum": 0, "maximum": 25}
_ID = {"type": "string", "minLength": 1}

SCHEMAS: Dict[str, Dict[str, Any]] = {
    CERTIFICATE_MINTED: {
        "$schema": "https://json-schema.org/draft/2020-12/schema",
        "title": "CertificateMinted",
        "type": "object",
        "required": ["dataset_id", "certificate_id", "owner"],
        "properties": {
            "dataset_id": _ID,
            "certificate_id": _ID,
            "owner": {"type": "string"},
            "blob_id": {"type": "string"},
        },
    },
    ACCESS_GRANTED: {
        "$schema": "https://json-schema.org/draft/2020-12/schema",
        "title": "AccessGranted",
        "type": "object",
        "required": ["dataset_id", "requester", "purpose", "stake_amount"],
        "properties": {
            "dataset_id": _ID,
            "requester": _ID,
            "purpose": {"type": "string"},
            "stake_amount": _AMOUNT,
            "blob_id": {"type": "string"},
        },
    },
    CLAIM_RAISED: {
        "$schema": "https://json-schema.org/draft/2020-12/schema",
        "title": "ClaimRaised",
        "type": "object",
        "required": ["dataset_id", "claim_id", "severity", "claimant"],
        "properties": {
            "dataset_id": _ID,
            "claim_id": {"anyOf": [_ID, {"type": "integer", "minimum": 0}]},
            "severity": {"type": "integer", "enum": [0, 1, 2]},
            "claimant": {"type": "string"},
        },
    },
    TRUST_SCORE_UPDATED: {
        "$schema": "https://json-schema.org/draft/2020-12/schema",
        "title": "TrustScoreUpdated",
        "type": "object",
        "required": ["dataset_id", "provenance_score", "integrity_score", "audit_score", "usage_score"],
        "properties": {
            "dataset_id": _ID,
            "score": {"type": "integer", "minimum": 0, "maximum": 100},
            "provenance_score": _SUB_SCORE,
            "integrity_score": _SUB_SCORE,
            "audit_score": _SUB_SCORE,
            "usage_score": _SUB_SCORE,
            "verified_by_enclave": {"type": "boolean"},
        },
    },
}


def validate_payload(event_type: str, payload: Dict[str, Any]) -> None:
    """Raise :class:`MalformedEventError` unless ``payload`` fits its schema."""
    schema = SCHEMAS.get(event_type)
    if schema is None:
        raise MalformedEventError(f"Unknown event type {event_type}")
    try:
        validate(instance=payload, schema=schema)
    except ValidationError as e:
        raise MalformedEventError(f"{event_type} payload invalid: {e.message}", {"path": list(e.absolute_path)}) from e
    if event_type == ACCESS_GRANTED and int(payload["stake_amount"]) > MAX_INTEGER:
        raise MalformedEventError(
            f"{event_type} payload invalid: stake_amount exceeds {MAX_INTEGER}", {"path": ["stake_amount"]}
        )
