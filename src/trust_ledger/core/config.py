# SPDX-License-Identifier: MPL-2.0
"""Runtime configuration.

Everything is read from the environment once, at startup, into a
:class:`Settings` model. Components receive the values they need rather than
reading the environment themselves.
"""

from __future__ import annotations

import os
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from trust_ledger.core.exceptions import ConfigurationError

LEDGER_MODES = ("auto", "rpc", "simulated", "local")

PLACEHOLDER_OBJECT = "0x0"


class LedgerObjects(BaseModel):
    """Object references of the deployed ledger package."""

    package_id: str = "0xabc"
    claim_registry: str = PLACEHOLDER_OBJECT
    access_registry: str = PLACEHOLDER_OBJECT
    access_recorder_cap: str = PLACEHOLDER_OBJECT
    trust_oracle: str = PLACEHOLDER_OBJECT
    oracle_cap: str = PLACEHOLDER_OBJECT
    enclave_verifier: str = PLACEHOLDER_OBJECT


class Settings(BaseModel):
    """Configuration for all trust ledger services."""

    database_path: str = "trust-ledger.db"

    blob_gateway: str = "https://aggregator.walrus.xyz"
    blob_publisher: str = ""
    blob_api_key: str = ""
    blob_force_mock: bool = False
    blob_epochs: int = 1

    ledger_rpc_url: str = "https://fullnode.devnet.sui.io"
    ledger_mode: str = "auto"
    ledger_private_key: str = ""
    ledger_objects: LedgerObjects = Field(default_factory=LedgerObjects)

    enclave_url: str = ""
    enclave_gateway: Optional[str] = None
    enclave_public_keys: List[str] = Field(default_factory=list)
    enclave_expected_pcrs: Dict[str, str] = Field(default_factory=dict)

    enclave_timeout: float = 20.0
    integrity_timeout: float = 15.0
    ledger_timeout: float = 30.0

    indexer_poll_interval: float = 5.0
    indexer_page_size: int = 50

    attestation_cache_ttl: float = 900.0
    attestation_cache_size: int = 1024

    audit_log_path: Optional[str] = None
    allowed_origins: List[str] = Field(
        default_factory=lambda: ["http://localhost:3000", "http://localhost:8000"]
    )
    trusted_hosts: List[str] = Field(default_factory=lambda: ["localhost", "127.0.0.1", "testserver"])

    @field_validator("ledger_mode")
    @classmethod
    def _check_mode(cls, value: str) -> str:
        if value not in LEDGER_MODES:
            raise ValueError(f"ledger_mode must be one of {', '.join(LEDGER_MODES)}")
        return value

    @field_validator("indexer_page_size", "attestation_cache_size", "blob_epochs")
    @classmethod
    def _check_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @property
    def resolved_enclave_gateway(self) -> str:
        return (self.enclave_gateway or self.blob_gateway).rstrip("/")

    @property
    def effective_ledger_mode(self) -> str:
        """``auto`` resolves to ``rpc`` only when a signing key is present."""
        if self.ledger_mode != "auto":
            return self.ledger_mode
        return "rpc" if self.ledger_private_key else "simulated"

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> "Settings":
        """Build settings from environment variables.

        Raises:
            ConfigurationError: if a variable holds an invalid value.
        """
        env = os.environ if environ is None else environ

        def get(name: str, default: str = "") -> str:
            return env.get(name, default).strip()

        values: Dict[str, object] = {
            "database_path": get("TRUST_LEDGER_DB", "trust-ledger.db"),
            "blob_gateway": get("BLOB_GATEWAY", "https://aggregator.walrus.xyz").rstrip("/"),
            "blob_publisher": get("BLOB_PUBLISHER").rstrip("/"),
            "blob_api_key": get("BLOB_API_KEY"),
            "blob_force_mock": get("BLOB_FORCE_MOCK").lower() in ("1", "true", "yes"),
            "ledger_rpc_url": get("LEDGER_RPC_URL", "https://fullnode.devnet.sui.io"),
            "ledger_mode": get("LEDGER_MODE", "auto").lower(),
            "ledger_private_key": get("LEDGER_PRIVATE_KEY"),
            "ledger_objects": LedgerObjects(
                package_id=get("LEDGER_PACKAGE_ID", "0xabc"),
                claim_registry=get("LEDGER_CLAIM_REGISTRY", PLACEHOLDER_OBJECT),
                access_registry=get("LEDGER_ACCESS_REGISTRY", PLACEHOLDER_OBJECT),
                access_recorder_cap=get("LEDGER_ACCESS_RECORDER_CAP", PLACEHOLDER_OBJECT),
                trust_oracle=get("LEDGER_TRUST_ORACLE", PLACEHOLDER_OBJECT),
                oracle_cap=get("LEDGER_ORACLE_CAP", PLACEHOLDER_OBJECT),
                enclave_verifier=get("LEDGER_ENCLAVE_VERIFIER", PLACEHOLDER_OBJECT),
            ),
            "enclave_url": get("ENCLAVE_URL").rstrip("/"),
            "enclave_gateway": get("ENCLAVE_GATEWAY") or None,
            "enclave_public_keys": _split_list(get("ENCLAVE_PUBLIC_KEYS")),
            "enclave_expected_pcrs": _parse_pcrs(get("ENCLAVE_EXPECTED_PCRS")),
            "audit_log_path": get("AUDIT_LOG_PATH") or None,
        }

        numeric = {
            "enclave_timeout": "ENCLAVE_TIMEOUT",
            "integrity_timeout": "INTEGRITY_TIMEOUT",
            "ledger_timeout": "LEDGER_TIMEOUT",
            "indexer_poll_interval": "INDEXER_POLL_INTERVAL",
            "indexer_page_size": "INDEXER_PAGE_SIZE",
            "attestation_cache_ttl": "ATTESTATION_CACHE_TTL",
            "attestation_cache_size": "ATTESTATION_CACHE_SIZE",
        }
        for field_name, env_name in numeric.items():
            if get(env_name):
                values[field_name] = get(env_name)

        if get("ALLOWED_ORIGINS"):
            values["allowed_origins"] = _split_list(get("ALLOWED_ORIGINS"))
        if get("TRUSTED_HOSTS"):
            values["trusted_hosts"] = _split_list(get("TRUSTED_HOSTS"))

        try:
            return cls(**values)
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid configuration: {exc}") from exc


def _split_list(raw: str) -> List[str]:
    return [item.strip() for item in raw.split(",") if item.strip()]


def _parse_pcrs(raw: str) -> Dict[str, str]:
    """Parse ``0=abcd,1=ef01`` into ``{"0": "abcd", "1": "ef01"}``."""
    pcrs: Dict[str, str] = {}
    for item in _split_list(raw):
        index, sep, value = item.partition("=")
        if not sep or not index.strip() or not value.strip():
            raise ConfigurationError(f"Invalid PCR entry {item!r}, expected index=hex")
        pcrs[index.strip()] = value.strip().lower()
    return pcrs
