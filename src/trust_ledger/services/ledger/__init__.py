# SPDX-License-Identifier: MPL-2.0
"""Ledger client, publisher and indexer."""
import logging
from typing import Optional

from trust_ledger.core.config import Settings
from trust_ledger.core.crypto import EnclaveKeyRegistry, KeyPair
from trust_ledger.services.ledger.client import (
    EventCursor,
    EventPage,
    LedgerClient,
    LedgerEvent,
    MoveCall,
    ObjectRef,
    RpcLedgerClient,
    SimulatedLedgerClient,
)
from trust_ledger.services.ledger.indexer import LedgerIndexer
from trust_ledger.services.ledger.local import LocalLedger
from trust_ledger.services.ledger.publisher import LedgerPublisher

logger = logging.getLogger(__name__)


def create_ledger_client(settings: Settings, enclave_keys: Optional[EnclaveKeyRegistry] = None) -> LedgerClient:
    """Pick the ledger client once, at startup.

    Raises:
        ConfigurationError: ``rpc`` mode without a usable signing key.
    """
    mode = settings.effective_ledger_mode
    if mode == "local":
        logger.info("Using in-process local ledger")
        return LocalLedger(enclave_keys=enclave_keys)
    if mode == "simulated":
        logger.warning("No ledger signing key configured, ledger writes are simulated")
        return SimulatedLedgerClient()

    keypair = KeyPair.from_private_hex(settings.ledger_private_key)
    logger.info(f"Using ledger RPC at {settings.ledger_rpc_url}")
    return RpcLedgerClient(
        settings.ledger_rpc_url,
        keypair,
        settings.ledger_objects.package_id,
        timeout=settings.ledger_timeout,
    )


__all__ = [
    "EventCursor",
    "EventPage",
    "LedgerClient",
    "LedgerEvent",
    "LedgerIndexer",
    "LedgerPublisher",
    "LocalLedger",
    "MoveCall",
    "ObjectRef",
    "RpcLedgerClient",
    "SimulatedLedgerClient",
    "create_ledger_client",
]
