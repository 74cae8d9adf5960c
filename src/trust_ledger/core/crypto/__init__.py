# SPDX-License-Identifier: MPL-2.0
"""Cryptographic primitives for the trust ledger.

Three concerns live here:

* content digests recomputed over downloaded blobs,
* the Ed25519 :class:`KeyPair` that signs ledger transactions,
* the :class:`EnclaveKeyRegistry` and the intent-envelope signature check
  that gates every enclave proof.
"""

from __future__ import annotations

import hashlib
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, ClassVar, Mapping, cast

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519

from trust_ledger.core.canonicalization import canonical_bytes
from trust_ledger.core.exceptions import (
    ConfigurationError,
    SignatureVerificationError,
    UnregisteredKeyError,
)

# Domain separation for enclave intent envelopes.
INTENT_DOMAIN = b"trust-ledger-intent-v1\n"


def digest_primary(data: bytes) -> str:
    """SHA-256 hex digest of ``data``."""
    return hashlib.sha256(data).hexdigest()


def digest_secondary(data: bytes) -> str:
    """Secondary content digest.

    Stands in for the ZK-friendly hash until a Poseidon implementation is
    wired in: the first 64 hex characters of SHA-512. The blob store
    computes the same value at upload time, so recomputation matches.
    """
    return hashlib.sha512(data).hexdigest()[:64]


def normalize_hex(value: str) -> str:
    """Lower-case ``value`` and strip an optional ``0x`` prefix."""
    value = value.strip()
    if value[:2].lower() == "0x":
        value = value[2:]
    return value.lower()


def _public_raw(public_key: ed25519.Ed25519PublicKey) -> bytes:
    return cast(
        "bytes",
        public_key.public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        ),
    )


@dataclass
class KeyPair:
    """Represents an Ed25519 public/private key pair.

    Ledger transactions are signed over ``DOMAIN + payload`` so that a
    signature produced here can never be replayed as an intent signature.
    """

    private_key: ed25519.Ed25519PrivateKey
    public_key: ed25519.Ed25519PublicKey
    kid: str = field(default_factory=lambda: f"key-{os.urandom(8).hex()}")

    DOMAIN: ClassVar[bytes] = b"trust-ledger-tx-v1\n"

    @classmethod
    def generate(cls, kid: str | None = None) -> KeyPair:
        """Generate a new key pair."""
        private_key = ed25519.Ed25519PrivateKey.generate()
        return cls(
            private_key=private_key,
            public_key=private_key.public_key(),
            kid=kid or f"key-{os.urandom(8).hex()}",
        )

    @classmethod
    def from_private_hex(cls, seed_hex: str, kid: str | None = None) -> KeyPair:
        """Load a key pair from a hex encoded 32 byte seed."""
        try:
            seed = bytes.fromhex(normalize_hex(seed_hex))
            private_key = ed25519.Ed25519PrivateKey.from_private_bytes(seed)
        except ValueError as exc:
            raise ConfigurationError(f"Invalid Ed25519 private key: {exc}") from exc
        return cls(
            private_key=private_key,
            public_key=private_key.public_key(),
            kid=kid or f"key-{os.urandom(8).hex()}",
        )

    def sign(self, data: bytes) -> bytes:
        """Sign ``data`` under the transaction domain."""
        return cast("bytes", self.private_key.sign(self.DOMAIN + data))

    def verify(self, data: bytes, signature: bytes) -> bool:
        """Verify a transaction signature."""
        try:
            self.public_key.verify(signature, self.DOMAIN + data)
        except InvalidSignature:
            return False
        return True

    def public_bytes(self) -> bytes:
        """Get the public key as bytes."""
        return _public_raw(self.public_key)

    def public_hex(self) -> str:
        return self.public_bytes().hex()

    def private_hex(self) -> str:
        """Hex encoded seed, the format ``LEDGER_PRIVATE_KEY`` expects."""
        return cast(
            "bytes",
            self.private_key.private_bytes(
                encoding=serialization.Encoding.Raw,
                format=serialization.PrivateFormat.Raw,
                encryption_algorithm=serialization.NoEncryption(),
            ),
        ).hex()


def sign_intent(private_key: ed25519.Ed25519PrivateKey, envelope: Mapping[str, Any]) -> str:
    """Sign an intent envelope and return the hex signature.

    This is what an enclave does; it lives here so tests and the local
    development enclave produce proofs the attestor accepts.
    """
    return private_key.sign(INTENT_DOMAIN + canonical_bytes(dict(envelope))).hex()


def verify_intent(
    public_key: ed25519.Ed25519PublicKey,
    envelope: Mapping[str, Any],
    signature_hex: str,
) -> None:
    """Verify ``signature_hex`` over the canonical bytes of ``envelope``.

    The envelope is serialized exactly as received, including fields this
    code does not interpret, so nothing outside the signature can be added
    or reordered without failing verification.

    Raises:
        SignatureVerificationError: if the signature is malformed or invalid.
    """
    try:
        signature = bytes.fromhex(normalize_hex(signature_hex))
    except ValueError as exc:
        raise SignatureVerificationError("Signature is not valid hex") from exc
    if len(signature) != 64:
        raise SignatureVerificationError(
            "Signature has the wrong length", {"length": len(signature)}
        )
    try:
        public_key.verify(signature, INTENT_DOMAIN + canonical_bytes(dict(envelope)))
    except InvalidSignature as exc:
        raise SignatureVerificationError("Enclave signature does not verify") from exc


@dataclass
class RegisteredEnclaveKey:
    """A public key registered for an attestation enclave."""

    public_key: ed25519.Ed25519PublicKey
    pcrs: dict[str, str] = field(default_factory=dict)
    registered_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def key_hex(self) -> str:
        return _public_raw(self.public_key).hex()


class EnclaveKeyRegistry:
    """Registered enclave public keys.

    Keys are indexed by their lower-case hex encoding. A revoked key stays
    unknown for good, mirroring the on-chain enclave registry.
    """

    def __init__(self) -> None:
        self._keys: dict[str, RegisteredEnclaveKey] = {}
        self._revoked: set[str] = set()

    @classmethod
    def from_hex_keys(cls, keys: list[str]) -> EnclaveKeyRegistry:
        registry = cls()
        for key in keys:
            registry.register_hex(key)
        return registry

    def register(
        self,
        public_key: ed25519.Ed25519PublicKey,
        pcrs: Mapping[str, str] | None = None,
    ) -> RegisteredEnclaveKey:
        """Register ``public_key`` and return its registry entry."""
        entry = RegisteredEnclaveKey(
            public_key=public_key,
            pcrs={k: normalize_hex(v) for k, v in (pcrs or {}).items()},
        )
        self._keys[entry.key_hex] = entry
        return entry

    def register_hex(self, key_hex: str, pcrs: Mapping[str, str] | None = None) -> RegisteredEnclaveKey:
        try:
            raw = bytes.fromhex(normalize_hex(key_hex))
            public_key = ed25519.Ed25519PublicKey.from_public_bytes(raw)
        except ValueError as exc:
            raise ConfigurationError(f"Invalid enclave public key {key_hex!r}: {exc}") from exc
        return self.register(public_key, pcrs)

    def get(self, key_hex: str) -> RegisteredEnclaveKey:
        """Return the registered entry for ``key_hex``.

        Raises:
            UnregisteredKeyError: if the key is unknown or revoked.
        """
        normalized = normalize_hex(key_hex)
        if normalized in self._revoked or normalized not in self._keys:
            raise UnregisteredKeyError(
                "Enclave public key is not registered", {"public_key": normalized}
            )
        return self._keys[normalized]

    def default(self) -> RegisteredEnclaveKey:
        """The only registered key, for enclaves that do not name their key."""
        active = [k for h, k in self._keys.items() if h not in self._revoked]
        if len(active) != 1:
            raise UnregisteredKeyError(
                "Proof does not name its key and the registry is ambiguous",
                {"registered": len(active)},
            )
        return active[0]

    def revoke(self, key_hex: str) -> None:
        self._revoked.add(normalize_hex(key_hex))

    def __len__(self) -> int:
        return len([h for h in self._keys if h not in self._revoked])
