"""
Caller identity for the StakePot API.

A caller is a secp256k1 key-pair.  Its ledger address is derived the
Ethereum way (Keccak-256 of the 64-byte public key, last 20 bytes,
``0x``-prefixed), so addresses match the ones token holders already use.

Requests are authenticated by signing the canonical JSON body:

    body      = {"amount": "...", "period": 6500, "nonce": 7}
    payload   = json.dumps(body, sort_keys=True, separators=(",", ":"))
    signature = ECDSA-secp256k1(SHA-256(payload))        (RFC 6979)

The body must carry a ``nonce`` that strictly increases per address, which
stops a captured request from being replayed.
"""

from __future__ import annotations

import hashlib
import json
import os
import threading
from typing import Any

from Crypto.Hash import keccak
from ecdsa import BadSignatureError, SECP256k1, SigningKey, VerifyingKey

# Nonces must fit a signed 64-bit integer
MAX_NONCE = 2 ** 63 - 1


class InvalidSignature(ValueError):
    """Signature, public key or nonce failed verification."""


def keccak256(data: bytes) -> bytes:
    return keccak.new(digest_bits=256, data=data).digest()


def derive_address(public_key: bytes) -> str:
    """Address for a raw (64-byte) or uncompressed (65-byte) public key."""
    if len(public_key) == 65 and public_key[0] == 0x04:
        public_key = public_key[1:]
    if len(public_key) != 64:
        raise ValueError("Expected a 64- or 65-byte secp256k1 public key")
    return "0x" + keccak256(public_key)[-20:].hex()


def canonical_payload(body: dict[str, Any]) -> bytes:
    return json.dumps(body, sort_keys=True, separators=(",", ":")).encode("utf-8")


class Keypair:
    """secp256k1 signing key with its derived ledger address."""

    def __init__(self, private_key: bytes):
        self._sk = SigningKey.from_string(private_key, curve=SECP256k1)
        self.private_key = private_key
        self.public_key = b"\x04" + self._sk.get_verifying_key().to_string()
        self.address = derive_address(self.public_key)

    @classmethod
    def generate(cls) -> Keypair:
        return cls.from_seed(os.urandom(32).hex())

    @classmethod
    def from_seed(cls, seed: str) -> Keypair:
        """Deterministic key from a seed string (tests and dev nodes)."""
        digest = int.from_bytes(hashlib.sha256(seed.encode("utf-8")).digest(), "big")
        secret = digest % (SECP256k1.order - 1) + 1
        return cls(secret.to_bytes(32, "big"))

    def sign(self, body: dict[str, Any]) -> str:
        sig = self._sk.sign_deterministic(
            canonical_payload(body), hashfunc=hashlib.sha256,
        )
        return sig.hex()

    def signed_headers(self, body: dict[str, Any]) -> dict[str, str]:
        return {
            "X-Public-Key": self.public_key.hex(),
            "X-Signature": self.sign(body),
        }


def verify_signature(public_key_hex: str, signature_hex: str, body: dict[str, Any]) -> str:
    """
    Check ``signature_hex`` over ``body`` and return the signer's address.

    Raises ``InvalidSignature`` on any malformed input or mismatch.
    """
    try:
        public_key = bytes.fromhex(public_key_hex)
        signature = bytes.fromhex(signature_hex)
        vk = VerifyingKey.from_string(public_key, curve=SECP256k1)
        vk.verify(signature, canonical_payload(body), hashfunc=hashlib.sha256)
    except (ValueError, AssertionError, BadSignatureError) as exc:
        raise InvalidSignature("Signature verification failed") from exc
    raw = vk.to_string()
    return derive_address(raw)


class NonceTracker:
    """Highest nonce seen per address; a request must exceed it."""

    def __init__(self, nonces: dict[str, int] | None = None):
        self.nonces: dict[str, int] = dict(nonces or {})
        self._lock = threading.Lock()

    def consume(self, address: str, nonce: Any) -> None:
        if not isinstance(nonce, int) or isinstance(nonce, bool) or nonce < 0:
            raise InvalidSignature("nonce must be a non-negative integer")
        if nonce > MAX_NONCE:
            raise InvalidSignature(f"nonce must not exceed {MAX_NONCE}")
        with self._lock:
            last = self.nonces.get(address, -1)
            if nonce <= last:
                raise InvalidSignature(f"Stale nonce {nonce} (last {last})")
            self.nonces[address] = nonce
