"""
Ethereum-style address helpers.

  - Keccak-256 (pycryptodome) for EIP-55 mixed-case checksums
  - secp256k1 key generation (ecdsa) for locally simulated wallets

Used to normalise external-signer identities and to mint addresses for
the simulated wallet provider.
"""

from __future__ import annotations

import re

from Crypto.Hash import keccak

_HEX_ADDRESS = re.compile(r"^(0x)?[0-9a-fA-F]{40}$")


def keccak256(data: bytes) -> bytes:
    h = keccak.new(digest_bits=256)
    h.update(data)
    return h.digest()


def is_hex_address(value: str) -> bool:
    return bool(_HEX_ADDRESS.match(value or ""))


def to_checksum_address(address: str) -> str:
    """
    Return the EIP-55 checksummed form of *address*.

    Raises ``ValueError`` for anything that is not 20 bytes of hex.
    """
    if not is_hex_address(address):
        raise ValueError(f"Not a 20-byte hex address: {address!r}")
    lower = address.lower().removeprefix("0x")
    digest = keccak256(lower.encode("ascii")).hex()
    return "0x" + "".join(
        ch.upper() if ch.isalpha() and int(digest[i], 16) >= 8 else ch
        for i, ch in enumerate(lower)
    )


def is_checksum_valid(address: str) -> bool:
    """True when *address* is all-lower, all-upper, or correctly mixed-case."""
    if not is_hex_address(address):
        return False
    body = address.removeprefix("0x")
    if body == body.lower() or body == body.upper():
        return True
    return to_checksum_address(address)[2:] == body


def public_key_to_address(public_key: bytes) -> str:
    """Address from an uncompressed 64-byte (or 65-byte ``0x04``-prefixed) key."""
    if len(public_key) == 65 and public_key[0] == 0x04:
        public_key = public_key[1:]
    if len(public_key) != 64:
        raise ValueError("Expected a 64-byte uncompressed secp256k1 public key")
    return to_checksum_address(keccak256(public_key)[-20:].hex())


def generate_address() -> tuple[bytes, str]:
    """Fresh secp256k1 key pair; returns ``(private_key, checksum_address)``."""
    from ecdsa import SECP256k1, SigningKey
    sk = SigningKey.generate(curve=SECP256k1)
    return sk.to_string(), public_key_to_address(sk.get_verifying_key().to_string())
