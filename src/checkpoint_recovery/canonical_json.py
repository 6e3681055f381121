"""
canonical_json.py — Deterministic JSON canonicalization and commitment hashing

Canonical form (reference: RFC 8785, JCS-like):
- UTF-8 encoding
- Object keys sorted lexicographically by Unicode codepoint
- No insignificant whitespace
- No NaN/Infinity (raises ValueError)

Commitment hashes are Keccak-256 (the ledger's native hash, NOT SHA3-256)
over the canonical bytes of ``{"messages": [...], "tokenCount": n}``.
Hosts and this library MUST produce identical bytes for identical logical
input, otherwise every proof cross-check fails.
"""

from __future__ import annotations
import hashlib
import json
from typing import Any, Dict, List, Sequence, Union

from Crypto.Hash import keccak

HexOrBytes = Union[str, bytes]


def canonical_dumps(obj: Any) -> str:
    """Return canonical JSON string with sorted keys and no whitespace."""
    return json.dumps(
        obj,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    )


def canonical_bytes(obj: Any) -> bytes:
    """Return canonical JSON as UTF-8 bytes."""
    return canonical_dumps(obj).encode("utf-8")


def keccak256(data: bytes) -> bytes:
    """Return the 32-byte Keccak-256 digest of ``data``."""
    return keccak.new(digest_bits=256, data=data).digest()


def sha256_bytes(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def to_hex(digest: bytes) -> str:
    """Return ``0x``-prefixed lowercase hex."""
    return "0x" + digest.hex()


def hash_bytes(value: HexOrBytes) -> bytes:
    """
    Normalize a hash given as raw bytes or (optionally 0x-prefixed) hex.

    Raises:
        ValueError: if ``value`` is not valid hex.
    """
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    text = value.strip()
    if text[:2].lower() == "0x":
        text = text[2:]
    return bytes.fromhex(text)


def hashes_equal(a: HexOrBytes, b: HexOrBytes) -> bool:
    """Byte-for-byte comparison of two hashes; malformed hex never matches."""
    try:
        return hash_bytes(a) == hash_bytes(b)
    except ValueError:
        return False


def commitment_payload(messages: Sequence[Dict[str, Any]], token_count: int) -> bytes:
    """Canonical bytes committed to by a checkpoint's proof hash."""
    if isinstance(token_count, bool) or not isinstance(token_count, int):
        raise ValueError(f"token_count must be an integer, got {token_count!r}")
    body: Dict[str, Any] = {
        "messages": [dict(m) for m in messages],
        "tokenCount": token_count,
    }
    return canonical_bytes(body)


def compute_commitment_hash(messages: Sequence[Dict[str, Any]], token_count: int) -> bytes:
    """
    Compute the commitment hash over a message list and token count.

    Pure function: message order, every message field and the token count
    all feed the digest, while dict key order does not. An empty message
    list is valid input.

    Args:
        messages: Wire-form message dicts, in conversation order.
        token_count: Number of tokens covered by the messages.

    Returns:
        bytes: 32-byte Keccak-256 digest.
    """
    return keccak256(commitment_payload(messages, token_count))


def compute_commitment_hash_hex(messages: List[Dict[str, Any]], token_count: int) -> str:
    return to_hex(compute_commitment_hash(messages, token_count))
