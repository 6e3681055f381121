"""
eth_signing.py — EIP-191 Personal-Message Signatures

Implements:
  - EIP-191 ("\\x19Ethereum Signed Message:\\n" + len + message) digests
  - Signer recovery from 65-byte r || s || v signatures (secp256k1)
  - Address derivation (last 20 bytes of Keccak-256 of the public key)
  - A reference signer, used by hosts and by the test suite

Security model:
  - Hosts are identified only by their ledger address. A signature is
    attributable to a host iff the recovered address equals that address
    (case-insensitive, so EIP-55 checksum casing is irrelevant).
  - verify_signature fails closed: malformed encodings return False.
    Only a structurally wrong length raises MalformedSignatureError.
"""

from __future__ import annotations
from typing import Optional, Union

from coincurve import PrivateKey, PublicKey

from .canonical_json import keccak256
from .errors import MalformedSignatureError

SIGNATURE_LENGTH = 65
_EIP191_PREFIX = b"\x19Ethereum Signed Message:\n"

Message = Union[str, bytes]


# ---------------------------------------------------------------------------
# Addresses
# ---------------------------------------------------------------------------

def normalize_address(address: str) -> str:
    """Lowercase, 0x-prefixed form used for every address comparison."""
    text = address.strip().lower()
    if not text.startswith("0x"):
        text = "0x" + text
    return text


def address_from_public_key(public_key: PublicKey) -> str:
    uncompressed = public_key.format(compressed=False)
    return "0x" + keccak256(uncompressed[1:])[-20:].hex()


def _load_private_key(private_key: Union[str, bytes]) -> PrivateKey:
    if isinstance(private_key, str):
        text = private_key[2:] if private_key[:2].lower() == "0x" else private_key
        private_key = bytes.fromhex(text)
    return PrivateKey(private_key)


def address_from_private_key(private_key: Union[str, bytes]) -> str:
    return address_from_public_key(_load_private_key(private_key).public_key)


# ---------------------------------------------------------------------------
# Digests
# ---------------------------------------------------------------------------

def _message_bytes(message: Message) -> bytes:
    if isinstance(message, str):
        return message.encode("utf-8")
    return bytes(message)


def personal_message_digest(message: Message) -> bytes:
    """
    Return the EIP-191 version 0x45 digest of ``message``.

    Text is signed as its UTF-8 bytes; binary input (e.g. a 32-byte
    Keccak digest) is signed as-is.
    """
    body = _message_bytes(message)
    prefix = _EIP191_PREFIX + str(len(body)).encode("ascii")
    return keccak256(prefix + body)


# ---------------------------------------------------------------------------
# Signing / recovery
# ---------------------------------------------------------------------------

def sign_personal_message(private_key: Union[str, bytes], message: Message) -> str:
    """Sign ``message`` EIP-191 style. Returns 0x-prefixed r || s || v hex, v in {27, 28}."""
    key = _load_private_key(private_key)
    raw = key.sign_recoverable(personal_message_digest(message), hasher=None)
    return "0x" + (raw[:64] + bytes([raw[64] + 27])).hex()


def _decode_signature(signature: Union[str, bytes]) -> Optional[bytes]:
    """Decode hex/bytes to raw bytes; None when not decodable at all."""
    if isinstance(signature, (bytes, bytearray)):
        return bytes(signature)
    if not isinstance(signature, str):
        return None
    text = signature.strip()
    if text[:2].lower() == "0x":
        text = text[2:]
    try:
        return bytes.fromhex(text)
    except ValueError:
        return None


def recover_signer(signature: Union[str, bytes], message: Message) -> Optional[str]:
    """
    Recover the lowercase address that produced ``signature`` over ``message``.

    Returns:
        The address, or None if the signature cannot be decoded or recovered.

    Raises:
        MalformedSignatureError: if the decoded signature is not 65 bytes.
    """
    raw = _decode_signature(signature)
    if raw is None:
        return None
    if len(raw) != SIGNATURE_LENGTH:
        raise MalformedSignatureError(f"got {len(raw)} bytes")

    v = raw[64]
    if v >= 27:
        v -= 27
    if v not in (0, 1):
        return None

    try:
        public_key = PublicKey.from_signature_and_message(
            raw[:64] + bytes([v]),
            personal_message_digest(message),
            hasher=None,
        )
    except Exception:
        return None
    return address_from_public_key(public_key)


def verify_signature(
    signature: Union[str, bytes],
    message: Message,
    expected_signer: str,
) -> bool:
    """
    Check that ``signature`` over ``message`` was produced by ``expected_signer``.

    Args:
        signature: 65-byte signature as bytes or (0x-)hex.
        message: Raw text, or a fixed-length binary digest.
        expected_signer: Ledger address of the claimed signer.

    Returns:
        True only if the recovered address matches ``expected_signer``.

    Raises:
        MalformedSignatureError: if the signature decodes to the wrong length.
    """
    recovered = recover_signer(signature, message)
    if recovered is None:
        return False
    return recovered == normalize_address(expected_signer)
