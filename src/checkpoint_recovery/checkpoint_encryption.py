"""
checkpoint_encryption.py — Encrypted Checkpoint Deltas (version 1)

Hosts may encrypt each checkpoint delta to the user's recovery public key
so that the object store only ever holds ciphertext:

    ephemeral keypair (fresh per checkpoint, secp256k1)
    shared  = SHA-256( ECDH(ephemeral_priv, recipient_pub).x )
    key     = HKDF-SHA256(shared, salt=None, info="checkpoint-delta-encryption-v1", L=32)
    payload = XChaCha20-Poly1305(key, nonce[24]).encrypt(sorted-key JSON of the delta)

The host signs keccak256(ciphertext), never the plaintext.

Every constant here is part of the wire contract with the host side.
Changing any of them makes all existing checkpoints undecryptable.
"""

from __future__ import annotations
import json
import os
from typing import Any, Dict, Optional, Union

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat
from nacl.bindings import (
    crypto_aead_xchacha20poly1305_ietf_decrypt,
    crypto_aead_xchacha20poly1305_ietf_encrypt,
)
from nacl.exceptions import CryptoError

from .canonical_json import keccak256, sha256_bytes
from .errors import (
    DecryptionFailedError,
    DecryptionKeyRequiredError,
    InvalidDeltaStructureError,
)
from .eth_signing import sign_personal_message
from .models import CheckpointDelta, EncryptedCheckpointDelta

ENCRYPTION_VERSION = 1
CHECKPOINT_HKDF_INFO = b"checkpoint-delta-encryption-v1"
NONCE_LENGTH = 24
KEY_LENGTH = 32

_CURVE = ec.SECP256K1()

PrivateKeyInput = Union[str, bytes, ec.EllipticCurvePrivateKey]


# ---------------------------------------------------------------------------
# Key handling
# ---------------------------------------------------------------------------

def _hex_bytes(text: str) -> bytes:
    text = text.strip()
    if text[:2].lower() == "0x":
        text = text[2:]
    return bytes.fromhex(text)


def load_recovery_private_key(private_key: PrivateKeyInput) -> ec.EllipticCurvePrivateKey:
    """Accept a 32-byte secp256k1 scalar as hex/bytes, or a key object."""
    if isinstance(private_key, ec.EllipticCurvePrivateKey):
        return private_key
    raw = _hex_bytes(private_key) if isinstance(private_key, str) else bytes(private_key)
    if len(raw) != 32:
        raise ValueError(f"recovery private key must be 32 bytes, got {len(raw)}")
    return ec.derive_private_key(int.from_bytes(raw, "big"), _CURVE)


def load_public_key(public_key: Union[str, bytes]) -> ec.EllipticCurvePublicKey:
    raw = _hex_bytes(public_key) if isinstance(public_key, str) else bytes(public_key)
    return ec.EllipticCurvePublicKey.from_encoded_point(_CURVE, raw)


def compressed_public_key(key: Union[ec.EllipticCurvePrivateKey, ec.EllipticCurvePublicKey]) -> bytes:
    if isinstance(key, ec.EllipticCurvePrivateKey):
        key = key.public_key()
    return key.public_bytes(Encoding.X962, PublicFormat.CompressedPoint)


def derive_checkpoint_key(
    private_key: ec.EllipticCurvePrivateKey,
    peer_public_key: ec.EllipticCurvePublicKey,
) -> bytes:
    """ECDH + SHA-256 + HKDF-SHA256 → 32-byte symmetric key."""
    # cryptography returns the x-coordinate only.
    shared_x = private_key.exchange(ec.ECDH(), peer_public_key)
    shared_secret = sha256_bytes(shared_x)
    return HKDF(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=None,
        info=CHECKPOINT_HKDF_INFO,
    ).derive(shared_secret)


# ---------------------------------------------------------------------------
# Decryption
# ---------------------------------------------------------------------------

def decrypt_checkpoint_delta(
    encrypted: EncryptedCheckpointDelta,
    private_key: Optional[PrivateKeyInput],
    checkpoint_index: Optional[int] = None,
) -> CheckpointDelta:
    """
    Decrypt an encrypted checkpoint delta with the user's recovery key.

    Args:
        encrypted: Parsed encrypted payload.
        private_key: Recovery private key (hex, raw bytes or key object).
        checkpoint_index: Index of the entry being recovered, for error context.

    Returns:
        CheckpointDelta: the parsed plaintext delta.

    Raises:
        DecryptionKeyRequiredError: no private key supplied.
        InvalidDeltaStructureError: unsupported version, bad nonce length,
            or plaintext that is not a valid delta.
        DecryptionFailedError: wrong key, foreign recipient, or tampered
            ciphertext (AEAD tag mismatch).
    """
    if private_key is None:
        raise DecryptionKeyRequiredError(checkpoint_index)
    if encrypted.version != ENCRYPTION_VERSION:
        raise InvalidDeltaStructureError(
            "version",
            f"unsupported encryption version {encrypted.version}",
            checkpoint_index,
        )

    try:
        recipient_key = load_recovery_private_key(private_key)
    except ValueError as exc:
        raise DecryptionFailedError(f"unusable recovery key: {exc}", checkpoint_index) from exc

    nonce = _hex_bytes(encrypted.nonce)
    if len(nonce) != NONCE_LENGTH:
        raise InvalidDeltaStructureError(
            "nonce", f"expected {NONCE_LENGTH} bytes, got {len(nonce)}", checkpoint_index
        )

    if _hex_bytes(encrypted.recipient_public_key) != compressed_public_key(recipient_key):
        try:
            same_point = load_public_key(encrypted.recipient_public_key).public_numbers() == (
                recipient_key.public_key().public_numbers()
            )
        except ValueError:
            same_point = False
        if not same_point:
            raise DecryptionFailedError(
                "payload was encrypted for a different recovery key", checkpoint_index
            )

    try:
        ephemeral = load_public_key(encrypted.ephemeral_public_key)
    except ValueError as exc:
        raise DecryptionFailedError(f"invalid ephemeral public key: {exc}", checkpoint_index) from exc

    key = derive_checkpoint_key(recipient_key, ephemeral)
    try:
        plaintext = crypto_aead_xchacha20poly1305_ietf_decrypt(
            encrypted.ciphertext_bytes(), None, nonce, key
        )
    except CryptoError as exc:
        raise DecryptionFailedError("authentication tag mismatch", checkpoint_index) from exc

    try:
        data = json.loads(plaintext.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise InvalidDeltaStructureError(
            "ciphertext", "decrypted payload is not JSON", checkpoint_index
        ) from exc
    return CheckpointDelta.from_dict(data, checkpoint_index)


# ---------------------------------------------------------------------------
# Host-side reference encoder
# ---------------------------------------------------------------------------

def encrypt_checkpoint_delta(
    delta: CheckpointDelta,
    recipient_public_key: Union[str, bytes],
    host_private_key: Optional[Union[str, bytes]] = None,
    nonce: Optional[bytes] = None,
    ephemeral_private_key: Optional[ec.EllipticCurvePrivateKey] = None,
) -> Dict[str, Any]:
    """
    Encrypt ``delta`` exactly as a host does and return the wire payload.

    A fresh ephemeral key is generated per call unless one is supplied.
    When ``host_private_key`` is given, the payload is signed over
    keccak256(ciphertext); otherwise ``hostSignature`` is left empty.
    """
    ephemeral = ephemeral_private_key or ec.generate_private_key(_CURVE)
    recipient = load_public_key(recipient_public_key)
    key = derive_checkpoint_key(ephemeral, recipient)
    nonce = nonce if nonce is not None else os.urandom(NONCE_LENGTH)
    plaintext = json.dumps(delta.to_dict(), sort_keys=True).encode("utf-8")
    ciphertext = crypto_aead_xchacha20poly1305_ietf_encrypt(plaintext, None, nonce, key)

    signature = ""
    if host_private_key is not None:
        signature = sign_personal_message(host_private_key, keccak256(ciphertext))

    return {
        "encrypted": True,
        "version": ENCRYPTION_VERSION,
        "userRecoveryPubKey": "0x" + compressed_public_key(recipient).hex(),
        "ephemeralPublicKey": "0x" + compressed_public_key(ephemeral).hex(),
        "nonce": nonce.hex(),
        "ciphertext": ciphertext.hex(),
        "hostSignature": signature,
    }
