"""
fetcher.py — Checkpoint Delta Fetcher

Retrieves each verified entry's delta from the content-addressed store and
checks it before anything is merged:

  fetch      store.get(deltaCID) under a per-item timeout
  decode     JSON → plaintext or encrypted payload (``encrypted`` tag)
  sign       hostSignature must recover to the session host
             (plaintext: canonical delta text; encrypted: keccak256(ciphertext))
  open       decrypt encrypted payloads with the caller's recovery key
  bind       the delta must describe the entry it was fetched for and its
             proofHash must be the commitment over its own messages

Fetches run concurrently with a bounded fan-out; any single failure
cancels the rest and fails the whole batch. Nothing here retries.
"""

from __future__ import annotations
import asyncio
import json
import logging
from typing import List, Optional, Sequence

from .canonical_json import hashes_equal, keccak256, to_hex
from .checkpoint_encryption import PrivateKeyInput, decrypt_checkpoint_delta
from .collaborators import SessionId
from .concurrency import bounded_gather
from .errors import (
    DeltaFetchFailedError,
    InvalidDeltaSignatureError,
    InvalidDeltaStructureError,
    MalformedSignatureError,
    ProofHashMismatchError,
)
from .eth_signing import verify_signature
from .models import (
    CheckpointDelta,
    CheckpointIndexEntry,
    DeltaPayload,
    EncryptedCheckpointDelta,
    parse_delta_payload,
)
from .storage import ObjectNotFoundError, ObjectStore, ObjectStoreError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Fetch + decode
# ---------------------------------------------------------------------------

async def fetch_delta_bytes(
    store: ObjectStore,
    entry: CheckpointIndexEntry,
    timeout: float = 30.0,
) -> bytes:
    """Raw payload for ``entry``; every store failure becomes DeltaFetchFailedError."""
    if not entry.delta_cid:
        raise DeltaFetchFailedError(entry.index, "entry has no delta CID")
    try:
        return await asyncio.wait_for(store.get(entry.delta_cid), timeout)
    except asyncio.TimeoutError as exc:
        raise DeltaFetchFailedError(
            entry.index, f"timed out after {timeout}s fetching {entry.delta_cid}"
        ) from exc
    except ObjectNotFoundError as exc:
        raise DeltaFetchFailedError(entry.index, f"not found: {entry.delta_cid}") from exc
    except ObjectStoreError as exc:
        raise DeltaFetchFailedError(entry.index, str(exc)) from exc


def decode_delta_payload(raw: bytes, checkpoint_index: Optional[int] = None) -> DeltaPayload:
    try:
        data = json.loads(raw.decode("utf-8"))
    except ValueError as exc:
        raise InvalidDeltaStructureError(
            "delta", "payload is not valid JSON", checkpoint_index
        ) from exc
    return parse_delta_payload(data, checkpoint_index)


# ---------------------------------------------------------------------------
# Signature
# ---------------------------------------------------------------------------

def verify_delta_signature(
    payload: DeltaPayload,
    host_address: str,
    checkpoint_index: Optional[int] = None,
) -> None:
    """Raise InvalidDeltaSignatureError unless the session host signed ``payload``."""
    if isinstance(payload, EncryptedCheckpointDelta):
        message = keccak256(payload.ciphertext_bytes())
    else:
        message = payload.signing_payload()
    try:
        valid = verify_signature(payload.host_signature, message, host_address)
    except MalformedSignatureError as exc:
        raise InvalidDeltaSignatureError(checkpoint_index, f"malformed: {exc.context}") from exc
    if not valid:
        raise InvalidDeltaSignatureError(
            checkpoint_index, f"signature does not recover to host {host_address}"
        )


async def fetch_delta(
    store: ObjectStore,
    entry: CheckpointIndexEntry,
    host_address: str,
    timeout: float = 30.0,
) -> DeltaPayload:
    """
    Fetch, decode and signature-check one checkpoint delta.

    Encrypted payloads are returned still encrypted; see open_delta.

    Raises:
        DeltaFetchFailedError: store failure, missing CID or timeout.
        InvalidDeltaStructureError: payload is not a well-formed delta.
        InvalidDeltaSignatureError: payload not signed by ``host_address``.
    """
    raw = await fetch_delta_bytes(store, entry, timeout)
    payload = decode_delta_payload(raw, entry.index)
    verify_delta_signature(payload, host_address, entry.index)
    logger.debug(
        "Fetched checkpoint %d (%s, %d bytes)",
        entry.index,
        "encrypted" if isinstance(payload, EncryptedCheckpointDelta) else "plaintext",
        len(raw),
    )
    return payload


async def fetch_all_deltas(
    store: ObjectStore,
    entries: Sequence[CheckpointIndexEntry],
    host_address: str,
    timeout: float = 30.0,
    max_concurrency: int = 4,
) -> List[DeltaPayload]:
    """fetch_delta for every entry, at most ``max_concurrency`` at a time, in entry order."""

    async def fetch(entry: CheckpointIndexEntry) -> DeltaPayload:
        return await fetch_delta(store, entry, host_address, timeout)

    return await bounded_gather(list(entries), fetch, max_concurrency)


# ---------------------------------------------------------------------------
# Decrypt + bind to entry
# ---------------------------------------------------------------------------

def check_delta_matches_entry(
    delta: CheckpointDelta,
    entry: CheckpointIndexEntry,
    session_id: SessionId,
) -> None:
    """
    Bind a delta to the (already verified) entry it was fetched for.

    Raises:
        InvalidDeltaStructureError: session, index or token range differ.
        ProofHashMismatchError: proofHash differs from the entry, or is not
            the commitment over the delta's own messages.
    """
    idx = entry.index
    if delta.session_id != str(session_id):
        raise InvalidDeltaStructureError(
            "sessionId", f"delta is for session {delta.session_id}", idx
        )
    if delta.checkpoint_index != idx:
        raise InvalidDeltaStructureError(
            "checkpointIndex", f"delta claims index {delta.checkpoint_index}", idx
        )
    if (delta.start_token, delta.end_token) != entry.token_range:
        raise InvalidDeltaStructureError(
            "startToken",
            f"delta covers [{delta.start_token}, {delta.end_token}), "
            f"entry covers [{entry.start_token}, {entry.end_token})",
            idx,
        )
    if not hashes_equal(delta.proof_hash, entry.proof_hash):
        raise ProofHashMismatchError(
            idx, f"delta {delta.proof_hash.lower()}, entry {entry.proof_hash.lower()}"
        )
    commitment = delta.commitment_hash()
    if not hashes_equal(delta.proof_hash, commitment):
        raise ProofHashMismatchError(
            idx,
            f"messages hash to {to_hex(commitment)}, delta claims {delta.proof_hash.lower()}",
            field="messages",
        )


def open_delta(
    payload: DeltaPayload,
    entry: CheckpointIndexEntry,
    session_id: SessionId,
    private_key: Optional[PrivateKeyInput] = None,
) -> CheckpointDelta:
    """Decrypt ``payload`` if needed and check it against ``entry``."""
    if isinstance(payload, EncryptedCheckpointDelta):
        delta = decrypt_checkpoint_delta(payload, private_key, entry.index)
        logger.debug("Decrypted checkpoint %d", entry.index)
    else:
        delta = payload
    check_delta_matches_entry(delta, entry, session_id)
    return delta


def decrypt_as_needed(
    payloads: Sequence[DeltaPayload],
    entries: Sequence[CheckpointIndexEntry],
    session_id: SessionId,
    private_key: Optional[PrivateKeyInput] = None,
) -> List[CheckpointDelta]:
    """open_delta over parallel ``payloads`` / ``entries`` lists."""
    if len(payloads) != len(entries):
        raise ValueError("payloads and entries must be the same length")
    return [
        open_delta(payload, entry, session_id, private_key)
        for payload, entry in zip(payloads, entries)
    ]
