"""
verification.py — Checkpoint Index & Proof Cross-Checks

A host-served index is an untrusted claim. Before any content is fetched:

  1. The index must be for the session's host and its checkpointsSignature
     must recover to that host's address.
  2. Every entry's proofHash must equal, byte for byte, the proof hash the
     ledger recorded for that checkpoint. Entries are not individually
     signed, so one forged entry invalidates the whole index.

Ledger-derived entries come from the ledger itself and skip both steps.
"""

from __future__ import annotations
import logging

from .canonical_json import hashes_equal
from .collaborators import LedgerQuery, SessionId
from .concurrency import bounded_gather
from .errors import (
    CheckpointFetchFailedError,
    InvalidIndexSignatureError,
    MalformedSignatureError,
    ProofHashMismatchError,
    RecoveryError,
)
from .eth_signing import normalize_address, verify_signature
from .models import CheckpointIndex, CheckpointIndexEntry

logger = logging.getLogger(__name__)


def verify_index_signature(index: CheckpointIndex, expected_host: str) -> None:
    """Raise InvalidIndexSignatureError unless ``expected_host`` signed the index."""
    if normalize_address(index.host_address) != normalize_address(expected_host):
        raise InvalidIndexSignatureError(
            f"index names host {index.host_address}, session host is {expected_host}"
        )
    try:
        valid = verify_signature(index.signature, index.signing_payload(), expected_host)
    except MalformedSignatureError as exc:
        raise InvalidIndexSignatureError(f"malformed signature: {exc.context}") from exc
    if not valid:
        raise InvalidIndexSignatureError(
            f"signature does not recover to {normalize_address(expected_host)}"
        )


async def verify_entry_proof(
    entry: CheckpointIndexEntry,
    session_id: SessionId,
    ledger: LedgerQuery,
) -> None:
    """Compare one entry's proofHash with the ledger's recorded proof."""
    try:
        recorded = await ledger.get_proof_submission(session_id, entry.index)
    except RecoveryError:
        raise
    except Exception as exc:
        raise CheckpointFetchFailedError(
            f"ledger proof lookup failed for checkpoint {entry.index}: {exc}"
        ) from exc

    if recorded is None:
        raise ProofHashMismatchError(entry.index, "no proof recorded on the ledger")
    if not hashes_equal(recorded.proof_hash, entry.proof_hash):
        raise ProofHashMismatchError(
            entry.index,
            f"ledger {recorded.proof_hash.lower()}, index {entry.proof_hash.lower()}",
        )


async def verify_checkpoint_index(
    index: CheckpointIndex,
    session_id: SessionId,
    ledger: LedgerQuery,
    expected_host: str,
    max_concurrency: int = 4,
) -> None:
    """
    Verify a host-served checkpoint index against the host and the ledger.

    Args:
        index: Parsed index as served by the host.
        session_id: Session being recovered.
        ledger: Ledger query service.
        expected_host: Host address from session metadata.
        max_concurrency: Upper bound on concurrent ledger lookups.

    Raises:
        InvalidIndexSignatureError: wrong host or bad signature.
        ProofHashMismatchError: any entry not matching the ledger.
        CheckpointFetchFailedError: the ledger could not be queried.
    """
    verify_index_signature(index, expected_host)
    if not index.entries:
        return

    async def check(entry: CheckpointIndexEntry) -> None:
        await verify_entry_proof(entry, session_id, ledger)

    await bounded_gather(list(index.entries), check, max_concurrency)
    logger.debug(
        "Session %s: %d index entries match ledger proofs", session_id, len(index.entries)
    )

