"""
discovery.py — Checkpoint Index Discovery

Two strategies produce the same output shape (an ordered list of
CheckpointIndexEntry tagged with its origin):

  - ledger: scan "proof submitted" events for the session. The ledger is
    append-only and outlives any host, so entries are trusted as-is.
  - host:   GET the host's signed index. Requires the host to be online and
    its claims must be cross-checked (verification.py) before use.

Selection (AUTO) prefers the ledger whenever any event carries a delta CID
and only falls back to the host for sessions that predate ledger-anchored
CIDs. The host path is never chosen when the ledger path is available.
"""

from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

import httpx

from .collaborators import LedgerQuery, SessionId
from .config import DEFAULT_CHECKPOINT_PATH, RecoveryConfig
from .errors import (
    CheckpointFetchFailedError,
    RecoveryError,
    RecoveryUnavailableError,
)
from .eth_signing import normalize_address
from .models import (
    BlockchainCheckpointEntry,
    CheckpointIndex,
    CheckpointIndexEntry,
    DiscoveryStrategy,
    SessionInfo,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DiscoveredCheckpoints:
    origin: DiscoveryStrategy
    entries: Tuple[CheckpointIndexEntry, ...]
    # Host-served index, kept for signature verification.
    index: Optional[CheckpointIndex] = None

    @property
    def requires_verification(self) -> bool:
        return self.origin is DiscoveryStrategy.HOST


# ---------------------------------------------------------------------------
# Host-served strategy
# ---------------------------------------------------------------------------

def checkpoint_index_url(
    host_url: str, session_id: SessionId, path: str = DEFAULT_CHECKPOINT_PATH
) -> str:
    return host_url.rstrip("/") + path.format(session_id=session_id)


async def fetch_checkpoint_index_from_host(
    client: httpx.AsyncClient,
    host_url: str,
    session_id: SessionId,
    timeout: float = 10.0,
    path: str = DEFAULT_CHECKPOINT_PATH,
) -> Optional[CheckpointIndex]:
    """
    Fetch a session's checkpoint index from the host's HTTP API.

    Args:
        client: Shared async HTTP client.
        host_url: Host API base URL, e.g. ``http://node.example.com:8080``.
        session_id: Session whose index is requested.
        timeout: Upper bound for the whole request, in seconds.
        path: URL path template containing ``{session_id}``.

    Returns:
        The parsed index, or None when the host reports 404 (no checkpoints).

    Raises:
        CheckpointFetchFailedError: on transport failure, timeout (with
            ``unreachable`` set), any non-200/404 status, or a malformed body.
    """
    url = checkpoint_index_url(host_url, session_id, path)
    try:
        response = await client.get(
            url, headers={"Accept": "application/json"}, timeout=timeout
        )
    except httpx.HTTPError as exc:
        raise CheckpointFetchFailedError(
            f"GET {url} failed: {exc.__class__.__name__}", unreachable=True
        ) from exc

    if response.status_code == 404:
        logger.debug("Host reports no checkpoint index for session %s", session_id)
        return None
    if response.status_code != 200:
        raise CheckpointFetchFailedError(
            f"GET {url} returned HTTP {response.status_code}"
        )

    try:
        data = response.json()
    except ValueError as exc:
        raise CheckpointFetchFailedError(f"GET {url} returned non-JSON body") from exc
    try:
        index = CheckpointIndex.from_dict(data)
    except ValueError as exc:
        raise CheckpointFetchFailedError(f"invalid checkpoint index structure: {exc}") from exc

    if index.session_id != str(session_id):
        raise CheckpointFetchFailedError(
            f"index is for session {index.session_id}, requested {session_id}"
        )
    return index


# ---------------------------------------------------------------------------
# Ledger-derived strategy
# ---------------------------------------------------------------------------

def _event_field(event: Dict[str, Any], *names: str) -> Any:
    for name in names:
        if name in event:
            return event[name]
    raise KeyError(names[0])


def project_ledger_events(
    session_id: SessionId, events: Sequence[Dict[str, Any]]
) -> List[BlockchainCheckpointEntry]:
    """
    Project raw "proof submitted" events into ledger checkpoint entries.

    Events are ordered by (blockNumber, logIndex). Proof indexes and
    cumulative token ranges are assigned over *all* events, including
    pre-upgrade ones without a delta CID, so filtering those out later
    never shifts a surviving entry.

    Raises:
        ValueError: if an event is missing a required field.
    """
    parsed = []
    for event in events:
        try:
            parsed.append((
                int(_event_field(event, "blockNumber")),
                int(event.get("logIndex", 0)),
                str(_event_field(event, "host")),
                int(_event_field(event, "tokensClaimed")),
                str(_event_field(event, "proofHash")),
                str(event.get("deltaCID", event.get("deltaCid")) or ""),
                str(_event_field(event, "txHash", "transactionHash")),
            ))
        except (KeyError, TypeError, ValueError) as exc:
            raise ValueError(f"malformed proof event {event!r}: {exc}") from exc

    parsed.sort(key=lambda p: (p[0], p[1]))
    entries: List[BlockchainCheckpointEntry] = []
    position = 0
    for proof_index, (block, log_index, host, tokens, proof_hash, cid, tx) in enumerate(parsed):
        if tokens < 0:
            raise ValueError(f"proof event {tx}: negative tokensClaimed")
        entries.append(BlockchainCheckpointEntry(
            session_id=str(session_id),
            host=host,
            tokens_claimed=tokens,
            proof_hash=proof_hash,
            delta_cid=cid,
            block_number=block,
            tx_hash=tx,
            proof_index=proof_index,
            token_range=(position, position + tokens),
            log_index=log_index,
        ))
        position += tokens
    return entries


async def scan_ledger_checkpoints(
    ledger: LedgerQuery,
    session_id: SessionId,
    from_block: int = 0,
    to_block: Optional[int] = None,
) -> List[BlockchainCheckpointEntry]:
    """
    All projected proof events for the session, recoverable or not.

    Proof indexes and token ranges depend on every earlier event, so the
    scan always starts at block 0 and ``from_block`` only filters the
    projected entries. ``to_block`` is passed to the ledger as is.
    """
    try:
        events = await ledger.get_proof_submitted_events(session_id, 0, to_block)
    except RecoveryError:
        raise
    except Exception as exc:
        raise CheckpointFetchFailedError(f"ledger event scan failed: {exc}") from exc
    try:
        entries = project_ledger_events(session_id, events)
    except ValueError as exc:
        raise CheckpointFetchFailedError(str(exc)) from exc
    return [e for e in entries if e.block_number >= from_block]


def recoverable_entries(
    entries: Sequence[BlockchainCheckpointEntry],
) -> List[BlockchainCheckpointEntry]:
    return [e for e in entries if e.is_recoverable]


async def fetch_checkpoints_from_ledger(
    ledger: LedgerQuery,
    session_id: SessionId,
    from_block: int = 0,
    to_block: Optional[int] = None,
) -> List[BlockchainCheckpointEntry]:
    """Ledger-derived checkpoint entries; never includes an empty delta CID."""
    entries = await scan_ledger_checkpoints(ledger, session_id, from_block, to_block)
    kept = recoverable_entries(entries)
    _log_skipped(session_id, entries, kept)
    return kept


def _log_skipped(
    session_id: SessionId,
    scanned: Sequence[BlockchainCheckpointEntry],
    kept: Sequence[BlockchainCheckpointEntry],
) -> None:
    if len(kept) < len(scanned):
        logger.warning(
            "Session %s: skipped %d pre-upgrade proof(s) without a delta CID",
            session_id, len(scanned) - len(kept),
        )


def _log_foreign_hosts(
    session_id: SessionId,
    session: SessionInfo,
    entries: Sequence[BlockchainCheckpointEntry],
) -> None:
    expected = normalize_address(session.host_address)
    foreign = [e.proof_index for e in entries if normalize_address(e.host) != expected]
    if foreign:
        logger.warning(
            "Session %s: proof(s) %s submitted by a host other than %s",
            session_id, foreign, session.host_address,
        )


# ---------------------------------------------------------------------------
# Strategy selection
# ---------------------------------------------------------------------------

def _from_ledger(entries: Sequence[BlockchainCheckpointEntry]) -> Optional[DiscoveredCheckpoints]:
    if not entries:
        return None
    return DiscoveredCheckpoints(
        origin=DiscoveryStrategy.LEDGER,
        entries=tuple(e.to_index_entry() for e in entries),
    )


async def _from_host(
    client: httpx.AsyncClient,
    session_id: SessionId,
    session: SessionInfo,
    config: RecoveryConfig,
) -> Optional[DiscoveredCheckpoints]:
    assert session.host_url is not None
    index = await fetch_checkpoint_index_from_host(
        client,
        session.host_url,
        session_id,
        timeout=config.host_timeout,
        path=config.checkpoint_path,
    )
    if index is None:
        return None
    return DiscoveredCheckpoints(
        origin=DiscoveryStrategy.HOST,
        entries=index.entries,
        index=index,
    )


async def discover_checkpoints(
    session_id: SessionId,
    session: SessionInfo,
    ledger: LedgerQuery,
    client: httpx.AsyncClient,
    config: RecoveryConfig,
    strategy: DiscoveryStrategy = DiscoveryStrategy.AUTO,
) -> Optional[DiscoveredCheckpoints]:
    """
    Resolve the session's checkpoint entries using ``strategy``.

    Returns:
        DiscoveredCheckpoints, or None when the session has no checkpoints.

    Raises:
        CheckpointFetchFailedError: ledger scan failure, or host failure when
            the host strategy was requested explicitly.
        RecoveryUnavailableError: legacy session whose host is unknown or
            unreachable, or an explicit ledger strategy on a session
            whose proofs all predate ledger-anchored deltas.
    """
    if strategy is DiscoveryStrategy.HOST:
        if not session.host_url:
            raise RecoveryUnavailableError(f"session {session_id} has no host endpoint")
        logger.info("Session %s: using host-served discovery (explicit)", session_id)
        return await _from_host(client, session_id, session, config)

    scanned = await scan_ledger_checkpoints(
        ledger, session_id, config.from_block, config.to_block
    )
    anchored = recoverable_entries(scanned)

    if strategy is DiscoveryStrategy.LEDGER and scanned and not anchored:
        raise RecoveryUnavailableError(
            f"session {session_id} has {len(scanned)} ledger proof(s), none with a delta CID"
        )

    if strategy is DiscoveryStrategy.LEDGER or anchored:
        _log_skipped(session_id, scanned, anchored)
        _log_foreign_hosts(session_id, session, anchored)
        logger.info(
            "Session %s: using ledger-derived discovery (%d checkpoint(s))",
            session_id, len(anchored),
        )
        return _from_ledger(anchored)

    if not session.host_url:
        if scanned:
            raise RecoveryUnavailableError(
                f"session {session_id} predates ledger-anchored deltas and has no host endpoint"
            )
        return None

    logger.warning(
        "Session %s: no ledger-anchored deltas, falling back to host-served index",
        session_id,
    )
    try:
        return await _from_host(client, session_id, session, config)
    except CheckpointFetchFailedError as exc:
        if exc.unreachable:
            raise RecoveryUnavailableError(
                f"legacy session {session_id}: host unreachable ({exc.context})"
            ) from exc
        raise
