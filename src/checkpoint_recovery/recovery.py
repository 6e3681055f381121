"""
recovery.py — Checkpoint Recovery Orchestrator

    START → DISCOVER ─┬─ no checkpoints ──────────────────────────────→ DONE_EMPTY
                      └─ VERIFY → FETCH_ALL → DECRYPT_AS_NEEDED → MERGE → DONE

Any state may end in FAILED, carrying the RecoveryError that stopped it
(``err.failed_state`` names the state). Nothing is merged until every
entry has been verified and fetched; a failing checkpoint is never
skipped, so callers get either the full conversation or an error.

The orchestrator only reads: calling it twice for the same session
performs the same reads and returns the same result unless new
checkpoints were published in between.
"""

from __future__ import annotations
import logging
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Sequence

import httpx

from .checkpoint_encryption import PrivateKeyInput
from .collaborators import LedgerQuery, SessionId, SessionMetadataProvider
from .config import RecoveryConfig
from .discovery import DiscoveredCheckpoints, discover_checkpoints
from .errors import RecoveryError, SessionNotFoundError
from .fetcher import decrypt_as_needed, fetch_all_deltas
from .merge import merge_deltas
from .models import (
    CheckpointDelta,
    DeltaPayload,
    DiscoveryStrategy,
    RecoveredConversation,
    SessionInfo,
)
from .storage import ObjectStore
from .verification import verify_checkpoint_index

logger = logging.getLogger(__name__)


class RecoveryState(str, Enum):
    START = "START"
    DISCOVER = "DISCOVER"
    DONE_EMPTY = "DONE_EMPTY"
    VERIFY = "VERIFY"
    FETCH_ALL = "FETCH_ALL"
    DECRYPT_AS_NEEDED = "DECRYPT_AS_NEEDED"
    MERGE = "MERGE"
    DONE = "DONE"
    FAILED = "FAILED"


@dataclass(frozen=True)
class RecoveryOptions:
    """Per-call options: recovery key for encrypted deltas and a strategy override."""
    private_key: Optional[PrivateKeyInput] = None
    strategy: Optional[DiscoveryStrategy] = None


class _Run:
    """State of a single recovery call. Never shared between calls."""

    def __init__(self, session_id: SessionId):
        self.session_id = session_id
        self.state = RecoveryState.START

    def advance(self, state: RecoveryState) -> None:
        logger.debug("Session %s: %s → %s", self.session_id, self.state.value, state.value)
        self.state = state


class CheckpointRecovery:
    """
    Recover conversations from host-published checkpoints.

    Collaborators are injected once; trust state (host address, recovery
    key) is resolved per call and never cached on the instance.
    """

    def __init__(
        self,
        sessions: SessionMetadataProvider,
        ledger: LedgerQuery,
        store: ObjectStore,
        config: Optional[RecoveryConfig] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.sessions = sessions
        self.ledger = ledger
        self.store = store
        self.config = config or RecoveryConfig()
        self._http_client = http_client

    async def recover_conversation(
        self,
        session_id: SessionId,
        options: Optional[RecoveryOptions] = None,
    ) -> RecoveredConversation:
        """
        Recover, verify and merge every checkpoint of ``session_id``.

        Args:
            session_id: Session to recover.
            options: Recovery key and/or discovery strategy override.

        Returns:
            RecoveredConversation: the merged conversation, or an empty one
            when the session has no checkpoints.

        Raises:
            RecoveryError: the first failure, with ``failed_state`` set.
        """
        options = options or RecoveryOptions()
        run = _Run(session_id)
        try:
            result = await self._run(run, options)
        except RecoveryError as err:
            err.failed_state = run.state.value
            logger.error(
                "Session %s: recovery failed in %s: %s (checkpoint %s)",
                session_id, run.state.value, err.code, err.checkpoint_index,
            )
            run.advance(RecoveryState.FAILED)
            raise
        return result

    async def _run(self, run: _Run, options: RecoveryOptions) -> RecoveredConversation:
        session_id = run.session_id
        session = await self.sessions.get_session_info(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)

        run.advance(RecoveryState.DISCOVER)
        strategy = options.strategy or DiscoveryStrategy.AUTO
        if self._http_client is not None:
            discovered = await discover_checkpoints(
                session_id, session, self.ledger, self._http_client, self.config, strategy
            )
        else:
            async with httpx.AsyncClient() as client:
                discovered = await discover_checkpoints(
                    session_id, session, self.ledger, client, self.config, strategy
                )

        if discovered is None or not discovered.entries:
            if discovered is not None and discovered.index is not None:
                # An empty host index must still be signed by the host.
                run.advance(RecoveryState.VERIFY)
                await self._verify(session_id, session, discovered)
            run.advance(RecoveryState.DONE_EMPTY)
            logger.info("Session %s: no checkpoints to recover", session_id)
            return RecoveredConversation.empty(discovered.origin if discovered else None)

        run.advance(RecoveryState.VERIFY)
        await self._verify(session_id, session, discovered)

        run.advance(RecoveryState.FETCH_ALL)
        payloads: List[DeltaPayload] = await fetch_all_deltas(
            self.store,
            discovered.entries,
            session.host_address,
            timeout=self.config.fetch_timeout,
            max_concurrency=self.config.max_concurrent_fetches,
        )

        run.advance(RecoveryState.DECRYPT_AS_NEEDED)
        deltas: Sequence[CheckpointDelta] = decrypt_as_needed(
            payloads, discovered.entries, session_id, options.private_key
        )

        run.advance(RecoveryState.MERGE)
        merged = merge_deltas(deltas)

        run.advance(RecoveryState.DONE)
        logger.info(
            "Session %s: recovered %d message(s), %d token(s) from %d checkpoint(s) via %s",
            session_id, len(merged.messages), merged.token_count,
            len(discovered.entries), discovered.origin.value,
        )
        return RecoveredConversation(
            messages=merged.messages,
            token_count=merged.token_count,
            checkpoints=discovered.entries,
            origin=discovered.origin,
        )

    async def _verify(
        self,
        session_id: SessionId,
        session: SessionInfo,
        discovered: DiscoveredCheckpoints,
    ) -> None:
        if not discovered.requires_verification:
            logger.debug("Session %s: ledger-derived entries, no index to verify", session_id)
            return
        assert discovered.index is not None
        await verify_checkpoint_index(
            discovered.index,
            session_id,
            self.ledger,
            session.host_address,
            max_concurrency=self.config.max_concurrent_fetches,
        )


async def recover_conversation(
    session_id: SessionId,
    sessions: SessionMetadataProvider,
    ledger: LedgerQuery,
    store: ObjectStore,
    options: Optional[RecoveryOptions] = None,
    config: Optional[RecoveryConfig] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> RecoveredConversation:
    """One-shot form of CheckpointRecovery.recover_conversation."""
    recovery = CheckpointRecovery(sessions, ledger, store, config, http_client)
    return await recovery.recover_conversation(session_id, options)
