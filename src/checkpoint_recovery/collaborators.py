"""
collaborators.py — Interface Contracts for External Services

The recovery engine reads from three services it does not own: the ledger
(proof submissions and their event log), a session metadata provider, and
a content-addressed object store (see storage.py). Only the contracts live
here; wallet, contract and transport plumbing belong to the caller.
"""

from __future__ import annotations
from typing import Any, Dict, List, Optional, Protocol, Union, runtime_checkable

from .models import ProofSubmission, SessionInfo

SessionId = Union[int, str]


@runtime_checkable
class LedgerQuery(Protocol):
    """Read-only view of the session/proof contract."""

    async def get_proof_submission(
        self, session_id: SessionId, checkpoint_index: int
    ) -> Optional[ProofSubmission]:
        """Return the recorded proof for a checkpoint, or None if none was submitted."""
        ...

    async def get_proof_submitted_events(
        self,
        session_id: SessionId,
        from_block: int = 0,
        to_block: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """
        Return "proof submitted" events for the session.

        Each event carries ``host``, ``tokensClaimed``, ``proofHash``,
        ``deltaCID``, ``blockNumber`` and ``txHash`` (``logIndex`` optional).
        """
        ...


@runtime_checkable
class SessionMetadataProvider(Protocol):
    async def get_session_info(self, session_id: SessionId) -> Optional[SessionInfo]:
        """Return the session's host address and endpoint, or None if unknown."""
        ...
