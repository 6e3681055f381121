"""Checkpoint recovery public API.

Recovers a conversation from host-published checkpoints, verifying every
piece against the host's signature and the ledger's recorded proofs.

Example:
    from checkpoint_recovery import CheckpointRecovery, RecoveryOptions

    recovery = CheckpointRecovery(sessions, ledger, store)
    conversation = await recovery.recover_conversation(42, RecoveryOptions(private_key=key))
    print(conversation.token_count)
"""

from .canonical_json import canonical_dumps, canonical_bytes, compute_commitment_hash, keccak256
from .checkpoint_encryption import decrypt_checkpoint_delta, encrypt_checkpoint_delta
from .collaborators import LedgerQuery, SessionMetadataProvider
from .config import RecoveryConfig, load_config
from .discovery import discover_checkpoints, fetch_checkpoints_from_ledger, fetch_checkpoint_index_from_host
from .errors import (
    RecoveryErrorKind,
    RecoveryError,
    CheckpointFetchFailedError,
    InvalidIndexSignatureError,
    ProofHashMismatchError,
    InvalidDeltaStructureError,
    InvalidDeltaSignatureError,
    DeltaFetchFailedError,
    DecryptionKeyRequiredError,
    DecryptionFailedError,
    SessionNotFoundError,
    RecoveryUnavailableError,
    TokenRangeGapError,
    MalformedSignatureError,
)
from .eth_signing import sign_personal_message, verify_signature, recover_signer
from .fetcher import fetch_delta, fetch_all_deltas
from .merge import merge_deltas, MergeResult
from .models import (
    BlockchainCheckpointEntry,
    CheckpointDelta,
    CheckpointIndex,
    CheckpointIndexEntry,
    DiscoveryStrategy,
    EncryptedCheckpointDelta,
    Message,
    ProofSubmission,
    RecoveredConversation,
    SessionInfo,
    is_encrypted_delta,
)
from .recovery import CheckpointRecovery, RecoveryOptions, RecoveryState, recover_conversation
from .storage import HttpGatewayStore, ObjectNotFoundError, ObjectStore, ObjectStoreError
from .verification import verify_checkpoint_index

__version__ = "0.1.0"

__all__ = [
    "__version__",
    # Orchestrator
    "CheckpointRecovery",
    "RecoveryOptions",
    "RecoveryState",
    "recover_conversation",
    "RecoveryConfig",
    "load_config",
    # Primitives
    "canonical_dumps",
    "canonical_bytes",
    "compute_commitment_hash",
    "keccak256",
    "sign_personal_message",
    "verify_signature",
    "recover_signer",
    "decrypt_checkpoint_delta",
    "encrypt_checkpoint_delta",
    # Components
    "discover_checkpoints",
    "fetch_checkpoints_from_ledger",
    "fetch_checkpoint_index_from_host",
    "verify_checkpoint_index",
    "fetch_delta",
    "fetch_all_deltas",
    "merge_deltas",
    "MergeResult",
    # Collaborators
    "LedgerQuery",
    "SessionMetadataProvider",
    "ObjectStore",
    "HttpGatewayStore",
    "ObjectNotFoundError",
    "ObjectStoreError",
    # Model
    "BlockchainCheckpointEntry",
    "CheckpointDelta",
    "CheckpointIndex",
    "CheckpointIndexEntry",
    "DiscoveryStrategy",
    "EncryptedCheckpointDelta",
    "Message",
    "ProofSubmission",
    "RecoveredConversation",
    "SessionInfo",
    "is_encrypted_delta",
    # Errors
    "RecoveryErrorKind",
    "RecoveryError",
    "CheckpointFetchFailedError",
    "InvalidIndexSignatureError",
    "ProofHashMismatchError",
    "InvalidDeltaStructureError",
    "InvalidDeltaSignatureError",
    "DeltaFetchFailedError",
    "DecryptionKeyRequiredError",
    "DecryptionFailedError",
    "SessionNotFoundError",
    "RecoveryUnavailableError",
    "TokenRangeGapError",
    "MalformedSignatureError",
]
