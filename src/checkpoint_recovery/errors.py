"""
errors.py — Checkpoint Recovery Error Taxonomy

Every failure of the recovery path maps to exactly one error kind with a
stable code. Verification failures carry the checkpoint index and field
that failed so callers can build dispute evidence from them.

"No checkpoints" is not an error: it is a valid, empty result.
"""

from __future__ import annotations
from enum import Enum
from typing import Any, Dict, Optional

__all__ = [
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


class RecoveryErrorKind(str, Enum):
    CHECKPOINT_FETCH_FAILED = "CHECKPOINT_FETCH_FAILED"
    INVALID_INDEX_SIGNATURE = "INVALID_INDEX_SIGNATURE"
    PROOF_HASH_MISMATCH = "PROOF_HASH_MISMATCH"
    INVALID_DELTA_STRUCTURE = "INVALID_DELTA_STRUCTURE"
    INVALID_DELTA_SIGNATURE = "INVALID_DELTA_SIGNATURE"
    DELTA_FETCH_FAILED = "DELTA_FETCH_FAILED"
    DECRYPTION_KEY_REQUIRED = "DECRYPTION_KEY_REQUIRED"
    DECRYPTION_FAILED = "DECRYPTION_FAILED"
    SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
    RECOVERY_UNAVAILABLE = "RECOVERY_UNAVAILABLE"
    TOKEN_RANGE_GAP = "TOKEN_RANGE_GAP"
    MALFORMED_SIGNATURE = "MALFORMED_SIGNATURE"

    @property
    def is_verification_failure(self) -> bool:
        """Tampering or genuine mismatch; never retried."""
        return self in _VERIFICATION_KINDS

    @property
    def is_transport_failure(self) -> bool:
        """Caller may retry; this library never does."""
        return self in _TRANSPORT_KINDS


_VERIFICATION_KINDS = frozenset({
    RecoveryErrorKind.INVALID_INDEX_SIGNATURE,
    RecoveryErrorKind.PROOF_HASH_MISMATCH,
    RecoveryErrorKind.INVALID_DELTA_SIGNATURE,
    RecoveryErrorKind.DECRYPTION_FAILED,
})

_TRANSPORT_KINDS = frozenset({
    RecoveryErrorKind.CHECKPOINT_FETCH_FAILED,
    RecoveryErrorKind.DELTA_FETCH_FAILED,
})


class RecoveryError(Exception):
    """Base class for all checkpoint recovery errors."""

    kind: RecoveryErrorKind

    def __init__(
        self,
        kind: RecoveryErrorKind,
        message: str,
        context: Optional[str] = None,
        checkpoint_index: Optional[int] = None,
        field: Optional[str] = None,
    ):
        self.kind = kind
        self.message = message
        self.context = context
        self.checkpoint_index = checkpoint_index
        self.field = field
        # Set by the orchestrator when the error leaves a state.
        self.failed_state: Optional[str] = None

        full_msg = f"[{kind.value}] {message}"
        if checkpoint_index is not None:
            full_msg += f" (checkpoint {checkpoint_index}"
            full_msg += f", field {field})" if field else ")"
        if context:
            full_msg += f" Context: {context}"

        super().__init__(full_msg)

    @property
    def code(self) -> str:
        return self.kind.value

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "context": self.context,
            "checkpoint_index": self.checkpoint_index,
            "field": self.field,
            "failed_state": self.failed_state,
        }


# Discovery (transport / parse)
class CheckpointFetchFailedError(RecoveryError):
    def __init__(self, context: Optional[str] = None, unreachable: bool = False):
        # unreachable: transport failure or timeout, as opposed to a bad response
        self.unreachable = unreachable
        super().__init__(
            RecoveryErrorKind.CHECKPOINT_FETCH_FAILED,
            "The checkpoint index could not be retrieved or parsed.",
            context,
        )


class SessionNotFoundError(RecoveryError):
    def __init__(self, session_id: Any):
        super().__init__(
            RecoveryErrorKind.SESSION_NOT_FOUND,
            f"Session {session_id} does not exist.",
        )


class RecoveryUnavailableError(RecoveryError):
    def __init__(self, context: Optional[str] = None):
        super().__init__(
            RecoveryErrorKind.RECOVERY_UNAVAILABLE,
            "No ledger-anchored checkpoints and no reachable host for this session.",
            context,
        )


# Index verification
class InvalidIndexSignatureError(RecoveryError):
    def __init__(self, context: Optional[str] = None):
        super().__init__(
            RecoveryErrorKind.INVALID_INDEX_SIGNATURE,
            "Checkpoint index signature is not attributable to the session host.",
            context,
            field="checkpointsSignature",
        )


class ProofHashMismatchError(RecoveryError):
    def __init__(
        self,
        checkpoint_index: int,
        context: Optional[str] = None,
        field: str = "proofHash",
    ):
        super().__init__(
            RecoveryErrorKind.PROOF_HASH_MISMATCH,
            "Checkpoint proof hash does not match the ledger commitment.",
            context,
            checkpoint_index=checkpoint_index,
            field=field,
        )


# Delta fetch / decode
class DeltaFetchFailedError(RecoveryError):
    def __init__(self, checkpoint_index: Optional[int], context: Optional[str] = None):
        super().__init__(
            RecoveryErrorKind.DELTA_FETCH_FAILED,
            "Checkpoint delta could not be retrieved from the object store.",
            context,
            checkpoint_index=checkpoint_index,
            field="deltaCID",
        )


class InvalidDeltaStructureError(RecoveryError):
    def __init__(
        self,
        field: str,
        context: Optional[str] = None,
        checkpoint_index: Optional[int] = None,
    ):
        super().__init__(
            RecoveryErrorKind.INVALID_DELTA_STRUCTURE,
            "Checkpoint delta is missing or has an invalid required field.",
            context,
            checkpoint_index=checkpoint_index,
            field=field,
        )


class InvalidDeltaSignatureError(RecoveryError):
    def __init__(self, checkpoint_index: Optional[int] = None, context: Optional[str] = None):
        super().__init__(
            RecoveryErrorKind.INVALID_DELTA_SIGNATURE,
            "Checkpoint delta signature is not attributable to the session host.",
            context,
            checkpoint_index=checkpoint_index,
            field="hostSignature",
        )


class DecryptionKeyRequiredError(RecoveryError):
    def __init__(self, checkpoint_index: Optional[int] = None):
        super().__init__(
            RecoveryErrorKind.DECRYPTION_KEY_REQUIRED,
            "Checkpoint delta is encrypted and no recovery private key was supplied.",
            checkpoint_index=checkpoint_index,
        )


class DecryptionFailedError(RecoveryError):
    def __init__(self, context: Optional[str] = None, checkpoint_index: Optional[int] = None):
        super().__init__(
            RecoveryErrorKind.DECRYPTION_FAILED,
            "Checkpoint delta could not be decrypted.",
            context,
            checkpoint_index=checkpoint_index,
            field="ciphertext",
        )


# Merge
class TokenRangeGapError(RecoveryError):
    def __init__(self, checkpoint_index: int, context: Optional[str] = None):
        super().__init__(
            RecoveryErrorKind.TOKEN_RANGE_GAP,
            "Checkpoint token ranges are not contiguous.",
            context,
            checkpoint_index=checkpoint_index,
            field="startToken",
        )


# Primitives
class MalformedSignatureError(RecoveryError):
    def __init__(self, context: Optional[str] = None):
        super().__init__(
            RecoveryErrorKind.MALFORMED_SIGNATURE,
            "Signature is not exactly 65 bytes (r || s || v).",
            context,
        )
