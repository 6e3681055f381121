"""
models.py — Checkpoint Recovery Data Model

Wire-compatible representations of host-published checkpoint indexes,
checkpoint deltas (plaintext and encrypted), ledger-derived checkpoint
entries, and the final recovered conversation.

Field names on the wire are camelCase and must be parsed bit-exactly;
unknown keys are preserved so that signed payloads can be re-serialized
without changing their canonical bytes.
"""

from __future__ import annotations
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from .canonical_json import canonical_dumps, compute_commitment_hash
from .errors import InvalidDeltaStructureError


class DiscoveryStrategy(str, Enum):
    """Where the checkpoint index comes from."""
    AUTO = "auto"
    HOST = "host"
    LEDGER = "ledger"


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_hex(value: Any, allow_prefix: bool = True) -> bool:
    if not isinstance(value, str) or not value:
        return False
    text = value[2:] if allow_prefix and value[:2].lower() == "0x" else value
    if not text or len(text) % 2:
        return False
    try:
        bytes.fromhex(text)
    except ValueError:
        return False
    return True


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------

_MESSAGE_KEYS = ("role", "content", "timestamp", "metadata", "continuation")


@dataclass(frozen=True)
class Message:
    """One conversation message. ``extra`` holds unrecognized wire keys."""
    role: str
    content: str
    timestamp: Optional[int] = None
    metadata: Optional[Dict[str, Any]] = None
    continuation: Optional[bool] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_partial(self) -> bool:
        """Trailing message of a checkpoint cut mid-generation."""
        return bool(self.metadata and self.metadata.get("partial") is True)

    @property
    def is_continuation(self) -> bool:
        """Leading message that continues the previous checkpoint's last one."""
        if self.continuation is True:
            return True
        return bool(self.metadata and self.metadata.get("continuation") is True)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = dict(self.extra)
        out["role"] = self.role
        out["content"] = self.content
        if self.timestamp is not None:
            out["timestamp"] = self.timestamp
        if self.metadata is not None:
            out["metadata"] = dict(self.metadata)
        if self.continuation is not None:
            out["continuation"] = self.continuation
        return out

    @classmethod
    def from_dict(
        cls,
        data: Any,
        position: int = 0,
        checkpoint_index: Optional[int] = None,
    ) -> "Message":
        where = f"messages[{position}]"
        if not isinstance(data, dict):
            raise InvalidDeltaStructureError(where, "message is not an object", checkpoint_index)
        role = data.get("role")
        content = data.get("content")
        if not isinstance(role, str) or not role:
            raise InvalidDeltaStructureError(f"{where}.role", None, checkpoint_index)
        if not isinstance(content, str):
            raise InvalidDeltaStructureError(f"{where}.content", None, checkpoint_index)
        timestamp = data.get("timestamp")
        if timestamp is not None and not isinstance(timestamp, (int, float)):
            raise InvalidDeltaStructureError(f"{where}.timestamp", None, checkpoint_index)
        metadata = data.get("metadata")
        if metadata is not None and not isinstance(metadata, dict):
            raise InvalidDeltaStructureError(f"{where}.metadata", None, checkpoint_index)
        continuation = data.get("continuation")
        if continuation is not None and not isinstance(continuation, bool):
            raise InvalidDeltaStructureError(f"{where}.continuation", None, checkpoint_index)
        return cls(
            role=role,
            content=content,
            timestamp=timestamp,
            metadata=dict(metadata) if metadata is not None else None,
            continuation=continuation,
            extra={k: v for k, v in data.items() if k not in _MESSAGE_KEYS},
        )


# ---------------------------------------------------------------------------
# Checkpoint index (host-published)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CheckpointIndexEntry:
    index: int
    proof_hash: str
    delta_cid: str
    token_range: Tuple[int, int]
    timestamp: Optional[int] = None
    proof_cid: Optional[str] = None

    @property
    def start_token(self) -> int:
        return self.token_range[0]

    @property
    def end_token(self) -> int:
        return self.token_range[1]

    @property
    def token_count(self) -> int:
        return self.token_range[1] - self.token_range[0]

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "index": self.index,
            "proofHash": self.proof_hash,
            "deltaCID": self.delta_cid,
            "tokenRange": [self.token_range[0], self.token_range[1]],
            "timestamp": self.timestamp,
        }
        if self.proof_cid is not None:
            out["proofCid"] = self.proof_cid
        return out

    @classmethod
    def from_dict(cls, data: Any) -> "CheckpointIndexEntry":
        """Parse one index row. Raises ValueError on malformed input."""
        if not isinstance(data, dict):
            raise ValueError("checkpoint entry is not an object")
        index = data.get("index")
        proof_hash = data.get("proofHash")
        delta_cid = data.get("deltaCID", data.get("deltaCid"))
        token_range = data.get("tokenRange")
        timestamp = data.get("timestamp")

        if not _is_int(index) or index < 0:
            raise ValueError(f"invalid checkpoint index: {index!r}")
        if not _is_hex(proof_hash):
            raise ValueError(f"checkpoint {index}: invalid proofHash")
        if not isinstance(delta_cid, str):
            raise ValueError(f"checkpoint {index}: missing deltaCID")
        if (
            not isinstance(token_range, (list, tuple))
            or len(token_range) != 2
            or not all(_is_int(t) for t in token_range)
            or token_range[0] < 0
            or token_range[0] > token_range[1]
        ):
            raise ValueError(f"checkpoint {index}: invalid tokenRange {token_range!r}")
        if timestamp is not None and not isinstance(timestamp, (int, float)):
            raise ValueError(f"checkpoint {index}: invalid timestamp")
        proof_cid = data.get("proofCid")
        return cls(
            index=index,
            proof_hash=proof_hash,
            delta_cid=delta_cid,
            token_range=(token_range[0], token_range[1]),
            timestamp=timestamp,
            proof_cid=proof_cid if isinstance(proof_cid, str) else None,
        )


def check_entry_sequence(entries: Sequence[CheckpointIndexEntry]) -> None:
    """
    Entries must be unique by index and, once sorted, each tokenRange must
    start exactly where the previous one ended. Raises ValueError otherwise.
    """
    seen = set()
    previous: Optional[CheckpointIndexEntry] = None
    for entry in sorted(entries, key=lambda e: e.index):
        if entry.index in seen:
            raise ValueError(f"duplicate checkpoint index {entry.index}")
        seen.add(entry.index)
        if previous is not None and entry.start_token != previous.end_token:
            raise ValueError(
                f"checkpoint {entry.index} starts at token {entry.start_token}, "
                f"expected {previous.end_token}"
            )
        previous = entry


@dataclass(frozen=True)
class CheckpointIndex:
    session_id: str
    host_address: str
    entries: Tuple[CheckpointIndexEntry, ...]
    signature: str
    raw_checkpoints: Tuple[Dict[str, Any], ...] = ()

    def signing_payload(self) -> str:
        """Canonical text of the checkpoints array exactly as published."""
        return canonical_dumps(list(self.raw_checkpoints))

    @classmethod
    def from_dict(cls, data: Any) -> "CheckpointIndex":
        """Parse a host-served index. Raises ValueError on malformed input."""
        if not isinstance(data, dict):
            raise ValueError("checkpoint index is not an object")
        session_id = data.get("sessionId")
        host_address = data.get("hostAddress")
        checkpoints = data.get("checkpoints")
        signature = data.get("checkpointsSignature", data.get("hostSignature"))

        if isinstance(session_id, int) and not isinstance(session_id, bool):
            session_id = str(session_id)
        if not isinstance(session_id, str):
            raise ValueError("checkpoint index: missing sessionId")
        if not isinstance(host_address, str):
            raise ValueError("checkpoint index: missing hostAddress")
        if not isinstance(checkpoints, list):
            raise ValueError("checkpoint index: missing checkpoints array")
        if not isinstance(signature, str):
            raise ValueError("checkpoint index: missing checkpointsSignature")

        entries = [CheckpointIndexEntry.from_dict(c) for c in checkpoints]
        check_entry_sequence(entries)
        entries.sort(key=lambda e: e.index)
        return cls(
            session_id=session_id,
            host_address=host_address,
            entries=tuple(entries),
            signature=signature,
            raw_checkpoints=tuple(checkpoints),
        )


# ---------------------------------------------------------------------------
# Checkpoint deltas
# ---------------------------------------------------------------------------

_DELTA_KEYS = (
    "sessionId", "checkpointIndex", "proofHash", "startToken",
    "endToken", "messages", "hostSignature",
)


@dataclass(frozen=True)
class CheckpointDelta:
    session_id: str
    checkpoint_index: int
    proof_hash: str
    start_token: int
    end_token: int
    messages: Tuple[Message, ...]
    host_signature: str
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def token_count(self) -> int:
        return self.end_token - self.start_token

    def message_dicts(self) -> List[Dict[str, Any]]:
        return [m.to_dict() for m in self.messages]

    def commitment_hash(self) -> bytes:
        return compute_commitment_hash(self.message_dicts(), self.token_count)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = dict(self.extra)
        out.update({
            "sessionId": self.session_id,
            "checkpointIndex": self.checkpoint_index,
            "proofHash": self.proof_hash,
            "startToken": self.start_token,
            "endToken": self.end_token,
            "messages": self.message_dicts(),
            "hostSignature": self.host_signature,
        })
        return out

    def signing_payload(self) -> str:
        """Canonical text the host signs: the delta without its signature."""
        body = self.to_dict()
        body.pop("hostSignature")
        return canonical_dumps(body)

    def with_signature(self, host_signature: str) -> "CheckpointDelta":
        return replace(self, host_signature=host_signature)

    @classmethod
    def from_dict(cls, data: Any, checkpoint_index: Optional[int] = None) -> "CheckpointDelta":
        """
        Parse a plaintext delta.

        Raises:
            InvalidDeltaStructureError: naming the first missing/invalid field.
        """
        if not isinstance(data, dict):
            raise InvalidDeltaStructureError("delta", "payload is not an object", checkpoint_index)

        session_id = data.get("sessionId")
        if isinstance(session_id, int) and not isinstance(session_id, bool):
            session_id = str(session_id)
        if not isinstance(session_id, str):
            raise InvalidDeltaStructureError("sessionId", None, checkpoint_index)
        for key in ("checkpointIndex", "startToken", "endToken"):
            if not _is_int(data.get(key)):
                raise InvalidDeltaStructureError(key, None, checkpoint_index)
        if not isinstance(data.get("proofHash"), str):
            raise InvalidDeltaStructureError("proofHash", None, checkpoint_index)
        if not isinstance(data.get("messages"), list):
            raise InvalidDeltaStructureError("messages", None, checkpoint_index)
        if not isinstance(data.get("hostSignature"), str) or not data["hostSignature"]:
            raise InvalidDeltaStructureError("hostSignature", None, checkpoint_index)
        if data["endToken"] < data["startToken"]:
            raise InvalidDeltaStructureError(
                "endToken", "endToken precedes startToken", checkpoint_index
            )

        messages = tuple(
            Message.from_dict(m, i, checkpoint_index)
            for i, m in enumerate(data["messages"])
        )
        return cls(
            session_id=session_id,
            checkpoint_index=data["checkpointIndex"],
            proof_hash=data["proofHash"],
            start_token=data["startToken"],
            end_token=data["endToken"],
            messages=messages,
            host_signature=data["hostSignature"],
            extra={k: v for k, v in data.items() if k not in _DELTA_KEYS},
        )


@dataclass(frozen=True)
class EncryptedCheckpointDelta:
    version: int
    recipient_public_key: str
    ephemeral_public_key: str
    nonce: str
    ciphertext: str
    host_signature: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "encrypted": True,
            "version": self.version,
            "userRecoveryPubKey": self.recipient_public_key,
            "ephemeralPublicKey": self.ephemeral_public_key,
            "nonce": self.nonce,
            "ciphertext": self.ciphertext,
            "hostSignature": self.host_signature,
        }

    def ciphertext_bytes(self) -> bytes:
        return bytes.fromhex(_strip_0x(self.ciphertext))

    @classmethod
    def from_dict(
        cls, data: Any, checkpoint_index: Optional[int] = None
    ) -> "EncryptedCheckpointDelta":
        if not is_encrypted_delta(data):
            raise InvalidDeltaStructureError("encrypted", None, checkpoint_index)
        version = data.get("version")
        if not _is_int(version):
            raise InvalidDeltaStructureError("version", None, checkpoint_index)
        recipient = data.get("userRecoveryPubKey", data.get("recipientPublicKey"))
        if not _is_hex(recipient):
            raise InvalidDeltaStructureError("userRecoveryPubKey", None, checkpoint_index)
        for key in ("ephemeralPublicKey", "nonce", "ciphertext"):
            if not _is_hex(data.get(key)):
                raise InvalidDeltaStructureError(key, None, checkpoint_index)
        signature = data.get("hostSignature")
        if not isinstance(signature, str) or not signature:
            raise InvalidDeltaStructureError("hostSignature", None, checkpoint_index)
        return cls(
            version=version,
            recipient_public_key=recipient,
            ephemeral_public_key=data["ephemeralPublicKey"],
            nonce=data["nonce"],
            ciphertext=data["ciphertext"],
            host_signature=signature,
        )


DeltaPayload = Union[CheckpointDelta, EncryptedCheckpointDelta]


def _strip_0x(text: str) -> str:
    return text[2:] if text[:2].lower() == "0x" else text


def is_encrypted_delta(payload: Any) -> bool:
    """True only for payloads tagged ``"encrypted": true``."""
    return isinstance(payload, dict) and payload.get("encrypted") is True


def parse_delta_payload(data: Any, checkpoint_index: Optional[int] = None) -> DeltaPayload:
    """Resolve the plaintext/encrypted union on the ``encrypted`` tag."""
    if is_encrypted_delta(data):
        return EncryptedCheckpointDelta.from_dict(data, checkpoint_index)
    return CheckpointDelta.from_dict(data, checkpoint_index)


# ---------------------------------------------------------------------------
# Ledger projections
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ProofSubmission:
    """A checkpoint proof as recorded on the ledger."""
    proof_hash: str
    tokens_claimed: int = 0
    timestamp: Optional[int] = None
    verified: bool = False


@dataclass(frozen=True)
class BlockchainCheckpointEntry:
    """Read-only projection of one "proof submitted" ledger event."""
    session_id: str
    host: str
    tokens_claimed: int
    proof_hash: str
    delta_cid: str
    block_number: int
    tx_hash: str
    proof_index: int
    token_range: Tuple[int, int]
    log_index: int = 0

    @property
    def is_recoverable(self) -> bool:
        """Pre-upgrade proofs carry no delta CID and cannot be recovered."""
        return bool(self.delta_cid)

    def to_index_entry(self) -> CheckpointIndexEntry:
        return CheckpointIndexEntry(
            index=self.proof_index,
            proof_hash=self.proof_hash,
            delta_cid=self.delta_cid,
            token_range=self.token_range,
            timestamp=None,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "host": self.host,
            "tokensClaimed": self.tokens_claimed,
            "proofHash": self.proof_hash,
            "deltaCID": self.delta_cid,
            "blockNumber": self.block_number,
            "txHash": self.tx_hash,
            "logIndex": self.log_index,
            "proofIndex": self.proof_index,
            "tokenRange": list(self.token_range),
        }


@dataclass(frozen=True)
class SessionInfo:
    host_address: str
    host_url: Optional[str] = None


# ---------------------------------------------------------------------------
# Result
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RecoveredConversation:
    messages: Tuple[Message, ...]
    token_count: int
    checkpoints: Tuple[CheckpointIndexEntry, ...]
    origin: Optional[DiscoveryStrategy] = None

    @classmethod
    def empty(cls, origin: Optional[DiscoveryStrategy] = None) -> "RecoveredConversation":
        return cls(messages=(), token_count=0, checkpoints=(), origin=origin)

    @property
    def is_empty(self) -> bool:
        return not self.checkpoints

    def to_dict(self) -> Dict[str, Any]:
        return {
            "messages": [m.to_dict() for m in self.messages],
            "tokenCount": self.token_count,
            "checkpoints": [c.to_dict() for c in self.checkpoints],
        }
