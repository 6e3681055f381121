"""
conftest.py — In-memory collaborators and signed-fixture builders

Fakes stand in for the ledger, the session metadata provider and the
content-addressed store. Builders produce checkpoints signed by a fixed
host key, so every test starts from data a real host would publish.
"""

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import httpx
import pytest

from checkpoint_recovery.canonical_json import canonical_dumps, compute_commitment_hash_hex
from checkpoint_recovery.checkpoint_encryption import (
    compressed_public_key,
    encrypt_checkpoint_delta,
    load_recovery_private_key,
)
from checkpoint_recovery.eth_signing import address_from_private_key, sign_personal_message
from checkpoint_recovery.models import (
    CheckpointDelta,
    CheckpointIndexEntry,
    Message,
    ProofSubmission,
    SessionInfo,
)
from checkpoint_recovery.storage import ObjectNotFoundError

HOST_KEY = "0x" + "11" * 32
HOST_ADDRESS = address_from_private_key(HOST_KEY)
OTHER_KEY = "0x" + "22" * 32
OTHER_ADDRESS = address_from_private_key(OTHER_KEY)
RECOVERY_KEY = "0x" + "33" * 32
RECOVERY_PUBLIC_KEY = compressed_public_key(load_recovery_private_key(RECOVERY_KEY)).hex()
HOST_URL = "http://host.test:8080"
SESSION_ID = "42"


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class FakeLedger:
    """Ledger with recorded proofs and a "proof submitted" event log."""

    def __init__(self):
        self.proofs: Dict[Tuple[str, int], ProofSubmission] = {}
        self.events: Dict[str, List[Dict[str, Any]]] = {}
        self.proof_queries: List[Tuple[str, int]] = []
        self.event_queries: List[Tuple[str, int, Optional[int]]] = []
        self.fail_with: Optional[Exception] = None

    def record_proof(self, session_id, index: int, proof_hash: str, tokens: int = 0) -> None:
        self.proofs[(str(session_id), index)] = ProofSubmission(
            proof_hash=proof_hash, tokens_claimed=tokens
        )

    def add_event(self, session_id, event: Dict[str, Any]) -> None:
        self.events.setdefault(str(session_id), []).append(event)

    async def get_proof_submission(self, session_id, checkpoint_index):
        self.proof_queries.append((str(session_id), checkpoint_index))
        if self.fail_with is not None:
            raise self.fail_with
        return self.proofs.get((str(session_id), checkpoint_index))

    async def get_proof_submitted_events(self, session_id, from_block=0, to_block=None):
        self.event_queries.append((str(session_id), from_block, to_block))
        if self.fail_with is not None:
            raise self.fail_with
        events = self.events.get(str(session_id), [])
        return [
            e for e in events
            if e["blockNumber"] >= from_block and (to_block is None or e["blockNumber"] <= to_block)
        ]


class FakeStore:
    """Content-addressed store keyed by CID."""

    def __init__(self):
        self.objects: Dict[str, bytes] = {}
        self.errors: Dict[str, Exception] = {}
        self.delays: Dict[str, float] = {}
        self.requests: List[str] = []
        self.cancelled: List[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    def put(self, cid: str, data: bytes) -> None:
        self.objects[cid] = data

    async def get(self, cid: str) -> bytes:
        self.requests.append(cid)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delays.get(cid, 0))
            if cid in self.errors:
                raise self.errors[cid]
            if cid not in self.objects:
                raise ObjectNotFoundError(cid)
            return self.objects[cid]
        except asyncio.CancelledError:
            self.cancelled.append(cid)
            raise
        finally:
            self.in_flight -= 1


class FakeSessions:
    def __init__(self, sessions: Optional[Dict[str, SessionInfo]] = None):
        self.sessions = dict(sessions or {})

    async def get_session_info(self, session_id):
        return self.sessions.get(str(session_id))


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------

def conversation_messages(index: int) -> List[Dict[str, Any]]:
    return [
        {"role": "user", "content": f"question {index}", "timestamp": 1700000000 + index * 10},
        {"role": "assistant", "content": f"answer {index}", "timestamp": 1700000001 + index * 10},
    ]


def make_delta(
    index: int,
    start: int,
    end: int,
    messages: Optional[Sequence[Dict[str, Any]]] = None,
    session_id: str = SESSION_ID,
    key: str = HOST_KEY,
) -> CheckpointDelta:
    """A plaintext delta with a correct commitment, signed by ``key``."""
    if messages is None:
        messages = conversation_messages(index)
    parsed = tuple(Message.from_dict(m, i) for i, m in enumerate(messages))
    unsigned = CheckpointDelta(
        session_id=session_id,
        checkpoint_index=index,
        proof_hash=compute_commitment_hash_hex([m.to_dict() for m in parsed], end - start),
        start_token=start,
        end_token=end,
        messages=parsed,
        host_signature="",
    )
    return unsigned.with_signature(sign_personal_message(key, unsigned.signing_payload()))


def delta_bytes(delta: CheckpointDelta) -> bytes:
    return json.dumps(delta.to_dict()).encode("utf-8")


def encrypted_delta_bytes(delta: CheckpointDelta, key: str = HOST_KEY) -> bytes:
    payload = encrypt_checkpoint_delta(delta, RECOVERY_PUBLIC_KEY, host_private_key=key)
    return json.dumps(payload).encode("utf-8")


def cid_for(index: int) -> str:
    return f"s5://delta-{index:04d}"


def entry_for(delta: CheckpointDelta, cid: Optional[str] = None) -> CheckpointIndexEntry:
    return CheckpointIndexEntry(
        index=delta.checkpoint_index,
        proof_hash=delta.proof_hash,
        delta_cid=cid if cid is not None else cid_for(delta.checkpoint_index),
        token_range=(delta.start_token, delta.end_token),
        timestamp=1700000000 + delta.checkpoint_index,
    )


def make_index_body(
    entries: Sequence[CheckpointIndexEntry],
    session_id: str = SESSION_ID,
    key: str = HOST_KEY,
    host_address: Optional[str] = None,
) -> Dict[str, Any]:
    """Host-served index JSON with a checkpointsSignature over the entries."""
    checkpoints = [e.to_dict() for e in entries]
    return {
        "sessionId": session_id,
        "hostAddress": host_address or address_from_private_key(key),
        "checkpoints": checkpoints,
        "checkpointsSignature": sign_personal_message(key, canonical_dumps(checkpoints)),
    }


def proof_event(
    delta: CheckpointDelta,
    cid: str,
    block: int,
    log_index: int = 0,
    host: str = HOST_ADDRESS,
) -> Dict[str, Any]:
    return {
        "host": host,
        "tokensClaimed": delta.token_count,
        "proofHash": delta.proof_hash,
        "deltaCID": cid,
        "blockNumber": block,
        "logIndex": log_index,
        "txHash": "0x" + f"{block:064x}",
    }


def host_transport(routes: Dict[str, Any]) -> httpx.MockTransport:
    """
    MockTransport answering GETs by path.

    A route value may be a dict (200 JSON), an int (bare status), an
    httpx.Response, or an exception instance to raise.
    """
    def handler(request: httpx.Request) -> httpx.Response:
        route = routes.get(request.url.path, 404)
        if isinstance(route, Exception):
            raise route
        if isinstance(route, httpx.Response):
            return route
        if isinstance(route, int):
            return httpx.Response(route)
        return httpx.Response(200, json=route)

    return httpx.MockTransport(handler)


@dataclass
class SessionFixture:
    """One session's published checkpoints plus the collaborators holding them."""
    deltas: List[CheckpointDelta]
    entries: List[CheckpointIndexEntry]
    ledger: FakeLedger = field(default_factory=FakeLedger)
    store: FakeStore = field(default_factory=FakeStore)
    sessions: FakeSessions = field(default_factory=FakeSessions)
    index_body: Dict[str, Any] = field(default_factory=dict)

    def client(self, routes: Optional[Dict[str, Any]] = None) -> httpx.AsyncClient:
        if routes is None:
            routes = {f"/v1/checkpoints/{SESSION_ID}": self.index_body}
        return httpx.AsyncClient(transport=host_transport(routes))


def build_session(
    spans: Sequence[Tuple[int, int]] = ((0, 500), (500, 1000), (1000, 1563)),
    anchored: bool = True,
    encrypted: bool = False,
    host_url: Optional[str] = HOST_URL,
    message_factory: Callable[[int], List[Dict[str, Any]]] = conversation_messages,
) -> SessionFixture:
    """
    Publish one checkpoint per span the way a host does: deltas in the store,
    proofs and events on the ledger, a signed index behind the host URL.
    ``anchored=False`` models a pre-upgrade session whose events carry no CID.
    """
    deltas = [
        make_delta(i, start, end, message_factory(i)) for i, (start, end) in enumerate(spans)
    ]
    entries = [entry_for(d) for d in deltas]
    fixture = SessionFixture(deltas=deltas, entries=entries)
    for delta, entry in zip(deltas, entries):
        data = encrypted_delta_bytes(delta) if encrypted else delta_bytes(delta)
        fixture.store.put(entry.delta_cid, data)
        fixture.ledger.record_proof(SESSION_ID, entry.index, delta.proof_hash, delta.token_count)
        fixture.ledger.add_event(
            SESSION_ID,
            proof_event(delta, entry.delta_cid if anchored else "", block=100 + entry.index),
        )
    fixture.index_body = make_index_body(entries)
    fixture.sessions.sessions[SESSION_ID] = SessionInfo(
        host_address=HOST_ADDRESS, host_url=host_url
    )
    return fixture


@pytest.fixture
def published_session() -> SessionFixture:
    return build_session()
