"""
test_fetcher.py — Delta Fetch, Signature, Decrypt and Entry Binding

Attack scenarios:
  1. Store serves a delta for a different checkpoint or session
  2. Host rewrites messages but keeps the ledger-confirmed proofHash
  3. Delta signed by a key other than the session host
  4. Encrypted payload whose ciphertext was swapped after signing
"""

import asyncio
import json
from dataclasses import replace

import pytest

from checkpoint_recovery.errors import (
    DecryptionKeyRequiredError,
    DeltaFetchFailedError,
    InvalidDeltaSignatureError,
    InvalidDeltaStructureError,
    ProofHashMismatchError,
)
from checkpoint_recovery.fetcher import (
    check_delta_matches_entry,
    decrypt_as_needed,
    fetch_all_deltas,
    fetch_delta,
    open_delta,
)
from checkpoint_recovery.models import CheckpointDelta, EncryptedCheckpointDelta
from checkpoint_recovery.storage import ObjectStoreError

from conftest import (
    HOST_ADDRESS,
    OTHER_KEY,
    RECOVERY_KEY,
    SESSION_ID,
    FakeStore,
    build_session,
    delta_bytes,
    encrypted_delta_bytes,
    entry_for,
    make_delta,
)


def _single(delta, data=None):
    store = FakeStore()
    entry = entry_for(delta)
    store.put(entry.delta_cid, data if data is not None else delta_bytes(delta))
    return store, entry


# ---------------------------------------------------------------------------
# Fetch + signature
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_plaintext_delta_fetched_and_verified():
    delta = make_delta(0, 0, 50)
    store, entry = _single(delta)
    assert await fetch_delta(store, entry, HOST_ADDRESS) == delta


@pytest.mark.asyncio
async def test_missing_object():
    delta = make_delta(0, 0, 50)
    store, entry = _single(delta)
    store.objects.clear()
    with pytest.raises(DeltaFetchFailedError) as exc_info:
        await fetch_delta(store, entry, HOST_ADDRESS)
    assert exc_info.value.checkpoint_index == 0
    assert exc_info.value.field == "deltaCID"


@pytest.mark.asyncio
async def test_store_transport_error():
    delta = make_delta(0, 0, 50)
    store, entry = _single(delta)
    store.errors[entry.delta_cid] = ObjectStoreError("gateway 502")
    with pytest.raises(DeltaFetchFailedError, match="gateway 502"):
        await fetch_delta(store, entry, HOST_ADDRESS)


@pytest.mark.asyncio
async def test_empty_cid_is_fetch_failure():
    delta = make_delta(0, 0, 50)
    store, _ = _single(delta)
    with pytest.raises(DeltaFetchFailedError, match="no delta CID"):
        await fetch_delta(store, entry_for(delta, cid=""), HOST_ADDRESS)
    assert store.requests == []


@pytest.mark.asyncio
async def test_per_item_timeout():
    delta = make_delta(0, 0, 50)
    store, entry = _single(delta)
    store.delays[entry.delta_cid] = 5
    with pytest.raises(DeltaFetchFailedError, match="timed out"):
        await fetch_delta(store, entry, HOST_ADDRESS, timeout=0.05)


@pytest.mark.asyncio
async def test_non_json_payload():
    delta = make_delta(0, 0, 50)
    store, entry = _single(delta, data=b"\x00\x01binary")
    with pytest.raises(InvalidDeltaStructureError) as exc_info:
        await fetch_delta(store, entry, HOST_ADDRESS)
    assert exc_info.value.field == "delta"


@pytest.mark.asyncio
async def test_delta_missing_messages():
    delta = make_delta(0, 0, 50)
    wire = delta.to_dict()
    del wire["messages"]
    store, entry = _single(delta, data=json.dumps(wire).encode())
    with pytest.raises(InvalidDeltaStructureError) as exc_info:
        await fetch_delta(store, entry, HOST_ADDRESS)
    assert exc_info.value.field == "messages"


@pytest.mark.asyncio
async def test_delta_signed_by_other_key():
    delta = make_delta(0, 0, 50, key=OTHER_KEY)
    store, entry = _single(delta)
    with pytest.raises(InvalidDeltaSignatureError) as exc_info:
        await fetch_delta(store, entry, HOST_ADDRESS)
    assert exc_info.value.field == "hostSignature"
    assert exc_info.value.checkpoint_index == 0


@pytest.mark.asyncio
async def test_delta_edited_after_signing():
    delta = make_delta(0, 0, 50)
    wire = delta.to_dict()
    wire["messages"][0]["content"] = "forged"
    store, entry = _single(delta, data=json.dumps(wire).encode())
    with pytest.raises(InvalidDeltaSignatureError):
        await fetch_delta(store, entry, HOST_ADDRESS)


@pytest.mark.asyncio
async def test_truncated_signature_is_invalid_signature():
    delta = make_delta(0, 0, 50)
    wire = delta.to_dict()
    wire["hostSignature"] = wire["hostSignature"][:-2]
    store, entry = _single(delta, data=json.dumps(wire).encode())
    with pytest.raises(InvalidDeltaSignatureError, match="malformed"):
        await fetch_delta(store, entry, HOST_ADDRESS)


@pytest.mark.asyncio
async def test_encrypted_delta_signature_checked_before_decrypt():
    delta = make_delta(0, 0, 50)
    store, entry = _single(delta, data=encrypted_delta_bytes(delta))
    payload = await fetch_delta(store, entry, HOST_ADDRESS)
    assert isinstance(payload, EncryptedCheckpointDelta)

    wire = json.loads(encrypted_delta_bytes(delta, key=OTHER_KEY))
    store.put(entry.delta_cid, json.dumps(wire).encode())
    with pytest.raises(InvalidDeltaSignatureError):
        await fetch_delta(store, entry, HOST_ADDRESS)


@pytest.mark.asyncio
async def test_encrypted_ciphertext_swapped_after_signing():
    delta = make_delta(0, 0, 50)
    original = json.loads(encrypted_delta_bytes(delta))
    other = json.loads(encrypted_delta_bytes(delta))
    original["ciphertext"] = other["ciphertext"]
    store, entry = _single(delta, data=json.dumps(original).encode())
    with pytest.raises(InvalidDeltaSignatureError):
        await fetch_delta(store, entry, HOST_ADDRESS)


# ---------------------------------------------------------------------------
# Fan-out
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_fetch_all_restores_entry_order():
    fixture = build_session(spans=[(i * 10, i * 10 + 10) for i in range(6)])
    for n, entry in enumerate(fixture.entries):
        fixture.store.delays[entry.delta_cid] = 0.01 * (6 - n)
    payloads = await fetch_all_deltas(fixture.store, fixture.entries, HOST_ADDRESS, max_concurrency=6)
    assert [p.checkpoint_index for p in payloads] == [0, 1, 2, 3, 4, 5]


@pytest.mark.asyncio
async def test_fetch_all_respects_concurrency_limit():
    fixture = build_session(spans=[(i * 10, i * 10 + 10) for i in range(8)])
    for entry in fixture.entries:
        fixture.store.delays[entry.delta_cid] = 0.01
    await fetch_all_deltas(fixture.store, fixture.entries, HOST_ADDRESS, max_concurrency=2)
    assert fixture.store.max_in_flight == 2


@pytest.mark.asyncio
async def test_fetch_all_fails_whole_batch_and_cancels_pending():
    fixture = build_session(spans=[(0, 10), (10, 20), (20, 30)])
    fixture.store.objects.pop(fixture.entries[1].delta_cid)
    for entry in (fixture.entries[0], fixture.entries[2]):
        fixture.store.delays[entry.delta_cid] = 5
    with pytest.raises(DeltaFetchFailedError) as exc_info:
        await asyncio.wait_for(
            fetch_all_deltas(fixture.store, fixture.entries, HOST_ADDRESS), timeout=2
        )
    assert exc_info.value.checkpoint_index == 1
    assert sorted(fixture.store.cancelled) == sorted(
        [fixture.entries[0].delta_cid, fixture.entries[2].delta_cid]
    )


# ---------------------------------------------------------------------------
# Decrypt + entry binding
# ---------------------------------------------------------------------------

def test_open_plaintext_delta():
    delta = make_delta(1, 10, 20)
    assert open_delta(delta, entry_for(delta), SESSION_ID) is delta


@pytest.mark.asyncio
async def test_open_encrypted_delta_with_key():
    delta = make_delta(0, 0, 50)
    store, entry = _single(delta, data=encrypted_delta_bytes(delta))
    payload = await fetch_delta(store, entry, HOST_ADDRESS)
    assert open_delta(payload, entry, SESSION_ID, RECOVERY_KEY) == delta


@pytest.mark.asyncio
async def test_open_encrypted_delta_without_key():
    delta = make_delta(0, 0, 50)
    store, entry = _single(delta, data=encrypted_delta_bytes(delta))
    payload = await fetch_delta(store, entry, HOST_ADDRESS)
    with pytest.raises(DecryptionKeyRequiredError) as exc_info:
        open_delta(payload, entry, SESSION_ID)
    assert exc_info.value.checkpoint_index == 0


def test_decrypt_as_needed_mixed_payloads():
    plain = make_delta(0, 0, 10)
    secret = make_delta(1, 10, 20)
    encrypted = EncryptedCheckpointDelta.from_dict(json.loads(encrypted_delta_bytes(secret)))
    deltas = decrypt_as_needed(
        [plain, encrypted], [entry_for(plain), entry_for(secret)], SESSION_ID, RECOVERY_KEY
    )
    assert deltas == [plain, secret]


def test_decrypt_as_needed_length_mismatch():
    with pytest.raises(ValueError):
        decrypt_as_needed([make_delta(0, 0, 10)], [], SESSION_ID)


def test_delta_for_other_session():
    delta = make_delta(0, 0, 10, session_id="7")
    with pytest.raises(InvalidDeltaStructureError) as exc_info:
        check_delta_matches_entry(delta, entry_for(delta), SESSION_ID)
    assert exc_info.value.field == "sessionId"


def test_delta_for_other_checkpoint():
    served = make_delta(1, 0, 10)
    expected = entry_for(make_delta(0, 0, 10))
    with pytest.raises(InvalidDeltaStructureError) as exc_info:
        check_delta_matches_entry(served, expected, SESSION_ID)
    assert exc_info.value.field == "checkpointIndex"


def test_delta_token_range_differs_from_entry():
    delta = make_delta(0, 0, 10)
    entry = entry_for(make_delta(0, 0, 12, messages=[m.to_dict() for m in delta.messages]))
    entry = replace(entry, proof_hash=delta.proof_hash)
    with pytest.raises(InvalidDeltaStructureError) as exc_info:
        check_delta_matches_entry(delta, entry, SESSION_ID)
    assert exc_info.value.field == "startToken"


def test_delta_proof_hash_differs_from_entry():
    delta = make_delta(0, 0, 10)
    entry = entry_for(make_delta(0, 0, 10, messages=[{"role": "user", "content": "other"}]))
    with pytest.raises(ProofHashMismatchError) as exc_info:
        check_delta_matches_entry(delta, entry, SESSION_ID)
    assert exc_info.value.field == "proofHash"


def test_messages_rewritten_under_confirmed_proof_hash():
    genuine = make_delta(0, 0, 10)
    forged = CheckpointDelta.from_dict({
        **genuine.to_dict(),
        "messages": [{"role": "assistant", "content": "forged"}],
    })
    with pytest.raises(ProofHashMismatchError) as exc_info:
        check_delta_matches_entry(forged, entry_for(genuine), SESSION_ID)
    assert exc_info.value.field == "messages"
    assert exc_info.value.checkpoint_index == 0
