"""
merge.py — Checkpoint Delta Merger

Reassembles a conversation from verified deltas. Deltas are ordered by
checkpoint index and their token ranges must tile without gap or overlap.

Hosts checkpoint on a token schedule, so a streamed reply can be cut
mid-generation: the earlier delta ends with a message marked
``metadata.partial`` and the next delta opens with the rest of it. Such a
leading message is joined onto the previous one instead of being appended.
"""

from __future__ import annotations
from dataclasses import dataclass, replace
from typing import List, Sequence, Tuple

from .errors import TokenRangeGapError
from .models import CheckpointDelta, Message


@dataclass(frozen=True)
class MergeResult:
    messages: Tuple[Message, ...]
    token_count: int


def continues(previous: Message, current: Message) -> bool:
    """True if ``current`` is the rest of ``previous`` split across checkpoints."""
    if previous.role != current.role:
        return False
    return previous.is_partial or current.is_continuation


def join_messages(previous: Message, current: Message) -> Message:
    # The joined message is partial only if its newest piece still is.
    metadata = dict(previous.metadata or {})
    metadata.pop("partial", None)
    if current.is_partial:
        metadata["partial"] = True
    return replace(
        previous,
        content=previous.content + current.content,
        metadata=metadata or None,
    )


def order_deltas(deltas: Sequence[CheckpointDelta]) -> List[CheckpointDelta]:
    """
    Sort by checkpoint index and require contiguous token ranges.

    Raises:
        TokenRangeGapError: duplicate index, gap or overlap.
    """
    ordered = sorted(deltas, key=lambda d: d.checkpoint_index)
    for previous, current in zip(ordered, ordered[1:]):
        if current.checkpoint_index == previous.checkpoint_index:
            raise TokenRangeGapError(
                current.checkpoint_index, "duplicate checkpoint index"
            )
        if current.start_token != previous.end_token:
            kind = "gap" if current.start_token > previous.end_token else "overlap"
            raise TokenRangeGapError(
                current.checkpoint_index,
                f"{kind}: starts at {current.start_token}, "
                f"checkpoint {previous.checkpoint_index} ends at {previous.end_token}",
            )
    return ordered


def merge_deltas(deltas: Sequence[CheckpointDelta]) -> MergeResult:
    """
    Merge deltas into one ordered message list and a token count.

    The token count is the sum of each delta's span and must equal the
    distance from the first delta's start to the last delta's end.

    Raises:
        TokenRangeGapError: if the deltas do not tile their token range.
    """
    if not deltas:
        return MergeResult(messages=(), token_count=0)

    ordered = order_deltas(deltas)
    merged: List[Message] = []
    for delta in ordered:
        for position, message in enumerate(delta.messages):
            if position == 0 and merged and continues(merged[-1], message):
                merged[-1] = join_messages(merged[-1], message)
            else:
                merged.append(message)

    token_count = sum(d.token_count for d in ordered)
    span = ordered[-1].end_token - ordered[0].start_token
    if token_count != span:
        raise TokenRangeGapError(
            ordered[-1].checkpoint_index,
            f"token sum {token_count} does not match span {span}",
        )
    return MergeResult(messages=tuple(merged), token_count=token_count)
