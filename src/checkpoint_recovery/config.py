"""
config.py — Recovery Configuration

Tunables for timeouts, fan-out and ledger scan bounds. Configuration is
an immutable value passed into each recovery call; nothing is read from
the environment or kept in module state.
"""

from __future__ import annotations
import json
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional

DEFAULT_CHECKPOINT_PATH = "/v1/checkpoints/{session_id}"


@dataclass(frozen=True)
class RecoveryConfig:
    host_timeout: float = 10.0
    fetch_timeout: float = 30.0
    max_concurrent_fetches: int = 4
    from_block: int = 0
    to_block: Optional[int] = None
    checkpoint_path: str = DEFAULT_CHECKPOINT_PATH

    def __post_init__(self) -> None:
        if self.host_timeout <= 0 or self.fetch_timeout <= 0:
            raise ValueError("timeouts must be positive")
        if isinstance(self.max_concurrent_fetches, bool) or self.max_concurrent_fetches < 1:
            raise ValueError("max_concurrent_fetches must be at least 1")
        if self.from_block < 0:
            raise ValueError("from_block must be non-negative")
        if self.to_block is not None and self.to_block < self.from_block:
            raise ValueError("to_block must not precede from_block")
        if "{session_id}" not in self.checkpoint_path:
            raise ValueError("checkpoint_path must contain '{session_id}'")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RecoveryConfig":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown recovery config keys: {', '.join(unknown)}")
        return cls(**data)


def load_config(path: Path) -> RecoveryConfig:
    """Load a RecoveryConfig from a JSON file."""
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError(f"{path}: recovery config must be a JSON object")
    return RecoveryConfig.from_dict(data)
