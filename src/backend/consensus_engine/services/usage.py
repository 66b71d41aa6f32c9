"""
Usage Tracker — token estimation and a per-turn ledger of backend calls.

Token counts are estimates (4 chars ≈ 1 token); they feed the turn's
`total_tokens` and the per-call latency log lines.
"""
from __future__ import annotations

import math
import time
from dataclasses import dataclass, field
from typing import List

# Fixed estimates for media experts, whose output is not text
IMAGE_TOKEN_ESTIMATE = 250
VIDEO_TOKEN_ESTIMATE = 500


@dataclass
class CallRecord:
    """Record of a single backend call."""
    step_name: str
    input_tokens: int = 0
    output_tokens: int = 0
    latency_ms: int = 0
    succeeded: bool = True
    timestamp: float = 0.0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass
class UsageLedger:
    """Running ledger of all backend calls made for one turn."""
    turn_id: str
    calls: List[CallRecord] = field(default_factory=list)

    @property
    def total_tokens(self) -> int:
        return sum(c.total_tokens for c in self.calls)

    @property
    def total_latency_ms(self) -> int:
        return sum(c.latency_ms for c in self.calls)

    @property
    def call_count(self) -> int:
        return len(self.calls)

    def record(
        self,
        step_name: str,
        prompt: str,
        response: str,
        latency_ms: int,
        succeeded: bool = True,
    ) -> CallRecord:
        record = CallRecord(
            step_name=step_name,
            input_tokens=estimate_tokens(prompt),
            output_tokens=estimate_tokens(response),
            latency_ms=latency_ms,
            succeeded=succeeded,
            timestamp=time.time(),
        )
        self.calls.append(record)
        return record

    def to_dict(self) -> dict:
        """Serialize for logging."""
        return {
            "turn_id": self.turn_id,
            "call_count": self.call_count,
            "total_tokens": self.total_tokens,
            "total_latency_ms": self.total_latency_ms,
            "failed_calls": sum(1 for c in self.calls if not c.succeeded),
        }


def estimate_tokens(text: str) -> int:
    """
    Rough token count estimation (4 chars ≈ 1 token for English text).

    Empty text counts as zero tokens.
    """
    return math.ceil(len(text) / 4) if text else 0


def elapsed_ms(t0: float) -> int:
    """Milliseconds since a time.monotonic() reading."""
    return int((time.monotonic() - t0) * 1000)
