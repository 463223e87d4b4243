from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterable


class FrameKind(Enum):
    CONTROL = "control"
    DATA = "data"


@dataclass(frozen=True)
class RawChunk:
    """One notification payload, exactly as it arrived."""

    kind: FrameKind
    payload: bytes

    def __post_init__(self) -> None:
        if self.kind is FrameKind.DATA and not self.payload:
            raise ValueError("Data chunk must carry at least its sequence byte")


def reassemble(chunks: Iterable[RawChunk]) -> bytes:
    """Concatenate data payloads in arrival order, minus each leading sequence byte."""
    return b"".join(c.payload[1:] for c in chunks if c.kind is FrameKind.DATA)
