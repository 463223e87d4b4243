from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Sequence

from .const import CALORIES_PER_KM, DURATION_PLACEHOLDER
from .telemetry import DecodeResult, TelemetryLayout, TrackPoint, valid_heart_rate


class FetchSessionState(Enum):
    IDLE = "idle"
    PHASE1 = "phase1"
    PHASE2 = "phase2"
    PHASE3 = "phase3"
    TRANSFERRING = "transferring"
    FINALIZING = "finalizing"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass
class ActivitySummary:
    distance_km: float = 0.0
    duration: str = DURATION_PLACEHOLDER
    duration_seconds: float | None = None
    calorie_estimate: int = 0
    avg_heart_rate: float | None = None
    points: list[TrackPoint] = field(default_factory=list)
    sync_timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    is_real_data: bool = False
    byte_count: int = 0
    outcome: FetchSessionState = FetchSessionState.COMPLETE
    layout: TelemetryLayout = TelemetryLayout.EMPTY

    @property
    def position_points(self) -> list[TrackPoint]:
        return [p for p in self.points if p.has_position]

    def as_dict(self) -> dict:
        return {
            "distance_km": round(self.distance_km, 3),
            "duration": self.duration,
            "duration_seconds": self.duration_seconds,
            "calorie_estimate": self.calorie_estimate,
            "avg_heart_rate": self.avg_heart_rate,
            "points": len(self.position_points),
            "sync_timestamp": self.sync_timestamp.isoformat(),
            "is_real_data": self.is_real_data,
            "byte_count": self.byte_count,
            "outcome": self.outcome.value,
            "layout": self.layout.value,
        }


def calorie_estimate(distance_km: float) -> int:
    """Flat kcal-per-km approximation; not a physiological model."""
    return int(math.floor(distance_km * CALORIES_PER_KM))


def average_heart_rate(samples: Sequence[int]) -> float | None:
    valid = [s for s in samples if valid_heart_rate(s)]
    if not valid:
        return None
    return sum(valid) / len(valid)


def summarize(
    result: DecodeResult,
    sync_timestamp: datetime,
    outcome: FetchSessionState = FetchSessionState.COMPLETE,
) -> ActivitySummary:
    if result.heart_rates:
        samples = result.heart_rates
    else:
        samples = [p.heart_rate for p in result.points if p.heart_rate is not None]

    distance = result.distance_km
    return ActivitySummary(
        distance_km=distance,
        duration=result.duration,
        duration_seconds=result.duration_seconds,
        calorie_estimate=calorie_estimate(distance),
        avg_heart_rate=average_heart_rate(samples),
        points=list(result.points),
        sync_timestamp=sync_timestamp,
        is_real_data=result.is_real_data,
        byte_count=result.byte_count,
        outcome=outcome,
        layout=result.layout,
    )


def empty_summary(
    sync_timestamp: datetime,
    outcome: FetchSessionState,
    byte_count: int = 0,
    layout: TelemetryLayout = TelemetryLayout.EMPTY,
) -> ActivitySummary:
    return ActivitySummary(
        sync_timestamp=sync_timestamp,
        outcome=outcome,
        byte_count=byte_count,
        layout=layout,
    )
