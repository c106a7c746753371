from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, Mapping, Optional

from .config import parse_stage_list

STAGE_INFO: dict[str, str] = {
    "technology-deep-dive": "Technology Deep Dive",
    "claims-validation": "Claims Validation",
    "performance-simulation": "Performance Simulation",
    "system-integration": "System Integration",
    "tea-analysis": "Techno-Economic Analysis",
    "improvement-opportunities": "Improvement Opportunities",
    "final-synthesis": "Final Synthesis",
    "rapid-synthesis": "Rapid Synthesis",
}

RAPID_STAGE_NAMES: dict[str, str] = {
    "technology-deep-dive": "Technology Analysis",
    "claims-validation": "Claims Validation",
    "rapid-synthesis": "Rapid Synthesis",
}

FULL_STAGE_ORDER: tuple[str, ...] = (
    "technology-deep-dive",
    "claims-validation",
    "performance-simulation",
    "system-integration",
    "tea-analysis",
    "improvement-opportunities",
    "final-synthesis",
)

RAPID_STAGE_ORDER: tuple[str, ...] = (
    "technology-deep-dive",
    "claims-validation",
    "rapid-synthesis",
)

TERMINAL_STAGES: dict[str, str] = {
    "full": "final-synthesis",
    "rapid": "rapid-synthesis",
}

# prior outputs a stage reads; a missing one is noted, never fatal
STAGE_DEPENDENCIES: dict[str, tuple[str, ...]] = {
    "tea-analysis": ("performance-simulation",),
    "final-synthesis": (
        "technology-deep-dive",
        "claims-validation",
        "performance-simulation",
        "system-integration",
        "tea-analysis",
        "improvement-opportunities",
    ),
    "rapid-synthesis": ("technology-deep-dive", "claims-validation"),
}

# (start, end) of the progress range the stage loop occupies
STAGE_PROGRESS_RANGE: dict[str, tuple[float, float]] = {
    "full": (0.0, 100.0),
    "rapid": (10.0, 95.0),
}


def stage_order_for(mode: str) -> tuple[str, ...]:
    if mode == "rapid":
        return RAPID_STAGE_ORDER
    if mode == "full":
        return FULL_STAGE_ORDER
    raise ValueError(f"unknown assessment mode: {mode}")


def stage_name(stage_id: str, mode: str = "full") -> str:
    if mode == "rapid" and stage_id in RAPID_STAGE_NAMES:
        return RAPID_STAGE_NAMES[stage_id]
    return STAGE_INFO.get(stage_id, stage_id)


def resolve_stage_plan(
    order: Iterable[str],
    skip_stage_ids: Iterable[str] | str | None = None,
) -> tuple[list[str], list[str]]:
    """Split the declared order into (planned, skipped), both order-preserving."""
    if isinstance(skip_stage_ids, str) or skip_stage_ids is None:
        skip = set(parse_stage_list(skip_stage_ids))
    else:
        skip = {str(item).strip().lower() for item in skip_stage_ids}
    planned: list[str] = []
    skipped: list[str] = []
    for stage_id in order:
        (skipped if stage_id in skip else planned).append(stage_id)
    return planned, skipped


def initialize_stage_status(
    *,
    stage_order: Iterable[str],
    skipped: Iterable[str] = (),
) -> dict[str, dict[str, str]]:
    skipped_set = set(skipped)
    stage_status: dict[str, dict[str, str]] = {}
    for name in stage_order:
        if name in skipped_set:
            stage_status[name] = {"status": "skipped", "detail": ""}
        else:
            stage_status[name] = {"status": "pending", "detail": ""}
    return stage_status


def record_stage(
    stage_status: dict[str, dict[str, str]],
    *,
    name: str,
    status: str,
    detail: str = "",
) -> None:
    if name not in stage_status:
        return
    stage_status[name]["status"] = status
    if detail:
        stage_status[name]["detail"] = detail


def missing_dependencies(stage_id: str, completed: Mapping[str, object]) -> list[str]:
    return [dep for dep in STAGE_DEPENDENCIES.get(stage_id, ()) if dep not in completed]


def format_stage_summary(stage_status: Mapping[str, Mapping[str, str]]) -> list[str]:
    lines: list[str] = []
    for idx, (name, entry) in enumerate(stage_status.items(), start=1):
        status = entry.get("status", "pending")
        detail = entry.get("detail", "")
        line = f"{idx}. {name}: {status}"
        if detail:
            line = f"{line} ({detail})"
        lines.append(line)
    return lines


@dataclass(frozen=True)
class ProgressBand:
    base: float
    weight: float

    def map(self, sub_progress: float) -> float:
        clamped = max(0.0, min(100.0, float(sub_progress)))
        return self.base + clamped / 100.0 * self.weight

    @property
    def end(self) -> float:
        return self.base + self.weight


def progress_band(index: int, count: int, *, start: float = 0.0, end: float = 100.0) -> ProgressBand:
    if count <= 0:
        raise ValueError("stage count must be positive")
    span = end - start
    return ProgressBand(base=start + index / count * span, weight=span / count)


@dataclass(frozen=True)
class DurationEstimate:
    min_minutes: int
    max_minutes: int
    stages: int


def estimate_duration(input_data, mode: str = "full", skip_stage_ids: Optional[Iterable[str]] = None) -> DurationEstimate:
    planned, _ = resolve_stage_plan(stage_order_for(mode), skip_stage_ids)
    stages = len(planned)
    claims_count = len(getattr(input_data, "claims", None) or []) or 3
    if mode == "rapid":
        per_stage = (1, 3)
        multiplier = 1 + (claims_count - 3) * 0.05
    else:
        per_stage = (2, 5)
        documents_count = len(getattr(input_data, "documents", None) or [])
        multiplier = (1 + (claims_count - 3) * 0.1) * (1 + documents_count * 0.15)
    return DurationEstimate(
        min_minutes=math.ceil(stages * per_stage[0] * multiplier),
        max_minutes=math.ceil(stages * per_stage[1] * multiplier),
        stages=stages,
    )
