"""Progress aggregation: pure functions over persisted progress counters.

The nine-state stage enum is reported to clients through four equally
weighted groups. Each group counter is the mean of its member stages.
"""

import math
from typing import Any, Mapping

PROGRESS_WEIGHTS = {
    "script": 0.25,
    "characters": 0.25,
    "storyboard": 0.25,
    "preview": 0.25,
}

# Which progress group each work stage reports under
STAGE_GROUPS = {
    "analyzing": "script",
    "script": "script",
    "characters": "characters",
    "designs": "characters",
    "layouts": "storyboard",
    "panels": "storyboard",
    "dialogue": "preview",
    "finalizing": "preview",
}

GROUP_STAGES: dict[str, tuple[str, ...]] = {
    group: tuple(stage for stage, g in STAGE_GROUPS.items() if g == group)
    for group in PROGRESS_WEIGHTS
}

STEP_LABELS = {
    "queued": "Initializing...",
    "analyzing": "Analyzing story...",
    "script": "Generating script...",
    "characters": "Creating characters...",
    "designs": "Designing characters...",
    "layouts": "Planning page layouts...",
    "panels": "Generating panel images...",
    "dialogue": "Placing speech bubbles...",
    "finalizing": "Finalizing...",
    "complete": "Complete!",
    "failed": "Generation failed",
}

FALLBACK_STEP_LABEL = "Processing..."


def round_half_up(value: float) -> int:
    """Round halves upward (12.5 -> 13), unlike the built-in round()."""
    return int(math.floor(value + 0.5))


def clamp_progress(value: Any) -> int:
    """Coerce a counter to an int in [0, 100]; junk becomes 0."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0
    if number != number:  # NaN
        return 0
    return round_half_up(min(100.0, max(0.0, number)))


def calculate_progress(generation_progress: Mapping[str, Any] | None) -> int:
    """Weighted overall percentage across the four progress groups."""
    counters = generation_progress or {}
    overall = sum(
        clamp_progress(counters.get(group, 0)) * weight
        for group, weight in PROGRESS_WEIGHTS.items()
    )
    return max(0, min(100, round_half_up(overall)))


def get_current_step(stage: Any) -> str:
    """Human-readable label for a stage. Never raises."""
    if not isinstance(stage, str):
        return FALLBACK_STEP_LABEL
    return STEP_LABELS.get(stage, FALLBACK_STEP_LABEL)


def stage_group(stage: str) -> str | None:
    return STAGE_GROUPS.get(stage)


def group_progress(stage_progress: Mapping[str, Any]) -> dict[str, int]:
    """Fold per-stage progress into the four group counters."""
    groups = {}
    for group, stages in GROUP_STAGES.items():
        values = [clamp_progress(stage_progress.get(stage, 0)) for stage in stages]
        groups[group] = clamp_progress(sum(values) / len(values))
    return groups
