"""Speech bubble geometry helpers.

All positions are relative to the panel (0-1, top-left origin) and use the
``relative_x``/``relative_y``/``relative_width``/``relative_height`` keys of
a serialized ``SpeechBubble``.
"""

from typing import Mapping

from comicpipe.orchestrator.progress import round_half_up

OVERLAP_THRESHOLD = 0.3
MAX_ADJUST_ITERATIONS = 5
# Bubbles are never pushed below this line
BOTTOM_LIMIT = 0.85

NARRATION_SLOT = (0.1, 0.05, 0.8, 0.12)
DIALOGUE_SLOTS = (
    (0.55, 0.15, 0.35, 0.15),
    (0.1, 0.45, 0.35, 0.15),
    (0.55, 0.7, 0.35, 0.15),
)

ACTION_KEYWORDS = ("fight", "battle", "run", "jump", "attack", "dodge", "explosion", "crash")


def validate_bubble_position(position: Mapping[str, float]) -> bool:
    """True when the bubble has positive size and lies fully inside the panel."""
    x = position["relative_x"]
    y = position["relative_y"]
    width = position["relative_width"]
    height = position["relative_height"]
    return (
        0 <= x <= 1
        and 0 <= y <= 1
        and 0 < width <= 1
        and 0 < height <= 1
        and x + width <= 1
        and y + height <= 1
    )


def calculate_overlap(first: Mapping[str, float], second: Mapping[str, float]) -> float:
    """Intersection area over the smaller bubble's area (0 none, 1 full)."""
    x_overlap = max(
        0.0,
        min(first["relative_x"] + first["relative_width"], second["relative_x"] + second["relative_width"])
        - max(first["relative_x"], second["relative_x"]),
    )
    y_overlap = max(
        0.0,
        min(first["relative_y"] + first["relative_height"], second["relative_y"] + second["relative_height"])
        - max(first["relative_y"], second["relative_y"]),
    )
    min_area = min(
        first["relative_width"] * first["relative_height"],
        second["relative_width"] * second["relative_height"],
    )
    return x_overlap * y_overlap / min_area if min_area > 0 else 0.0


def adjust_for_overlap(bubbles: list[dict]) -> list[dict]:
    """Nudge later bubbles down until no pair overlaps more than the threshold.

    Returns new dicts; the input is left untouched.
    """
    adjusted = [dict(bubble) for bubble in bubbles]
    for _ in range(MAX_ADJUST_ITERATIONS):
        moved = False
        for i in range(len(adjusted)):
            for j in range(i + 1, len(adjusted)):
                if calculate_overlap(adjusted[i], adjusted[j]) > OVERLAP_THRESHOLD:
                    moved = True
                    lower = adjusted[j]
                    lower["relative_y"] = min(
                        BOTTOM_LIMIT - lower["relative_height"],
                        lower["relative_y"] + 0.1,
                    )
        if not moved:
            break
    return adjusted


def to_absolute(bubble: dict, panel_width: int, panel_height: int) -> dict:
    """Fill the pixel geometry of ``bubble`` from its relative geometry."""
    return {
        **bubble,
        "x": round_half_up(panel_width * bubble["relative_x"]),
        "y": round_half_up(panel_height * bubble["relative_y"]),
        "width": round_half_up(panel_width * bubble["relative_width"]),
        "height": round_half_up(panel_height * bubble["relative_height"]),
    }


def needs_ai_positioning(bubbles: list[dict], character_handles: list[str], prompt: str) -> bool:
    """Crowded or action-heavy panels get vision-based placement."""
    count = len(bubbles)
    has_action = any(keyword in prompt.lower() for keyword in ACTION_KEYWORDS)
    return count >= 3 or (len(character_handles) >= 2 and count >= 2) or (has_action and count >= 2)


def rule_based_position(bubble: dict, index: int) -> dict:
    if bubble.get("type") == "narration":
        x, y, width, height = NARRATION_SLOT
    else:
        x, y, width, height = DIALOGUE_SLOTS[index % len(DIALOGUE_SLOTS)]
    return {
        **bubble,
        "relative_x": x,
        "relative_y": y,
        "relative_width": width,
        "relative_height": height,
        "positioning_method": "rule-based",
    }
