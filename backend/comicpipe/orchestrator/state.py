"""State machine constants and transition logic for the pipeline orchestrator.

Defines the ordered, strictly forward stage sequence that governs a run and
the resume logic used to re-enter a failed run at its first incomplete stage.
"""

from typing import Iterable, Optional

# Pipeline states in execution order
PIPELINE_STATES = {
    "queued": "Project created, waiting for the first stage",
    "analyzing": "Analyzing the story brief",
    "script": "Writing the page-by-page script",
    "characters": "Extracting the cast",
    "designs": "Drawing character reference sheets",
    "layouts": "Planning page layouts and panel geometry",
    "panels": "Generating panel artwork",
    "dialogue": "Placing speech bubbles",
    "finalizing": "Assembling the finished comic",
    "complete": "Pipeline finished successfully",
    "failed": "Pipeline encountered unrecoverable error",
}

# Work stages, in order. "queued" precedes them, "complete" follows them.
STAGE_SEQUENCE = (
    "analyzing",
    "script",
    "characters",
    "designs",
    "layouts",
    "panels",
    "dialogue",
    "finalizing",
)

# State transitions for active pipeline steps
STEP_TRANSITIONS = {
    "queued": "analyzing",
    "analyzing": "script",
    "script": "characters",
    "characters": "designs",
    "designs": "layouts",
    "layouts": "panels",
    "panels": "dialogue",
    "dialogue": "finalizing",
    "finalizing": "complete",
}

TERMINAL_STATES = frozenset({"complete", "failed"})

# States from which pipeline can resume
RESUMABLE_STATES = frozenset({"failed"})


def is_valid_state(status: str) -> bool:
    return status in PIPELINE_STATES


def is_active(status: str) -> bool:
    """A project is active while its stage is anything but terminal."""
    return status not in TERMINAL_STATES


def can_resume(status: str) -> bool:
    """Check if pipeline can resume from given status."""
    return status in RESUMABLE_STATES


def next_stage(stage: str) -> Optional[str]:
    """Return the work stage following ``stage``, or None after the last one."""
    following = STEP_TRANSITIONS.get(stage)
    if following is None or following == "complete":
        return None
    return following


def previous_state(stage: str) -> str:
    """Return the state a project must be in right before entering ``stage``."""
    index = STAGE_SEQUENCE.index(stage)
    return "queued" if index == 0 else STAGE_SEQUENCE[index - 1]


def get_resume_stage(completed_stages: Iterable[str]) -> str:
    """Determine which stage a failed run re-enters.

    Uses persisted stage outputs rather than the failed status, since work
    may have been partially completed before the failure.

    Examples:
        >>> get_resume_stage([])
        'analyzing'
        >>> get_resume_stage(["analyzing", "script"])
        'characters'
    """
    done = set(completed_stages)
    for stage in STAGE_SEQUENCE:
        if stage not in done:
            return stage
    # Everything committed but the run never flipped to complete
    return STAGE_SEQUENCE[-1]
