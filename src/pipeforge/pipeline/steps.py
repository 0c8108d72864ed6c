"""Step registry — ordered step ids per pipeline type.

Pure lookup with no state. Pipeline types are plain strings here so that
this module has no dependency on the models that validate against it.
"""

from __future__ import annotations

# Step ids
THEME_DIRECTOR = "theme_director"
MUSIC_COMPOSER = "music_composer"
VISUAL_DIRECTOR = "visual_director"
IMAGE_GENERATOR = "image_generator"
VIDEO_COMPOSER = "video_composer"

SONG_ARCHITECT = "song_architect"
SUNO_EXPERT = "suno_expert"
SONG_SELECTOR = "song_selector"
VISUAL_DESIGNER = "visual_designer"

# Agent type used for orchestrator-level log entries
ORCHESTRATOR = "orchestrator"

STEP_REGISTRY: dict[str, tuple[str, ...]] = {
    "video": (
        THEME_DIRECTOR,
        MUSIC_COMPOSER,
        VISUAL_DIRECTOR,
        IMAGE_GENERATOR,
        VIDEO_COMPOSER,
    ),
    "music_video": (
        SONG_ARCHITECT,
        SUNO_EXPERT,
        SONG_SELECTOR,
        VISUAL_DESIGNER,
    ),
}


def steps_for(pipeline_type: str) -> list[str]:
    """Return the ordered step ids for a pipeline type."""
    try:
        return list(STEP_REGISTRY[pipeline_type])
    except KeyError:
        msg = f"Unknown pipeline type: '{pipeline_type}'"
        raise ValueError(msg) from None


def first_step(pipeline_type: str) -> str:
    return steps_for(pipeline_type)[0]


def next_step(pipeline_type: str, step: str | None) -> str | None:
    """Return the step after ``step``, the first step for None, or None at the end."""
    steps = steps_for(pipeline_type)
    if step is None:
        return steps[0]
    try:
        idx = steps.index(step)
    except ValueError:
        return None
    if idx + 1 < len(steps):
        return steps[idx + 1]
    return None


def is_valid_step(pipeline_type: str, step: str) -> bool:
    return step in STEP_REGISTRY.get(pipeline_type, ())
