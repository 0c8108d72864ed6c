"""Step executors.

Each step id maps to one plain async function taking the step's context
and its input dict and returning the step result.

Key exports:
    EXECUTORS — step id → executor lookup table
    AgentContext, AgentServices — what an executor may touch
    StepError — raised by executors on domain failures
"""

from pipeforge.agents.base import AgentContext, AgentServices, Executor, StepError
from pipeforge.agents.music_video import song_architect, song_selector, suno_expert, visual_designer
from pipeforge.agents.video import (
    image_generator,
    music_composer,
    theme_director,
    video_composer,
    visual_director,
)
from pipeforge.pipeline import steps

EXECUTORS: dict[str, Executor] = {
    steps.THEME_DIRECTOR: theme_director,
    steps.MUSIC_COMPOSER: music_composer,
    steps.VISUAL_DIRECTOR: visual_director,
    steps.IMAGE_GENERATOR: image_generator,
    steps.VIDEO_COMPOSER: video_composer,
    steps.SONG_ARCHITECT: song_architect,
    steps.SUNO_EXPERT: suno_expert,
    steps.SONG_SELECTOR: song_selector,
    steps.VISUAL_DESIGNER: visual_designer,
}

__all__ = [
    "EXECUTORS",
    "AgentContext",
    "AgentServices",
    "Executor",
    "StepError",
]
