"""Step input building.

Each executor receives a plain dict assembled from the pipeline's run
configuration and the results of the steps before it.
"""

from __future__ import annotations

from typing import Any

from pipeforge.pipeline import steps
from pipeforge.pipeline.models import Pipeline, PipelineType


def build_step_input(pipeline: Pipeline, step: str) -> dict[str, Any]:
    if pipeline.pipeline_type == PipelineType.MUSIC_VIDEO:
        return _music_video_input(pipeline, step)
    return _video_input(pipeline, step)


def _result(pipeline: Pipeline, step: str) -> dict[str, Any]:
    return pipeline.get_step_state(step).result or {}


def _video_input(pipeline: Pipeline, step: str) -> dict[str, Any]:
    config = pipeline.config
    inputs: dict[str, Any] = {
        "theme": config.get("theme", ""),
        "duration": config.get("duration", 60),
        "platform": config.get("platform", "youtube"),
    }

    if step != steps.THEME_DIRECTOR:
        inputs["theme_concept"] = _result(pipeline, steps.THEME_DIRECTOR)

    if step in (steps.VISUAL_DIRECTOR, steps.IMAGE_GENERATOR, steps.VIDEO_COMPOSER):
        inputs["music_concept"] = _result(pipeline, steps.MUSIC_COMPOSER)

    if step in (steps.IMAGE_GENERATOR, steps.VIDEO_COMPOSER):
        visual = _result(pipeline, steps.VISUAL_DIRECTOR)
        inputs["scenes"] = visual.get("scenes", [])
        inputs["style_guide"] = visual.get("style_guide", {})

    if step == steps.VIDEO_COMPOSER:
        inputs["images"] = _result(pipeline, steps.IMAGE_GENERATOR).get("images", [])
        inputs["music_url"] = _result(pipeline, steps.MUSIC_COMPOSER).get("audio_url")

    return inputs


def _music_video_input(pipeline: Pipeline, step: str) -> dict[str, Any]:
    config = pipeline.config
    inputs: dict[str, Any] = {
        "song_brief": config.get("song_brief") or config.get("theme", ""),
    }

    concept = _result(pipeline, steps.SONG_ARCHITECT)
    if step in (steps.SUNO_EXPERT, steps.SONG_SELECTOR):
        inputs["song_concept"] = concept

    if step == steps.SONG_SELECTOR:
        inputs["suno_result"] = _result(pipeline, steps.SUNO_EXPERT)

    if step == steps.VISUAL_DESIGNER:
        inputs["hook"] = concept.get("hook", "")
        inputs["song_title"] = concept.get("song_title", "Untitled")
        inputs["mood"] = concept.get("mood", "neutral")
        inputs["genre"] = concept.get("genre", "pop")
        inputs["selected_audio_url"] = _result(pipeline, steps.SONG_SELECTOR).get(
            "selected_audio_url"
        )

    return inputs
