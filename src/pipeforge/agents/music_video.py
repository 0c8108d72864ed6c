"""Executors for the ``music_video`` pipeline.

song_architect → suno_expert → song_selector → visual_designer
"""

from __future__ import annotations

import json
import logging
from typing import Any

from pipeforge.agents.base import AgentContext, StepError, dig
from pipeforge.providers.poller import TaskFailedError, poll_task

logger = logging.getLogger(__name__)

REQUIRED_CONCEPT_FIELDS = ("song_structure", "full_lyrics", "hook", "song_title", "genre", "mood")

DEFAULT_SUNO_STYLE = "pop, catchy, melodic"
COVER_PROMPT_SUFFIX = ", 16:9 aspect ratio, high quality, no text, no watermarks, no logos"


async def song_architect(ctx: AgentContext, inputs: dict[str, Any]) -> dict[str, Any]:
    """Design song structure, lyrics, hook and title from the brief."""
    brief = inputs.get("song_brief") or ""

    await ctx.info("Starting song architecture design")
    await ctx.progress(10, "Analyzing song brief...")
    await ctx.thinking("Understanding the song requirements...")

    prompt = (
        f"Create a complete song concept based on this brief:\n\n{brief}\n\n"
        "Design the full song structure, write compelling lyrics, identify the hook, "
        "and derive a memorable title from it.\n\n"
        "Remember:\n"
        "- The hook should be 3-7 words and be the most catchy line\n"
        "- The title MUST come from the hook\n"
        "- Total duration should be 2-4 minutes\n"
        "- Use the same language as the brief for lyrics"
    )

    await ctx.progress(30, "Designing song structure...")
    concept = await ctx.call_llm(prompt)

    await ctx.progress(70, "Finalizing song concept...")
    for name in REQUIRED_CONCEPT_FIELDS:
        if not concept.get(name):
            await ctx.error(f"Missing required field: {name}")

    word_count = len(str(concept.get("hook") or "").split())
    if word_count < 2 or word_count > 10:
        await ctx.info(f"Hook word count ({word_count}) outside ideal range (3-7 words)")

    await ctx.progress(90, "Song architecture complete")
    await ctx.result(
        "Song concept created successfully",
        {
            "title": concept.get("song_title") or "Untitled",
            "hook": concept.get("hook") or "",
            "genre": concept.get("genre") or "pop",
        },
    )
    await ctx.progress(100, "Ready for Suno optimization")
    return concept


async def suno_expert(ctx: AgentContext, inputs: dict[str, Any]) -> dict[str, Any]:
    """Rewrite the concept for Suno and generate the song versions."""
    concept = inputs.get("song_concept") or {}

    await ctx.info("Starting Suno optimization")
    await ctx.progress(10, "Analyzing song concept for Suno...")
    await ctx.thinking("Applying Suno best practices...")

    prompt = (
        "Optimize this song concept for Suno AI music generation:\n\n"
        f"{json.dumps(concept, indent=2, ensure_ascii=False)}\n\n"
        "Apply all Suno best practices:\n"
        "1. Add proper section tags [Intro], [Verse], [Chorus], etc.\n"
        "2. Keep style under 200 characters\n"
        "3. Keep title under 80 characters\n"
        "4. Ensure lyrics are under 3000 characters\n"
        "5. Use English for style tags\n"
        "6. Be specific with genre, mood, and instruments"
    )
    await ctx.progress(20, "Optimizing lyrics and style...")
    optimized = await ctx.call_llm(prompt)
    await ctx.progress(40, "Suno optimization complete")

    lyrics = optimized.get("optimized_lyrics") or ""
    title = optimized.get("suno_title") or "Generated Song"
    instrumental = bool(optimized.get("instrumental", False))
    has_lyrics = bool(lyrics) and not instrumental

    await ctx.info("Sending to Suno API...")
    await ctx.progress(50, "Generating music with Suno V5...")
    task_id = await ctx.kie.submit_music(
        lyrics if has_lyrics else (optimized.get("suno_prompt") or title),
        custom_mode=has_lyrics,
        instrumental=instrumental,
        style=optimized.get("suno_style") or DEFAULT_SUNO_STYLE,
        title=title,
    )
    await ctx.progress(60, "Suno task created, waiting for completion...")

    async def _still_generating(attempt: int, _payload: dict[str, Any]) -> None:
        if attempt % 6 == 0:
            await ctx.info(f"Still generating music... ({attempt} attempts)")

    await ctx.thinking("Waiting for Suno to generate music (this may take 1-3 minutes)...")
    try:
        completed = await poll_task(
            ctx.kie.music_status,
            task_id,
            interval=ctx.poll.interval,
            max_attempts=ctx.poll.music_max_attempts,
            on_attempt=_still_generating,
        )
    except TaskFailedError as exc:
        raise StepError(f"Suno generation failed: {exc}") from exc
    await ctx.progress(90, "Music generation completed")

    clips = dig(completed, ("response", "sunoData"), ("data", "sunoData"), ("sunoData",)) or []
    versions = [
        {
            "index": index,
            "audio_url": clip.get("audioUrl") or clip.get("audio_url"),
            "clip_id": clip.get("clipId") or clip.get("id"),
            "duration": clip.get("duration"),
            "title": clip.get("title"),
        }
        for index, clip in enumerate(clips)
    ]

    result = {
        "optimized_lyrics": lyrics,
        "suno_style": optimized.get("suno_style") or "",
        "suno_title": optimized.get("suno_title") or "",
        "recommendations_applied": optimized.get("recommendations_applied") or [],
        "quality_checks": optimized.get("quality_checks") or [],
        "versions": versions,
        "task_id": task_id,
        "raw_result": completed,
    }

    await ctx.result(
        "Suno music generation completed",
        {"task_id": task_id, "versions_count": len(versions)},
    )
    await ctx.progress(100, "Music ready for selection")
    return result


async def song_selector(ctx: AgentContext, inputs: dict[str, Any]) -> dict[str, Any]:
    """Pick the best of the generated versions."""
    concept = inputs.get("song_concept") or {}
    versions = (inputs.get("suno_result") or {}).get("versions") or []

    await ctx.info("Starting song selection process")
    await ctx.progress(10, "Analyzing generated versions...")

    if not versions:
        await ctx.error("No versions available for selection")
        raise StepError("No song versions available for selection")

    await ctx.info(f"Found {len(versions)} version(s) to evaluate")

    if len(versions) == 1:
        await ctx.info("Only one version available, selecting automatically")
        await ctx.progress(100, "Single version selected")
        return _single_version_result(versions[0])

    await ctx.thinking("Evaluating song versions...")
    await ctx.progress(30, "Comparing versions...")
    summary = [
        {
            "index": index,
            "duration": v.get("duration") or "unknown",
            "title": v.get("title") or "unknown",
            "has_audio_url": bool(v.get("audio_url")),
        }
        for index, v in enumerate(versions)
    ]
    prompt = (
        "Evaluate and select the best song version.\n\n"
        "## Original Song Concept\n"
        f"- Title: {concept.get('song_title', 'Unknown')}\n"
        f"- Genre: {concept.get('genre', 'pop')}\n"
        f"- Mood: {concept.get('mood', 'neutral')}\n"
        f"- Hook: {concept.get('hook', '')}\n\n"
        f"## Available Versions\n{json.dumps(summary, indent=2)}\n\n"
        "## Your Task\n"
        "1. Evaluate each version based on metadata\n"
        "2. Score each version (0-100)\n"
        "3. Select the best version\n"
        "4. Provide detailed reasoning\n\n"
        "Remember: You cannot listen to the audio, so evaluate based on:\n"
        "- Duration appropriateness (2-4 minutes ideal)\n"
        "- Completion status\n"
        "- Alignment with original concept\n"
        "- If all else is equal, select version 0"
    )

    await ctx.progress(50, "Getting AI evaluation...")
    evaluation = await ctx.call_llm(prompt)

    await ctx.progress(70, "Processing selection...")
    selected = evaluation.get("selected_index", 0)
    if not isinstance(selected, int) or not 0 <= selected < len(versions):
        await ctx.info(f"Invalid selected index {selected}, defaulting to 0")
        selected = 0
    version = versions[selected]

    result = {
        "selected_index": selected,
        "selected_audio_url": version.get("audio_url"),
        "selected_clip_id": version.get("clip_id"),
        "selected_duration": version.get("duration"),
        "evaluation": evaluation.get("evaluation") or {},
        "selection_reasoning": evaluation.get("selection_reasoning") or "Default selection",
        "recommendation": evaluation.get("recommendation") or "Proceed with selected version",
    }

    await ctx.result(
        "Song selection completed",
        {"selected_index": selected, "reasoning": result["selection_reasoning"]},
    )
    await ctx.progress(100, "Song selected - ready for visual design")
    return result


def _single_version_result(version: dict[str, Any]) -> dict[str, Any]:
    return {
        "selected_index": 0,
        "selected_audio_url": version.get("audio_url"),
        "selected_clip_id": version.get("clip_id"),
        "selected_duration": version.get("duration"),
        "evaluation": {
            "version_0": {
                "total_score": 100,
                "criteria_scores": {
                    "concept_alignment": 25,
                    "technical_quality": 25,
                    "hook_potential": 25,
                    "production_consistency": 25,
                },
                "strengths": ["Only available version"],
                "concerns": [],
            }
        },
        "selection_reasoning": "Only one version was generated, automatically selected.",
        "recommendation": (
            "Proceed with this version. Consider regenerating if audio quality is unsatisfactory."
        ),
    }


async def visual_designer(ctx: AgentContext, inputs: dict[str, Any]) -> dict[str, Any]:
    """Design and render the single cover image for the song."""
    hook = inputs.get("hook") or ""
    title = inputs.get("song_title") or "Untitled"
    mood = inputs.get("mood") or "neutral"
    genre = inputs.get("genre") or "pop"

    await ctx.info(f"Starting visual design for: {title}")
    await ctx.progress(10, "Analyzing song concept for visual...")
    await ctx.thinking("Creating visual concept based on hook and title...")

    prompt = (
        "Create a compelling visual concept for a music video based on:\n\n"
        "## Song Information\n"
        f"- **Title**: {title}\n- **Hook**: {hook}\n- **Mood**: {mood}\n- **Genre**: {genre}\n\n"
        "## Your Task\n"
        "1. Design a single powerful image that captures the essence of the hook\n"
        "2. The image will be used as a static background for the music video\n"
        "3. Aspect ratio must be 16:9 (widescreen)\n"
        "4. Create a detailed prompt for AI image generation (100-300 words)\n"
        "5. NO text or words in the image\n"
        "6. Consider the emotional connection between visual and song\n\n"
        "Make the visual striking and memorable, suitable for a music video thumbnail."
    )
    await ctx.progress(20, "Designing visual concept...")
    concept = await ctx.call_llm(prompt)
    await ctx.progress(40, "Visual concept ready")

    image_prompt = concept.get("image_prompt") or ""
    if not image_prompt:
        await ctx.error("No image prompt generated")
        raise StepError("Failed to generate image prompt")

    await ctx.info("Sending to Nano Banana API...")
    await ctx.progress(50, "Generating image...")
    task_id = await ctx.kie.submit_image(image_prompt + COVER_PROMPT_SUFFIX, aspect_ratio="16:9")
    await ctx.progress(80, "Image generation complete")

    await ctx.thinking("Waiting for image generation...")
    try:
        completed = await poll_task(
            ctx.kie.image_status,
            task_id,
            interval=ctx.poll.interval,
            max_attempts=ctx.poll.cover_max_attempts,
        )
    except TaskFailedError as exc:
        raise StepError(f"Image generation failed: {exc}") from exc

    image_url = dig(
        completed,
        ("response", "imageUrl"),
        ("data", "imageUrl"),
        ("imageUrl",),
        ("image_url",),
        ("url",),
    )
    if not image_url:
        await ctx.error("Failed to get image URL")
        raise StepError("Failed to generate image")
    await ctx.progress(95, "Image ready")

    result = {
        "visual_concept": concept.get("visual_concept") or "",
        "image_prompt": image_prompt,
        "image_url": image_url,
        "aspect_ratio": "16:9",
        "style_references": concept.get("style_references") or [],
        "color_palette": concept.get("color_palette") or [],
        "composition": concept.get("composition") or [],
        "mood_alignment": concept.get("mood_alignment") or [],
        "task_id": task_id,
    }

    await ctx.result(
        "Visual design completed",
        {"image_url": image_url, "concept": result["visual_concept"]},
    )
    await ctx.progress(100, "Ready for video composition")
    return result
