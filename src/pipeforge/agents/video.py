"""Executors for the ``video`` pipeline.

theme_director → music_composer → visual_director → image_generator → video_composer
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from pipeforge.agents.base import AgentContext, StepError, dig
from pipeforge.providers.errors import ProviderError
from pipeforge.providers.poller import TaskFailedError, poll_task

logger = logging.getLogger(__name__)

KEN_BURNS_DIRECTIONS = ("up", "down", "left", "right")

VIDEO_SETTINGS = {
    "resolution": "1920x1080",
    "fps": 30,
    "format": "mp4",
    "codec": "libx264",
    "audio_codec": "aac",
}

_STYLE_MODIFIERS = {
    "anime": "anime style, vibrant colors, dynamic composition",
    "realistic": "photorealistic, high detail, natural lighting",
    "abstract": "abstract art, bold shapes, artistic interpretation",
    "cinematic": "cinematic lighting, dramatic composition, film quality",
    "minimalist": "minimalist design, clean lines, simple composition",
}

_MOOD_MODIFIERS = {
    "happy": "bright, cheerful, warm tones",
    "sad": "melancholic, muted colors, soft lighting",
    "energetic": "dynamic, vibrant, high contrast",
    "calm": "serene, soft focus, pastel tones",
    "romantic": "warm, soft lighting, dreamy atmosphere",
    "dark": "moody, shadows, dramatic contrast",
}


# ── Theme Director ───────────────────────────────────────────────────────────


async def theme_director(ctx: AgentContext, inputs: dict[str, Any]) -> dict[str, Any]:
    """Turn a free-form theme into a structured creative concept."""
    theme = inputs.get("theme") or ""
    duration = inputs.get("duration", 60)
    platform = inputs.get("platform", "youtube")

    await ctx.info(f"Starting theme analysis for: {theme}")
    await ctx.progress(10, "Analyzing theme...")

    prompt = (
        "Create a comprehensive concept for a music video based on the following:\n\n"
        f"Theme: {theme}\nDuration: {duration} seconds\nPlatform: {platform}\n\n"
        "Please analyze the theme and generate a creative concept that would work "
        "well for this platform and duration."
    )

    await ctx.progress(30, "Generating concept...")
    await ctx.thinking("Analyzing theme and creating creative concept...")
    raw = await ctx.call_llm(prompt)

    await ctx.progress(90, "Finalizing concept...")
    concept = {
        "title": raw.get("title") or theme,
        "description": raw.get("description", ""),
        "mood": raw.get("mood") or "neutral",
        "style": raw.get("style") or "cinematic",
        "target_audience": raw.get("target_audience") or "general",
        "keywords": raw.get("keywords") or [],
        "color_palette": raw.get("color_palette") or ["#000000", "#FFFFFF"],
        "duration": duration,
        "original_theme": theme,
    }

    await ctx.result("Theme concept created", concept)
    await ctx.progress(100, "Theme direction completed")
    return concept


# ── Music Composer ───────────────────────────────────────────────────────────


async def music_composer(ctx: AgentContext, inputs: dict[str, Any]) -> dict[str, Any]:
    """Write a music concept and render it with Suno."""
    theme = inputs.get("theme_concept") or {}
    duration = inputs.get("duration", 60)

    await ctx.info(f"Starting music composition for: {theme.get('title', 'Untitled')}")
    await ctx.progress(10, "Analyzing theme concept...")

    await ctx.thinking("Creating music concept based on theme...")
    prompt = (
        f"Create a music concept for a {duration}-second song based on this theme:\n\n"
        f"Title: {theme.get('title', 'Untitled')}\n"
        f"Mood: {theme.get('mood', 'neutral')}\n"
        f"Visual Style: {theme.get('style', 'cinematic')}\n"
        f"Keywords: {', '.join(theme.get('keywords') or [])}\n\n"
        "Generate a complete music concept including Suno prompt, lyrics, and segment timing."
    )
    concept = await ctx.call_llm(prompt)
    await ctx.progress(30, "Music concept created")

    await ctx.info("Sending to Suno API...")
    await ctx.progress(40, "Generating music with Suno v5...")
    task_id = await ctx.kie.submit_music(
        concept.get("suno_prompt") or "",
        style=concept.get("genre") or "pop",
        title=concept.get("title") or "Generated Song",
    )
    await ctx.progress(60, "Suno task created, waiting for completion...")

    async def _still_generating(attempt: int, _payload: dict[str, Any]) -> None:
        if attempt % 6 == 0:
            await ctx.info(f"Still generating music... (attempt {attempt})")

    await ctx.thinking("Waiting for Suno to generate music...")
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

    result = {
        "title": concept.get("title") or "Generated Song",
        "genre": concept.get("genre") or "pop",
        "bpm": concept.get("bpm") or 120,
        "lyrics": concept.get("lyrics") or "",
        "lyrics_segments": concept.get("lyrics_segments") or [],
        "suno_prompt": concept.get("suno_prompt") or "",
        "audio_url": dig(completed, ("data", "audio_url"), ("audio_url",), ("result", "audio_url")),
        "task_id": task_id,
        "raw_result": completed,
    }

    await ctx.result("Music composition completed", result)
    await ctx.progress(100, "Music ready")
    return result


# ── Visual Director ──────────────────────────────────────────────────────────


async def visual_director(ctx: AgentContext, inputs: dict[str, Any]) -> dict[str, Any]:
    """Storyboard the video into timed scenes with image prompts."""
    theme = inputs.get("theme_concept") or {}
    music = inputs.get("music_concept") or {}
    duration = inputs.get("duration", 60)

    await ctx.info(f"Starting visual direction for: {theme.get('title', 'Untitled')}")
    await ctx.progress(10, "Analyzing theme and music...")

    await ctx.thinking("Analyzing theme concept and music structure...")
    await ctx.progress(20, "Creating storyboard...")
    prompt = (
        "Create a visual storyboard for a music video based on:\n\n"
        f"Title: {theme.get('title', 'Untitled')}\n"
        f"Mood: {theme.get('mood', 'neutral')}\n"
        f"Visual Style: {theme.get('style', 'cinematic')}\n"
        f"Color Palette: {', '.join(theme.get('color_palette') or [])}\n"
        f"Total Duration: {duration} seconds\n\n"
        f"Lyrics:\n{music.get('lyrics', '')}\n\n"
        "Lyrics Segments (for timing reference):\n"
        f"{json.dumps(music.get('lyrics_segments') or [], indent=2)}\n\n"
        "Create scenes that:\n"
        "1. Match the emotional arc of the lyrics\n"
        "2. Maintain visual consistency with the style guide\n"
        "3. Include detailed image prompts for AI image generation\n"
        "4. Specify appropriate transitions between scenes"
    )
    raw = await ctx.call_llm(prompt)

    await ctx.progress(70, "Refining scene descriptions...")
    scenes = build_scenes(raw.get("scenes") or [], theme, duration)

    await ctx.progress(90, "Generating image prompts...")
    output = {
        "scenes": scenes,
        "style_guide": build_style_guide(theme, raw),
        "total_duration": duration,
        "scene_count": len(scenes),
    }

    await ctx.result(
        "Visual direction completed",
        {"scene_count": len(scenes), "total_duration": duration},
    )
    await ctx.progress(100, "Storyboard ready")
    return output


def build_scenes(
    raw_scenes: list[dict[str, Any]], theme: dict[str, Any], duration: float
) -> list[dict[str, Any]]:
    """Number the scenes, lay them on a timeline and enrich their prompts."""
    style = theme.get("style") or "cinematic"
    mood = theme.get("mood") or "neutral"
    palette = theme.get("color_palette") or []
    default_duration = duration / len(raw_scenes) if raw_scenes else 5

    scenes = []
    current = 0
    for index, scene in enumerate(raw_scenes):
        scene_duration = scene.get("duration") or default_duration
        scenes.append(
            {
                "number": index + 1,
                "section": scene.get("section") or f"scene_{index + 1}",
                "start_time": current,
                "end_time": current + scene_duration,
                "duration": scene_duration,
                "description": scene.get("description", ""),
                "image_prompt": enhance_image_prompt(
                    scene.get("image_prompt") or scene.get("description") or "",
                    style,
                    mood,
                    palette,
                ),
                "transition": scene.get("transition") or "fade",
            }
        )
        current += scene_duration
    return scenes


def enhance_image_prompt(prompt: str, style: str, mood: str, palette: list[str]) -> str:
    style_modifiers = _STYLE_MODIFIERS.get(style, "high quality, professional")
    mood_modifiers = _MOOD_MODIFIERS.get(mood, "")
    color_note = f"Color palette: {', '.join(palette)}" if palette else ""
    return f"{prompt}. {style_modifiers}. {mood_modifiers}. {color_note}".strip()


def build_style_guide(theme: dict[str, Any], raw: dict[str, Any]) -> dict[str, Any]:
    guide = raw.get("style_guide") or {}
    return {
        "art_style": guide.get("art_style") or theme.get("style") or "cinematic",
        "color_palette": guide.get("color_palette") or theme.get("color_palette") or [],
        "character_consistency": guide.get("character_consistency")
        or "Maintain consistent character appearance across all scenes",
        "lighting": guide.get("lighting") or "Consistent lighting matching the mood",
        "aspect_ratio": "16:9",
    }


# ── Image Generator ──────────────────────────────────────────────────────────


async def image_generator(ctx: AgentContext, inputs: dict[str, Any]) -> dict[str, Any]:
    """Render one image per scene.

    A scene whose submission or generation fails is reported in
    ``details`` and counted in ``total_failed``; the step itself succeeds.
    """
    scenes = inputs.get("scenes") or []
    style_guide = inputs.get("style_guide") or {}
    if not scenes:
        raise StepError("No scenes provided for image generation")

    total = len(scenes)
    await ctx.info(f"Starting image generation for {total} scenes")
    await ctx.progress(5, "Preparing image generation...")

    details: dict[int, dict[str, Any]] = {}
    await ctx.thinking(f"Submitting {total} image generation tasks to Nano Banana...")
    for index, scene in enumerate(scenes):
        number = scene.get("number") or index + 1
        prompt = build_image_prompt(scene, style_guide)
        try:
            await ctx.info(f"Generating image for scene {number}...")
            task_id = await ctx.kie.submit_image(
                prompt, aspect_ratio=style_guide.get("aspect_ratio") or "16:9"
            )
            details[number] = {
                "scene_number": number,
                "prompt": prompt,
                "task_id": task_id,
                "status": "pending",
            }
        except Exception as exc:
            await ctx.error(f"Failed to submit scene {number}: {exc}")
            details[number] = {
                "scene_number": number,
                "prompt": prompt,
                "status": "failed",
                "error": str(exc),
            }
        await ctx.progress(
            int((index + 1) / total * 40) + 5, f"Submitted {index + 1}/{total} images..."
        )

    await ctx.progress(50, "Waiting for image generation to complete...")
    await ctx.thinking("Polling Nano Banana for task completion...")

    pending = [d for d in details.values() if d["status"] == "pending"]
    finished = 0

    async def _await_scene(detail: dict[str, Any]) -> None:
        nonlocal finished
        number = detail["scene_number"]
        try:
            payload = await poll_task(
                ctx.kie.image_status,
                detail["task_id"],
                interval=ctx.poll.interval,
                max_attempts=ctx.poll.image_max_attempts,
            )
        except (TaskFailedError, TimeoutError, ProviderError) as exc:
            detail["status"] = "failed"
            detail["error"] = str(exc) or "Unknown error"
            await ctx.error(f"Scene {number} image failed: {detail['error']}")
        else:
            detail["status"] = "completed"
            detail["image_url"] = dig(
                payload,
                ("data", "output"),
                ("output",),
                ("result", "output"),
                ("image_url",),
            )
            await ctx.info(f"Scene {number} image completed")
        finished += 1
        await ctx.progress(
            int(finished / len(pending) * 45) + 50,
            f"Completed {finished}/{total} images...",
        )

    # An error escaping one scene cancels the sibling polls
    try:
        async with asyncio.TaskGroup() as group:
            for detail in pending:
                group.create_task(_await_scene(detail))
    except ExceptionGroup as eg:
        raise eg.exceptions[0] from eg

    await ctx.progress(95, "Finalizing image results...")
    images = [
        {
            "scene_number": number,
            "image_url": d["image_url"],
            "prompt": d["prompt"],
        }
        for number, d in details.items()
        if d["status"] == "completed" and d.get("image_url")
    ]
    failed = total - len(images)

    await ctx.result(
        "Image generation completed",
        {"total": total, "completed": len(images), "failed": failed},
    )
    await ctx.progress(100, "All images ready")
    return {
        "images": images,
        "total_generated": len(images),
        "total_failed": failed,
        "details": {str(k): v for k, v in details.items()},
    }


def build_image_prompt(scene: dict[str, Any], style_guide: dict[str, Any]) -> str:
    prompt = scene.get("image_prompt") or scene.get("description") or ""
    art_style = style_guide.get("art_style")
    palette = ", ".join(style_guide.get("color_palette") or [])
    if art_style:
        prompt += f". Style: {art_style}"
    if palette:
        prompt += f". Color scheme: {palette}"
    return prompt + ". High quality, detailed, 16:9 aspect ratio, professional photography"


# ── Video Composer ───────────────────────────────────────────────────────────


async def video_composer(ctx: AgentContext, inputs: dict[str, Any]) -> dict[str, Any]:
    """Plan the final cut: per-image timing, transitions and Ken Burns motion."""
    images = inputs.get("images") or []
    music_url = inputs.get("music_url")
    scenes = inputs.get("scenes") or []
    duration = inputs.get("duration", 60)
    if not images:
        raise StepError("No images provided for video composition")

    await ctx.info(f"Starting video composition with {len(images)} images")
    await ctx.progress(10, "Preparing composition...")

    await ctx.thinking("Creating composition timeline...")
    scene_info = [
        {
            "number": s.get("number", 0),
            "section": s.get("section", ""),
            "duration": s.get("duration", 0),
            "transition": s.get("transition") or "fade",
        }
        for s in scenes
    ]
    prompt = (
        "Create video composition instructions for:\n"
        f"- {len(images)} images\n- Total duration: {duration} seconds\n\n"
        f"Scene information:\n{json.dumps(scene_info, indent=2)}\n\n"
        "Provide timing and effects for each scene. Include Ken Burns effects "
        "(zoom, pan) for visual interest."
    )
    plan = await ctx.call_llm(prompt)
    await ctx.progress(30, "Composition plan created")

    await ctx.progress(50, "Building video composition...")
    composition = build_composition(images, plan.get("composition") or [], scenes)

    output = {
        "images": prepare_images(images, composition),
        "audio_url": music_url,
        "composition": composition,
        "settings": dict(VIDEO_SETTINGS),
        "total_duration": duration,
    }

    await ctx.result(
        "Video composition prepared",
        {"image_count": len(images), "total_duration": duration, "has_audio": bool(music_url)},
    )
    await ctx.progress(100, "Composition ready for encoding")
    return output


def build_composition(
    images: list[dict[str, Any]],
    planned: list[dict[str, Any]],
    scenes: list[dict[str, Any]],
) -> list[dict[str, Any]]:
    entries = planned or default_composition(images, scenes)
    return [
        {
            "scene": item.get("scene") or index + 1,
            "duration": item.get("duration") or 5,
            "transition_in": item.get("transition_in") or "fade",
            "transition_out": item.get("transition_out") or "fade",
            "transition_duration": item.get("transition_duration", 0.5),
            "ken_burns": normalize_ken_burns(item.get("ken_burns")),
        }
        for index, item in enumerate(entries)
    ]


def default_composition(
    images: list[dict[str, Any]], scenes: list[dict[str, Any]]
) -> list[dict[str, Any]]:
    composition = []
    for index, image in enumerate(images):
        scene = scenes[index] if index < len(scenes) else {}
        composition.append(
            {
                "scene": image.get("scene_number") or index + 1,
                "duration": scene.get("duration") or 5,
                "transition_in": "fade" if index == 0 else scene.get("transition") or "fade",
                "transition_out": "fade",
                "transition_duration": 0.5,
                "ken_burns": {
                    "zoom": round(1.0 + (index % 3) * 0.05, 2),
                    "direction": KEN_BURNS_DIRECTIONS[index % 4],
                },
            }
        )
    return composition


def normalize_ken_burns(ken_burns: dict[str, Any] | None) -> dict[str, Any]:
    if not ken_burns:
        return {"zoom": 1.05, "direction": "up"}
    zoom = ken_burns.get("zoom", 1.05)
    direction = ken_burns.get("direction")
    return {
        "zoom": min(max(float(zoom), 1.0), 1.3),
        "direction": direction if direction in KEN_BURNS_DIRECTIONS else "up",
    }


def prepare_images(
    images: list[dict[str, Any]], composition: list[dict[str, Any]]
) -> list[dict[str, Any]]:
    by_scene = {c["scene"]: c for c in composition}
    prepared = []
    for image in images:
        number = image.get("scene_number", 0)
        comp = by_scene.get(number, {})
        prepared.append(
            {
                "scene_number": number,
                "url": image.get("image_url") or image.get("url") or "",
                "duration": comp.get("duration", 5),
                "transition_in": comp.get("transition_in", "fade"),
                "transition_out": comp.get("transition_out", "fade"),
                "ken_burns": comp.get("ken_burns", {"zoom": 1.05, "direction": "up"}),
            }
        )
    return sorted(prepared, key=lambda p: p["scene_number"])
