"""Prompt templates.

Wording here is free to change; the engine treats the results as opaque
strings.
"""

from __future__ import annotations

from shotsmith.models import NineGridPanel

VISUAL_STYLE_PROMPTS = {
    "live-action": "photorealistic, cinematic film quality, real actors, natural lighting, 8K detail",
    "anime": "Japanese anime style, cel shading, vibrant colours, expressive eyes, dynamic poses",
    "2d-animation": "classic hand-drawn 2D animation, smooth line work, painterly backgrounds",
    "3d-animation": "high-end 3D CGI animation, detailed textures, stylised characters, soft global illumination",
    "cyberpunk": "cyberpunk aesthetic, neon light, rain-soaked streets, holographic signage",
    "oil-painting": "oil painting, visible brushstrokes, rich textures, classical composition",
}

_FRAME_GUIDES = {
    "start": (
        "Start frame: establish the initial state and mood of the scene. Positions, poses and "
        "expressions must be clear and leave room for the coming motion."
    ),
    "end": (
        "End frame: show the final state after the action. Reflect where the subjects end up "
        "and the change of viewpoint the camera movement produces."
    ),
}

_CHARACTER_GUIDE = (
    "Character consistency: when character references are given, faces, hair, clothing and "
    "body proportions must match them exactly."
)

_SORA_VIDEO_TEMPLATE = """[Aspect ratio: {aspect_ratio}] Generate a smooth video from the first image (start frame) to the last image (end frame).

Action: {action}

Technical requirements:
- The video must open on the exact composition of the start frame.
- Camera movement: {camera}
- Motion between frames must be continuous, without jumps.
- Keep lighting, colour and character continuity throughout.
- Use {language} for any voiceover and subtitles."""

_VEO_VIDEO_TEMPLATE = """{action}

Camera movement: {camera}
Language: {language}"""

NINE_GRID_PANELS_PROMPT = """You are a storyboard artist. Break the following shot into nine distinct camera setups.

Shot action: {action}
Camera movement: {camera}
Scene: {scene}
Characters: {characters}
Visual style: {style}

Return JSON only, in this shape:
{{"panels": [{{"shot_size": "...", "camera_angle": "...", "description": "..."}}, ...]}}

Exactly nine panels. Vary shot size (extreme close-up to wide) and camera angle (eye level, high, low, dutch, over-the-shoulder...). Write descriptions in {language}."""

_NINE_GRID_IMAGE_TEMPLATE = """A single image laid out as a 3x3 storyboard grid of nine equal panels, thin white borders, no text or numbers.
Visual style: {style}

Panels, left to right, top to bottom:
{panels}

Every panel shows the same moment, characters and location from a different camera setup."""


def style_prompt(visual_style: str) -> str:
    return VISUAL_STYLE_PROMPTS.get(visual_style, visual_style)


def build_keyframe_prompt(
    base_prompt: str,
    visual_style: str,
    camera_movement: str,
    frame_type: str,
) -> str:
    """Compose the image prompt of a start or end keyframe."""
    frame_label = "start frame" if frame_type == "start" else "end frame"
    sections = [
        base_prompt.strip(),
        f"Visual style: {style_prompt(visual_style)}",
        f"Camera movement: {camera_movement or 'static'} ({frame_label})",
        _FRAME_GUIDES.get(frame_type, _FRAME_GUIDES["start"]),
        _CHARACTER_GUIDE,
    ]
    return "\n\n".join(s for s in sections if s)


def build_video_prompt(
    action_summary: str,
    camera_movement: str,
    video_model: str,
    language: str,
    aspect_ratio: str = "16:9",
) -> str:
    """Compose the video prompt; sora-2 gets the detailed transition template."""
    fields = {
        "action": action_summary,
        "camera": camera_movement or "static",
        "language": language,
        "aspect_ratio": aspect_ratio,
    }
    if video_model == "sora-2":
        return _SORA_VIDEO_TEMPLATE.format(**fields)
    return _VEO_VIDEO_TEMPLATE.format(**fields)


def build_nine_grid_panels_prompt(
    action_summary: str,
    camera_movement: str,
    scene: str,
    characters: list[str],
    visual_style: str,
    language: str,
) -> str:
    return NINE_GRID_PANELS_PROMPT.format(
        action=action_summary,
        camera=camera_movement or "static",
        scene=scene or "unspecified",
        characters=", ".join(characters) or "none",
        style=style_prompt(visual_style),
        language=language,
    )


def build_nine_grid_image_prompt(panels: tuple[NineGridPanel, ...] | list[NineGridPanel], visual_style: str) -> str:
    lines = [
        f"{p.index + 1}. {p.shot_size}, {p.camera_angle}: {p.description}"
        for p in sorted(panels, key=lambda p: p.index)
    ]
    return _NINE_GRID_IMAGE_TEMPLATE.format(style=style_prompt(visual_style), panels="\n".join(lines))
