"""Reference images and consistency instructions for image generation."""

from __future__ import annotations

import logging

from shotsmith.models import ScriptData, Shot

logger = logging.getLogger(__name__)

_STRICT_BLOCK = """Generate a cinematic shot matching: "{prompt}"

Reference images:
- The first image is the scene reference (environment, lighting, palette) when a scene is set.
- The following images are character references.

Character consistency (highest priority):
- Faces, hair, clothing and body proportions must replicate the character references exactly.
- Do not reinterpret or restyle the characters.

Scene consistency:
- Keep the visual style, lighting and environment of the scene reference."""

_VARIATION_BLOCK = """Character outfit variation. The reference image shows the character's base look.

Generate the character wearing a new outfit described as: "{prompt}"

Requirements:
- Face and identity must match the reference exactly (eyes, nose, mouth, hair).
- The outfit must follow the description, not the reference clothing.
- Keep body proportions unchanged."""


def collect_reference_images(shot: Shot, script: ScriptData | None) -> list[str]:
    """Reference images for a shot, scene first.

    For each character on the shot, the selected wardrobe variation's image
    is used when the shot maps the character to a variation that has one;
    otherwise the character's base image. Characters with neither are
    skipped.
    """
    references: list[str] = []
    if script is None:
        return references

    scene = script.scene(shot.scene_id)
    if scene is not None and scene.reference_image:
        references.append(scene.reference_image)

    for char_id in shot.characters:
        char = script.character(char_id)
        if char is None:
            logger.debug("Shot %s references unknown character %s", shot.id, char_id)
            continue

        variation_id = shot.character_variations.get(char_id)
        if variation_id:
            variation = next((v for v in char.variations if v.id == variation_id), None)
            if variation is not None and variation.reference_image:
                references.append(variation.reference_image)
                continue

        if char.reference_image:
            references.append(char.reference_image)

    return references


def consistency_instructions(is_variation: bool) -> str:
    """The instruction block template for a strict or a variation render."""
    return _VARIATION_BLOCK if is_variation else _STRICT_BLOCK


def build_image_prompt(prompt: str, reference_images: list[str] | tuple[str, ...], is_variation: bool = False) -> str:
    """Wrap ``prompt`` in consistency instructions when references are sent."""
    if not reference_images:
        return prompt
    return consistency_instructions(is_variation).format(prompt=prompt)
