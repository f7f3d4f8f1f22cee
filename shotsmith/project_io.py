"""Project file persistence.

A project is one JSON document holding the whole tree, generated media
included (as data URLs).
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict
from pathlib import Path
from typing import Any

from shotsmith.models import (
    PENDING,
    Character,
    CharacterVariation,
    Keyframe,
    NineGridData,
    NineGridPanel,
    ProjectState,
    RenderLog,
    Scene,
    ScriptData,
    Shot,
    VideoInterval,
)
from shotsmith.state import recover_orphans

logger = logging.getLogger(__name__)


def _str_id(value: Any) -> str:
    return "" if value is None else str(value)


def _keyframe(raw: dict) -> Keyframe:
    return Keyframe(
        id=_str_id(raw["id"]),
        type=raw.get("type", "start"),
        visual_prompt=raw.get("visual_prompt", ""),
        image_url=raw.get("image_url"),
        status=raw.get("status", PENDING),
    )


def _interval(raw: dict) -> VideoInterval:
    return VideoInterval(
        id=_str_id(raw["id"]),
        start_keyframe_id=_str_id(raw.get("start_keyframe_id")),
        end_keyframe_id=_str_id(raw.get("end_keyframe_id")),
        duration=int(raw.get("duration", 10)),
        motion_strength=int(raw.get("motion_strength", 5)),
        video_url=raw.get("video_url"),
        video_prompt=raw.get("video_prompt", ""),
        status=raw.get("status", PENDING),
    )


def _nine_grid(raw: dict) -> NineGridData:
    return NineGridData(
        id=_str_id(raw["id"]),
        panels=tuple(
            NineGridPanel(
                index=int(p.get("index", i)),
                shot_size=p.get("shot_size", ""),
                camera_angle=p.get("camera_angle", ""),
                description=p.get("description", ""),
            )
            for i, p in enumerate(raw.get("panels", []))
        ),
        image_url=raw.get("image_url"),
        prompt=raw.get("prompt", ""),
        status=raw.get("status", PENDING),
    )


def _shot(raw: dict) -> Shot:
    return Shot(
        id=_str_id(raw["id"]),
        scene_id=_str_id(raw.get("scene_id")),
        action_summary=raw.get("action_summary", ""),
        camera_movement=raw.get("camera_movement", ""),
        characters=tuple(_str_id(c) for c in raw.get("characters", [])),
        character_variations={
            _str_id(k): _str_id(v) for k, v in (raw.get("character_variations") or {}).items()
        },
        keyframes=tuple(_keyframe(k) for k in raw.get("keyframes", [])),
        interval=_interval(raw["interval"]) if raw.get("interval") else None,
        video_model=raw.get("video_model"),
        nine_grid=_nine_grid(raw["nine_grid"]) if raw.get("nine_grid") else None,
    )


def _character(raw: dict) -> Character:
    return Character(
        id=_str_id(raw["id"]),
        name=raw.get("name", ""),
        visual_prompt=raw.get("visual_prompt", ""),
        reference_image=raw.get("reference_image"),
        variations=tuple(
            CharacterVariation(
                id=_str_id(v["id"]),
                name=v.get("name", ""),
                visual_prompt=v.get("visual_prompt", ""),
                reference_image=v.get("reference_image"),
                status=v.get("status", PENDING),
            )
            for v in raw.get("variations", [])
        ),
        status=raw.get("status", PENDING),
    )


def _scene(raw: dict) -> Scene:
    return Scene(
        id=_str_id(raw["id"]),
        location=raw.get("location", ""),
        time=raw.get("time", ""),
        atmosphere=raw.get("atmosphere", ""),
        visual_prompt=raw.get("visual_prompt", ""),
        reference_image=raw.get("reference_image"),
        status=raw.get("status", PENDING),
    )


def project_from_dict(raw: dict) -> ProjectState:
    """Build a ProjectState from its JSON form.

    Raises:
        ValueError: If a required field is missing.
    """
    try:
        script_raw = raw.get("script")
        script = None
        if script_raw:
            script = ScriptData(
                title=script_raw.get("title", ""),
                characters=tuple(_character(c) for c in script_raw.get("characters", [])),
                scenes=tuple(_scene(s) for s in script_raw.get("scenes", [])),
            )
        return ProjectState(
            id=_str_id(raw["id"]),
            title=raw.get("title", ""),
            visual_style=raw.get("visual_style", "live-action"),
            language=raw.get("language", "English"),
            script=script,
            shots=tuple(_shot(s) for s in raw.get("shots", [])),
            render_logs=tuple(RenderLog(**log) for log in raw.get("render_logs", [])),
        )
    except (KeyError, TypeError) as exc:
        raise ValueError(f"Invalid project data: {exc}") from exc


def project_to_dict(state: ProjectState) -> dict:
    return asdict(state)


def load_project(path: str | Path) -> ProjectState:
    """Load a project file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file is not a valid project.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Project file not found: {path}")
    with open(path, "r", encoding="utf-8") as f:
        raw = json.load(f)
    if not isinstance(raw, dict):
        raise ValueError(f"Project file must hold a JSON object: {path}")
    return project_from_dict(raw)


def save_project(path: str | Path, state: ProjectState) -> None:
    """Write a project file, creating parent directories.

    The document is written to a sibling temporary file first and moved into
    place, so an interrupted save leaves the previous file intact.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    try:
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(project_to_dict(state), f, indent=2, ensure_ascii=False)
        os.replace(tmp, path)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise


def open_project(path: str | Path) -> ProjectState:
    """Load a project and fail the jobs a previous run left in flight."""
    state = load_project(path)
    state, swept = recover_orphans(state)
    if swept:
        logger.warning("Marked %d interrupted generation(s) as failed in %s", swept, path)
        save_project(path, state)
    return state
