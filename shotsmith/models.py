"""Data models for the generation orchestration engine.

The project tree (shots, keyframes, intervals, characters...) is made of
frozen dataclasses with tuple collections. Every change produces a new tree
through ``dataclasses.replace``; nothing is mutated in place.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping

# Generation status values shared by every owning entity.
PENDING = "pending"
GENERATING = "generating"
COMPLETED = "completed"
FAILED = "failed"

# Extra nine-grid states: panel descriptions and the composite image are two
# separate remote calls with a user confirmation in between.
GENERATING_PANELS = "generating_panels"
PANELS_READY = "panels_ready"
GENERATING_IMAGE = "generating_image"

GENERATING_STATES = frozenset({GENERATING, GENERATING_PANELS, GENERATING_IMAGE})

MODEL_KINDS = ("chat", "image", "video")


@dataclass(frozen=True)
class GenerationRequest:
    """One logical generation call.

    Attributes:
        kind: "chat", "image" or "video".
        prompt: Prompt text (opaque to the engine).
        reference_images: Data URLs sent alongside the prompt.
        aspect_ratio: "16:9", "9:16" or "1:1".
        duration: Video length in seconds (video only).
        model_hint: Explicit model id, or None for the active model.
    """
    kind: str
    prompt: str
    reference_images: tuple[str, ...] = ()
    aspect_ratio: str = "16:9"
    duration: int = 8
    model_hint: str | None = None


@dataclass(frozen=True)
class ResolvedModel:
    """A concrete endpoint for one call. Built fresh on every resolution.

    Attributes:
        model_id: Registry id of the model.
        kind: "chat", "image" or "video".
        provider_id: Id of the provider the model belongs to.
        base_url: Provider base URL without trailing slash.
        api_key: Bearer key picked for this call.
        api_model: Model name sent in the request body.
        endpoint_path: Path appended to ``base_url``.
        mode: "sync" or "async" for video models, "sync" otherwise.
        supported_aspect_ratios: Ratios the model accepts.
        supported_durations: Durations (seconds) the model accepts.
        temperature: Default sampling temperature for chat models.
    """
    model_id: str
    kind: str
    provider_id: str
    base_url: str
    api_key: str
    api_model: str
    endpoint_path: str
    mode: str = "sync"
    supported_aspect_ratios: tuple[str, ...] = ()
    supported_durations: tuple[int, ...] = ()
    temperature: float = 0.7

    @property
    def url(self) -> str:
        return f"{self.base_url}{self.endpoint_path}"


@dataclass
class VideoTask:
    """Provider-side task of the async video protocol. Never persisted."""
    task_id: str
    provider_status: str = "queued"
    result_video_id: str | None = None
    progress: float | None = None
    error: str | None = None

    @property
    def is_done(self) -> bool:
        return self.provider_status in ("completed", "succeeded", "failed", "error")

    @property
    def is_success(self) -> bool:
        return self.provider_status in ("completed", "succeeded")


# ----------------------------------------------------------------------
# Project tree
# ----------------------------------------------------------------------


@dataclass(frozen=True)
class Keyframe:
    """A still anchoring the start or end of a shot."""
    id: str
    type: str  # start | end
    visual_prompt: str = ""
    image_url: str | None = None
    status: str = PENDING


@dataclass(frozen=True)
class VideoInterval:
    """The video generated between a shot's two keyframes."""
    id: str
    start_keyframe_id: str
    end_keyframe_id: str = ""
    duration: int = 10
    motion_strength: int = 5
    video_url: str | None = None
    video_prompt: str = ""
    status: str = PENDING


@dataclass(frozen=True)
class NineGridPanel:
    """One camera-angle variant inside a nine-grid panel set."""
    index: int
    shot_size: str
    camera_angle: str
    description: str


@dataclass(frozen=True)
class NineGridData:
    """Nine described camera angles of a shot plus their composite image.

    Attributes:
        id: Panel-set id (targets of state transitions).
        panels: Exactly nine panels once descriptions are generated.
        image_url: Composite 3x3 image as a data URL.
        prompt: Prompt used for the composite image.
        status: pending, generating_panels, panels_ready,
            generating_image, completed or failed.
    """
    id: str
    panels: tuple[NineGridPanel, ...] = ()
    image_url: str | None = None
    prompt: str = ""
    status: str = PENDING


@dataclass(frozen=True)
class CharacterVariation:
    """An alternative wardrobe look of a character."""
    id: str
    name: str
    visual_prompt: str = ""
    reference_image: str | None = None
    status: str = PENDING


@dataclass(frozen=True)
class Character:
    id: str
    name: str
    visual_prompt: str = ""
    reference_image: str | None = None
    variations: tuple[CharacterVariation, ...] = ()
    status: str = PENDING


@dataclass(frozen=True)
class Scene:
    id: str
    location: str = ""
    time: str = ""
    atmosphere: str = ""
    visual_prompt: str = ""
    reference_image: str | None = None
    status: str = PENDING


@dataclass(frozen=True)
class Shot:
    """A storyboard unit.

    Attributes:
        id: Unique shot id.
        scene_id: Id of the scene the shot takes place in.
        action_summary: What happens in the shot.
        camera_movement: Camera movement description.
        characters: Ids of the characters appearing in the shot.
        character_variations: Character id -> selected variation id.
        keyframes: Start and/or end keyframe.
        interval: Video generated between the keyframes.
        video_model: Preferred video model id for this shot.
        nine_grid: Optional nine-grid panel set.
    """
    id: str
    scene_id: str = ""
    action_summary: str = ""
    camera_movement: str = ""
    characters: tuple[str, ...] = ()
    character_variations: Mapping[str, str] = field(default_factory=dict)
    keyframes: tuple[Keyframe, ...] = ()
    interval: VideoInterval | None = None
    video_model: str | None = None
    nine_grid: NineGridData | None = None

    def keyframe(self, frame_type: str) -> Keyframe | None:
        for kf in self.keyframes:
            if kf.type == frame_type:
                return kf
        return None


@dataclass(frozen=True)
class ScriptData:
    title: str = ""
    characters: tuple[Character, ...] = ()
    scenes: tuple[Scene, ...] = ()

    def character(self, character_id: str) -> Character | None:
        for char in self.characters:
            if str(char.id) == str(character_id):
                return char
        return None

    def scene(self, scene_id: str) -> Scene | None:
        for scene in self.scenes:
            if str(scene.id) == str(scene_id):
                return scene
        return None


@dataclass(frozen=True)
class RenderLog:
    """One remote generation call, kept on the project for inspection."""
    id: str
    timestamp: float
    type: str  # character | character-variation | scene | keyframe | video | nine-grid
    resource_id: str
    resource_name: str
    status: str  # success | failed
    model: str
    prompt: str = ""
    error: str | None = None
    duration_ms: int = 0


@dataclass(frozen=True)
class ProjectState:
    """Root of the in-memory project tree."""
    id: str
    title: str = ""
    visual_style: str = "live-action"
    language: str = "English"
    script: ScriptData | None = None
    shots: tuple[Shot, ...] = ()
    render_logs: tuple[RenderLog, ...] = ()

    def shot(self, shot_id: str) -> Shot | None:
        for shot in self.shots:
            if shot.id == shot_id:
                return shot
        return None
