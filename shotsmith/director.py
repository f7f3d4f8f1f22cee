"""Per-project orchestration of keyframe, video and asset generation."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import replace
from typing import Any, Awaitable, Callable

import httpx

from shotsmith.batch import BatchCoordinator, BatchReport
from shotsmith.completion import CompletionClient
from shotsmith.config import Config
from shotsmith.errors import ApiKeyError, ParseError
from shotsmith.imaging import crop_grid, to_data_url
from shotsmith.models import (
    GENERATING_IMAGE,
    GENERATING_PANELS,
    PANELS_READY,
    GenerationRequest,
    Keyframe,
    NineGridData,
    NineGridPanel,
    ProjectState,
    RenderLog,
    Shot,
    VideoInterval,
)
from shotsmith.prompts import (
    build_keyframe_prompt,
    build_nine_grid_image_prompt,
    build_nine_grid_panels_prompt,
    build_video_prompt,
    style_prompt,
)
from shotsmith.references import build_image_prompt, collect_reference_images
from shotsmith.resolver import ModelResolver
from shotsmith.state import (
    EntityNotFoundError,
    EntityStateMachine,
    ProjectStore,
    apply_update,
)
from shotsmith.video import VideoJobRunner

logger = logging.getLogger(__name__)

_DEFAULT_VIDEO_DURATION = 8


class Session:
    """The active configuration, including the API key in use.

    A missing key is fatal to the session: ``invalidate`` drops the global
    and legacy keys so the user is asked to authenticate again.
    """

    def __init__(self, config: Config) -> None:
        self.config = config
        self.valid = True

    def invalidate(self) -> None:
        logger.warning("API key missing or rejected, session reset")
        self.config = self.config.without_api_keys()
        self.valid = False

    def authenticate(self, api_key: str) -> None:
        self.config = self.config.with_global_api_key(api_key)
        self.valid = True


class Director:
    """Generates the media of one project.

    Usage::

        store = ProjectStore(open_project("project.json"))
        store.subscribe(lambda state: save_project("project.json", state))
        async with Director(store, Session(load_config())) as director:
            await director.generate_keyframe("shot-1", "start")
            await director.generate_video("shot-1")
    """

    def __init__(
        self,
        store: ProjectStore,
        session: Session,
        http: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.session = session
        self.machine = EntityStateMachine(store)
        self._sleep = sleep
        self._clock = clock
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(timeout=httpx.Timeout(60.0, connect=10.0))

    async def __aenter__(self) -> Director:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @property
    def state(self) -> ProjectState:
        return self.store.state

    def _completion(self) -> CompletionClient:
        # Built per call so a key change is seen by the next request.
        return CompletionClient(ModelResolver(self.session.config), http=self._http, sleep=self._sleep)

    def _video(self) -> VideoJobRunner:
        return VideoJobRunner(
            ModelResolver(self.session.config), http=self._http, sleep=self._sleep, clock=self._clock,
        )

    def _shot(self, shot_id: str) -> Shot:
        shot = self.state.shot(shot_id)
        if shot is None:
            raise EntityNotFoundError(shot_id)
        return shot

    def _model_label(self, kind: str, model_hint: str | None) -> str:
        return model_hint or self.session.config.active_models.get(kind, "")

    def _append_log(self, log: RenderLog) -> None:
        self.store.update(lambda s: replace(s, render_logs=s.render_logs + (log,)))

    async def _logged(
        self,
        log_type: str,
        resource_id: str,
        resource_name: str,
        model: str,
        prompt: str,
        operation: Callable[[], Awaitable[Any]],
    ) -> Any:
        """Run a remote generation, recording a RenderLog either way."""
        started = time.time()

        def log(status: str, error: str | None = None) -> None:
            self._append_log(RenderLog(
                id=f"log-{uuid.uuid4().hex[:12]}",
                timestamp=started,
                type=log_type,
                resource_id=resource_id,
                resource_name=resource_name,
                status=status,
                model=model,
                prompt=prompt,
                error=error,
                duration_ms=int((time.time() - started) * 1000),
            ))

        try:
            result = await operation()
        except ApiKeyError as exc:
            log("failed", str(exc))
            self.session.invalidate()
            raise
        except Exception as exc:
            log("failed", str(exc))
            raise
        log("success")
        return result

    def _upsert_keyframe(self, shot: Shot, frame_type: str, visual_prompt: str) -> str:
        existing = shot.keyframe(frame_type)
        if existing is not None:
            return existing.id
        kf = Keyframe(id=f"kf-{shot.id}-{frame_type}", type=frame_type, visual_prompt=visual_prompt)
        self.store.update(lambda s: apply_update(
            s, shot.id, lambda sh: replace(sh, keyframes=sh.keyframes + (kf,)),
        ))
        return kf.id

    async def execute(self, request: GenerationRequest) -> str:
        """Run a bare request that is not tied to a project entity.

        Returns:
            Chat text, or the image/video as a data URL.
        """
        try:
            return await self._dispatch(request)
        except ApiKeyError:
            self.session.invalidate()
            raise

    async def _dispatch(self, request: GenerationRequest) -> str:
        if request.kind == "chat":
            return await self._completion().chat(request.prompt, request.model_hint)
        if request.kind == "image":
            return await self._completion().generate_image(
                request.prompt, request.reference_images, request.aspect_ratio, request.model_hint,
            )
        if request.kind == "video":
            refs = request.reference_images
            return await self._video().generate(
                request.prompt,
                refs[0] if refs else None,
                refs[1] if len(refs) > 1 else None,
                request.model_hint,
                request.aspect_ratio,
                request.duration,
            )
        raise ValueError(f"Unknown request kind: {request.kind!r}")

    # ------------------------------------------------------------------
    # Keyframes and video
    # ------------------------------------------------------------------

    async def generate_keyframe(
        self,
        shot_id: str,
        frame_type: str = "start",
        aspect_ratio: str = "16:9",
        model_hint: str | None = None,
    ) -> str:
        """Generate the start or end still of a shot.

        Returns:
            The image as a data URL, also stored on the keyframe.
        """
        if frame_type not in ("start", "end"):
            raise ValueError(f"frame_type must be 'start' or 'end', got {frame_type!r}")

        shot = self._shot(shot_id)
        existing = shot.keyframe(frame_type)
        base_prompt = (existing.visual_prompt if existing else "") or shot.action_summary
        kf_id = self._upsert_keyframe(shot, frame_type, base_prompt)

        prompt = build_keyframe_prompt(base_prompt, self.state.visual_style, shot.camera_movement, frame_type)
        references = collect_reference_images(shot, self.state.script)
        final_prompt = build_image_prompt(prompt, references)

        async def operation() -> str:
            client = self._completion()
            return await client.generate_image(final_prompt, references, aspect_ratio, model_hint)

        return await self._logged(
            "keyframe", kf_id, f"Shot {shot.id} {frame_type} frame",
            self._model_label("image", model_hint), final_prompt,
            lambda: self.machine.run(kf_id, operation),
        )

    async def generate_video(
        self,
        shot_id: str,
        model_hint: str | None = None,
        aspect_ratio: str = "16:9",
        duration: int | None = None,
    ) -> str:
        """Generate the clip between a shot's keyframes.

        Raises:
            ValueError: If the shot has no completed start frame.
        """
        shot = self._shot(shot_id)
        start = shot.keyframe("start")
        if start is None or not start.image_url:
            raise ValueError(f"Shot {shot_id} has no start frame; generate it first")
        end = shot.keyframe("end")
        end_image = end.image_url if end is not None else None

        model_hint = model_hint or shot.video_model
        model_label = self._model_label("video", model_hint)
        if duration is None:
            duration = shot.interval.duration if shot.interval is not None else _DEFAULT_VIDEO_DURATION
        prompt = build_video_prompt(
            shot.action_summary, shot.camera_movement, model_label, self.state.language, aspect_ratio,
        )

        if shot.interval is None:
            interval = VideoInterval(
                id=f"video-{shot.id}",
                start_keyframe_id=start.id,
                end_keyframe_id=end.id if end is not None else "",
                duration=duration,
                video_prompt=prompt,
            )
            self.store.update(lambda s: apply_update(s, shot.id, lambda sh: replace(sh, interval=interval)))
            interval_id = interval.id
        else:
            interval_id = shot.interval.id

        async def operation() -> str:
            runner = self._video()
            return await runner.generate(prompt, start.image_url, end_image, model_hint, aspect_ratio, duration)

        return await self._logged(
            "video", interval_id, f"Shot {shot.id} video", model_label, prompt,
            lambda: self.machine.run(interval_id, operation),
        )

    async def batch_generate_start_frames(
        self,
        regenerate: bool = False,
        on_progress: Callable[[int, int], None] | None = None,
    ) -> BatchReport[Shot]:
        """Generate start frames one shot at a time.

        Args:
            regenerate: Include shots that already have a start image.
            on_progress: Called with (done, total) after each shot.

        Raises:
            ApiKeyError: If the key goes missing; remaining shots are skipped.
        """
        shots = []
        for shot in self.state.shots:
            start = shot.keyframe("start")
            if regenerate or start is None or not start.image_url:
                shots.append(shot)

        coordinator = BatchCoordinator(delay=self.session.config.engine.batch_delay, sleep=self._sleep)
        return await coordinator.run(
            shots,
            lambda shot: self.generate_keyframe(shot.id, "start"),
            on_progress=on_progress,
            describe=lambda shot: f"shot {shot.id}",
        )

    # ------------------------------------------------------------------
    # Characters and scenes
    # ------------------------------------------------------------------

    def _script(self):
        if self.state.script is None:
            raise ValueError("Project has no script")
        return self.state.script

    async def generate_character_image(self, character_id: str, aspect_ratio: str = "16:9") -> str:
        char = self._script().character(character_id)
        if char is None:
            raise EntityNotFoundError(character_id)
        prompt = f"{char.visual_prompt or char.name}\n\nVisual style: {style_prompt(self.state.visual_style)}"

        async def operation() -> str:
            return await self._completion().generate_image(prompt, (), aspect_ratio)

        return await self._logged(
            "character", char.id, char.name, self._model_label("image", None), prompt,
            lambda: self.machine.run(char.id, operation),
        )

    async def generate_variation_image(
        self,
        character_id: str,
        variation_id: str,
        aspect_ratio: str = "16:9",
    ) -> str:
        """Render a wardrobe variation, using the base look as reference."""
        char = self._script().character(character_id)
        if char is None:
            raise EntityNotFoundError(character_id)
        variation = next((v for v in char.variations if v.id == variation_id), None)
        if variation is None:
            raise EntityNotFoundError(variation_id)

        references = [char.reference_image] if char.reference_image else []
        prompt = build_image_prompt(variation.visual_prompt or variation.name, references, is_variation=True)

        async def operation() -> str:
            return await self._completion().generate_image(prompt, references, aspect_ratio)

        return await self._logged(
            "character-variation", variation.id, f"{char.name} - {variation.name}",
            self._model_label("image", None), prompt,
            lambda: self.machine.run(variation.id, operation),
        )

    async def generate_scene_image(self, scene_id: str, aspect_ratio: str = "16:9") -> str:
        scene = self._script().scene(scene_id)
        if scene is None:
            raise EntityNotFoundError(scene_id)
        description = scene.visual_prompt or ", ".join(
            part for part in (scene.location, scene.time, scene.atmosphere) if part
        )
        prompt = f"{description}\n\nVisual style: {style_prompt(self.state.visual_style)}"

        async def operation() -> str:
            return await self._completion().generate_image(prompt, (), aspect_ratio)

        return await self._logged(
            "scene", scene.id, scene.location or scene.id, self._model_label("image", None), prompt,
            lambda: self.machine.run(scene.id, operation),
        )

    # ------------------------------------------------------------------
    # Nine-grid panel sets
    # ------------------------------------------------------------------

    def _ensure_nine_grid(self, shot: Shot) -> str:
        if shot.nine_grid is not None:
            return shot.nine_grid.id
        grid = NineGridData(id=f"grid-{shot.id}")
        self.store.update(lambda s: apply_update(s, shot.id, lambda sh: replace(sh, nine_grid=grid)))
        return grid.id

    async def generate_nine_grid_panels(self, shot_id: str) -> tuple[NineGridPanel, ...]:
        """Ask the chat model for nine camera setups of a shot.

        The panel set ends in ``panels_ready``, waiting for confirmation
        before the composite image is rendered.

        Raises:
            ParseError: If the answer does not describe nine panels.
        """
        shot = self._shot(shot_id)
        grid_id = self._ensure_nine_grid(shot)

        script = self.state.script
        scene = script.scene(shot.scene_id) if script else None
        names = []
        for char_id in shot.characters:
            char = script.character(char_id) if script else None
            names.append(char.name if char else char_id)
        prompt = build_nine_grid_panels_prompt(
            shot.action_summary,
            shot.camera_movement,
            scene.location if scene else "",
            names,
            self.state.visual_style,
            self.state.language,
        )

        async def operation() -> tuple[NineGridPanel, ...]:
            self.machine.start(grid_id, GENERATING_PANELS)
            try:
                data = await self._completion().chat_json(prompt)
                panels = parse_nine_grid_panels(data)
            except Exception as exc:
                self.machine.fail(grid_id, exc)
                raise
            self.machine.transition(grid_id, PANELS_READY, panels=panels)
            return panels

        return await self._logged(
            "nine-grid", grid_id, f"Shot {shot.id} nine-grid panels",
            self._model_label("chat", None), prompt, operation,
        )

    async def generate_nine_grid_image(
        self,
        shot_id: str,
        panels: list[NineGridPanel] | tuple[NineGridPanel, ...] | None = None,
        aspect_ratio: str = "16:9",
    ) -> str:
        """Render the 3x3 composite of a shot's confirmed panels.

        Args:
            shot_id: Shot owning the panel set.
            panels: Edited panels replacing the stored ones.
            aspect_ratio: Ratio of the composite image.

        Raises:
            ValueError: If there are not exactly nine panels.
        """
        shot = self._shot(shot_id)
        grid_id = self._ensure_nine_grid(shot)
        grid = self._shot(shot_id).nine_grid
        panels = tuple(panels) if panels is not None else grid.panels
        if len(panels) != 9:
            raise ValueError(f"Nine-grid needs exactly 9 panels, got {len(panels)}")

        references = collect_reference_images(shot, self.state.script)
        prompt = build_image_prompt(
            build_nine_grid_image_prompt(panels, self.state.visual_style), references,
        )

        async def operation() -> str:
            self.machine.transition(grid_id, GENERATING_IMAGE, panels=panels, prompt=prompt, image_url=None)
            try:
                image = await self._completion().generate_image(prompt, references, aspect_ratio)
            except Exception as exc:
                self.machine.fail(grid_id, exc)
                raise
            self.machine.complete(grid_id, image)
            return image

        return await self._logged(
            "nine-grid", grid_id, f"Shot {shot.id} nine-grid image",
            self._model_label("image", None), prompt, operation,
        )

    def apply_nine_grid_panel(self, shot_id: str, index: int, frame_type: str = "start") -> str:
        """Crop one panel of the composite and install it as a keyframe.

        Returns:
            The keyframe id.
        """
        shot = self._shot(shot_id)
        grid = shot.nine_grid
        if grid is None or not grid.image_url:
            raise ValueError(f"Shot {shot_id} has no rendered nine-grid image")
        if not 0 <= index < 9:
            raise ValueError(f"Panel index must be in 0..8, got {index}")

        image = to_data_url(crop_grid(grid.image_url)[index], "image/png")
        panel = next((p for p in grid.panels if p.index == index), None)
        description = panel.description if panel else shot.action_summary
        kf_id = self._upsert_keyframe(shot, frame_type, description)
        self.machine.start(kf_id)
        self.machine.complete(kf_id, image)
        logger.info("Installed nine-grid panel %d as %s frame of shot %s", index, frame_type, shot_id)
        return kf_id


def parse_nine_grid_panels(data: Any) -> tuple[NineGridPanel, ...]:
    """Validate a chat answer describing nine panels.

    Accepts ``{"panels": [...]}`` or a bare list.

    Raises:
        ParseError: If there are not exactly nine panel objects.
    """
    raw = data.get("panels") if isinstance(data, dict) else data
    if not isinstance(raw, list) or len(raw) != 9:
        count = len(raw) if isinstance(raw, list) else 0
        raise ParseError(f"Expected 9 nine-grid panels, got {count}", body=data)

    panels = []
    for index, item in enumerate(raw):
        if not isinstance(item, dict):
            raise ParseError(f"Nine-grid panel {index} is not an object", body=data)
        panels.append(NineGridPanel(
            index=index,
            shot_size=str(item.get("shot_size") or item.get("shotSize") or ""),
            camera_angle=str(item.get("camera_angle") or item.get("cameraAngle") or ""),
            description=str(item.get("description") or ""),
        ))
    return tuple(panels)
