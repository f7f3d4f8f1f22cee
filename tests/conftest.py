"""
Pytest Configuration and Fixtures

Shared fixtures for all tests: configuration, fake time, mocked HTTP and a
small storyboard project.
"""

import base64
import io
import json
from typing import Any, Callable

import httpx
import pytest
from PIL import Image

from shotsmith.config import Config
from shotsmith.models import (
    COMPLETED,
    Character,
    CharacterVariation,
    Keyframe,
    ProjectState,
    Scene,
    ScriptData,
    Shot,
)
from shotsmith.resolver import ModelResolver


class FakeClock:
    """Monotonic clock advanced only by the injected sleep."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def png_bytes(width: int = 90, height: int = 60, color=(200, 30, 30)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color=color).save(buffer, format="PNG")
    return buffer.getvalue()


def png_data_url(width: int = 90, height: int = 60, color=(200, 30, 30)) -> str:
    return "data:image/png;base64," + base64.b64encode(png_bytes(width, height, color)).decode("ascii")


def json_response(data: Any, status_code: int = 200) -> httpx.Response:
    return httpx.Response(status_code, content=json.dumps(data).encode(), headers={"content-type": "application/json"})


class Provider:
    """Routes mocked requests by (method, path) to queues of responses.

    The last response of a queue is repeated once the others are used up.
    """

    def __init__(self, routes):
        self.routes = {key: list(value) for key, value in routes.items()}
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = (request.method, request.url.path)
        queue = self.routes.get(key)
        if not queue:
            return httpx.Response(404, text=f"no route for {key}")
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, Exception):
            raise item
        return item

    def count(self, method: str, path: str) -> int:
        return sum(1 for r in self.requests if r.method == method and r.url.path == path)


@pytest.fixture
def raw_config() -> dict:
    """Config file contents with a global key and the built-in models."""
    return {"api": {"api_key": "test-key"}}


@pytest.fixture
def config(raw_config) -> Config:
    return Config.from_dict(raw_config, environ={})


@pytest.fixture
def resolver(config) -> ModelResolver:
    return ModelResolver(config)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_http() -> Callable[[Callable[[httpx.Request], httpx.Response]], httpx.AsyncClient]:
    """Build an AsyncClient whose requests are answered by ``handler``."""
    def factory(handler):
        return httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return factory


@pytest.fixture
def image_data_url() -> str:
    return png_data_url()


@pytest.fixture
def sample_project() -> ProjectState:
    """Two shots in one scene; Alice wears a variation in shot-1."""
    script = ScriptData(
        title="Night Market",
        characters=(
            Character(
                id="char-a",
                name="Alice",
                visual_prompt="young woman, red coat",
                reference_image="data:image/png;base64,QUxJQ0U=",
                variations=(
                    CharacterVariation(
                        id="var-a1",
                        name="Raincoat",
                        visual_prompt="yellow raincoat",
                        reference_image="data:image/png;base64,VkFSQQ==",
                        status=COMPLETED,
                    ),
                ),
                status=COMPLETED,
            ),
            Character(
                id="char-b",
                name="Bob",
                visual_prompt="old man, grey beard",
                reference_image="data:image/png;base64,Qk9C",
                status=COMPLETED,
            ),
        ),
        scenes=(
            Scene(
                id="scene-1",
                location="Night market",
                time="Night",
                atmosphere="crowded, neon",
                reference_image="data:image/png;base64,U0NFTkU=",
                status=COMPLETED,
            ),
        ),
    )
    shots = (
        Shot(
            id="shot-1",
            scene_id="scene-1",
            action_summary="Alice hands Bob a lantern",
            camera_movement="slow push in",
            characters=("char-a", "char-b"),
            character_variations={"char-a": "var-a1"},
        ),
        Shot(
            id="shot-2",
            scene_id="scene-1",
            action_summary="Bob walks away",
            camera_movement="pan left",
            characters=("char-b",),
            keyframes=(
                Keyframe(id="kf-shot-2-start", type="start", image_url=png_data_url(), status=COMPLETED),
            ),
        ),
    )
    return ProjectState(id="proj-1", title="Night Market", script=script, shots=shots)
