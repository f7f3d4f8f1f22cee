"""Generation state of project entities.

Every generation target (keyframe, video interval, nine-grid panel set,
character, wardrobe variation, scene) carries a status and a result field.
Updates are applied through ``apply_update``, which locates the entity by id
in the *current* tree and rebuilds only the path to it. Results of
concurrent generations therefore never overwrite each other.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, Awaitable, Callable

from shotsmith.models import (
    COMPLETED,
    FAILED,
    GENERATING,
    GENERATING_STATES,
    PENDING,
    Character,
    CharacterVariation,
    Keyframe,
    NineGridData,
    ProjectState,
    Scene,
    ScriptData,
    Shot,
    VideoInterval,
)

logger = logging.getLogger(__name__)

# Entity type -> field holding its generated result.
RESULT_FIELDS: dict[type, str] = {
    Keyframe: "image_url",
    VideoInterval: "video_url",
    NineGridData: "image_url",
    Character: "reference_image",
    CharacterVariation: "reference_image",
    Scene: "reference_image",
}


class InvalidTransitionError(ValueError):
    """Raised for a status change the lifecycle does not allow."""


class EntityNotFoundError(KeyError):
    """Raised when no entity of the project has the given id."""


# ----------------------------------------------------------------------
# Tree walking
# ----------------------------------------------------------------------


def _same(new: tuple, old: tuple) -> bool:
    return len(new) == len(old) and all(a is b for a, b in zip(new, old))


def _walk_shot(shot: Shot, visit: Callable[[Any], Any]) -> Shot:
    keyframes = tuple(visit(kf) for kf in shot.keyframes)
    interval = visit(shot.interval) if shot.interval is not None else None
    nine_grid = visit(shot.nine_grid) if shot.nine_grid is not None else None
    if not (
        _same(keyframes, shot.keyframes)
        and interval is shot.interval
        and nine_grid is shot.nine_grid
    ):
        shot = replace(shot, keyframes=keyframes, interval=interval, nine_grid=nine_grid)
    return visit(shot)


def _walk_character(char: Character, visit: Callable[[Any], Any]) -> Character:
    variations = tuple(visit(v) for v in char.variations)
    if not _same(variations, char.variations):
        char = replace(char, variations=variations)
    return visit(char)


def _walk_script(script: ScriptData, visit: Callable[[Any], Any]) -> ScriptData:
    characters = tuple(_walk_character(c, visit) for c in script.characters)
    scenes = tuple(visit(s) for s in script.scenes)
    if _same(characters, script.characters) and _same(scenes, script.scenes):
        return script
    return replace(script, characters=characters, scenes=scenes)


def walk(state: ProjectState, visit: Callable[[Any], Any]) -> ProjectState:
    """Apply ``visit`` to every entity, sharing untouched subtrees.

    ``visit`` returns the entity unchanged (same object) or a replacement.
    Children are visited before their parent.
    """
    shots = tuple(_walk_shot(s, visit) for s in state.shots)
    script = _walk_script(state.script, visit) if state.script is not None else None
    if _same(shots, state.shots) and script is state.script:
        return state
    return replace(state, shots=shots, script=script)


def find_entity(state: ProjectState, entity_id: str) -> Any:
    """Return the entity with ``entity_id``.

    Raises:
        EntityNotFoundError: If no entity has that id.
    """
    found: list[Any] = []

    def visit(entity: Any) -> Any:
        if not found and str(entity.id) == str(entity_id):
            found.append(entity)
        return entity

    walk(state, visit)
    if not found:
        raise EntityNotFoundError(entity_id)
    return found[0]


def apply_update(
    state: ProjectState,
    entity_id: str,
    transform: Callable[[Any], Any],
) -> ProjectState:
    """Return a new state with ``transform`` applied to one entity.

    Raises:
        EntityNotFoundError: If no entity has that id.
    """
    hits = 0

    def visit(entity: Any) -> Any:
        nonlocal hits
        if str(entity.id) != str(entity_id):
            return entity
        hits += 1
        return transform(entity)

    new_state = walk(state, visit)
    if not hits:
        raise EntityNotFoundError(entity_id)
    return new_state


def result_of(entity: Any) -> Any:
    """The generated result of an entity, or None."""
    field_name = RESULT_FIELDS.get(type(entity))
    return getattr(entity, field_name) if field_name else None


# ----------------------------------------------------------------------
# Recovery
# ----------------------------------------------------------------------


def recover_orphans(state: ProjectState) -> tuple[ProjectState, int]:
    """Fail every entity left generating without a result.

    Run once when a project is loaded: a job that was in flight when the
    process died will never resolve.

    Returns:
        (new state, number of entities swept).
    """
    swept = 0

    def visit(entity: Any) -> Any:
        nonlocal swept
        if type(entity) not in RESULT_FIELDS:
            return entity
        if entity.status in GENERATING_STATES and not result_of(entity):
            swept += 1
            logger.warning("Recovered orphaned %s %s -> failed", type(entity).__name__, entity.id)
            return replace(entity, status=FAILED)
        return entity

    return walk(state, visit), swept


# ----------------------------------------------------------------------
# Store and state machine
# ----------------------------------------------------------------------


class ProjectStore:
    """Holds the current project tree and notifies listeners on change."""

    def __init__(self, state: ProjectState) -> None:
        self._state = state
        self._listeners: list[Callable[[ProjectState], None]] = []

    @property
    def state(self) -> ProjectState:
        return self._state

    def subscribe(self, listener: Callable[[ProjectState], None]) -> None:
        self._listeners.append(listener)

    def update(self, fn: Callable[[ProjectState], ProjectState]) -> ProjectState:
        """Replace the state with ``fn(current state)``."""
        new_state = fn(self._state)
        if new_state is self._state:
            return new_state
        self._state = new_state
        for listener in self._listeners:
            listener(new_state)
        return new_state


class EntityStateMachine:
    """Drives the pending -> generating -> completed|failed lifecycle.

    Usage::

        machine = EntityStateMachine(store)
        image = await machine.run("kf-1-start", lambda: client.generate_image(prompt))
    """

    def __init__(self, store: ProjectStore) -> None:
        self.store = store

    def transition(self, entity_id: str, status: str, **fields: Any) -> ProjectState:
        """Move an entity to ``status``, setting ``fields`` alongside.

        Any status may go to a generating status. Resolved statuses are only
        reachable once the entity has left ``pending``; a late duplicate
        result overwrites an already resolved entity.

        Raises:
            InvalidTransitionError: For a transition the lifecycle forbids.
            EntityNotFoundError: If no entity has that id.
        """
        if status == PENDING:
            raise InvalidTransitionError(f"{entity_id}: cannot move back to pending")

        def transform(entity: Any) -> Any:
            if type(entity) not in RESULT_FIELDS:
                raise InvalidTransitionError(f"{entity_id}: {type(entity).__name__} has no generation status")
            if status not in GENERATING_STATES and entity.status == PENDING:
                raise InvalidTransitionError(f"{entity_id}: cannot move from pending to {status}")
            return replace(entity, status=status, **fields)

        return self.store.update(lambda state: apply_update(state, entity_id, transform))

    def start(self, entity_id: str, status: str = GENERATING) -> ProjectState:
        if status not in GENERATING_STATES:
            raise InvalidTransitionError(f"{entity_id}: {status} is not a generating status")
        return self.transition(entity_id, status)

    def complete(self, entity_id: str, result: Any, status: str = COMPLETED) -> ProjectState:
        entity = find_entity(self.store.state, entity_id)
        field_name = RESULT_FIELDS.get(type(entity))
        fields = {field_name: result} if field_name and result is not None else {}
        return self.transition(entity_id, status, **fields)

    def fail(self, entity_id: str, error: BaseException | str | None = None) -> ProjectState:
        entity = find_entity(self.store.state, entity_id)
        field_name = RESULT_FIELDS.get(type(entity))
        logger.info("%s failed: %s", entity_id, error)
        fields = {field_name: None} if field_name else {}
        return self.transition(entity_id, FAILED, **fields)

    async def run(
        self,
        entity_id: str,
        operation: Callable[[], Awaitable[Any]],
        status: str = GENERATING,
    ) -> Any:
        """Run ``operation`` for an entity, recording its outcome.

        Returns:
            The operation's result, also stored on the entity.

        Raises:
            Exception: Whatever the operation raised, after the entity was
                marked failed.
        """
        self.start(entity_id, status)
        try:
            result = await operation()
        except Exception as exc:
            self.fail(entity_id, exc)
            raise
        self.complete(entity_id, result)
        return result
