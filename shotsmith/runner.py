"""CLI runner for the shotsmith generation engine.

Usage:
    python -m shotsmith status -p project.json
    python -m shotsmith recover -p project.json
    python -m shotsmith keyframe -p project.json -s shot-1 -f start
    python -m shotsmith keyframes -p project.json
    python -m shotsmith video -p project.json -s shot-1 -m sora-2
    python -m shotsmith nine-grid -p project.json -s shot-1 --confirm
    python -m shotsmith models
"""

from __future__ import annotations

import asyncio
import logging
import sys
from typing import Any, Awaitable, Callable

import click
from rich.console import Console
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskProgressColumn, TextColumn
from rich.table import Table

from shotsmith.completion import CompletionClient
from shotsmith.config import load_config
from shotsmith.director import Director, Session
from shotsmith.errors import ApiKeyError, GenerationError
from shotsmith.models import COMPLETED, FAILED, GENERATING_STATES, PANELS_READY, ProjectState
from shotsmith.project_io import load_project, open_project, save_project
from shotsmith.resolver import ModelResolver
from shotsmith.state import EntityNotFoundError, ProjectStore, recover_orphans

console = Console()

_DEFAULT_CONFIG = "config.yaml"


def _setup_logging(verbose: bool) -> None:
    """Configure logging based on verbosity."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    if not verbose:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)


def _status_cell(status: str | None) -> str:
    if status is None:
        return "[dim]-[/dim]"
    if status == COMPLETED:
        return "[green]DONE[/green]"
    if status == FAILED:
        return "[red]FAILED[/red]"
    if status in GENERATING_STATES:
        return "[yellow]GENERATING[/yellow]"
    if status == PANELS_READY:
        return "[cyan]PANELS READY[/cyan]"
    return f"[dim]{status.upper()}[/dim]"


def _execute(
    ctx: click.Context,
    project: str,
    action: Callable[[Director], Awaitable[Any]],
) -> Any:
    """Open the project, run ``action`` with a Director, map errors to exit codes.

    The project file is saved after every state change, so an interrupted
    run leaves entities that the next ``open_project`` sweeps to failed.
    """

    async def run() -> Any:
        config = load_config(ctx.obj["config"])
        store = ProjectStore(open_project(project))
        store.subscribe(lambda state: save_project(project, state))
        async with Director(store, Session(config)) as director:
            return await action(director)

    try:
        return asyncio.run(run())
    except FileNotFoundError as exc:
        console.print(f"[red]Error: {exc}[/red]")
        sys.exit(1)
    except ApiKeyError as exc:
        console.print(f"[red bold]API key required: {exc}[/red bold]")
        console.print("Set api.api_key in the config file or export SHOTSMITH_API_KEY, then retry.")
        sys.exit(2)
    except (ValueError, EntityNotFoundError) as exc:
        console.print(f"[red]Error: {exc}[/red]")
        sys.exit(1)
    except GenerationError as exc:
        console.print(f"[red]Generation failed: {exc}[/red]")
        sys.exit(1)
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted. Progress has been saved to the project file.[/yellow]")
        sys.exit(130)


@click.group()
@click.option("--config", "-c", default=_DEFAULT_CONFIG, help="Path to config.yaml")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx: click.Context, config: str, verbose: bool) -> None:
    """Storyboard image and video generation."""
    ctx.ensure_object(dict)
    ctx.obj["config"] = config
    _setup_logging(verbose)


@cli.command("status")
@click.option("--project", "-p", required=True, help="Path to the project JSON file")
def cmd_status(project: str) -> None:
    """Show the generation status of every shot."""
    try:
        state = load_project(project)
    except (FileNotFoundError, ValueError) as exc:
        console.print(f"[red]Error: {exc}[/red]")
        sys.exit(1)
    _print_status(state)


def _print_status(state: ProjectState) -> None:
    table = Table(title=state.title or state.id, show_lines=True)
    table.add_column("Shot", style="cyan")
    table.add_column("Action", max_width=40)
    table.add_column("Start", justify="center")
    table.add_column("End", justify="center")
    table.add_column("Video", justify="center")
    table.add_column("Nine-grid", justify="center")

    for shot in state.shots:
        start = shot.keyframe("start")
        end = shot.keyframe("end")
        table.add_row(
            shot.id,
            shot.action_summary,
            _status_cell(start.status if start else None),
            _status_cell(end.status if end else None),
            _status_cell(shot.interval.status if shot.interval else None),
            _status_cell(shot.nine_grid.status if shot.nine_grid else None),
        )
    console.print(table)

    done = sum(1 for s in state.shots if s.interval is not None and s.interval.status == COMPLETED)
    console.print(f"[bold]Summary:[/bold] {done}/{len(state.shots)} shots with video")


@cli.command("recover")
@click.option("--project", "-p", required=True, help="Path to the project JSON file")
def cmd_recover(project: str) -> None:
    """Mark generations interrupted by a previous run as failed."""
    try:
        state, swept = recover_orphans(load_project(project))
    except (FileNotFoundError, ValueError) as exc:
        console.print(f"[red]Error: {exc}[/red]")
        sys.exit(1)
    if swept:
        save_project(project, state)
        console.print(f"[yellow]Marked {swept} interrupted generation(s) as failed.[/yellow]")
    else:
        console.print("[green]Nothing to recover.[/green]")


@cli.command("keyframe")
@click.option("--project", "-p", required=True, help="Path to the project JSON file")
@click.option("--shot", "-s", "shot_id", required=True, help="Shot id")
@click.option("--frame", "-f", type=click.Choice(["start", "end"]), default="start", show_default=True)
@click.option("--aspect-ratio", "-a", type=click.Choice(["16:9", "9:16", "1:1"]), default="16:9", show_default=True)
@click.pass_context
def cmd_keyframe(ctx: click.Context, project: str, shot_id: str, frame: str, aspect_ratio: str) -> None:
    """Generate one keyframe of a shot."""
    console.print(f"[bold]Generating {frame} frame of shot {shot_id}...[/bold]")
    _execute(ctx, project, lambda d: d.generate_keyframe(shot_id, frame, aspect_ratio))
    console.print(f"[green]Keyframe saved to {project}[/green]")


@cli.command("keyframes")
@click.option("--project", "-p", required=True, help="Path to the project JSON file")
@click.option("--regenerate", is_flag=True, help="Also regenerate shots that already have a start frame")
@click.pass_context
def cmd_keyframes(ctx: click.Context, project: str, regenerate: bool) -> None:
    """Generate start frames for every shot, one at a time."""

    async def action(director: Director):
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            console=console,
        ) as progress:
            bar = progress.add_task("Start frames", total=None)

            def on_progress(done: int, total: int) -> None:
                progress.update(bar, completed=done, total=total)

            return await director.batch_generate_start_frames(regenerate, on_progress)

    report = _execute(ctx, project, action)
    if report.failed:
        console.print(f"[red]{report.summary(lambda shot: f'shot {shot.id}')}[/red]")
        sys.exit(1)
    console.print(f"[green]{report.summary()}[/green]")


@cli.command("video")
@click.option("--project", "-p", required=True, help="Path to the project JSON file")
@click.option("--shot", "-s", "shot_id", required=True, help="Shot id")
@click.option("--model", "-m", default=None, help="Video model id (defaults to the shot's or the active model)")
@click.option("--aspect-ratio", "-a", type=click.Choice(["16:9", "9:16", "1:1"]), default="16:9", show_default=True)
@click.option("--duration", "-d", type=int, default=None, help="Clip length in seconds")
@click.pass_context
def cmd_video(
    ctx: click.Context,
    project: str,
    shot_id: str,
    model: str | None,
    aspect_ratio: str,
    duration: int | None,
) -> None:
    """Generate the video of a shot from its keyframes."""
    console.print(f"[bold]Generating video for shot {shot_id}...[/bold]")
    _execute(ctx, project, lambda d: d.generate_video(shot_id, model, aspect_ratio, duration))
    console.print(f"[green]Video saved to {project}[/green]")


@cli.command("nine-grid")
@click.option("--project", "-p", required=True, help="Path to the project JSON file")
@click.option("--shot", "-s", "shot_id", required=True, help="Shot id")
@click.option("--confirm", is_flag=True, help="Render the composite image from the stored panels")
@click.option("--apply", "apply_index", type=click.IntRange(0, 8), default=None, help="Use panel INDEX as a keyframe")
@click.option("--frame", "-f", type=click.Choice(["start", "end"]), default="start", show_default=True)
@click.pass_context
def cmd_nine_grid(
    ctx: click.Context,
    project: str,
    shot_id: str,
    confirm: bool,
    apply_index: int | None,
    frame: str,
) -> None:
    """Plan nine camera setups for a shot, render them, or apply one."""

    async def action(director: Director):
        if apply_index is not None:
            return director.apply_nine_grid_panel(shot_id, apply_index, frame)
        if confirm:
            return await director.generate_nine_grid_image(shot_id)
        return await director.generate_nine_grid_panels(shot_id)

    result = _execute(ctx, project, action)
    if apply_index is not None:
        console.print(f"[green]Panel {apply_index} installed as keyframe {result}[/green]")
    elif confirm:
        console.print("[green]Nine-grid image rendered.[/green]")
    else:
        table = Table(title=f"Shot {shot_id} panels", show_lines=True)
        table.add_column("#", justify="center")
        table.add_column("Shot size")
        table.add_column("Angle")
        table.add_column("Description", max_width=60)
        for panel in result:
            table.add_row(str(panel.index), panel.shot_size, panel.camera_angle, panel.description)
        console.print(table)
        console.print("Edit the panels in the project file if needed, then run again with --confirm.")


@cli.command("character")
@click.option("--project", "-p", required=True, help="Path to the project JSON file")
@click.option("--character", "-c", "character_id", required=True, help="Character id")
@click.option("--variation", default=None, help="Wardrobe variation id")
@click.pass_context
def cmd_character(ctx: click.Context, project: str, character_id: str, variation: str | None) -> None:
    """Generate a character reference image or one of its variations."""

    async def action(director: Director):
        if variation:
            return await director.generate_variation_image(character_id, variation)
        return await director.generate_character_image(character_id)

    _execute(ctx, project, action)
    console.print(f"[green]Reference image saved to {project}[/green]")


@cli.command("scene")
@click.option("--project", "-p", required=True, help="Path to the project JSON file")
@click.option("--scene", "scene_id", required=True, help="Scene id")
@click.pass_context
def cmd_scene(ctx: click.Context, project: str, scene_id: str) -> None:
    """Generate a scene reference image."""
    _execute(ctx, project, lambda d: d.generate_scene_image(scene_id))
    console.print(f"[green]Reference image saved to {project}[/green]")


@cli.command("models")
@click.pass_context
def cmd_models(ctx: click.Context) -> None:
    """List configured models and whether a key resolves for each."""
    try:
        config = load_config(ctx.obj["config"])
    except (FileNotFoundError, ValueError) as exc:
        console.print(f"[red]Error: {exc}[/red]")
        sys.exit(1)

    resolver = ModelResolver(config)
    table = Table(title="Models", show_lines=True)
    table.add_column("Model", style="cyan")
    table.add_column("Kind", justify="center")
    table.add_column("Provider")
    table.add_column("Mode", justify="center")
    table.add_column("Active", justify="center")
    table.add_column("Key", justify="center")

    for model in resolver.list_models():
        try:
            resolver.resolve_api_key(model.id)
            key_cell = "[green]yes[/green]"
        except ApiKeyError:
            key_cell = "[red]missing[/red]"
        mode = str(model.params.get("mode", "sync")) if model.type == "video" else ""
        active = "*" if config.active_models.get(model.type) == model.id else ""
        name = model.id if model.enabled else f"[dim]{model.id} (disabled)[/dim]"
        table.add_row(name, model.type, model.provider_id, mode, active, key_cell)
    console.print(table)


@cli.command("verify-key")
@click.argument("key")
@click.pass_context
def cmd_verify_key(ctx: click.Context, key: str) -> None:
    """Check that KEY is accepted by the chat provider."""
    try:
        config = load_config(ctx.obj["config"])
    except (FileNotFoundError, ValueError) as exc:
        console.print(f"[red]Error: {exc}[/red]")
        sys.exit(1)

    async def verify() -> tuple[bool, str]:
        async with CompletionClient(ModelResolver(config)) as client:
            return await client.verify_api_key(key)

    ok, message = asyncio.run(verify())
    if ok:
        console.print(f"[green]{message}[/green]")
    else:
        console.print(f"[red]Key rejected: {message}[/red]")
        sys.exit(1)


def main() -> None:
    """Entry point."""
    cli()


if __name__ == "__main__":
    main()
