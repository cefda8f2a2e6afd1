from __future__ import annotations

import asyncio
from pathlib import Path

import click
import yaml

from pipeworks import __version__
from pipeworks.errors import ConfigError
from pipeworks.models.pipeline import PipelineConfig
from pipeworks.services.event_bus import EventBus, describe
from pipeworks.utils.config import Settings, default_transitions, get_settings, load_pipeline
from pipeworks.utils.logger import setup_logging

DEFAULT_STAGES = ("ideas", "plans", "build")


def _settings(ctx: click.Context) -> Settings:
    return ctx.obj["settings"]


def _pipeline(ctx: click.Context, **overrides: object) -> PipelineConfig:
    try:
        return load_pipeline(_settings(ctx), overrides={k: v for k, v in overrides.items() if v is not None})
    except ConfigError as e:
        raise click.ClickException(str(e)) from e


def _progress_bus(quiet: bool) -> EventBus:
    """Event bus that echoes each pipeline event as a progress line."""
    bus = EventBus()
    if not quiet:
        bus.subscribe("*", lambda event: click.echo(describe(event)))
    return bus


@click.group()
@click.version_option(version=__version__, prog_name="pipeworks")
@click.option(
    "--root",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Directory holding pipeline/, locks/ and logs/ [env: PIPEWORKS_ROOT].",
)
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Pipeline definition (default: <root>/pipeline.yml) [env: PIPEWORKS_CONFIG].",
)
@click.option("--log-level", default=None, help="Logging level [env: PIPEWORKS_LOG_LEVEL].")
@click.pass_context
def main(ctx: click.Context, root: Path | None, config_path: Path | None, log_level: str | None) -> None:
    """pipeworks: agents pulling work items through stage directories."""
    try:
        settings = get_settings(
            root=root.expanduser().resolve() if root else None,
            config_path=config_path,
            log_level=log_level,
        )
    except ConfigError as e:
        raise click.ClickException(str(e)) from e
    setup_logging(settings.log_level)
    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings


@main.command()
@click.option(
    "--stages",
    default=",".join(DEFAULT_STAGES),
    show_default=True,
    help="Comma-separated stage names, in pipeline order.",
)
@click.option("--agents", default=2, show_default=True, type=int, help="Number of agents to scaffold.")
@click.pass_context
def init(ctx: click.Context, stages: str, agents: int) -> None:
    """Scaffold pipeline.yml and the stage directories."""
    settings = _settings(ctx)
    config_file = settings.pipeline_file
    names = [s.strip() for s in stages.split(",") if s.strip()]
    if not names:
        raise click.UsageError("At least one stage is required")

    if config_file.exists():
        click.echo(f"{config_file} already exists, leaving it unchanged")
    else:
        agent_ids = [f"agent-{n}" for n in range(max(agents, 1))]
        data = {
            "poll_interval": 5,
            "max_attempts": 3,
            "terminal": {"done": "done", "failed": "failed"},
            "agents": {agent_id: {"dir": ".", "capabilities": []} for agent_id in agent_ids},
            "pools": {"default": {"agents": agent_ids}},
            "stages": {
                name: {"pool": "default", "transitions": wiring}
                for name, wiring in default_transitions(names, "done", "failed").items()
            },
        }
        config_file.parent.mkdir(parents=True, exist_ok=True)
        config_file.write_text(yaml.safe_dump(data, sort_keys=False), encoding="utf-8")
        click.echo(f"Wrote {config_file}")

    pipeline = _pipeline(ctx)
    for name in [*pipeline.stages, pipeline.done_stage, pipeline.failed_stage]:
        (settings.pipeline_dir / name).mkdir(parents=True, exist_ok=True)
    settings.locks_dir.mkdir(parents=True, exist_ok=True)
    click.echo(f"Pipeline ready under {settings.pipeline_dir}")


@main.command()
@click.pass_context
def validate(ctx: click.Context) -> None:
    """Check the pipeline definition and exit."""
    pipeline = _pipeline(ctx)
    click.echo(
        f"OK: {len(pipeline.stages)} stages, {len(pipeline.pools)} pools, "
        f"{len(pipeline.agents)} agents"
    )


@main.command()
@click.option("--stage", "stages", multiple=True, help="Only poll these stages (repeatable).")
@click.option("--poll-interval", type=float, default=None, help="Seconds between scans.")
@click.option("--quiet", is_flag=True, help="Do not print pipeline progress.")
@click.pass_context
def watch(ctx: click.Context, stages: tuple[str, ...], poll_interval: float | None, quiet: bool) -> None:
    """Poll the stage directories until interrupted."""
    from pipeworks.services.orchestrator import Orchestrator

    settings = _settings(ctx)
    pipeline = _pipeline(ctx, poll_interval=poll_interval)
    orchestrator = Orchestrator.from_settings(settings, pipeline, event_bus=_progress_bus(quiet))
    try:
        asyncio.run(orchestrator.run(stages or None))
    except ConfigError as e:
        raise click.ClickException(str(e)) from e


@main.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--timeout", type=float, default=None, help="Give up after this many seconds.")
@click.option("--quiet", is_flag=True, help="Do not print pipeline progress.")
@click.pass_context
def run(ctx: click.Context, file: Path, timeout: float | None, quiet: bool) -> None:
    """Inject FILE and drive the pipeline until nothing is left to do."""
    from pipeworks.services.orchestrator import Orchestrator
    from pipeworks.services.state import inject_item

    settings = _settings(ctx)
    pipeline = _pipeline(ctx)
    try:
        dest = inject_item(pipeline, settings.pipeline_dir, file)
    except (FileExistsError, FileNotFoundError) as e:
        raise click.ClickException(str(e)) from e
    click.echo(f"Injected {dest.name} -> {dest.parent.name}/")

    orchestrator = Orchestrator.from_settings(settings, pipeline, event_bus=_progress_bus(quiet))
    idle = asyncio.run(orchestrator.run_until_idle(timeout=timeout))
    if not idle:
        raise click.ClickException(f"Pipeline still busy after {timeout}s")
    ctx.invoke(status)


@main.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show agents and pipeline contents."""
    from pipeworks.services.lock_manager import LockManager
    from pipeworks.services.state import snapshot

    settings = _settings(ctx)
    pipeline = _pipeline(ctx)
    snap = snapshot(pipeline, settings.pipeline_dir, LockManager(settings.locks_dir))

    click.secho("\nAgents\n", bold=True)
    for agent in snap.agents:
        state = click.style(f"busy: {agent.busy_with}", fg="yellow") if agent.busy_with else click.style("free", fg="green")
        click.echo(f"  {agent.id:<12} {state}")

    click.secho("\nPipeline\n", bold=True)
    for stage in snap.stages:
        if stage.name == pipeline.done_stage:
            color = "green"
        elif stage.name == pipeline.failed_stage:
            color = "red"
        else:
            color = "yellow" if stage.count else None
        plural = "" if stage.count == 1 else "s"
        click.secho(f"  {stage.name:<15} {stage.count} item{plural}", fg=color, dim=color is None)
        for item in stage.items:
            marker = click.style("~", fg="blue") if item.status == "in_progress" else click.style("o", dim=True)
            assignee = click.style(f" [{item.assignee}]", dim=True) if item.assignee else ""
            click.echo(f"    {marker} {item.title}{assignee}")

    click.secho(f"\n  Total: {snap.total} items\n", dim=True)


@main.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_context
def inject(ctx: click.Context, file: Path) -> None:
    """Copy FILE into the first stage as a pending work item."""
    from pipeworks.services.state import inject_item

    settings = _settings(ctx)
    pipeline = _pipeline(ctx)
    try:
        dest = inject_item(pipeline, settings.pipeline_dir, file)
    except (FileExistsError, FileNotFoundError) as e:
        raise click.ClickException(str(e)) from e
    click.secho(f"Injected {file.name} -> {dest.parent.name}/", fg="green")


@main.command()
@click.argument("filename", required=False)
@click.option("--stale", is_flag=True, help="Remove every stale or unreadable lock instead.")
@click.pass_context
def unlock(ctx: click.Context, filename: str | None, stale: bool) -> None:
    """Release the lock on FILENAME (or sweep stale locks)."""
    from pipeworks.services.lock_manager import LockManager

    locks = LockManager(_settings(ctx).locks_dir)
    if stale:
        click.echo(f"Cleared {locks.clear_stale_locks()} stale lock(s)")
        return
    if not filename:
        raise click.UsageError("Give a work-item filename or --stale")
    if locks.force_release(filename):
        click.echo(f"Released lock on {filename}")
    else:
        click.echo(f"{filename} is not locked")


@main.command()
def version() -> None:
    """Print the version and exit."""
    click.echo(f"pipeworks {__version__}")


if __name__ == "__main__":
    main()
