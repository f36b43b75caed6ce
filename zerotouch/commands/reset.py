"""The ``reset`` command: remove stage markers for testing or rebuilds."""
from pathlib import Path
from typing import Optional

import typer

from . import ENV_FILE_OPTION, load_config
from ..modules.state import StateStore


def reset_cmd(
    stage: Optional[str] = typer.Option(None, "--stage", "-s", help="Remove the marker of one stage"),
    all_stages: bool = typer.Option(False, "--all", help="Remove every stage marker"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation prompt"),
    env_file: Optional[Path] = ENV_FILE_OPTION,
):
    """Forget completed stages so the next run repeats them.

    This does not undo any change the stages made.
    """
    if bool(stage) == all_stages:
        typer.secho("Specify exactly one of --stage NAME or --all", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=2)

    config = load_config(env_file)
    store = StateStore(config.paths.state_dir)
    target = f"stage '{stage}'" if stage else "ALL stages"

    if not yes and not typer.confirm(f"Reset {target} in {store.state_dir}?"):
        typer.echo("Reset cancelled")
        raise typer.Exit(code=1)

    try:
        removed = store.reset(stage) if stage else store.reset()
    except ValueError as e:
        typer.secho(str(e), fg=typer.colors.RED, err=True)
        raise typer.Exit(code=2)

    if removed:
        typer.echo(f"Removed marker(s): {', '.join(removed)}")
    else:
        typer.echo("Nothing to reset")
