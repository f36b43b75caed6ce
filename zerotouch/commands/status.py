"""The ``status`` command."""
import json
from pathlib import Path
from typing import Optional

import typer

from . import ENV_FILE_OPTION, load_config
from ..modules.state import StateStore


def status_cmd(env_file: Optional[Path] = ENV_FILE_OPTION):
    """Show completed stages and the provisioned marker."""
    config = load_config(env_file)
    completed = StateStore(config.paths.state_dir).completed()

    if not completed:
        typer.echo(f"No stages completed ({config.paths.state_dir})")
    else:
        typer.echo(f"Completed stages ({config.paths.state_dir}):")
        for name, stamp in sorted(completed.items(), key=lambda item: item[1]):
            typer.echo(f"  {name:<15} {stamp.isoformat(timespec='seconds')}")

    marker = config.paths.provisioned_marker
    if marker.is_file():
        try:
            record = json.loads(marker.read_text())
            typer.echo(f"Provisioned at {record.get('provisioned_at', 'unknown')}")
        except json.JSONDecodeError:
            typer.secho(f"Provisioned marker {marker} is not valid JSON", fg=typer.colors.YELLOW)
    else:
        typer.echo("Node not marked as provisioned")
