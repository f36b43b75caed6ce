"""The ``plan`` command: show the stages this node would run."""
import logging
from pathlib import Path
from typing import Optional

import typer

from . import ENV_FILE_OPTION, ROLE_OPTION, load_config
from ..errors import BootstrapError
from ..logging import setup_logging
from ..modules.models import NodeRole
from ..modules.orchestrator import Orchestrator


def plan_cmd(
    env_file: Optional[Path] = ENV_FILE_OPTION,
    role: Optional[NodeRole] = ROLE_OPTION,
):
    """List the role's stages in order with their completion state."""
    config = load_config(env_file, role)
    setup_logging(level=logging.WARNING)

    try:
        pipeline = Orchestrator(config).build_pipeline()
    except BootstrapError as e:
        typer.secho(f"Cannot build pipeline: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)

    typer.echo(f"Pipeline for {config.node.hostname} ({config.node.role.value}):")
    for index, (stage, done) in enumerate(pipeline.plan(), 1):
        mark = "done" if done else "pending"
        typer.echo(f"  {index:>2}. {stage.name:<15} {mark:<8} {stage.description}")
