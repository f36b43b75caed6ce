"""CLI commands for zerotouch."""
import os
from pathlib import Path
from typing import Optional

import typer

from ..config import BootstrapConfig
from ..errors import ConfigurationError
from ..modules.models import NodeRole

ENV_FILE_OPTION = typer.Option(None, "--env-file", "-e", help="Dotenv file with the node's first-boot settings")
ROLE_OPTION = typer.Option(None, "--role", "-r", help="Override the role derived from NODE_ROLE/NODE_NUM")


def load_config(env_file: Optional[Path] = None, role: Optional[NodeRole] = None) -> BootstrapConfig:
    """Load the configuration or exit with status 2."""
    environ = dict(os.environ)
    if role is not None:
        environ["NODE_ROLE"] = role.value
    try:
        return BootstrapConfig.from_env(environ=environ, env_file=env_file)
    except ConfigurationError as e:
        typer.secho(f"Configuration error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=2)
