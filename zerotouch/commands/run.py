"""The ``run`` command: bootstrap this node."""
import logging
from pathlib import Path
from typing import Optional

import typer

from . import ENV_FILE_OPTION, ROLE_OPTION, load_config
from ..errors import BootstrapError
from ..logging import setup_logging
from ..modules.models import NodeRole
from ..modules.orchestrator import Orchestrator

logger = logging.getLogger("zerotouch.cli")


def run_cmd(
    env_file: Optional[Path] = ENV_FILE_OPTION,
    role: Optional[NodeRole] = ROLE_OPTION,
    force: bool = typer.Option(False, "--force", "-f", help="Skip first-boot detection (stage markers still apply)"),
    debug: bool = typer.Option(False, "--debug", "-d", help="Enable debug logging"),
):
    """Bootstrap this node: initialize or join the cluster and deploy addons."""
    config = load_config(env_file, role)
    setup_logging(config.logging.file, "DEBUG" if debug else config.logging.level)
    if debug:
        logger.debug("Debug mode enabled")

    try:
        code = Orchestrator(config).run(force=force)
    except BootstrapError as e:
        logger.debug("Bootstrap aborted", exc_info=True)
        logger.error(f"Bootstrap aborted: {e}")
        code = 1
    raise typer.Exit(code=code)
