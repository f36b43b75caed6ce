"""Utility functions and helpers for the zerotouch package."""
import logging
import os
import subprocess
import tempfile
from pathlib import Path
from typing import Any, List, Optional, Sequence

from ..errors import TransientError

logger = logging.getLogger("zerotouch.utils")

REDACT_KEYS = ("password", "secret", "token", "certificate-key")


def redact_args(cmd: Sequence[str]) -> List[str]:
    """Mask the value following any secret-looking flag.

    Args:
        cmd: Command argument list

    Returns:
        Copy of the argument list that is safe to log
    """
    redacted = []
    hide_next = False
    for arg in cmd:
        if hide_next:
            redacted.append("[REDACTED]")
            hide_next = False
            continue
        lowered = arg.lower()
        if lowered.startswith("--") and any(k in lowered for k in REDACT_KEYS):
            if "=" in arg:
                redacted.append(arg.split("=", 1)[0] + "=[REDACTED]")
            else:
                redacted.append(arg)
                hide_next = True
            continue
        if "=" in arg and any(k in lowered.split("=", 1)[0] for k in REDACT_KEYS):
            redacted.append(arg.split("=", 1)[0] + "=[REDACTED]")
            continue
        redacted.append(arg)
    return redacted


def run_command(
    cmd: List[str],
    *,
    check: bool = True,
    capture_output: bool = False,
    cwd: Optional[Path] = None,
    timeout: Optional[float] = None,
    input: Optional[str] = None,
) -> subprocess.CompletedProcess:
    """Run an external command from an argument list (never a shell string)."""
    cmd_str = ' '.join(redact_args(cmd))
    logger.debug(f"Running: {cmd_str}")
    try:
        result = subprocess.run(
            cmd,
            check=check,
            text=True,
            cwd=cwd,
            input=input,
            timeout=timeout,
            stdout=subprocess.PIPE if capture_output else None,
            stderr=subprocess.PIPE if capture_output else None,
        )
        if capture_output and result.stdout:
            logger.debug(f"Output:\n{result.stdout}")
        return result
    except subprocess.CalledProcessError as e:
        msg = f"Command failed: {cmd_str} (exit code: {e.returncode})"
        if capture_output:
            msg += f"\nStdout:\n{e.stdout}\nStderr:\n{e.stderr}"
        logger.error(msg)
        raise
    except subprocess.TimeoutExpired:
        logger.error(f"Command timed out after {timeout}s: {cmd_str}")
        raise


def run_retryable(cmd: List[str], **kwargs: Any) -> subprocess.CompletedProcess:
    """Run a command whose failure is worth retrying.

    Non-zero exits and timeouts are raised as ``TransientError`` so a
    ``RetryExecutor`` will try again.
    """
    try:
        return run_command(cmd, **kwargs)
    except (subprocess.CalledProcessError, subprocess.TimeoutExpired) as e:
        raise TransientError(str(e)) from e


def write_atomic(path: Path, data: str, mode: int = 0o644) -> None:
    """Write ``data`` to ``path`` so readers see either the old or the new file."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise
