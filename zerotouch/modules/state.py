"""Durable stage-completion markers.

One zero-byte ``<stage>.done`` file per completed stage, under a fixed
directory. A missing directory means nothing has completed yet. Markers are
created with write-to-temp-then-rename so a crash can never leave a partial
marker that reads as complete.
"""
import logging
import os
import re
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Union

from ..errors import StateStoreError

logger = logging.getLogger("zerotouch.state")

MARKER_SUFFIX = ".done"
_VALID_NAME = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


class StateStore:
    """Idempotency ledger for pipeline stages."""

    def __init__(self, state_dir: Union[str, Path]):
        self.state_dir = Path(state_dir)

    def _marker(self, stage_name: str) -> Path:
        if not _VALID_NAME.match(stage_name or ""):
            raise ValueError(f"Invalid stage name for a marker file: {stage_name!r}")
        return self.state_dir / f"{stage_name}{MARKER_SUFFIX}"

    def is_complete(self, stage_name: str) -> bool:
        return self._marker(stage_name).is_file()

    def mark_complete(self, stage_name: str) -> None:
        """Persist the completion marker for ``stage_name``.

        An existing marker is left untouched so its timestamp keeps recording
        the first completion.

        Raises:
            StateStoreError: If the marker cannot be durably written
        """
        marker = self._marker(stage_name)
        if marker.is_file():
            return

        tmp_path = None
        try:
            self.state_dir.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                dir=self.state_dir, prefix=f".{stage_name}.", suffix=".tmp"
            )
            try:
                os.fsync(fd)
            finally:
                os.close(fd)
            os.replace(tmp_path, marker)
            tmp_path = None
            self._sync_dir()
        except OSError as e:
            raise StateStoreError(
                f"Could not persist completion marker for stage '{stage_name}': {e}"
            ) from e
        finally:
            if tmp_path is not None:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    logger.debug(f"Could not remove temporary marker {tmp_path}")

        logger.debug(f"Marked stage complete: {stage_name}")

    def _sync_dir(self) -> None:
        fd = os.open(self.state_dir, os.O_RDONLY)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)

    def completed(self) -> Dict[str, datetime]:
        """Return completed stage names mapped to their completion time."""
        if not self.state_dir.is_dir():
            return {}
        result = {}
        for path in sorted(self.state_dir.glob(f"*{MARKER_SUFFIX}")):
            if path.name.startswith(".") or not path.is_file():
                continue
            stamp = datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
            result[path.name[: -len(MARKER_SUFFIX)]] = stamp
        return result

    def reset(self, stage_name: Optional[str] = None) -> List[str]:
        """Remove one marker, or every marker when ``stage_name`` is None.

        Only meant for testing and rebuilds.

        Returns:
            Names of the stages whose markers were removed
        """
        if stage_name is not None:
            marker = self._marker(stage_name)
            if not marker.exists():
                return []
            marker.unlink()
            logger.info(f"Reset stage marker: {stage_name}")
            return [stage_name]

        removed = list(self.completed())
        if self.state_dir.is_dir():
            for path in self.state_dir.iterdir():
                if path.is_file() and (path.name.endswith(MARKER_SUFFIX) or path.name.endswith(".tmp")):
                    path.unlink()
        if removed:
            logger.info(f"Reset {len(removed)} stage marker(s)")
        return removed
