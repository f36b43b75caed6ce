"""Helm chart installation.

There is no maintained Python client for Helm, so charts are installed by
running the ``helm`` binary with explicit argument lists.
"""
import logging
import subprocess
from pathlib import Path
from typing import Callable, List, Optional

from ..utils import run_retryable
from .models import HelmChartSource

logger = logging.getLogger("zerotouch.helm")


class HelmClient:
    """Thin wrapper around the ``helm`` CLI.

    Every failure is raised as ``TransientError`` so callers can retry;
    ``upgrade --install`` makes a repeated install a no-op.
    """

    def __init__(
        self,
        kubeconfig: Optional[Path] = None,
        runner: Callable[..., subprocess.CompletedProcess] = run_retryable,
    ):
        self.kubeconfig = kubeconfig
        self.run = runner

    def _base(self) -> List[str]:
        cmd = ["helm"]
        if self.kubeconfig:
            cmd += ["--kubeconfig", str(self.kubeconfig)]
        return cmd

    def add_repo(self, name: str, url: str) -> None:
        self.run(self._base() + ["repo", "add", name, url, "--force-update"], capture_output=True)

    def update_repos(self) -> None:
        self.run(self._base() + ["repo", "update"], capture_output=True)

    def install(self, chart: HelmChartSource, namespace: str) -> None:
        """Install or upgrade ``chart`` into ``namespace``."""
        logger.info(f"Installing Helm release '{chart.release}' ({chart.chart} {chart.version}) in namespace '{namespace}'")

        self.add_repo(chart.repo_name, chart.repo_url)
        self.update_repos()

        cmd = self._base() + [
            "upgrade", "--install", chart.release, f"{chart.repo_name}/{chart.chart}",
            "--namespace", namespace, "--create-namespace",
            "--version", chart.version,
            "--timeout", chart.timeout,
        ]
        values = chart.values() if callable(chart.values) else chart.values
        for key, value in values:
            cmd += ["--set", f"{key}={value}"]

        self.run(cmd, capture_output=True)
        logger.info(f"Helm release '{chart.release}' installed")
