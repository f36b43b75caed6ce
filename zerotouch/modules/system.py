"""Host-level preparation: networking checks, kernel settings and services."""
import logging
import os
import subprocess
from pathlib import Path
from typing import Callable, List, Optional

from ..errors import FatalError, TransientError
from ..utils import run_command
from .retry import RetryExecutor

logger = logging.getLogger("zerotouch.system")

KERNEL_MODULES = ["overlay", "br_netfilter"]

SYSCTL_SETTINGS = {
    "net.bridge.bridge-nf-call-iptables": "1",
    "net.bridge.bridge-nf-call-ip6tables": "1",
    "net.ipv4.ip_forward": "1",
}

# Seed files that would make cloud-init provision the node again
CLOUD_INIT_SEEDS = [
    "boot/firmware/user-data",
    "boot/firmware/meta-data",
    "boot/user-data",
    "boot/meta-data",
]

# Join artifacts stay behind for nodes that have not joined yet
KEEP_SCRIPTS = {"join-command.sh"}


class HostSystem:
    """Operations on the local machine.

    Args:
        root: Filesystem root; tests point this at a temporary directory
        runner: Command runner with the ``run_command`` signature
        retry: Executor used for checks that may need a few attempts
    """

    def __init__(
        self,
        root: Path = Path("/"),
        runner: Callable[..., subprocess.CompletedProcess] = run_command,
        retry: Optional[RetryExecutor] = None,
    ):
        self.root = Path(root)
        self.run = runner
        self.retry = retry or RetryExecutor()

    def path(self, absolute: str) -> Path:
        return self.root / absolute.lstrip("/")

    def test_network(self, target: str = "8.8.8.8", attempts: int = 5, delay: float = 5) -> None:
        """Confirm outbound connectivity, tolerating a slow network start."""
        logger.info("Testing network connectivity")

        def ping():
            result = self.run(["ping", "-c", "1", "-W", "5", target], check=False, capture_output=True)
            if result.returncode != 0:
                raise TransientError(f"Cannot reach {target}")

        self.retry.run(ping, max_attempts=attempts, delay=delay, description=f"Ping {target}")
        logger.info("Network connectivity OK")

    def disable_swap(self) -> None:
        logger.info("Disabling swap")
        self.run(["swapoff", "-a"])

        fstab = self.path("/etc/fstab")
        if fstab.exists():
            lines = fstab.read_text().splitlines(keepends=True)
            kept = [line for line in lines if "swap" not in line]
            if len(kept) != len(lines):
                fstab.write_text("".join(kept))
                logger.debug(f"Removed {len(lines) - len(kept)} swap entr(ies) from {fstab}")

        self.run(["systemctl", "mask", "swap.target"])
        logger.info("Swap disabled")

    def configure_kernel_modules(self) -> None:
        logger.info("Configuring kernel modules")
        conf = self.path("/etc/modules-load.d/k8s.conf")
        conf.parent.mkdir(parents=True, exist_ok=True)
        conf.write_text("".join(f"{m}\n" for m in KERNEL_MODULES))
        for module in KERNEL_MODULES:
            self.run(["modprobe", module])
        logger.info("Kernel modules configured")

    def configure_sysctl(self) -> None:
        logger.info("Configuring sysctl for Kubernetes")
        conf = self.path("/etc/sysctl.d/k8s.conf")
        conf.parent.mkdir(parents=True, exist_ok=True)
        conf.write_text("".join(f"{k} = {v}\n" for k, v in SYSCTL_SETTINGS.items()))
        self.run(["sysctl", "--system"], capture_output=True)
        logger.info("Sysctl configured")

    def service_active(self, service: str) -> bool:
        result = self.run(["systemctl", "is-active", "--quiet", service], check=False)
        return result.returncode == 0

    def enable_service(self, service: str) -> None:
        self.run(["systemctl", "enable", service])

    def restart_service(self, service: str) -> None:
        self.run(["systemctl", "restart", service])

    def ensure_service_running(self, service: str) -> None:
        """Enable and start ``service``.

        Raises:
            FatalError: If the unit is not active afterwards
        """
        logger.info(f"Ensuring {service} is running")
        self.run(["systemctl", "enable", service])
        self.run(["systemctl", "start", service])
        if not self.service_active(service):
            raise FatalError(f"{service} failed to start")
        logger.info(f"{service} is running")

    def ensure_directory(self, absolute: str, mode: int = 0o755) -> Path:
        directory = self.path(absolute)
        directory.mkdir(parents=True, exist_ok=True)
        os.chmod(directory, mode)
        return directory

    def link_flannel_plugin(self) -> bool:
        """Expose the flannel CNI binary where containerd looks for plugins.

        The flannel DaemonSet installs into /opt/cni/bin, containerd here
        expects plugins under /usr/lib/cni.

        Returns:
            True if a link was created and containerd restarted
        """
        source = self.path("/opt/cni/bin/flannel")
        target = self.path("/usr/lib/cni/flannel")
        if not source.exists() or target.exists() or target.is_symlink():
            logger.info("Flannel symlink already exists or flannel binary not found")
            return False

        target.parent.mkdir(parents=True, exist_ok=True)
        target.symlink_to(source)
        logger.info("Flannel symlink created")
        self.restart_service("containerd")
        return True

    def cleanup_bootstrap(self, bootstrap_dir: Path) -> List[Path]:
        """Remove bootstrap scripts and cloud-init seeds, keeping logs and state."""
        logger.info("Cleaning up bootstrap scripts (keeping logs)")
        removed = []
        scripts_dir = self.path(str(bootstrap_dir))
        candidates = [
            p for p in scripts_dir.glob("*.sh") if p.name not in KEEP_SCRIPTS
        ] if scripts_dir.is_dir() else []
        candidates += [self.path(p) for p in CLOUD_INIT_SEEDS]
        for path in candidates:
            if path.is_file():
                path.unlink()
                removed.append(path)
        logger.info(f"Bootstrap cleanup complete ({len(removed)} file(s) removed)")
        return removed
