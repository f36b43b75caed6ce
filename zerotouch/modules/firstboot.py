"""First-boot detection and the provisioned marker."""
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from .. import __version__
from ..utils import write_atomic
from .kube import KubeClient
from .models import NodeIdentity
from .system import HostSystem

logger = logging.getLogger("zerotouch.firstboot")


@dataclass
class BootSignals:
    """Independent evidence that a node was already bootstrapped."""
    marker: bool
    kubelet: bool
    member: bool

    @property
    def provisioned(self) -> bool:
        return self.marker and self.kubelet and self.member


class FirstBootDetector:
    """Decides whether this boot still needs the pipeline.

    A node counts as bootstrapped only when all three signals agree: the
    provisioned marker exists, kubelet is active and the node is registered
    in the cluster.
    """

    def __init__(
        self,
        marker: Path,
        identity: NodeIdentity,
        host: HostSystem,
        kubeconfig: Path,
        kube_factory: Callable[[Path], KubeClient] = KubeClient,
    ):
        self.marker = Path(marker)
        self.identity = identity
        self.host = host
        self.kubeconfig = Path(kubeconfig)
        self.kube_factory = kube_factory

    def is_member(self) -> bool:
        if not self.kubeconfig.exists():
            return False
        try:
            return self.kube_factory(self.kubeconfig).node_exists(self.identity.hostname)
        except Exception as e:
            logger.debug(f"Cluster membership check failed: {e}")
            return False

    def kubelet_active(self) -> bool:
        try:
            return self.host.service_active("kubelet")
        except OSError as e:
            logger.debug(f"Kubelet status check failed: {e}")
            return False

    def signals(self) -> BootSignals:
        return BootSignals(
            marker=self.marker.is_file(),
            kubelet=self.kubelet_active(),
            member=self.is_member(),
        )

    def already_provisioned(self) -> bool:
        signals = self.signals()
        if signals.provisioned:
            logger.info(f"Node {self.identity.hostname} already provisioned (marker, kubelet and membership confirmed)")
            return True
        if signals.marker:
            missing = [name for name, ok in (("kubelet active", signals.kubelet), ("node in cluster", signals.member)) if not ok]
            logger.warning(f"Provisioned marker exists but {' and '.join(missing)} not confirmed; resuming bootstrap")
        else:
            logger.info("First boot detected")
        return False

    def mark_provisioned(self, extra: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Atomically write the provisioned marker as JSON."""
        record: Dict[str, Any] = {
            "provisioned_at": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
            "node_identity": {
                "hostname": self.identity.hostname,
                "role": self.identity.role.value,
                "private_ip": self.identity.private_ip,
                "external_ip": self.identity.external_ip,
                "node_index": self.identity.node_index,
            },
            "zerotouch_version": __version__,
        }
        if extra:
            record.update(extra)
        write_atomic(self.marker, json.dumps(record, indent=2) + "\n", mode=0o644)
        logger.info(f"Node marked as provisioned ({self.marker})")
        return record
