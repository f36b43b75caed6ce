"""Stage lists for each node role."""
import logging
from typing import List

from ..config import BootstrapConfig
from .addons import AddonDeployer
from .bootstrapper import ClusterBootstrapper
from .catalog import AddonCatalog, cluster_ready_manifest
from .kube import KubeClient
from .models import AddonSpec, NodeRole, RetryPolicy, Stage
from .system import HostSystem

logger = logging.getLogger("zerotouch.stages")

# Stage names double as marker file names, so they stay stable across releases
ADDON_STAGES = {
    "flannel": "cni",
    "metallb": "metallb",
    "ingress-nginx": "ingress",
    "longhorn": "longhorn",
    "minio": "minio",
    "monitoring": "monitoring",
    "portainer": "portainer",
    "welcome": "welcome",
}

# Slack on top of an addon's readiness bounds for downloads and fixups
ADDON_STAGE_SLACK = 600.0


class StageFactory:
    """Composes the role's stages from the bootstrap components."""

    def __init__(
        self,
        config: BootstrapConfig,
        host: HostSystem,
        bootstrapper: ClusterBootstrapper,
        deployer: AddonDeployer,
        catalog: AddonCatalog,
        kube: KubeClient,
    ):
        self.config = config
        self.timing = config.timing
        self.host = host
        self.bootstrapper = bootstrapper
        self.deployer = deployer
        self.catalog = catalog
        self.kube = kube

    def for_role(self, role: NodeRole) -> List[Stage]:
        return self.primary() if role == NodeRole.PRIMARY else self.secondary()

    def primary(self) -> List[Stage]:
        stages = [self.network(), self.prerequisites(), self.k8s_init()]
        stages += [self.addon(spec) for spec in self.catalog.build()]
        stages.append(self.cluster_ready())
        return stages

    def secondary(self) -> List[Stage]:
        return [self.network(), self.prerequisites(), self.join_cluster()]

    def network(self) -> Stage:
        network = self.config.network
        node = self.config.node

        def action():
            logger.info(f"Interface: {network.interface}")
            logger.info(f"Private IP: {node.private_ip}/{network.private_netmask}")
            if node.external_ip:
                logger.info(f"External IP: {node.external_ip}/{network.external_netmask}")
            logger.info(f"Gateway: {network.gateway}")
            self.host.test_network(network.connectivity_target)

        return Stage("network", action, "Verifying network", timeout=300)

    def prerequisites(self) -> Stage:
        def action():
            self.host.disable_swap()
            self.host.configure_kernel_modules()
            self.host.configure_sysctl()
            self.host.ensure_service_running("containerd")
            # kubelet starts once kubeadm has written its configuration
            self.host.enable_service("kubelet")

        return Stage("prerequisites", action, "Verifying system prerequisites", timeout=600)

    def k8s_init(self) -> Stage:
        return Stage(
            "k8s-init",
            self.bootstrapper.init,
            "Initializing Kubernetes control plane",
            timeout=self.timing.init_timeout + self.timing.api_server_wait + 300,
        )

    def join_cluster(self) -> Stage:
        return Stage(
            "join-cluster",
            self.bootstrapper.join,
            "Joining cluster",
            timeout=self.timing.api_server_wait + self.timing.cluster_ready_wait + self.timing.join_timeout,
        )

    def addon(self, spec: AddonSpec) -> Stage:
        budget = sum(target.max_wait for target in spec.readiness) + ADDON_STAGE_SLACK
        return Stage(
            ADDON_STAGES[spec.name],
            lambda: self.deployer.deploy(spec),
            f"Deploying {spec.description or spec.name}",
            timeout=budget,
        )

    def cluster_ready(self) -> Stage:
        def action():
            self.kube.apply_documents([cluster_ready_manifest(self.config.node.hostname)])
            logger.info("Cluster ready signal created")

        return Stage(
            "cluster-ready",
            action,
            "Creating cluster ready signal",
            timeout=300,
            retry_policy=RetryPolicy(self.timing.retry_attempts, self.timing.retry_delay),
        )
