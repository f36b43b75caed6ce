"""Wires the bootstrap components together and runs the role's pipeline."""
import logging
import subprocess
import time
from pathlib import Path
from typing import Callable, List, Optional

from ..config import BootstrapConfig
from ..errors import FatalError
from ..logging import COMPLETION_SENTINEL, log_header
from ..utils import run_command
from .addons import AddonDeployer
from .bootstrapper import ClusterBootstrapper
from .catalog import AddonCatalog
from .firstboot import FirstBootDetector
from .helm import HelmClient
from .kube import KubeClient, api_server_healthy
from .models import PipelineResult, StageStatus
from .pipeline import Pipeline
from .retry import RetryExecutor
from .stages import StageFactory
from .state import StateStore
from .system import HostSystem
from .waiter import ConditionWaiter

logger = logging.getLogger("zerotouch.orchestrator")


class Orchestrator:
    """One bootstrap run for this node.

    Everything the run touches is built here from ``config``; the keyword
    arguments exist so tests can swap the clock and the outside world.
    """

    def __init__(
        self,
        config: BootstrapConfig,
        clock: Callable[[], float] = time.monotonic,
        sleep: Optional[Callable[[float], None]] = None,
        runner: Callable[..., subprocess.CompletedProcess] = run_command,
        kube_factory: Callable[[Path], KubeClient] = KubeClient,
        api_probe: Callable[[str], bool] = api_server_healthy,
        host: Optional[HostSystem] = None,
        helm: Optional[HelmClient] = None,
    ):
        self.config = config
        self.identity = config.identity()
        self.clock = clock
        timing = config.timing
        paths = config.paths

        self.waiter = ConditionWaiter(clock=clock, sleep=sleep)
        self.retry = RetryExecutor(sleep=sleep or time.sleep)
        self.store = StateStore(paths.state_dir)
        self.host = host or HostSystem(runner=runner, retry=self.retry)
        self.kube = kube_factory(paths.admin_kubeconfig)
        self.helm = helm or HelmClient(kubeconfig=paths.admin_kubeconfig)

        self.bootstrapper = ClusterBootstrapper(
            config, self.waiter, self.host, runner=runner,
            kube_factory=kube_factory, api_probe=api_probe,
        )
        self.deployer = AddonDeployer(
            self.kube, self.helm, self.waiter, self.retry,
            apply_attempts=timing.retry_attempts,
            apply_delay=timing.retry_delay,
            interval=timing.wait_interval,
        )
        self.catalog = AddonCatalog(config, self.kube, self.host, self.retry, self.waiter)
        self.detector = FirstBootDetector(
            paths.provisioned_marker, self.identity, self.host,
            paths.admin_kubeconfig, kube_factory=kube_factory,
        )
        self.stage_factory = StageFactory(
            config, self.host, self.bootstrapper, self.deployer, self.catalog, self.kube,
        )

    def build_pipeline(self) -> Pipeline:
        """Build the role's pipeline.

        Raises:
            ConfigurationError: If an addon is not pinned or its readiness targets are wrong
        """
        stages = self.stage_factory.for_role(self.identity.role)
        return Pipeline(
            self.identity.role.value, stages, self.store,
            waiter=self.waiter, retry=self.retry, clock=self.clock,
        )

    def run(self, force: bool = False) -> int:
        """Run the bootstrap and return the process exit code."""
        started = self.clock()
        title = "NODE 1 INITIALIZATION" if self.identity.is_primary else "NODE JOIN"
        log_header(logger, f"{title} STARTING")
        logger.info(
            f"Node: {self.identity.hostname} (role={self.identity.role.value}, "
            f"index={self.identity.node_index}, ip={self.identity.private_ip})"
        )

        if force:
            logger.info("Skipping first-boot detection (--force)")
        elif self.detector.already_provisioned():
            logger.info("Node already provisioned, exiting")
            return 0

        pipeline = self.build_pipeline()
        result = pipeline.run()
        if not result.succeeded:
            return result.exit_code

        self.finish(result)
        logger.info("=" * 74)
        logger.info(
            f"{COMPLETION_SENTINEL}: {self.identity.hostname} "
            f"({self.identity.role.value}) in {self.clock() - started:.0f}s"
        )
        return 0

    def finish(self, result: PipelineResult) -> None:
        try:
            self.detector.mark_provisioned({"stages": [o.name for o in result.outcomes]})
        except OSError as e:
            raise FatalError(f"Could not write provisioned marker: {e}") from e

        if self.config.cleanup_bootstrap:
            try:
                self.host.cleanup_bootstrap(self.config.paths.bootstrap_dir)
            except OSError as e:
                # The provisioned marker is already written
                logger.warning(f"Bootstrap cleanup incomplete: {e}")

        for line in self.access_summary(result):
            logger.info(line)

    def access_summary(self, result: PipelineResult) -> List[str]:
        ran = result.names(StageStatus.COMPLETED)
        lines = [f"Stages run this boot: {', '.join(ran) or 'none'}"]
        if not self.identity.is_primary:
            lines.append(f"Node {self.identity.hostname} joined {self.config.cluster.api_endpoint}")
            return lines

        vip = self.config.network.vip
        addons = self.config.addons
        lines += [f"VIP: {vip}", f"Kubeconfig: {self.config.paths.shared_kubeconfig}"]
        if addons.deploy_welcome_page:
            lines.append(f"Welcome Page: http://{vip}/")
        if addons.deploy_portainer:
            lines.append(f"Portainer: http://{vip}/portainer/")
        if addons.deploy_monitoring:
            lines.append(f"Grafana: http://{vip}/grafana/")
            lines.append(f"Prometheus: http://{vip}/prometheus/")
        if addons.deploy_longhorn:
            lines.append(f"Longhorn: http://{vip}/longhorn/")
        if addons.deploy_minio:
            lines.append(f"MinIO: http://{vip}/minio/")
        return lines
