"""Control-plane initialization and cluster join.

The primary node runs ``init`` once and publishes the join artifacts:
a join-command script, the cluster admin kubeconfig and the certificate key.
Secondary nodes consume those artifacts in ``join``.
"""
import logging
import pwd
import shlex
import shutil
import subprocess
from pathlib import Path
from typing import Callable, Dict, List, Optional

import yaml

from ..config import BootstrapConfig
from ..errors import ConfigurationError, FatalError
from ..utils import run_command, write_atomic
from .kube import KubeClient, api_server_healthy
from .models import ClusterJoinInfo
from .system import HostSystem
from .waiter import ConditionCheck, ConditionWaiter

logger = logging.getLogger("zerotouch.bootstrapper")

CONTROL_PLANE_TAINTS = ["node-role.kubernetes.io/control-plane", "node-role.kubernetes.io/master"]
CLUSTER_READY_NAMESPACE = "kube-system"
CLUSTER_READY_CONFIGMAP = "cluster-ready"


def parse_join_command(text: str) -> Dict[str, str]:
    """Extract the endpoint and flags from a ``kubeadm join`` script.

    Returns:
        Mapping with ``endpoint`` plus every ``--flag`` found, keyed without dashes

    Raises:
        ConfigurationError: If the text holds no ``kubeadm join`` invocation
    """
    tokens = shlex.split(text.replace("\\\n", " "), comments=True)
    if "join" not in tokens or tokens.index("join") + 1 >= len(tokens):
        raise ConfigurationError("Join command does not contain 'kubeadm join <endpoint>'")

    start = tokens.index("join")
    parsed = {"endpoint": tokens[start + 1]}
    rest = tokens[start + 2:]
    i = 0
    while i < len(rest):
        token = rest[i]
        if token.startswith("--"):
            if "=" in token:
                key, value = token[2:].split("=", 1)
            elif i + 1 < len(rest) and not rest[i + 1].startswith("--"):
                key, value = token[2:], rest[i + 1]
                i += 1
            else:
                key, value = token[2:], ""
            parsed[key] = value
        i += 1
    return parsed


class ClusterBootstrapper:
    """Runs ``kubeadm`` for the node's role.

    Args:
        config: Bootstrap configuration
        waiter: Readiness gate used for API and cluster-ready waits
        host: Host operations; its root also anchors user home directories
        runner: Command runner with the ``run_command`` signature
        kube_factory: Builds a ``KubeClient`` from a kubeconfig path
        api_probe: Health probe taking ``host:port``
    """

    def __init__(
        self,
        config: BootstrapConfig,
        waiter: ConditionWaiter,
        host: Optional[HostSystem] = None,
        runner: Callable[..., subprocess.CompletedProcess] = run_command,
        kube_factory: Callable[[Path], KubeClient] = KubeClient,
        api_probe: Callable[[str], bool] = api_server_healthy,
    ):
        self.config = config
        self.paths = config.paths
        self.timing = config.timing
        self.waiter = waiter
        self.host = host or HostSystem(runner=runner)
        self.run = runner
        self.kube_factory = kube_factory
        self.api_probe = api_probe

    # ------------------------------------------------------------------
    # Primary
    # ------------------------------------------------------------------

    def render_kubeadm_config(self) -> str:
        node = self.config.node
        cluster = self.config.cluster
        cert_sans = [node.private_ip]
        for extra in (node.external_ip, self.config.network.vip, node.hostname):
            if extra and extra not in cert_sans:
                cert_sans.append(extra)

        documents = [
            {
                "apiVersion": "kubeadm.k8s.io/v1beta3",
                "kind": "InitConfiguration",
                "localAPIEndpoint": {"advertiseAddress": node.private_ip, "bindPort": cluster.api_port},
                "nodeRegistration": {
                    "criSocket": cluster.cri_socket,
                    "kubeletExtraArgs": {"node-ip": node.private_ip},
                },
            },
            {
                "apiVersion": "kubeadm.k8s.io/v1beta3",
                "kind": "ClusterConfiguration",
                "kubernetesVersion": f"v{cluster.kubernetes_version}",
                "controlPlaneEndpoint": f"{node.private_ip}:{cluster.api_port}",
                "networking": {"podSubnet": cluster.pod_cidr, "serviceSubnet": cluster.service_cidr},
                "apiServer": {"certSANs": cert_sans},
                "controllerManager": {"extraArgs": {"bind-address": "0.0.0.0"}},
                "scheduler": {"extraArgs": {"bind-address": "0.0.0.0"}},
            },
            {
                "apiVersion": "kubelet.config.k8s.io/v1beta1",
                "kind": "KubeletConfiguration",
                "cgroupDriver": "systemd",
            },
        ]
        return yaml.safe_dump_all(documents, sort_keys=False)

    def init(self) -> ClusterJoinInfo:
        """Initialize the control plane and publish the join artifacts.

        Any failure of ``kubeadm`` itself is fatal; it is not retried.

        Raises:
            FatalError: If initialization fails
            ReadinessTimeoutError: If the API server never becomes healthy
        """
        if self.paths.admin_kubeconfig.exists():
            logger.info(f"Control plane already initialized ({self.paths.admin_kubeconfig} exists)")
        else:
            config_file = self.paths.bootstrap_dir / "kubeadm-config.yaml"
            write_atomic(config_file, self.render_kubeadm_config(), mode=0o600)
            logger.info("Initializing cluster (this takes 3-5 minutes)...")
            try:
                self.run(
                    ["kubeadm", "init", "--config", str(config_file), "--upload-certs"],
                    timeout=self.timing.init_timeout,
                )
            except (subprocess.CalledProcessError, subprocess.TimeoutExpired) as e:
                raise FatalError(f"kubeadm init failed: {e}") from e
            logger.info("✓ Kubernetes cluster initialized")

        self.install_admin_kubeconfig()

        local_endpoint = f"localhost:{self.config.cluster.api_port}"
        self.wait_for_api_server(local_endpoint)

        kube = self.kube_factory(self.paths.admin_kubeconfig)
        for taint in CONTROL_PLANE_TAINTS:
            removed = kube.remove_node_taint(taint)
            if removed:
                logger.info(f"Removed taint {taint} from {', '.join(removed)}")

        return self.publish_join_info()

    def install_admin_kubeconfig(self) -> None:
        """Copy the admin kubeconfig for root, the admin user and later stages."""
        source = self.paths.admin_kubeconfig
        shutil.copyfile(source, self.paths.shared_kubeconfig)
        self.paths.shared_kubeconfig.chmod(0o644)
        self._copy_kubeconfig(source, self.host.path("/root/.kube/config"))

        user = self.config.cluster.admin_user
        try:
            account = pwd.getpwnam(user)
        except KeyError:
            account = None
        if user == "root" or account is None:
            logger.warning(f"User {user} not found or is root, skipping kubeconfig setup")
            return
        target = self.host.path(f"/home/{user}/.kube/config")
        self._copy_kubeconfig(source, target)
        shutil.chown(target, user=account.pw_uid, group=account.pw_gid)
        shutil.chown(target.parent, user=account.pw_uid, group=account.pw_gid)
        logger.info(f"kubectl configured for {user}")

    @staticmethod
    def _copy_kubeconfig(source: Path, target: Path) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(source, target)
        target.chmod(0o600)

    def publish_join_info(self) -> ClusterJoinInfo:
        """Create a join token and certificate key and persist the join artifacts."""
        try:
            result = self.run(["kubeadm", "token", "create", "--print-join-command"], capture_output=True)
            join_command = result.stdout.strip()
            result = self.run(["kubeadm", "init", "phase", "upload-certs", "--upload-certs"], capture_output=True)
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired) as e:
            raise FatalError(f"Could not create join credentials: {e}") from e

        lines = [line.strip() for line in result.stdout.splitlines() if line.strip()]
        if not lines:
            raise FatalError("kubeadm did not print a certificate key")
        certificate_key = lines[-1]

        write_atomic(self.paths.join_command_file, f"#!/bin/bash\n{join_command}\n", mode=0o700)
        write_atomic(self.paths.certificate_key_file, f"{certificate_key}\n", mode=0o600)
        shutil.copyfile(self.paths.admin_kubeconfig, self.paths.join_admin_config)
        self.paths.join_admin_config.chmod(0o600)
        logger.info(f"Join artifacts written to {self.paths.bootstrap_dir}")

        return self.load_join_info()

    # ------------------------------------------------------------------
    # Secondary
    # ------------------------------------------------------------------

    def load_join_info(self) -> ClusterJoinInfo:
        """Read the join artifacts the primary node published.

        Raises:
            ConfigurationError: If an artifact is missing or incomplete
        """
        for artifact in (self.paths.join_command_file, self.paths.join_admin_config):
            if not artifact.is_file():
                raise ConfigurationError(f"Join artifact not found: {artifact}")

        parsed = parse_join_command(self.paths.join_command_file.read_text())
        token = parsed.get("token")
        ca_hash = parsed.get("discovery-token-ca-cert-hash")
        if not token or not ca_hash:
            raise ConfigurationError(
                f"{self.paths.join_command_file} lacks --token or --discovery-token-ca-cert-hash"
            )

        certificate_key = parsed.get("certificate-key") or None
        if self.paths.certificate_key_file.is_file():
            certificate_key = self.paths.certificate_key_file.read_text().strip() or certificate_key

        return ClusterJoinInfo(
            api_endpoint=parsed["endpoint"],
            bootstrap_token=token,
            ca_cert_hash=ca_hash,
            certificate_key=certificate_key,
            admin_config=str(self.paths.join_admin_config),
        )

    def wait_for_api_server(self, endpoint: str) -> None:
        self.waiter.require(ConditionCheck(
            predicate=lambda: self.api_probe(endpoint),
            description=f"API server at {endpoint}",
            max_wait=self.timing.api_server_wait,
            interval=self.timing.wait_interval,
        ))

    def wait_for_cluster_ready(self, kubeconfig: Path) -> None:
        kube = self.kube_factory(kubeconfig)
        self.waiter.require(ConditionCheck(
            predicate=lambda: kube.configmap_exists(CLUSTER_READY_NAMESPACE, CLUSTER_READY_CONFIGMAP),
            description=f"ConfigMap {CLUSTER_READY_NAMESPACE}/{CLUSTER_READY_CONFIGMAP}",
            max_wait=self.timing.cluster_ready_wait,
            interval=self.timing.wait_interval,
        ))

    def join(self, info: Optional[ClusterJoinInfo] = None) -> None:
        """Join the cluster once the primary reports itself ready.

        The join itself is attempted exactly once.

        Raises:
            ConfigurationError: If the join artifacts are missing
            ReadinessTimeoutError: If the API server or the ready signal never appear
            FatalError: If ``kubeadm join`` fails
        """
        info = info or self.load_join_info()

        logger.info(f"Waiting for API server at {info.api_endpoint}...")
        self.wait_for_api_server(info.api_endpoint)

        logger.info("Waiting for cluster-ready ConfigMap...")
        self.wait_for_cluster_ready(Path(info.admin_config))

        if self.already_joined():
            logger.info("Node already has a kubelet configuration, skipping kubeadm join")
        else:
            logger.info("Executing join command...")
            try:
                self.run(self.join_args(info), timeout=self.timing.join_timeout)
            except (subprocess.CalledProcessError, subprocess.TimeoutExpired) as e:
                raise FatalError(f"Failed to join cluster: {e}") from e
            logger.info("✓ Successfully joined cluster")

        if self.paths.admin_kubeconfig.exists():
            self._copy_kubeconfig(self.paths.admin_kubeconfig, self.host.path("/root/.kube/config"))
        else:
            logger.warning(f"{self.paths.admin_kubeconfig} not present after join, kubectl not configured")

    def already_joined(self) -> bool:
        return (self.paths.admin_kubeconfig.parent / "kubelet.conf").exists()

    def join_args(self, info: ClusterJoinInfo) -> List[str]:
        """Advertise the private address only for control-plane joins."""
        advertise = self.config.node.private_ip if info.certificate_key else None
        return info.join_args(advertise_address=advertise)
