"""Bootstrap configuration management.

Configuration is loaded with the following precedence:
1. Process environment (set by the first-boot configuration mechanism)
2. Dotenv file (``/etc/zerotouch/bootstrap.env`` by default)
3. Default values

The resulting ``BootstrapConfig`` is passed explicitly to the orchestrator;
nothing else reads the environment.
"""
import ipaddress
import logging
import os
import socket
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

from dotenv import dotenv_values
from pydantic import BaseModel, Field, ValidationError, field_validator

from .errors import ConfigurationError
from .modules.models import NodeIdentity, NodeRole

logger = logging.getLogger("zerotouch.config")

DEFAULT_ENV_FILES = [
    Path("/etc/zerotouch/bootstrap.env"),
    Path("/opt/bootstrap/bootstrap.env"),
]

_TRUE = ("1", "true", "yes", "on")


def _validate_ip(value: Optional[str]) -> Optional[str]:
    if value in (None, ""):
        return None
    try:
        ipaddress.ip_address(value)
    except ValueError:
        raise ValueError(f"Invalid IP address: {value}")
    return value


class PathsConfig(BaseModel):
    """Well-known filesystem locations."""
    bootstrap_dir: Path = Field(
        default=Path("/opt/bootstrap"),
        description="Directory holding bootstrap scripts and join artifacts"
    )
    state_dir: Path = Field(
        default=Path("/opt/bootstrap/.state"),
        description="Directory of per-stage completion markers"
    )
    admin_kubeconfig: Path = Field(
        default=Path("/etc/kubernetes/admin.conf"),
        description="Kubeconfig written by kubeadm on this node"
    )
    provisioned_marker: Path = Field(
        default=Path("/var/lib/node-provisioned"),
        description="Written once the whole pipeline has completed"
    )

    @property
    def join_command_file(self) -> Path:
        return self.bootstrap_dir / "join-command.sh"

    @property
    def join_admin_config(self) -> Path:
        return self.bootstrap_dir / "admin.conf"

    @property
    def certificate_key_file(self) -> Path:
        return self.bootstrap_dir / "certificate-key"

    @property
    def shared_kubeconfig(self) -> Path:
        return self.bootstrap_dir / "kubeconfig"


class NodeConfig(BaseModel):
    """Identity of the node being bootstrapped."""
    role: NodeRole = NodeRole.PRIMARY
    hostname: str = Field(default_factory=socket.gethostname)
    index: int = 1
    private_ip: str = "192.168.100.11"
    external_ip: Optional[str] = None

    @field_validator("private_ip", "external_ip")
    @classmethod
    def check_ip(cls, v: Optional[str]) -> Optional[str]:
        return _validate_ip(v)


class NetworkConfig(BaseModel):
    """Host networking as provided by the first-boot configuration."""
    interface: str = "eth0"
    private_netmask: int = 24
    external_netmask: int = 24
    gateway: str = "192.168.100.1"
    vip: str = "192.168.1.100"
    metallb_ip_range: Optional[str] = None
    connectivity_target: str = "8.8.8.8"

    @field_validator("gateway", "vip")
    @classmethod
    def check_ip(cls, v: str) -> str:
        return _validate_ip(v)

    @property
    def load_balancer_range(self) -> str:
        return self.metallb_ip_range or f"{self.vip}-{self.vip}"


class ClusterConfig(BaseModel):
    """Cluster-wide settings shared by every node."""
    kubernetes_version: str = "1.28.0"
    pod_cidr: str = "10.244.0.0/16"
    service_cidr: str = "10.96.0.0/12"
    api_port: int = 6443
    primary_private_ip: str = "192.168.100.11"
    primary_external_ip: Optional[str] = "192.168.1.21"
    admin_user: str = "k8sadmin"
    cri_socket: str = "unix:///var/run/containerd/containerd.sock"

    @field_validator("primary_private_ip", "primary_external_ip")
    @classmethod
    def check_ip(cls, v: Optional[str]) -> Optional[str]:
        return _validate_ip(v)

    @field_validator("pod_cidr", "service_cidr")
    @classmethod
    def check_cidr(cls, v: str) -> str:
        try:
            ipaddress.ip_network(v)
        except ValueError:
            raise ValueError(f"Invalid CIDR: {v}")
        return v

    @property
    def api_endpoint(self) -> str:
        return f"{self.primary_private_ip}:{self.api_port}"


class AddonsConfig(BaseModel):
    """Addon versions and feature toggles."""
    flannel_version: str = "v0.26.1"
    metallb_version: str = "v0.14.9"
    ingress_nginx_version: str = "v1.11.3"
    longhorn_version: str = "v1.7.2"
    deploy_longhorn: bool = True
    deploy_minio: bool = True
    deploy_monitoring: bool = True
    deploy_portainer: bool = True
    deploy_welcome_page: bool = True
    longhorn_data_dir: Path = Path("/var/lib/longhorn")
    minio_root_user: str = "admin"
    minio_root_password: Optional[str] = None
    grafana_admin_password: str = "admin"


class TimingConfig(BaseModel):
    """Wait and retry bounds, in seconds."""
    wait_interval: float = 10
    api_server_wait: float = 600
    pod_wait: float = 1200
    cluster_ready_wait: float = 1800
    init_timeout: float = 600
    join_timeout: float = 600
    retry_attempts: int = 3
    retry_delay: float = 5


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = "INFO"
    file: Path = Path("/var/log/bootstrap.log")


class BootstrapConfig(BaseModel):
    """Complete configuration of one orchestrator run."""
    node: NodeConfig = Field(default_factory=NodeConfig)
    paths: PathsConfig = Field(default_factory=PathsConfig)
    network: NetworkConfig = Field(default_factory=NetworkConfig)
    cluster: ClusterConfig = Field(default_factory=ClusterConfig)
    addons: AddonsConfig = Field(default_factory=AddonsConfig)
    timing: TimingConfig = Field(default_factory=TimingConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    cleanup_bootstrap: bool = True

    def identity(self) -> NodeIdentity:
        return NodeIdentity(
            hostname=self.node.hostname,
            role=self.node.role,
            private_ip=self.node.private_ip,
            external_ip=self.node.external_ip,
            node_index=self.node.index,
        )

    @classmethod
    def from_env(
        cls,
        environ: Optional[Mapping[str, str]] = None,
        env_file: Optional[Union[str, Path]] = None,
    ) -> "BootstrapConfig":
        """Build the configuration from a dotenv file and the environment.

        Raises:
            ConfigurationError: If the environment describes an invalid node
        """
        env: Dict[str, Any] = {}
        for path in _env_files(env_file):
            logger.debug(f"Loading environment from {path}")
            env.update({k: v for k, v in dotenv_values(path).items() if v is not None})
        env.update(os.environ if environ is None else environ)

        try:
            return cls(**_from_mapping(env))
        except (ValidationError, ValueError) as e:
            raise ConfigurationError(f"Invalid bootstrap configuration: {e}") from e


def _env_files(env_file: Optional[Union[str, Path]]) -> List[Path]:
    if env_file:
        path = Path(env_file).expanduser()
        if not path.exists():
            raise ConfigurationError(f"Environment file not found: {path}")
        return [path]
    return [p for p in DEFAULT_ENV_FILES if p.exists()]


def _flag(env: Mapping[str, Any], key: str, default: bool = True) -> bool:
    value = env.get(key)
    if value in (None, ""):
        return default
    return str(value).strip().lower() in _TRUE


def _resolve_role(env: Mapping[str, Any]) -> NodeRole:
    raw = (env.get("NODE_ROLE") or "").strip().lower()
    if raw:
        try:
            return NodeRole(raw)
        except ValueError:
            raise ConfigurationError(
                f"NODE_ROLE must be 'primary' or 'secondary', got '{raw}'"
            )
    return NodeRole.PRIMARY if str(env.get("NODE_NUM") or "1") == "1" else NodeRole.SECONDARY


def _from_mapping(env: Mapping[str, Any]) -> Dict[str, Any]:
    """Translate first-boot environment variables into model fields."""
    role = _resolve_role(env)
    primary_ip = env.get("NODE1_PRIVATE_IP") or "192.168.100.11"

    if role == NodeRole.PRIMARY:
        private_ip = env.get("NODE_PRIVATE_IP") or primary_ip
        external_ip = env.get("NODE_EXTERNAL_IP") or env.get("NODE1_EXTERNAL_IP") or "192.168.1.21"
    else:
        private_ip = env.get("NODE_PRIVATE_IP")
        if not private_ip:
            raise ConfigurationError("NODE_PRIVATE_IP is required on secondary nodes")
        external_ip = env.get("NODE_EXTERNAL_IP")

    node: Dict[str, Any] = {
        "role": role,
        "index": int(env.get("NODE_NUM") or (1 if role == NodeRole.PRIMARY else 2)),
        "private_ip": private_ip,
        "external_ip": external_ip,
    }
    if env.get("NODE_HOSTNAME"):
        node["hostname"] = env["NODE_HOSTNAME"]

    bootstrap_dir = Path(env.get("BOOTSTRAP_DIR") or "/opt/bootstrap")
    paths: Dict[str, Any] = {
        "bootstrap_dir": bootstrap_dir,
        "state_dir": Path(env.get("BOOTSTRAP_STATE_DIR") or bootstrap_dir / ".state"),
    }
    if env.get("PROVISIONED_MARKER"):
        paths["provisioned_marker"] = Path(env["PROVISIONED_MARKER"])

    network: Dict[str, Any] = {
        "interface": env.get("NETWORK_INTERFACE") or "eth0",
        "private_netmask": int(env.get("PRIVATE_NETMASK") or 24),
        "external_netmask": int(env.get("EXTERNAL_NETMASK") or 24),
        "gateway": env.get("PRIVATE_GATEWAY") or "192.168.100.1",
        "vip": env.get("VIP") or "192.168.1.100",
        "metallb_ip_range": env.get("METALLB_IP_RANGE") or None,
    }

    cluster: Dict[str, Any] = {
        "kubernetes_version": (env.get("K8S_VERSION") or "1.28.0").lstrip("v"),
        "pod_cidr": env.get("POD_CIDR") or "10.244.0.0/16",
        "service_cidr": env.get("SERVICE_CIDR") or "10.96.0.0/12",
        "primary_private_ip": primary_ip,
        "primary_external_ip": env.get("NODE1_EXTERNAL_IP") or "192.168.1.21",
        "admin_user": env.get("SSH_USER") or "k8sadmin",
    }

    addons: Dict[str, Any] = {
        "deploy_longhorn": _flag(env, "DEPLOY_LONGHORN"),
        "deploy_minio": _flag(env, "DEPLOY_MINIO"),
        "deploy_monitoring": _flag(env, "DEPLOY_GRAFANA"),
        "deploy_portainer": _flag(env, "DEPLOY_PORTAINER"),
        "deploy_welcome_page": _flag(env, "DEPLOY_WELCOME_PAGE"),
        "minio_root_user": env.get("MINIO_ROOT_USER") or "admin",
        "minio_root_password": env.get("MINIO_ROOT_PASSWORD") or None,
        "grafana_admin_password": env.get("GRAFANA_ADMIN_PASSWORD") or "admin",
    }
    for key, var in (
        ("flannel_version", "FLANNEL_VERSION"),
        ("metallb_version", "METALLB_VERSION"),
        ("ingress_nginx_version", "INGRESS_NGINX_VERSION"),
        ("longhorn_version", "LONGHORN_VERSION"),
    ):
        if env.get(var):
            addons[key] = env[var]
    if env.get("LONGHORN_DATA_DIR"):
        addons["longhorn_data_dir"] = Path(env["LONGHORN_DATA_DIR"])

    logging_cfg: Dict[str, Any] = {"level": (env.get("LOG_LEVEL") or "INFO").upper()}
    if env.get("BOOTSTRAP_LOG"):
        logging_cfg["file"] = Path(env["BOOTSTRAP_LOG"])

    return {
        "node": node,
        "paths": paths,
        "network": network,
        "cluster": cluster,
        "addons": addons,
        "logging": logging_cfg,
        "cleanup_bootstrap": _flag(env, "CLEANUP_BOOTSTRAP"),
    }
