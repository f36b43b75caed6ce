"""Data models for the bootstrap pipeline."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple, Union


class NodeRole(str, Enum):
    """Role of this node in the cluster."""
    PRIMARY = 'primary'
    SECONDARY = 'secondary'


class PipelineState(str, Enum):
    """Lifecycle of a pipeline run."""
    PENDING = 'pending'
    RUNNING = 'running'
    DONE = 'done'
    FAILED = 'failed'


class StageStatus(str, Enum):
    """Outcome of a single stage within a run."""
    SKIPPED = 'skipped'
    COMPLETED = 'completed'
    FAILED = 'failed'


class ResourceKind(str, Enum):
    """Kinds of resources an addon readiness gate can watch."""
    DEPLOYMENT = 'deployment'
    DAEMONSET = 'daemonset'
    JOB = 'job'
    PODS = 'pods'


@dataclass(frozen=True)
class NodeIdentity:
    """Who this node is. Set once from boot-time configuration."""
    hostname: str
    role: NodeRole
    private_ip: str
    external_ip: Optional[str] = None
    node_index: int = 1

    @property
    def is_primary(self) -> bool:
        return self.role == NodeRole.PRIMARY


@dataclass(frozen=True)
class RetryPolicy:
    """How many times a stage body may be attempted on transient failure."""
    max_attempts: int = 1
    delay: float = 0.0


@dataclass
class Stage:
    """A named, ordered, idempotent unit of pipeline work.

    The name doubles as the idempotency key in the state store.
    """
    name: str
    action: Callable[[], None]
    description: str = ''
    timeout: float = 1800.0
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)


@dataclass
class StageOutcome:
    """What happened to one stage during a run."""
    name: str
    status: StageStatus
    duration: float = 0.0
    error: Optional[str] = None


@dataclass
class PipelineResult:
    """Summary of a pipeline run."""
    state: PipelineState
    outcomes: List[StageOutcome] = field(default_factory=list)
    failed_stage: Optional[str] = None
    error: Optional[str] = None
    duration: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.state == PipelineState.DONE

    @property
    def exit_code(self) -> int:
        return 0 if self.succeeded else 1

    def names(self, status: StageStatus) -> List[str]:
        return [o.name for o in self.outcomes if o.status == status]


@dataclass(frozen=True)
class ReadinessTarget:
    """A resource whose readiness gates an addon.

    ``name`` must match the resource the pinned addon version actually creates.
    For ``PODS`` the ``name`` is a label selector.
    """
    kind: ResourceKind
    name: str
    namespace: str
    max_wait: float = 300.0


@dataclass(frozen=True)
class ManifestSource:
    """Upstream manifest fetched over HTTP and applied declaratively."""
    url: str


@dataclass(frozen=True)
class HelmChartSource:
    """Helm chart installed with ``helm upgrade --install``.

    ``values`` may be a callable so secrets are resolved only when the chart
    is actually installed.
    """
    release: str
    repo_name: str
    repo_url: str
    chart: str
    version: str
    values: Union[Tuple[Tuple[str, str], ...], Callable[[], Tuple[Tuple[str, str], ...]]] = ()
    timeout: str = '10m'


@dataclass(frozen=True)
class InlineManifestSource:
    """Manifests rendered locally from the bootstrap configuration."""
    render: Callable[[], List[Dict]]


@dataclass
class AddonSpec:
    """Static declaration of a cluster addon."""
    name: str
    namespace: str
    version: str
    sources: List[object]
    readiness: List[ReadinessTarget] = field(default_factory=list)
    prerequisites: List[Callable[[], None]] = field(default_factory=list)
    post_install_fixups: List[Callable[[], None]] = field(default_factory=list)
    description: str = ''


@dataclass(frozen=True)
class ClusterJoinInfo:
    """Credentials a secondary node needs to join the cluster.

    Produced once by the primary node; treated as read-only input elsewhere.
    ``admin_config`` is the path of the cluster admin kubeconfig.
    """
    api_endpoint: str
    bootstrap_token: str
    ca_cert_hash: str
    certificate_key: Optional[str] = None
    admin_config: Optional[str] = None

    def join_args(self, advertise_address: Optional[str] = None) -> List[str]:
        """Build the ``kubeadm join`` argument list for a control-plane join."""
        args = [
            'kubeadm', 'join', self.api_endpoint,
            '--token', self.bootstrap_token,
            '--discovery-token-ca-cert-hash', self.ca_cert_hash,
        ]
        if self.certificate_key:
            args += ['--control-plane', '--certificate-key', self.certificate_key]
        if advertise_address:
            args += ['--apiserver-advertise-address', advertise_address]
        return args
