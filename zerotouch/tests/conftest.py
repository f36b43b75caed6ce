import logging
import subprocess
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple

import pytest

from zerotouch.config import BootstrapConfig, LoggingConfig, NodeConfig, PathsConfig
from zerotouch.logging import ROOT_LOGGER
from zerotouch.modules.retry import RetryExecutor
from zerotouch.modules.system import HostSystem
from zerotouch.modules.waiter import ConditionWaiter


class FakeClock:
    """Monotonic clock that only moves when something sleeps."""

    def __init__(self, start: float = 0.0):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeRunner:
    """Records commands and answers with canned results."""

    def __init__(self, responses: Optional[Dict[Tuple[str, ...], subprocess.CompletedProcess]] = None):
        self.calls: List[List[str]] = []
        self.responses = responses or {}
        self.hooks = []

    def __call__(self, cmd, **kwargs):
        self.calls.append(list(cmd))
        for hook in self.hooks:
            result = hook(list(cmd), kwargs)
            if result is not None:
                return result
        for prefix, result in self.responses.items():
            if tuple(cmd[:len(prefix)]) == prefix:
                if kwargs.get("check", True) and result.returncode != 0:
                    raise subprocess.CalledProcessError(result.returncode, cmd, result.stdout, result.stderr)
                return result
        return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")

    def commands(self, *prefix: str) -> List[List[str]]:
        return [c for c in self.calls if tuple(c[:len(prefix)]) == prefix]


class FakeKube:
    """In-memory stand-in for ``KubeClient``."""

    def __init__(self, clock: Optional[FakeClock] = None):
        self.clock = clock
        self.namespaces: Set[str] = set()
        self.applied: List[dict] = []
        self.not_ready: Set[str] = set()
        self.ready_after: Dict[str, float] = {}
        self.configmaps: Set[Tuple[str, str]] = set()
        self.configmap_after: Optional[float] = None
        self.nodes: Set[str] = {"node1"}
        self.control_planes = 1
        self.removed_labels: List[str] = []
        self.removed_taints: List[str] = []
        self.custom_patches: List[tuple] = []
        self.storage_patches: List[tuple] = []
        self.kubeconfig = None

    def __call__(self, kubeconfig):
        self.kubeconfig = kubeconfig
        return self

    def _ready(self, name: str) -> bool:
        if name in self.not_ready:
            return False
        after = self.ready_after.get(name)
        return after is None or (self.clock is not None and self.clock() >= after)

    def ensure_namespace(self, name):
        created = name not in self.namespaces
        self.namespaces.add(name)
        return created

    def apply_documents(self, docs, default_namespace=None):
        self.applied.extend(docs)
        for doc in docs:
            if doc.get("kind") == "ConfigMap":
                meta = doc["metadata"]
                self.configmaps.add((meta.get("namespace", default_namespace), meta["name"]))
        return len(docs)

    def deployment_status(self, namespace, name):
        ready = self._ready(name)
        return ready, "1/1 available, 1 updated" if ready else "0/1 available, 1 updated"

    def daemonset_status(self, namespace, name):
        ready = self._ready(name)
        return ready, "1/1 ready" if ready else "0/1 ready"

    def job_complete(self, namespace, name):
        return self._ready(name), "1 succeeded, 0 failed"

    def pods_ready(self, namespace, selector):
        return self._ready(selector), "1/1 pods ready"

    def configmap_exists(self, namespace, name):
        if self.configmap_after is not None:
            return self.clock() >= self.configmap_after
        return (namespace, name) in self.configmaps

    def node_exists(self, name):
        return name in self.nodes

    def control_plane_count(self):
        return self.control_planes

    def remove_node_label(self, label):
        self.removed_labels.append(label)
        return sorted(self.nodes)

    def remove_node_taint(self, key):
        self.removed_taints.append(key)
        return sorted(self.nodes)

    def patch_custom_object(self, api_version, kind, name, namespace, body):
        self.custom_patches.append((kind, name, body))

    def patch_storage_class(self, name, body):
        self.storage_patches.append((name, body))

    def service_ingress_ip(self, namespace, name):
        return "192.168.1.100"


@pytest.fixture(autouse=True)
def reset_logging():
    """Undo ``setup_logging`` so caplog sees package records."""
    yield
    logger = logging.getLogger(ROOT_LOGGER)
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def waiter(clock):
    return ConditionWaiter(clock=clock, sleep=clock.sleep)


@pytest.fixture
def retry(clock):
    return RetryExecutor(sleep=clock.sleep)


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def kube(clock):
    return FakeKube(clock)


@pytest.fixture
def host(tmp_path, runner, retry):
    root = tmp_path / "root"
    root.mkdir()
    return HostSystem(root=root, runner=runner, retry=retry)


@pytest.fixture
def config(tmp_path):
    bootstrap_dir = tmp_path / "bootstrap"
    bootstrap_dir.mkdir()
    return BootstrapConfig(
        node=NodeConfig(hostname="node1", private_ip="192.168.100.11", external_ip="192.168.1.21"),
        paths=PathsConfig(
            bootstrap_dir=bootstrap_dir,
            state_dir=bootstrap_dir / ".state",
            admin_kubeconfig=tmp_path / "etc" / "kubernetes" / "admin.conf",
            provisioned_marker=tmp_path / "var" / "lib" / "node-provisioned",
        ),
        logging=LoggingConfig(file=tmp_path / "bootstrap.log"),
    )


@pytest.fixture
def write_file():
    def write(path: Path, content: str = "") -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
        return path
    return write
