"""Pinned addon catalog.

Each addon names the exact resources its readiness gate watches. Those names
change between upstream releases, so every (addon, version) pair must have an
entry in ``PINNED_RESOURCES`` and every readiness target must appear in it.
"""
import logging
import secrets
from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from ..config import BootstrapConfig
from ..errors import ConfigurationError
from ..utils import write_atomic
from .addons import readiness_check
from .kube import KubeClient
from .models import (
    AddonSpec,
    HelmChartSource,
    InlineManifestSource,
    ManifestSource,
    ReadinessTarget,
    ResourceKind,
)
from .retry import RetryExecutor
from .system import HostSystem
from .waiter import ConditionWaiter

logger = logging.getLogger("zerotouch.catalog")

MINIO_CHART_VERSION = "5.3.0"
GRAFANA_CHART_VERSION = "8.5.1"
PROMETHEUS_CHART_VERSION = "25.27.0"
MONITORING_VERSION = f"grafana-{GRAFANA_CHART_VERSION}+prometheus-{PROMETHEUS_CHART_VERSION}"
PORTAINER_VERSION = "2.19.5"
WELCOME_VERSION = "1"

PORTAINER_MANIFEST = "https://downloads.portainer.io/ce2-19/portainer.yaml"

INSTANCE_MANAGER_SELECTOR = "longhorn.io/component=instance-manager"

# Readiness bounds above the 300s default, in seconds
SLOW_ROLLOUTS = {"longhorn-manager": 600, INSTANCE_MANAGER_SELECTOR: 600}

EXCLUDE_LB_LABEL = "node.kubernetes.io/exclude-from-external-load-balancers"
DEFAULT_CLASS_ANNOTATION = "storageclass.kubernetes.io/is-default-class"

D = ResourceKind.DEPLOYMENT
DS = ResourceKind.DAEMONSET
JOB = ResourceKind.JOB
PODS = ResourceKind.PODS

Resource = Tuple[ResourceKind, str, str]

# Resources each pinned release actually creates and that gate its readiness
PINNED_RESOURCES: Dict[Tuple[str, str], FrozenSet[Resource]] = {
    ("flannel", "v0.26.1"): frozenset({
        (DS, "kube-flannel", "kube-flannel-ds"),
    }),
    ("metallb", "v0.14.9"): frozenset({
        (D, "metallb-system", "controller"),
        (DS, "metallb-system", "speaker"),
    }),
    ("ingress-nginx", "v1.11.3"): frozenset({
        (JOB, "ingress-nginx", "ingress-nginx-admission-create"),
        (JOB, "ingress-nginx", "ingress-nginx-admission-patch"),
        (D, "ingress-nginx", "ingress-nginx-controller"),
    }),
    # v1.7 deploys longhorn-driver-deployer, not csi-provisioner
    ("longhorn", "v1.7.2"): frozenset({
        (DS, "longhorn-system", "longhorn-manager"),
        (D, "longhorn-system", "longhorn-driver-deployer"),
        (DS, "longhorn-system", "longhorn-csi-plugin"),
    }),
    ("minio", MINIO_CHART_VERSION): frozenset({
        (D, "minio-system", "minio"),
    }),
    ("monitoring", MONITORING_VERSION): frozenset({
        (D, "monitoring", "grafana"),
        (D, "monitoring", "prometheus-server"),
    }),
    ("portainer", PORTAINER_VERSION): frozenset({
        (D, "portainer", "portainer"),
    }),
    ("welcome", WELCOME_VERSION): frozenset({
        (D, "welcome", "welcome"),
    }),
}


def validate_catalog(specs: List[AddonSpec]) -> None:
    """Reject addons whose readiness gates do not match their pinned release.

    Raises:
        ConfigurationError: On an unpinned version or an unknown readiness target
    """
    for spec in specs:
        pinned = PINNED_RESOURCES.get((spec.name, spec.version))
        if pinned is None:
            known = sorted(v for (name, v) in PINNED_RESOURCES if name == spec.name)
            raise ConfigurationError(
                f"{spec.name} {spec.version} has no pinned readiness contract "
                f"(supported: {', '.join(known) or 'none'})"
            )
        for target in spec.readiness:
            if (target.kind, target.namespace, target.name) not in pinned:
                raise ConfigurationError(
                    f"{spec.name} {spec.version} does not create "
                    f"{target.kind.value} {target.namespace}/{target.name}"
                )


# ----------------------------------------------------------------------
# Manifest builders
# ----------------------------------------------------------------------

def ingress_manifest(
    name: str,
    namespace: str,
    path: str,
    service: str,
    port: int,
    path_type: str = "Prefix",
    annotations: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    metadata: Dict[str, Any] = {"name": name, "namespace": namespace}
    if annotations:
        metadata["annotations"] = dict(annotations)
    return {
        "apiVersion": "networking.k8s.io/v1",
        "kind": "Ingress",
        "metadata": metadata,
        "spec": {
            "ingressClassName": "nginx",
            "rules": [{
                "http": {
                    "paths": [{
                        "path": path,
                        "pathType": path_type,
                        "backend": {"service": {"name": service, "port": {"number": port}}},
                    }],
                },
            }],
        },
    }


def rewrite_ingress(name: str, namespace: str, prefix: str, service: str, port: int, **annotations: str) -> Dict[str, Any]:
    """Ingress that strips ``prefix`` before forwarding to ``service``."""
    merged = {"nginx.ingress.kubernetes.io/rewrite-target": "/$2"}
    merged.update(annotations)
    return ingress_manifest(
        name, namespace, f"{prefix}(/|$)(.*)", service, port,
        path_type="ImplementationSpecific", annotations=merged,
    )


def metallb_pool_manifests(address_range: str) -> List[Dict[str, Any]]:
    return [
        {
            "apiVersion": "metallb.io/v1beta1",
            "kind": "IPAddressPool",
            "metadata": {"name": "external-pool", "namespace": "metallb-system"},
            "spec": {"addresses": [address_range]},
        },
        {
            "apiVersion": "metallb.io/v1beta1",
            "kind": "L2Advertisement",
            "metadata": {"name": "external-advertisement", "namespace": "metallb-system"},
            "spec": {"ipAddressPools": ["external-pool"]},
        },
    ]


def cluster_ready_manifest(hostname: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    """ConfigMap that tells joining nodes the primary has finished its addons."""
    now = now or datetime.now(timezone.utc)
    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": {"name": "cluster-ready", "namespace": "kube-system"},
        "data": {
            "ready": "true",
            "timestamp": now.strftime("%Y-%m-%dT%H:%M:%SZ"),
            "node": hostname,
        },
    }


WELCOME_SERVICES = [
    ("deploy_portainer", "Portainer", "Web-based Kubernetes Management", "/portainer/"),
    ("deploy_monitoring", "Grafana", "Monitoring Dashboards", "/grafana/"),
    ("deploy_monitoring", "Prometheus", "Metrics and Monitoring", "/prometheus/"),
    ("deploy_longhorn", "Longhorn", "Distributed Block Storage", "/longhorn/"),
    ("deploy_minio", "MinIO", "S3-Compatible Object Storage", "/minio/"),
]


def welcome_html(config: BootstrapConfig) -> str:
    entries = []
    for flag, title, summary, href in WELCOME_SERVICES:
        if getattr(config.addons, flag):
            entries.append(
                f'<div class="service"><strong>{title}</strong> - {summary}<br>'
                f'<a href="{href}">Open {title}</a></div>'
            )
    services = "\n".join(entries)
    return f"""<!DOCTYPE html>
<html>
<head>
<title>Kubernetes Cluster - Welcome</title>
<style>
body {{ font-family: Arial, sans-serif; margin: 40px; background: #f5f5f5; }}
.container {{ max-width: 800px; margin: 0 auto; background: white; padding: 30px; border-radius: 8px; }}
h1 {{ color: #326ce5; }}
.service {{ background: #f0f0f0; padding: 15px; margin: 10px 0; border-radius: 4px; }}
.info {{ background: #e7f3ff; padding: 10px; border-left: 4px solid #326ce5; margin: 20px 0; }}
</style>
</head>
<body>
<div class="container">
<h1>Zero-Touch Kubernetes Cluster</h1>
<div class="info">
<strong>Cluster Status:</strong> Ready<br>
<strong>VIP:</strong> {config.network.vip}<br>
<strong>Node:</strong> {config.node.hostname}
</div>
<h2>Available Services</h2>
{services}
<div class="info">
<strong>Bootstrap Log:</strong> {config.logging.file}<br>
<strong>Kubeconfig:</strong> {config.paths.shared_kubeconfig}
</div>
</div>
</body>
</html>
"""


def welcome_manifests(config: BootstrapConfig) -> List[Dict[str, Any]]:
    labels = {"app": "welcome"}
    return [
        {
            "apiVersion": "v1",
            "kind": "ConfigMap",
            "metadata": {"name": "welcome-html", "namespace": "welcome"},
            "data": {"index.html": welcome_html(config)},
        },
        {
            "apiVersion": "apps/v1",
            "kind": "Deployment",
            "metadata": {"name": "welcome", "namespace": "welcome"},
            "spec": {
                "replicas": 2,
                "selector": {"matchLabels": labels},
                "template": {
                    "metadata": {"labels": labels},
                    "spec": {
                        "containers": [{
                            "name": "nginx",
                            "image": "nginx:alpine",
                            "ports": [{"containerPort": 80}],
                            "volumeMounts": [{"name": "html", "mountPath": "/usr/share/nginx/html"}],
                            "resources": {
                                "requests": {"cpu": "10m", "memory": "16Mi"},
                                "limits": {"cpu": "50m", "memory": "32Mi"},
                            },
                        }],
                        "volumes": [{"name": "html", "configMap": {"name": "welcome-html"}}],
                    },
                },
            },
        },
        {
            "apiVersion": "v1",
            "kind": "Service",
            "metadata": {"name": "welcome", "namespace": "welcome"},
            "spec": {"selector": labels, "ports": [{"port": 80, "targetPort": 80}]},
        },
        ingress_manifest("welcome", "welcome", "/", "welcome", 80),
    ]


# ----------------------------------------------------------------------
# Catalog
# ----------------------------------------------------------------------

class AddonCatalog:
    """Builds the ``AddonSpec`` list for this node's configuration.

    Post-install fixups and prerequisites are bound methods so they act on the
    same cluster client and host the deployer uses.
    """

    def __init__(
        self,
        config: BootstrapConfig,
        kube: KubeClient,
        host: HostSystem,
        retry: Optional[RetryExecutor] = None,
        waiter: Optional[ConditionWaiter] = None,
    ):
        self.config = config
        self.addons = config.addons
        self.kube = kube
        self.host = host
        self.retry = retry or RetryExecutor()
        self.waiter = waiter or ConditionWaiter()

    def enabled(self) -> Dict[str, bool]:
        return {
            "flannel": True,
            "metallb": True,
            "ingress-nginx": True,
            "longhorn": self.addons.deploy_longhorn,
            "minio": self.addons.deploy_minio,
            "monitoring": self.addons.deploy_monitoring,
            "portainer": self.addons.deploy_portainer,
            "welcome": self.addons.deploy_welcome_page,
        }

    def build(self) -> List[AddonSpec]:
        """Return the enabled addons in deployment order, validated."""
        builders = [
            ("flannel", self.flannel),
            ("metallb", self.metallb),
            ("ingress-nginx", self.ingress_nginx),
            ("longhorn", self.longhorn),
            ("minio", self.minio),
            ("monitoring", self.monitoring),
            ("portainer", self.portainer),
            ("welcome", self.welcome),
        ]
        enabled = self.enabled()
        specs = []
        for name, builder in builders:
            if not enabled[name]:
                logger.info(f"Skipping {name} (disabled by configuration)")
                continue
            specs.append(builder())
        validate_catalog(specs)
        return specs

    def _wait(self, name: str) -> float:
        return min(self.config.timing.pod_wait, SLOW_ROLLOUTS.get(name, 300))

    def _target(self, kind: ResourceKind, namespace: str, name: str, max_wait: Optional[float] = None) -> ReadinessTarget:
        return ReadinessTarget(kind, name, namespace, max_wait or self._wait(name))

    # -- addons ---------------------------------------------------------

    def flannel(self) -> AddonSpec:
        version = self.addons.flannel_version
        return AddonSpec(
            name="flannel",
            namespace="kube-flannel",
            version=version,
            sources=[ManifestSource(
                f"https://github.com/flannel-io/flannel/releases/download/{version}/kube-flannel.yml"
            )],
            readiness=[self._target(DS, "kube-flannel", "kube-flannel-ds")],
            post_install_fixups=[self.host.link_flannel_plugin],
            description="Flannel CNI",
        )

    def metallb(self) -> AddonSpec:
        version = self.addons.metallb_version
        return AddonSpec(
            name="metallb",
            namespace="metallb-system",
            version=version,
            sources=[ManifestSource(
                f"https://raw.githubusercontent.com/metallb/metallb/{version}/config/manifests/metallb-native.yaml"
            )],
            readiness=[
                self._target(D, "metallb-system", "controller"),
                self._target(DS, "metallb-system", "speaker"),
            ],
            post_install_fixups=[self.configure_metallb_pool, self.allow_control_plane_load_balancing],
            description="MetalLB load balancer",
        )

    def ingress_nginx(self) -> AddonSpec:
        version = self.addons.ingress_nginx_version
        return AddonSpec(
            name="ingress-nginx",
            namespace="ingress-nginx",
            version=version,
            sources=[ManifestSource(
                "https://raw.githubusercontent.com/kubernetes/ingress-nginx/"
                f"controller-{version}/deploy/static/provider/cloud/deploy.yaml"
            )],
            readiness=[
                self._target(JOB, "ingress-nginx", "ingress-nginx-admission-create", 120),
                self._target(JOB, "ingress-nginx", "ingress-nginx-admission-patch", 120),
                self._target(D, "ingress-nginx", "ingress-nginx-controller"),
            ],
            post_install_fixups=[self.report_ingress_ip],
            description="NGINX ingress controller",
        )

    def longhorn(self) -> AddonSpec:
        version = self.addons.longhorn_version
        return AddonSpec(
            name="longhorn",
            namespace="longhorn-system",
            version=version,
            sources=[ManifestSource(
                f"https://raw.githubusercontent.com/longhorn/longhorn/{version}/deploy/longhorn.yaml"
            )],
            readiness=[
                self._target(DS, "longhorn-system", "longhorn-manager"),
                self._target(D, "longhorn-system", "longhorn-driver-deployer"),
                self._target(DS, "longhorn-system", "longhorn-csi-plugin"),
            ],
            prerequisites=[self.prepare_longhorn_host],
            post_install_fixups=[self.wait_for_instance_managers, self.configure_longhorn],
            description="Longhorn distributed storage",
        )

    def minio(self) -> AddonSpec:
        return AddonSpec(
            name="minio",
            namespace="minio-system",
            version=MINIO_CHART_VERSION,
            sources=[HelmChartSource(
                release="minio",
                repo_name="minio",
                repo_url="https://charts.min.io/",
                chart="minio",
                version=MINIO_CHART_VERSION,
                values=self.minio_values,
            )],
            readiness=[self._target(D, "minio-system", "minio")],
            prerequisites=[self.minio_password],
            post_install_fixups=[self.expose_minio],
            description="MinIO object storage",
        )

    def monitoring(self) -> AddonSpec:
        grafana = HelmChartSource(
            release="grafana",
            repo_name="grafana",
            repo_url="https://grafana.github.io/helm-charts",
            chart="grafana",
            version=GRAFANA_CHART_VERSION,
            values=self.grafana_values,
        )
        prometheus = HelmChartSource(
            release="prometheus",
            repo_name="prometheus-community",
            repo_url="https://prometheus-community.github.io/helm-charts",
            chart="prometheus",
            version=PROMETHEUS_CHART_VERSION,
            values=self.prometheus_values,
        )
        return AddonSpec(
            name="monitoring",
            namespace="monitoring",
            version=MONITORING_VERSION,
            sources=[grafana, prometheus],
            readiness=[
                self._target(D, "monitoring", "grafana"),
                self._target(D, "monitoring", "prometheus-server"),
            ],
            post_install_fixups=[self.expose_monitoring],
            description="Prometheus and Grafana",
        )

    def portainer(self) -> AddonSpec:
        return AddonSpec(
            name="portainer",
            namespace="portainer",
            version=PORTAINER_VERSION,
            sources=[ManifestSource(PORTAINER_MANIFEST)],
            readiness=[self._target(D, "portainer", "portainer")],
            post_install_fixups=[self.expose_portainer],
            description="Portainer management UI",
        )

    def welcome(self) -> AddonSpec:
        return AddonSpec(
            name="welcome",
            namespace="welcome",
            version=WELCOME_VERSION,
            sources=[InlineManifestSource(lambda: welcome_manifests(self.config))],
            readiness=[self._target(D, "welcome", "welcome", 120)],
            description="Welcome page",
        )

    # -- values -----------------------------------------------------------

    def minio_password(self) -> str:
        """Return the MinIO root password, generating and persisting it once."""
        path = self.config.paths.bootstrap_dir / "minio-password.txt"
        if path.is_file():
            return path.read_text().strip()
        password = self.addons.minio_root_password or secrets.token_urlsafe(24)
        write_atomic(path, f"{password}\n", mode=0o600)
        logger.info(f"MinIO root password saved to {path}")
        return password

    def minio_values(self) -> Tuple[Tuple[str, str], ...]:
        values = [
            ("mode", "standalone"),
            ("persistence.enabled", "true"),
            ("persistence.size", "50Gi"),
            ("resources.requests.memory", "1Gi"),
            ("resources.requests.cpu", "250m"),
            ("rootUser", self.addons.minio_root_user),
            ("rootPassword", self.minio_password()),
            ("service.type", "ClusterIP"),
            ("consoleService.type", "ClusterIP"),
        ]
        if self.addons.deploy_longhorn:
            values.append(("persistence.storageClass", "longhorn"))
        return tuple(values)

    def grafana_values(self) -> Tuple[Tuple[str, str], ...]:
        datasource = "datasources.datasources\\.yaml"
        values = [
            ("adminPassword", self.addons.grafana_admin_password),
            ("service.type", "ClusterIP"),
            ("persistence.enabled", "true"),
            ("persistence.size", "10Gi"),
            ("env.GF_SERVER_ROOT_URL", "%(protocol)s://%(domain)s/grafana/"),
            ("env.GF_SERVER_SERVE_FROM_SUB_PATH", "true"),
            (f"{datasource}.apiVersion", "1"),
            (f"{datasource}.datasources[0].name", "Prometheus"),
            (f"{datasource}.datasources[0].type", "prometheus"),
            (f"{datasource}.datasources[0].access", "proxy"),
            (f"{datasource}.datasources[0].url",
             "http://prometheus-server.monitoring.svc.cluster.local/prometheus"),
            (f"{datasource}.datasources[0].isDefault", "true"),
        ]
        if self.addons.deploy_longhorn:
            values.append(("persistence.storageClassName", "longhorn"))
        return tuple(values)

    def prometheus_values(self) -> Tuple[Tuple[str, str], ...]:
        values = [
            ("server.prefixURL", "/prometheus"),
            ("server.baseURL", f"http://{self.config.network.vip}/prometheus"),
            ("server.persistentVolume.enabled", "true"),
            ("server.persistentVolume.size", "10Gi"),
            ("alertmanager.enabled", "false"),
            ("prometheus-pushgateway.enabled", "false"),
            ("kube-state-metrics.enabled", "true"),
            ("prometheus-node-exporter.enabled", "true"),
        ]
        if self.addons.deploy_longhorn:
            values.append(("server.persistentVolume.storageClass", "longhorn"))
        return tuple(values)

    # -- prerequisites and fixups ------------------------------------------

    def _apply(self, docs: List[Dict[str, Any]], description: str, attempts: int = 3, delay: float = 5) -> None:
        self.retry.run(
            lambda: self.kube.apply_documents(docs),
            max_attempts=attempts,
            delay=delay,
            description=description,
        )

    def configure_metallb_pool(self) -> None:
        """Create the address pool once the MetalLB webhook accepts requests."""
        address_range = self.config.network.load_balancer_range
        logger.info(f"Configuring MetalLB IP pool: {address_range}")
        # The validating webhook answers 5xx for a while after the controller is ready
        self._apply(metallb_pool_manifests(address_range), "Configure MetalLB IP pool", attempts=12, delay=10)
        logger.info(f"✓ MetalLB configured with VIP: {self.config.network.vip}")

    def allow_control_plane_load_balancing(self) -> None:
        """On a single control-plane, let MetalLB announce from that node."""
        if self.kube.control_plane_count() > 1:
            logger.debug("Multiple control-plane nodes, keeping load-balancer exclusion label")
            return
        removed = self.kube.remove_node_label(EXCLUDE_LB_LABEL)
        if removed:
            logger.info(f"Removed {EXCLUDE_LB_LABEL} from {', '.join(removed)}")

    def report_ingress_ip(self) -> None:
        address = self.kube.service_ingress_ip("ingress-nginx", "ingress-nginx-controller") or "pending"
        logger.info(f"✓ NGINX Ingress deployed. External IP: {address}")

    def prepare_longhorn_host(self) -> None:
        self.host.ensure_service_running("iscsid")
        data_dir = self.host.ensure_directory(str(self.addons.longhorn_data_dir), 0o755)
        logger.info(f"Longhorn data directory: {data_dir}")

    def wait_for_instance_managers(self) -> None:
        """Give instance-manager pods time to pull their images.

        Longhorn settings can be patched before every instance manager runs,
        so a timeout here is only reported.
        """
        target = self._target(PODS, "longhorn-system", INSTANCE_MANAGER_SELECTOR)
        check = readiness_check(self.kube, target, self.config.timing.wait_interval)
        check.description = "Longhorn instance managers"
        if not self.waiter.wait(check).ok:
            logger.warning("Some Longhorn instance managers may still be pulling images")

    def configure_longhorn(self) -> None:
        logger.info("Configuring Longhorn settings")
        for setting, value in (("default-replica-count", "1"), ("default-data-locality", "best-effort")):
            self.retry.run(
                lambda s=setting, v=value: self.kube.patch_custom_object(
                    "longhorn.io/v1beta2", "Setting", s, "longhorn-system", {"value": v}
                ),
                max_attempts=3,
                delay=5,
                description=f"Set Longhorn {setting}",
            )

        logger.info("Setting Longhorn as default storage class")
        self.kube.patch_storage_class(
            "longhorn", {"metadata": {"annotations": {DEFAULT_CLASS_ANNOTATION: "true"}}}
        )
        self._apply(
            [ingress_manifest("longhorn-ingress", "longhorn-system", "/longhorn", "longhorn-frontend", 80)],
            "Create Longhorn ingress",
        )
        logger.info(f"✓ Longhorn deployed. UI: http://{self.config.network.vip}/longhorn")

    def expose_minio(self) -> None:
        self._apply(
            [rewrite_ingress(
                "minio-console", "minio-system", "/minio", "minio-console", 9001,
                **{"nginx.ingress.kubernetes.io/proxy-body-size": "0"},
            )],
            "Create MinIO ingress",
        )
        logger.info(f"✓ MinIO deployed. Console: http://{self.config.network.vip}/minio")

    def expose_monitoring(self) -> None:
        self._apply(
            [
                ingress_manifest("grafana", "monitoring", "/grafana", "grafana", 80),
                ingress_manifest("prometheus", "monitoring", "/prometheus", "prometheus-server", 80),
            ],
            "Create monitoring ingresses",
        )
        logger.info(f"✓ Monitoring deployed. Grafana: http://{self.config.network.vip}/grafana")

    def expose_portainer(self) -> None:
        self._apply(
            [rewrite_ingress("portainer", "portainer", "/portainer", "portainer", 9000)],
            "Create Portainer ingress",
        )
        logger.info(f"✓ Portainer deployed. UI: http://{self.config.network.vip}/portainer")
