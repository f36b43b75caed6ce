"""Addon deployment: namespace, apply, readiness gate, fixups."""
import logging
from typing import Any, Callable, Dict, List, Optional

from ..errors import FatalError
from .helm import HelmClient
from .kube import KubeClient, fetch_manifest
from .models import (
    AddonSpec,
    HelmChartSource,
    InlineManifestSource,
    ManifestSource,
    ReadinessTarget,
    ResourceKind,
)
from .retry import RetryExecutor
from .waiter import ConditionCheck, ConditionWaiter

logger = logging.getLogger("zerotouch.addons")


def describe_source(source: object) -> str:
    if isinstance(source, ManifestSource):
        return source.url
    if isinstance(source, HelmChartSource):
        return f"chart {source.repo_name}/{source.chart} {source.version}"
    if isinstance(source, InlineManifestSource):
        return "inline manifests"
    return type(source).__name__


def readiness_check(kube: KubeClient, target: ReadinessTarget, interval: float = 10.0) -> ConditionCheck:
    """Build the readiness gate for one pinned resource.

    The last ``(ready, detail)`` answer is kept so a timeout report
    shows e.g. ``1/3 ready``.
    """
    probes = {
        ResourceKind.DEPLOYMENT: kube.deployment_status,
        ResourceKind.DAEMONSET: kube.daemonset_status,
        ResourceKind.JOB: kube.job_complete,
        ResourceKind.PODS: kube.pods_ready,
    }
    probe = probes[target.kind]
    last: Dict[str, str] = {}

    def predicate() -> bool:
        ready, detail = probe(target.namespace, target.name)
        last["detail"] = detail
        return ready

    noun = "pods" if target.kind == ResourceKind.PODS else target.kind.value
    return ConditionCheck(
        predicate=predicate,
        description=f"{noun} {target.namespace}/{target.name}",
        max_wait=target.max_wait,
        interval=interval,
        diagnostics=lambda: last.get("detail"),
    )


class AddonDeployer:
    """Deploys one ``AddonSpec`` at a time.

    Steps run in a fixed order: prerequisites, namespace, apply (retried),
    readiness gates, post-install fixups. Any step that raises stops the
    addon; a readiness timeout is never retried here.
    """

    def __init__(
        self,
        kube: KubeClient,
        helm: HelmClient,
        waiter: ConditionWaiter,
        retry: Optional[RetryExecutor] = None,
        fetch: Callable[[str], List[Dict[str, Any]]] = fetch_manifest,
        apply_attempts: int = 3,
        apply_delay: float = 5.0,
        interval: float = 10.0,
    ):
        self.kube = kube
        self.helm = helm
        self.waiter = waiter
        self.retry = retry or RetryExecutor()
        self.fetch = fetch
        self.apply_attempts = apply_attempts
        self.apply_delay = apply_delay
        self.interval = interval

    def deploy(self, spec: AddonSpec) -> None:
        logger.info(f"Deploying {spec.description or spec.name} ({spec.version})")

        for prerequisite in spec.prerequisites:
            prerequisite()

        self.retry.run(
            lambda: self.kube.ensure_namespace(spec.namespace),
            max_attempts=self.apply_attempts,
            delay=self.apply_delay,
            description=f"Create namespace {spec.namespace}",
        )

        for source in spec.sources:
            self.retry.run(
                lambda s=source: self.apply_source(s, spec.namespace),
                max_attempts=self.apply_attempts,
                delay=self.apply_delay,
                description=f"Apply {spec.name} ({describe_source(source)})",
            )

        for target in spec.readiness:
            self.waiter.require(self.readiness_check(target))

        for fixup in spec.post_install_fixups:
            fixup()

        logger.info(f"✓ {spec.name} {spec.version} deployed")

    def apply_source(self, source: object, namespace: str) -> None:
        if isinstance(source, ManifestSource):
            docs = self.fetch(source.url)
            count = self.kube.apply_documents(docs, default_namespace=namespace)
            logger.info(f"Applied {count} object(s) from {source.url}")
        elif isinstance(source, HelmChartSource):
            self.helm.install(source, namespace)
        elif isinstance(source, InlineManifestSource):
            count = self.kube.apply_documents(source.render(), default_namespace=namespace)
            logger.info(f"Applied {count} inline object(s)")
        else:
            raise FatalError(f"Unsupported addon source: {source!r}")

    def readiness_check(self, target: ReadinessTarget) -> ConditionCheck:
        return readiness_check(self.kube, target, self.interval)
