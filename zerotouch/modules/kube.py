"""Typed access to the cluster API.

Wraps the official ``kubernetes`` client so the rest of the bootstrap never
shells out to kubectl. Status helpers return ``(ready, detail)`` pairs that
readiness gates use both as predicate and as diagnostic snapshot.
"""
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import requests
import urllib3
import yaml
from kubernetes import client, config
from kubernetes.client.rest import ApiException
from kubernetes.dynamic import DynamicClient
from kubernetes.dynamic.exceptions import ResourceNotFoundError
from urllib3.exceptions import HTTPError as Urllib3HTTPError, InsecureRequestWarning

from ..errors import BootstrapError, ConfigurationError, FatalError, TransientError

logger = logging.getLogger("zerotouch.kube")

# The API server certificate is not trusted yet during bootstrap
urllib3.disable_warnings(InsecureRequestWarning)

CONTROL_PLANE_LABEL = "node-role.kubernetes.io/control-plane"
MERGE_PATCH = "application/merge-patch+json"

Status = Tuple[bool, str]


def classify_error(exc: BaseException) -> BootstrapError:
    """Map a client-side failure onto the bootstrap error taxonomy."""
    if isinstance(exc, BootstrapError):
        return exc
    if isinstance(exc, ApiException):
        status = exc.status or 0
        if status == 0 or status == 429 or status >= 500:
            return TransientError(f"API request failed ({status}): {exc.reason}")
        return FatalError(f"API request rejected ({status}): {exc.reason}")
    if isinstance(exc, (Urllib3HTTPError, requests.RequestException, ConnectionError, TimeoutError)):
        return TransientError(f"API unreachable: {exc}")
    return FatalError(str(exc))


def api_server_healthy(endpoint: str, timeout: float = 5) -> bool:
    """Return True if ``https://<endpoint>/healthz`` answers ``ok``.

    Connection errors propagate; a readiness gate treats them as "not yet".
    """
    response = requests.get(f"https://{endpoint}/healthz", verify=False, timeout=timeout)
    return response.status_code == 200 and response.text.strip() == "ok"


def fetch_manifest(url: str, timeout: float = 60) -> List[Dict[str, Any]]:
    """Download and parse a multi-document YAML manifest.

    Raises:
        TransientError: If the download fails
        FatalError: If the content is not valid YAML
    """
    logger.debug(f"Fetching manifest {url}")
    try:
        response = requests.get(url, timeout=timeout)
        response.raise_for_status()
    except requests.RequestException as e:
        raise TransientError(f"Failed to download {url}: {e}") from e
    try:
        return [doc for doc in yaml.safe_load_all(response.text) if doc]
    except yaml.YAMLError as e:
        raise FatalError(f"Invalid YAML in {url}: {e}") from e


class KubeClient:
    """Cluster API client bound to one kubeconfig file."""

    def __init__(self, kubeconfig: Union[str, Path], api_client: Optional[client.ApiClient] = None):
        self.kubeconfig = Path(kubeconfig)
        self._api_client = api_client
        self._dynamic: Optional[DynamicClient] = None

    @property
    def api_client(self) -> client.ApiClient:
        if self._api_client is None:
            if not self.kubeconfig.exists():
                raise ConfigurationError(f"Kubeconfig not found: {self.kubeconfig}")
            self._api_client = config.new_client_from_config(config_file=str(self.kubeconfig))
        return self._api_client

    @property
    def core(self) -> client.CoreV1Api:
        return client.CoreV1Api(self.api_client)

    @property
    def apps(self) -> client.AppsV1Api:
        return client.AppsV1Api(self.api_client)

    @property
    def batch(self) -> client.BatchV1Api:
        return client.BatchV1Api(self.api_client)

    @property
    def storage(self) -> client.StorageV1Api:
        return client.StorageV1Api(self.api_client)

    @property
    def dynamic(self) -> DynamicClient:
        if self._dynamic is None:
            try:
                self._dynamic = DynamicClient(self.api_client)
            except (ApiException, Urllib3HTTPError) as e:
                raise classify_error(e) from e
        return self._dynamic

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def ensure_namespace(self, name: str) -> bool:
        """Create ``name`` if absent.

        Returns:
            True if the namespace was created by this call
        """
        try:
            self.core.read_namespace(name)
            logger.debug(f"Namespace {name} already exists")
            return False
        except ApiException as e:
            if e.status != 404:
                raise classify_error(e) from e
        except Urllib3HTTPError as e:
            raise classify_error(e) from e

        body = client.V1Namespace(metadata=client.V1ObjectMeta(name=name))
        try:
            self.core.create_namespace(body)
        except ApiException as e:
            if e.status == 409:
                return False
            raise classify_error(e) from e
        except Urllib3HTTPError as e:
            raise classify_error(e) from e
        logger.info(f"Namespace {name} created")
        return True

    def apply_documents(self, docs: List[Dict[str, Any]], default_namespace: Optional[str] = None) -> int:
        """Create each object, merge-patching the ones that already exist.

        Returns:
            Number of objects applied
        """
        applied = 0
        for doc in docs:
            if not doc or not doc.get("kind") or not doc.get("apiVersion"):
                continue
            kind = doc["kind"]
            api_version = doc["apiVersion"]
            name = doc.get("metadata", {}).get("name", "")

            try:
                resource = self.dynamic.resources.get(api_version=api_version, kind=kind)
            except ResourceNotFoundError as e:
                # CRDs from an earlier document may not be served yet
                self.dynamic.resources.invalidate_cache()
                raise TransientError(f"API does not serve {api_version}/{kind} yet") from e
            except (ApiException, Urllib3HTTPError) as e:
                raise classify_error(e) from e

            namespace = None
            if resource.namespaced:
                namespace = doc.get("metadata", {}).get("namespace") or default_namespace or "default"

            try:
                logger.debug(f"Applying {kind} {name} in namespace {namespace or '-'}")
                resource.create(body=doc, namespace=namespace)
            except ApiException as e:
                if e.status != 409:
                    raise classify_error(e) from e
                logger.debug(f"{kind} {name} exists. Patching...")
                try:
                    resource.patch(body=doc, namespace=namespace, content_type=MERGE_PATCH)
                except (ApiException, Urllib3HTTPError) as patch_error:
                    raise classify_error(patch_error) from patch_error
            except Urllib3HTTPError as e:
                raise classify_error(e) from e
            applied += 1
        return applied

    def remove_node_label(self, label: str) -> List[str]:
        """Drop ``label`` from every node that carries it."""
        patched = []
        for node in self.list_nodes():
            if label in (node.metadata.labels or {}):
                self._patch_node(node.metadata.name, {"metadata": {"labels": {label: None}}})
                patched.append(node.metadata.name)
        return patched

    def remove_node_taint(self, key: str) -> List[str]:
        """Drop every taint with ``key`` from all nodes."""
        patched = []
        for node in self.list_nodes():
            taints = node.spec.taints or []
            remaining = [t for t in taints if t.key != key]
            if len(remaining) != len(taints):
                body = {"spec": {"taints": [self.api_client.sanitize_for_serialization(t) for t in remaining]}}
                self._patch_node(node.metadata.name, body)
                patched.append(node.metadata.name)
        return patched

    def _patch_node(self, name: str, body: Dict[str, Any]) -> None:
        try:
            self.core.patch_node(name, body)
        except (ApiException, Urllib3HTTPError) as e:
            raise classify_error(e) from e

    def patch_storage_class(self, name: str, body: Dict[str, Any]) -> None:
        try:
            self.storage.patch_storage_class(name, body)
        except (ApiException, Urllib3HTTPError) as e:
            raise classify_error(e) from e

    def patch_custom_object(
        self, api_version: str, kind: str, name: str, namespace: Optional[str], body: Dict[str, Any]
    ) -> None:
        try:
            resource = self.dynamic.resources.get(api_version=api_version, kind=kind)
            resource.patch(body=body, name=name, namespace=namespace, content_type=MERGE_PATCH)
        except ResourceNotFoundError as e:
            self.dynamic.resources.invalidate_cache()
            raise TransientError(f"API does not serve {api_version}/{kind} yet") from e
        except (ApiException, Urllib3HTTPError) as e:
            raise classify_error(e) from e

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list_nodes(self, label_selector: Optional[str] = None) -> List[client.V1Node]:
        try:
            if label_selector:
                return self.core.list_node(label_selector=label_selector).items
            return self.core.list_node().items
        except (ApiException, Urllib3HTTPError) as e:
            raise classify_error(e) from e

    def control_plane_count(self) -> int:
        return len(self.list_nodes(label_selector=CONTROL_PLANE_LABEL))

    def node_exists(self, name: str) -> bool:
        return self._exists(self.core.read_node, name)

    def configmap_exists(self, namespace: str, name: str) -> bool:
        return self._exists(self.core.read_namespaced_config_map, name, namespace)

    @staticmethod
    def _exists(reader, *args) -> bool:
        try:
            reader(*args)
            return True
        except ApiException as e:
            if e.status == 404:
                return False
            raise classify_error(e) from e
        except Urllib3HTTPError as e:
            raise classify_error(e) from e

    def deployment_status(self, namespace: str, name: str) -> Status:
        """Rollout is complete when every desired replica is updated and available."""
        deployment = self.apps.read_namespaced_deployment_status(name, namespace)
        desired = deployment.spec.replicas if deployment.spec.replicas is not None else 1
        status = deployment.status
        updated = status.updated_replicas or 0
        available = status.available_replicas or 0
        total = status.replicas or 0
        observed = (status.observed_generation or 0) >= (deployment.metadata.generation or 0)
        ready = observed and updated >= desired and available >= desired and total <= updated
        return ready, f"{available}/{desired} available, {updated} updated"

    def daemonset_status(self, namespace: str, name: str) -> Status:
        """Ready when at least one pod is scheduled and all scheduled pods are ready."""
        daemonset = self.apps.read_namespaced_daemon_set_status(name, namespace)
        desired = daemonset.status.desired_number_scheduled or 0
        ready = daemonset.status.number_ready or 0
        return desired > 0 and ready == desired, f"{ready}/{desired} ready"

    def job_complete(self, namespace: str, name: str) -> Status:
        """Complete once the Job reports a ``Complete`` condition.

        A Job that is gone counts as complete: finished hook Jobs may be
        garbage-collected before the first poll.
        """
        try:
            job = self.batch.read_namespaced_job_status(name, namespace)
        except ApiException as e:
            if e.status == 404:
                return True, "not found (removed after completion)"
            raise
        conditions = job.status.conditions or []
        complete = any(c.type == "Complete" and c.status == "True" for c in conditions)
        return complete, f"{job.status.succeeded or 0} succeeded, {job.status.failed or 0} failed"

    def pods_ready(self, namespace: str, selector: str) -> Status:
        pods = self.core.list_namespaced_pod(namespace, label_selector=selector).items
        ready = 0
        for pod in pods:
            conditions = (pod.status.conditions or []) if pod.status else []
            if any(c.type == "Ready" and c.status == "True" for c in conditions):
                ready += 1
        return bool(pods) and ready == len(pods), f"{ready}/{len(pods)} pods ready"

    def service_ingress_ip(self, namespace: str, name: str) -> Optional[str]:
        try:
            service = self.core.read_namespaced_service(name, namespace)
        except ApiException as e:
            if e.status == 404:
                return None
            raise classify_error(e) from e
        except Urllib3HTTPError as e:
            raise classify_error(e) from e
        ingress = (service.status.load_balancer.ingress or []) if service.status.load_balancer else []
        return ingress[0].ip if ingress else None
