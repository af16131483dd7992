"""Read-only access to the running cluster's API."""

import base64
import logging
from typing import Any, Callable, Optional, Protocol

import yaml
from kubernetes import client, config
from kubernetes.client.rest import ApiException
from pydantic import BaseModel

from ibu.errors import AccessorError, ResourceNotFoundError
from ibu.models.kinds import (
    CLUSTER_VERSION,
    IMAGE_CONTENT_SOURCE_POLICY,
    IMAGE_DIGEST_MIRROR_SET,
    INFRASTRUCTURE,
    PROXY,
    ResourceKind,
)
from ibu.models.seed import KubeConfigCryptoRetention

OPENSHIFT_CONFIG_NAMESPACE = "openshift-config"
KUBE_APISERVER_OPERATOR_NAMESPACE = "openshift-kube-apiserver-operator"
INGRESS_OPERATOR_NAMESPACE = "openshift-ingress-operator"


class ClusterInfo(BaseModel):
    """Identity facts of the running cluster."""

    ocp_version: str
    base_domain: str
    cluster_name: str
    cluster_id: str
    node_ip: str
    hostname: str
    release_registry: str = ""
    mirror_registry_configured: bool = False


class ClusterInfoAccessor(Protocol):
    """Queries the gatherer needs from the cluster.

    `get_*` methods raise ResourceNotFoundError when the object is absent and
    AccessorError for any other failure; `list_*` methods only ever raise
    AccessorError.
    """

    def get_proxy(self) -> dict: ...

    def list_image_digest_mirror_sets(self) -> list[dict]: ...

    def list_image_content_source_policies(self) -> list[dict]: ...

    def get_config_map(self, name: str, namespace: str) -> dict: ...

    def get_secret_data(self, name: str, namespace: str, key: str) -> str: ...

    def get_infrastructure_name(self) -> str: ...

    def get_cluster_info(self) -> ClusterInfo: ...

    def get_kubeconfig_crypto_retention(self) -> KubeConfigCryptoRetention: ...


def load_kube_client(kubeconfig: Optional[str] = None) -> client.ApiClient:
    """Build an API client from in-cluster credentials or a kubeconfig."""
    try:
        config.load_incluster_config()
    except config.ConfigException:
        config.load_kube_config(config_file=kubeconfig)
    return client.ApiClient()


class KubeClusterInfoAccessor:
    """ClusterInfoAccessor backed by the kubernetes client."""

    def __init__(self, api_client: Optional[client.ApiClient] = None):
        self.logger = logging.getLogger("ibu.cluster_info")
        self.api_client = api_client or load_kube_client()
        self.core = client.CoreV1Api(self.api_client)
        self.custom = client.CustomObjectsApi(self.api_client)

    def _get(self, what: str, fn: Callable[..., Any], *args, **kwargs) -> Any:
        try:
            return fn(*args, **kwargs)
        except ApiException as e:
            if e.status == 404:
                raise ResourceNotFoundError(f"{what} not found") from e
            raise AccessorError(f"Failed to get {what}: {e.status} {e.reason}") from e

    def _list(self, kind: ResourceKind) -> list[dict]:
        try:
            result = self.custom.list_cluster_custom_object(
                group=kind.group, version=kind.version, plural=kind.plural
            )
        except ApiException as e:
            raise AccessorError(
                f"Failed to list {kind.plural}: {e.status} {e.reason}"
            ) from e
        return result.get("items", [])

    def _get_cluster_object(self, kind: ResourceKind, name: str) -> dict:
        return self._get(
            f"{kind.kind} {name}",
            self.custom.get_cluster_custom_object,
            group=kind.group,
            version=kind.version,
            plural=kind.plural,
            name=name,
        )

    def get_proxy(self) -> dict:
        return self._get_cluster_object(PROXY, "cluster")

    def list_image_digest_mirror_sets(self) -> list[dict]:
        return self._list(IMAGE_DIGEST_MIRROR_SET)

    def list_image_content_source_policies(self) -> list[dict]:
        return self._list(IMAGE_CONTENT_SOURCE_POLICY)

    def get_config_map(self, name: str, namespace: str) -> dict:
        cm = self._get(
            f"configmap {namespace}/{name}",
            self.core.read_namespaced_config_map,
            name=name,
            namespace=namespace,
        )
        return self.api_client.sanitize_for_serialization(cm)

    def get_secret_data(self, name: str, namespace: str, key: str) -> str:
        secret = self._get(
            f"secret {namespace}/{name}",
            self.core.read_namespaced_secret,
            name=name,
            namespace=namespace,
        )
        data = secret.data or {}
        if key not in data:
            raise AccessorError(f"Secret {namespace}/{name} has no key {key!r}")
        return base64.b64decode(data[key]).decode()

    def get_infrastructure_name(self) -> str:
        infra = self._get_cluster_object(INFRASTRUCTURE, "cluster")
        return infra.get("status", {}).get("infrastructureName", "")

    def get_cluster_info(self) -> ClusterInfo:
        self.logger.info("Fetching cluster info")
        cluster_version = self._get_cluster_object(CLUSTER_VERSION, "version")
        desired = cluster_version.get("status", {}).get("desired", {})
        release_image = desired.get("image", "")

        install_config_cm = self.get_config_map("cluster-config-v1", "kube-system")
        install_config = yaml.safe_load(
            install_config_cm.get("data", {}).get("install-config", "")
        ) or {}

        nodes = self._get("nodes", self.core.list_node).items
        if len(nodes) != 1:
            raise AccessorError(f"Expected a single node, found {len(nodes)}")
        node = nodes[0]
        node_ip = next(
            (a.address for a in node.status.addresses if a.type == "InternalIP"),
            "",
        )

        mirrors = (
            self.list_image_digest_mirror_sets()
            or self.list_image_content_source_policies()
        )

        return ClusterInfo(
            ocp_version=desired.get("version", ""),
            base_domain=install_config.get("baseDomain", ""),
            cluster_name=install_config.get("metadata", {}).get("name", ""),
            cluster_id=cluster_version.get("spec", {}).get("clusterID", ""),
            node_ip=node_ip,
            hostname=node.metadata.name,
            release_registry=release_image.split("/")[0] if release_image else "",
            mirror_registry_configured=bool(mirrors),
        )

    def get_kubeconfig_crypto_retention(self) -> KubeConfigCryptoRetention:
        self.logger.info("Fetching kubeconfig crypto retention material")

        def signer_key(name: str) -> str:
            return self.get_secret_data(name, KUBE_APISERVER_OPERATOR_NAMESPACE, "tls.key")

        admin_ca = self.get_config_map("admin-kubeconfig-client-ca", OPENSHIFT_CONFIG_NAMESPACE)
        return KubeConfigCryptoRetention.model_validate(
            {
                "kube_api_crypto": {
                    "serving_crypto": {
                        "localhost_signer_private_key": signer_key("localhost-serving-signer"),
                        "service_network_signer_private_key": signer_key("service-network-serving-signer"),
                        "loadbalancer_signer_private_key": signer_key("loadbalancer-serving-signer"),
                    },
                    "client_auth_crypto": {
                        "admin_ca_certificate": admin_ca.get("data", {}).get("ca-bundle.crt", ""),
                    },
                },
                "ingress_crypto": {
                    "ingress_ca": self.get_secret_data("router-ca", INGRESS_OPERATOR_NAMESPACE, "tls.key"),
                },
            }
        )
