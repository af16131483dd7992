"""Unit tests for KubeClusterInfoAccessor."""

import base64
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from kubernetes.client.rest import ApiException

from ibu.errors import AccessorError, ResourceNotFoundError
from ibu.services.cluster_info import KubeClusterInfoAccessor

INSTALL_CONFIG = """
apiVersion: v1
baseDomain: example.com
metadata:
  name: target
"""


def _b64(value: str) -> str:
    return base64.b64encode(value.encode()).decode()


def _node(name="target-node", ip="192.168.126.10"):
    return SimpleNamespace(
        metadata=SimpleNamespace(name=name),
        status=SimpleNamespace(addresses=[
            SimpleNamespace(type="Hostname", address=name),
            SimpleNamespace(type="InternalIP", address=ip),
        ]),
    )


@pytest.fixture
def accessor():
    api_client = MagicMock()
    api_client.sanitize_for_serialization.side_effect = lambda obj: obj
    accessor = KubeClusterInfoAccessor(api_client)
    accessor.core = MagicMock()
    accessor.custom = MagicMock()
    return accessor


@pytest.mark.unit
class TestErrorTranslation:
    """Test ApiException mapping."""

    def test_get_404_is_not_found(self, accessor):
        accessor.custom.get_cluster_custom_object.side_effect = ApiException(status=404, reason="Not Found")

        with pytest.raises(ResourceNotFoundError):
            accessor.get_proxy()

    def test_get_other_error_is_accessor_error(self, accessor):
        accessor.custom.get_cluster_custom_object.side_effect = ApiException(status=500, reason="Internal")

        with pytest.raises(AccessorError, match="500"):
            accessor.get_proxy()

    def test_list_404_is_accessor_error(self, accessor):
        # A missing CRD must not look like an empty list
        accessor.custom.list_cluster_custom_object.side_effect = ApiException(status=404, reason="Not Found")

        with pytest.raises(AccessorError):
            accessor.list_image_content_source_policies()

    def test_list_items(self, accessor):
        accessor.custom.list_cluster_custom_object.return_value = {"items": [{"metadata": {"name": "a"}}]}

        assert accessor.list_image_digest_mirror_sets() == [{"metadata": {"name": "a"}}]
        accessor.custom.list_cluster_custom_object.assert_called_with(
            group="config.openshift.io", version="v1", plural="imagedigestmirrorsets"
        )


@pytest.mark.unit
class TestSecrets:
    """Test secret decoding."""

    def test_decodes_key(self, accessor):
        accessor.core.read_namespaced_secret.return_value = SimpleNamespace(data={"kubeadmin": _b64("hash")})

        assert accessor.get_secret_data("kubeadmin", "kube-system", "kubeadmin") == "hash"

    def test_missing_key(self, accessor):
        accessor.core.read_namespaced_secret.return_value = SimpleNamespace(data={})

        with pytest.raises(AccessorError, match="no key"):
            accessor.get_secret_data("pull-secret", "openshift-config", ".dockerconfigjson")


@pytest.mark.unit
class TestClusterInfo:
    """Test assembling the cluster identity."""

    def _setup(self, accessor, nodes, mirrors=()):
        def get_cluster_object(group, version, plural, name):
            assert plural == "clusterversions"
            return {
                "spec": {"clusterID": "cid"},
                "status": {"desired": {"version": "4.14.2", "image": "quay.io/openshift-release-dev/ocp-release@sha256:abc"}},
            }

        accessor.custom.get_cluster_custom_object.side_effect = get_cluster_object
        accessor.custom.list_cluster_custom_object.return_value = {"items": list(mirrors)}
        accessor.core.read_namespaced_config_map.return_value = {"data": {"install-config": INSTALL_CONFIG}}
        accessor.core.list_node.return_value = SimpleNamespace(items=nodes)

    def test_cluster_info(self, accessor):
        self._setup(accessor, [_node()])

        info = accessor.get_cluster_info()

        assert info.ocp_version == "4.14.2"
        assert info.base_domain == "example.com"
        assert info.cluster_name == "target"
        assert info.cluster_id == "cid"
        assert info.node_ip == "192.168.126.10"
        assert info.hostname == "target-node"
        assert info.release_registry == "quay.io"
        assert not info.mirror_registry_configured

    def test_mirror_registry_detected(self, accessor):
        self._setup(accessor, [_node()], mirrors=[{"metadata": {"name": "m"}}])

        assert accessor.get_cluster_info().mirror_registry_configured

    def test_multiple_nodes_rejected(self, accessor):
        self._setup(accessor, [_node("a"), _node("b")])

        with pytest.raises(AccessorError, match="single node"):
            accessor.get_cluster_info()

    def test_crypto_retention(self, accessor):
        secrets = {
            "localhost-serving-signer": "L",
            "service-network-serving-signer": "S",
            "loadbalancer-serving-signer": "B",
            "router-ca": "I",
        }
        accessor.core.read_namespaced_secret.side_effect = (
            lambda name, namespace: SimpleNamespace(data={"tls.key": _b64(secrets[name])})
        )
        accessor.core.read_namespaced_config_map.return_value = {"data": {"ca-bundle.crt": "CA"}}

        retention = accessor.get_kubeconfig_crypto_retention()

        serving = retention.kube_api_crypto.serving_crypto
        assert (serving.localhost_signer_private_key, serving.service_network_signer_private_key,
                serving.loadbalancer_signer_private_key) == ("L", "S", "B")
        assert retention.kube_api_crypto.client_auth_crypto.admin_ca_certificate == "CA"
        assert retention.ingress_crypto.ingress_ca == "I"
