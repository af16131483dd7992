"""Global pytest fixtures and configuration."""

import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from ibu.config import GathererConfig  # noqa: E402
from ibu.models.seed import (  # noqa: E402
    ClientAuthCrypto,
    IngressCrypto,
    KubeAPICrypto,
    KubeConfigCryptoRetention,
    SeedClusterInfo,
    ServingCrypto,
)
from ibu.services.cluster_info import ClusterInfo  # noqa: E402
from ibu.services.state_manager import StateManager  # noqa: E402


@pytest.fixture(autouse=True)
def reset_state_manager():
    """Reset the StateManager singleton around every test."""
    StateManager._instance = None
    yield
    StateManager._instance = None


@pytest.fixture
def temp_dir(tmp_path):
    """Create a temporary directory for test files."""
    yield tmp_path


@pytest.fixture
def cluster_info():
    """Identity of the cluster being upgraded."""
    return ClusterInfo(
        ocp_version="4.14.2",
        base_domain="example.com",
        cluster_name="target",
        cluster_id="1a2b3c4d-0000-4000-8000-000000000001",
        node_ip="192.168.126.10",
        hostname="target-node",
        release_registry="quay.io",
    )


@pytest.fixture
def crypto_retention():
    return KubeConfigCryptoRetention(
        kube_api_crypto=KubeAPICrypto(
            serving_crypto=ServingCrypto(
                localhost_signer_private_key="LOCALHOST-KEY",
                service_network_signer_private_key="SERVICE-KEY",
                loadbalancer_signer_private_key="LB-KEY",
            ),
            client_auth_crypto=ClientAuthCrypto(admin_ca_certificate="ADMIN-CA"),
        ),
        ingress_crypto=IngressCrypto(ingress_ca="INGRESS-KEY"),
    )


@pytest.fixture
def seed_cluster_info():
    """Seed cluster the image was built from."""
    return SeedClusterInfo(
        seed_cluster_ocp_version="4.14.2",
        base_domain="seed.example.com",
        cluster_name="seed",
        node_ip="192.168.126.99",
        release_registry="quay.io",
        sno_hostname="seed-node",
        recert_image_pull_spec="quay.io/edge-infrastructure/recert:v0",
    )


@pytest.fixture
def mock_accessor(cluster_info, crypto_retention):
    """ClusterInfoAccessor answering for a minimal healthy cluster."""
    accessor = MagicMock()
    accessor.get_proxy.return_value = {
        "apiVersion": "config.openshift.io/v1",
        "kind": "Proxy",
        "metadata": {"name": "cluster", "uid": "abc", "resourceVersion": "42"},
        "spec": {"httpProxy": "http://proxy.example.com:3128"},
        "status": {"httpProxy": "http://proxy.example.com:3128"},
    }
    accessor.list_image_digest_mirror_sets.return_value = []
    accessor.list_image_content_source_policies.return_value = []
    accessor.get_config_map.return_value = {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": {"name": "user-ca-bundle", "namespace": "openshift-config", "uid": "u1"},
        "data": {"ca-bundle.crt": "-----BEGIN CERTIFICATE-----"},
    }

    def get_secret_data(name, namespace, key):
        return {"pull-secret": '{"auths":{}}', "kubeadmin": "$2a$10$hash"}[name]

    accessor.get_secret_data.side_effect = get_secret_data
    accessor.get_infrastructure_name.return_value = "target-x7k2p"
    accessor.get_cluster_info.return_value = cluster_info
    accessor.get_kubeconfig_crypto_retention.return_value = crypto_retention
    return accessor


@pytest.fixture
def host_root(tmp_path):
    """Host filesystem with an SSH key, a network connection and a CA bundle."""
    root = tmp_path / "host"
    ssh = root / "home/core/.ssh/authorized_keys.d"
    ssh.mkdir(parents=True)
    (ssh / "ignition").write_text("ssh-ed25519 AAAA core@target\n")

    nm = root / "etc/NetworkManager/system-connections"
    nm.mkdir(parents=True)
    (nm / "enp1s0.nmconnection").write_text("[connection]\nid=enp1s0\n")

    pem = root / "etc/pki/ca-trust/extracted/pem"
    pem.mkdir(parents=True)
    (pem / "tls-ca-bundle.pem").write_text("-----BEGIN CERTIFICATE-----\n")
    return root


@pytest.fixture
def gatherer_config(host_root):
    return GathererConfig(host_root=host_root)


@pytest.fixture
def mock_process_manager():
    """ProcessManager whose commands all succeed silently."""
    manager = MagicMock()
    manager.run = AsyncMock(return_value="")
    manager.wait_for_unit_completion = AsyncMock(return_value=True)
    manager.wait_for_service_status = AsyncMock(return_value=None)
    manager.restart_service = AsyncMock(return_value=None)
    return manager


@pytest.fixture
def stateroot_var_dir(tmp_path):
    """Var dir of the new stateroot."""
    return tmp_path / "ostree/deploy/rhcos_4_14_2/var"


class FakeHost:
    """Default and booted stateroot of a simulated ostree host."""

    def __init__(self, original="rhcos", seed="rhcos_4_14_2"):
        self.original = original
        self.seed = seed
        self.default = original
        self.booted = original

    def pivot(self, seed_ref):
        self.default = self.seed

    def revert(self, pivoted):
        if pivoted:
            self.default = self.original

    def reboot(self):
        self.booted = self.default

    def booted_stateroot(self):
        return self.booted


@pytest.fixture
def host():
    return FakeHost()


@pytest.fixture
def mock_executor(stateroot_var_dir, seed_cluster_info, host):
    """StageExecutor whose host-side steps all succeed."""
    executor = MagicMock()
    executor.stateroot_var_dir.return_value = stateroot_var_dir
    executor.pull_seed_image = AsyncMock(return_value=seed_cluster_info)
    executor.setup_stateroot = AsyncMock(return_value=stateroot_var_dir)
    executor.run_post_reboot_config = AsyncMock(return_value=True)
    executor.pivot = AsyncMock(side_effect=host.pivot)
    executor.revert_deployment = AsyncMock(side_effect=host.revert)
    executor.reboot = AsyncMock(side_effect=host.reboot)
    executor.booted_stateroot = AsyncMock(side_effect=host.booted_stateroot)
    for name in ("complete_upgrade", "restore_config", "finalize_upgrade", "finalize_rollback"):
        setattr(executor, name, AsyncMock(return_value=None))
    return executor


@pytest.fixture
def mock_gatherer(stateroot_var_dir):
    gatherer = MagicMock()
    gatherer.fetch_cluster_config.return_value = stateroot_var_dir / "opt/openshift/cluster-configuration"
    return gatherer


@pytest.fixture
def mock_restorer():
    restorer = MagicMock()
    restorer.restore_identity = AsyncMock(return_value=None)
    return restorer
