"""Cluster configuration gathering.

Snapshots the running cluster's configuration and identity into a directory
inside the new stateroot, where the restore picks it up after the pivot:

    <var>/opt/openshift/cluster-configuration/
    ├── manifest.json                   # SeedReconfiguration descriptor
    ├── tls-ca-bundle.pem               # host trust bundle, if present
    └── manifests/
        ├── proxy.json
        ├── image-digest-mirror-set.json          # only if any exist
        ├── image-content-source-policy-list.json # only if any exist
        └── user-ca-bundle.json                   # only if it exists
    <var>/opt/openshift/network-configuration/
        └── <copied connection files by base name>
"""

import logging
from pathlib import Path
from typing import Callable

from ibu.config import CLUSTER_CONFIG_DIR, NETWORK_CONFIG_DIR, OPT_OPENSHIFT, GathererConfig
from ibu.errors import AccessorError, GatherError, ResourceNotFoundError
from ibu.models.kinds import lookup_kind
from ibu.models.seed import (
    SEED_CLUSTER_INFO_FILE,
    SEED_RECONFIGURATION_FILE,
    SEED_RECONFIGURATION_VERSION,
    KubeConfigCryptoRetention,
    SeedClusterInfo,
    SeedReconfiguration,
)
from ibu.services.cluster_info import ClusterInfo, ClusterInfoAccessor, OPENSHIFT_CONFIG_NAMESPACE
from ibu.utils.files import copy_if_exists, marshal_to_file

MANIFESTS_DIR = "manifests"
PROXY_FILE = "proxy.json"
IDMS_FILE = "image-digest-mirror-set.json"
ICSP_FILE = "image-content-source-policy-list.json"
CA_BUNDLE_CM = "user-ca-bundle"
CA_BUNDLE_FILE = f"{CA_BUNDLE_CM}.json"
PULL_SECRET_NAME = "pull-secret"


def clean_metadata(obj: dict) -> dict:
    """Keep only the identifying metadata of an object."""
    metadata = obj.get("metadata") or {}
    cleaned = {"name": metadata.get("name", "")}
    if metadata.get("namespace"):
        cleaned["namespace"] = metadata["namespace"]
    if metadata.get("labels"):
        cleaned["labels"] = dict(metadata["labels"])
    return cleaned


def seed_reconfiguration_from_cluster_info(
    cluster_info: ClusterInfo,
    kubeconfig_crypto_retention: KubeConfigCryptoRetention,
    ssh_key: str,
    infra_id: str,
    pull_secret: str,
    kubeadmin_password_hash: str,
) -> SeedReconfiguration:
    return SeedReconfiguration(
        api_version=SEED_RECONFIGURATION_VERSION,
        base_domain=cluster_info.base_domain,
        cluster_name=cluster_info.cluster_name,
        cluster_id=cluster_info.cluster_id,
        infra_id=infra_id,
        node_ip=cluster_info.node_ip,
        release_registry=cluster_info.release_registry,
        hostname=cluster_info.hostname,
        kubeconfig_crypto_retention=kubeconfig_crypto_retention,
        ssh_key=ssh_key,
        pull_secret=pull_secret,
        kubeadmin_password_hash=kubeadmin_password_hash,
    )


class ClusterConfigGatherer:
    """Collects the current cluster's configuration as JSON files."""

    def __init__(self, accessor: ClusterInfoAccessor, config: GathererConfig):
        """Initialize gatherer.

        Args:
            accessor: Read-only cluster API access
            config: Host paths to read files from
        """
        self.logger = logging.getLogger("ibu.cluster_config")
        self.accessor = accessor
        self.config = config

    def fetch_cluster_config(self, ostree_var_dir: Path) -> Path:
        """Gather everything into the given stateroot var dir.

        Steps run in order and the first failure stops the rest. Files
        written by earlier steps stay on disk; the caller marks the phase
        failed and a later attempt overwrites them.

        Returns:
            The cluster configuration directory

        Raises:
            GatherError: On the first fatal step
        """
        self.logger.info("Fetching cluster configuration")
        ostree_var_dir = Path(ostree_var_dir)
        config_dir = ostree_var_dir / OPT_OPENSHIFT / CLUSTER_CONFIG_DIR
        manifests_dir = config_dir / MANIFESTS_DIR

        steps: list[tuple[str, Callable[[], None]]] = [
            ("proxy", lambda: self._fetch_proxy(manifests_dir)),
            ("image digest mirror sets", lambda: self._fetch_idms(manifests_dir)),
            ("cluster info", lambda: self._fetch_cluster_info(config_dir)),
            ("user ca bundle", lambda: self._fetch_ca_bundle(manifests_dir, config_dir)),
            ("image content source policies", lambda: self._fetch_icsps(manifests_dir)),
            ("network configuration", lambda: self._fetch_network_config(ostree_var_dir)),
        ]

        self.logger.info(f"Creating cluster configuration folder {config_dir}")
        try:
            manifests_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
        except OSError as e:
            raise GatherError("configuration directory", e) from e

        for name, step in steps:
            try:
                step()
            except (AccessorError, ResourceNotFoundError, OSError, KeyError) as e:
                self.logger.error(f"Failed to fetch {name}: {e}")
                raise GatherError(name, e) from e

        self.logger.info("Successfully fetched cluster configuration")
        return config_dir

    def _fetch_proxy(self, manifests_dir: Path) -> None:
        self.logger.info("Fetching cluster-wide proxy")
        proxy = self.accessor.get_proxy()
        manifest = {
            **lookup_kind("Proxy").type_meta(),
            "metadata": {"name": proxy.get("metadata", {}).get("name", "cluster")},
            "spec": proxy.get("spec", {}),
        }
        file_path = manifests_dir / PROXY_FILE
        self.logger.info(f"Writing proxy to {file_path}")
        marshal_to_file(manifest, file_path)

    def _mirror_list(self, kind: str, items: list[dict]) -> dict:
        resource_kind = lookup_kind(kind)
        cleaned = [
            {
                **resource_kind.type_meta(),
                "metadata": clean_metadata(item),
                "spec": item.get("spec", {}),
            }
            for item in items
        ]
        cleaned.sort(key=lambda o: o["metadata"]["name"])
        return {
            **resource_kind.type_meta(as_list=True),
            "metadata": {},
            "items": cleaned,
        }

    def _fetch_idms(self, manifests_dir: Path) -> None:
        self.logger.info("Fetching image digest mirror sets")
        items = self.accessor.list_image_digest_mirror_sets()
        if not items:
            self.logger.info("ImageDigestMirrorSetList is empty, skipping")
            return

        file_path = manifests_dir / IDMS_FILE
        self.logger.info(f"Writing {len(items)} image digest mirror sets to {file_path}")
        marshal_to_file(self._mirror_list("ImageDigestMirrorSet", items), file_path)

    def _fetch_icsps(self, manifests_dir: Path) -> None:
        # A failed list is fatal here too, same as for mirror sets
        self.logger.info("Fetching image content source policies")
        items = self.accessor.list_image_content_source_policies()
        if not items:
            self.logger.info("ImageContentSourcePolicyList is empty, skipping")
            return

        file_path = manifests_dir / ICSP_FILE
        self.logger.info(f"Writing {len(items)} image content source policies to {file_path}")
        marshal_to_file(self._mirror_list("ImageContentSourcePolicy", items), file_path)

    def _fetch_ca_bundle(self, manifests_dir: Path, config_dir: Path) -> None:
        self.logger.info("Fetching user ca bundle")
        try:
            ca_bundle = self.accessor.get_config_map(CA_BUNDLE_CM, OPENSHIFT_CONFIG_NAMESPACE)
        except ResourceNotFoundError:
            self.logger.info("No user ca bundle configmap, skipping")
            return

        manifest = {
            k: v
            for k, v in ca_bundle.items()
            if k not in ("apiVersion", "kind", "metadata") and v is not None
        }
        manifest.update(lookup_kind("ConfigMap").type_meta())
        manifest["metadata"] = clean_metadata(ca_bundle)
        marshal_to_file(manifest, manifests_dir / CA_BUNDLE_FILE)

        # Without the host trust bundle the new stateroot cannot pull images
        # from registries signed by the user CA
        ca_bundle_file = self.config.host_path(self.config.ca_bundle_file)
        self.logger.info(f"Copying {ca_bundle_file}")
        copy_if_exists(ca_bundle_file, config_dir / ca_bundle_file.name)

    def get_kubeadmin_password_hash(self) -> str:
        """Return the kubeadmin password hash.

        An absent secret yields an empty string, which tells the restore to
        delete the seed's kubeadmin secret rather than keep accepting its
        password.
        """
        try:
            return self.accessor.get_secret_data("kubeadmin", "kube-system", "kubeadmin")
        except ResourceNotFoundError:
            self.logger.info("No kubeadmin secret found, it will be removed on the target")
            return ""

    def _fetch_ssh_public_key(self) -> str:
        return self.config.host_path(self.config.ssh_key_file).read_text(encoding="utf-8")

    def _fetch_cluster_info(self, config_dir: Path) -> None:
        self.logger.info("Fetching cluster identity")
        cluster_info = self.accessor.get_cluster_info()
        retention = self.accessor.get_kubeconfig_crypto_retention()
        ssh_key = self._fetch_ssh_public_key()
        infra_id = self.accessor.get_infrastructure_name()
        self.logger.info("Fetching pull-secret")
        pull_secret = self.accessor.get_secret_data(
            PULL_SECRET_NAME, OPENSHIFT_CONFIG_NAMESPACE, ".dockerconfigjson"
        )
        kubeadmin_password_hash = self.get_kubeadmin_password_hash()

        descriptor = seed_reconfiguration_from_cluster_info(
            cluster_info, retention, ssh_key, infra_id, pull_secret, kubeadmin_password_hash
        )
        file_path = config_dir / SEED_RECONFIGURATION_FILE
        self.logger.info(f"Writing seed reconfiguration to {file_path}")
        marshal_to_file(descriptor.model_dump(mode="json"), file_path)

    def _fetch_network_config(self, ostree_var_dir: Path) -> None:
        self.logger.info("Fetching node network files")
        network_dir = ostree_var_dir / OPT_OPENSHIFT / NETWORK_CONFIG_DIR
        network_dir.mkdir(mode=0o700, parents=True, exist_ok=True)

        for path in self.config.network_file_paths:
            src = self.config.host_path(path)
            self.logger.info(f"Copying network files {src} to {network_dir}")
            copy_if_exists(src, network_dir / src.name)
        self.logger.info("Done fetching node network files")

    def fetch_seed_cluster_info(self, output_dir: Path, recert_image: str) -> SeedClusterInfo:
        """Write the seed cluster record when building a seed image.

        Returns:
            The record written to ``output_dir``

        Raises:
            GatherError: If the cluster cannot be read or the file written
        """
        try:
            cluster_info = self.accessor.get_cluster_info()
        except (AccessorError, ResourceNotFoundError, KeyError) as e:
            raise GatherError("seed cluster info", e) from e

        seed_info = SeedClusterInfo(
            seed_cluster_ocp_version=cluster_info.ocp_version,
            base_domain=cluster_info.base_domain,
            cluster_name=cluster_info.cluster_name,
            node_ip=cluster_info.node_ip,
            release_registry=cluster_info.release_registry,
            mirror_registry_configured=cluster_info.mirror_registry_configured,
            sno_hostname=cluster_info.hostname,
            recert_image_pull_spec=recert_image,
        )
        file_path = Path(output_dir) / SEED_CLUSTER_INFO_FILE
        self.logger.info(f"Writing seed cluster info to {file_path}")
        try:
            marshal_to_file(seed_info.model_dump(mode="json"), file_path)
        except OSError as e:
            raise GatherError("seed cluster info", e) from e
        return seed_info
