"""Versioned records baked into, and restored from, seed images.

Two records travel with a seed:

- ``SeedReconfiguration`` is the identity descriptor of the *target* cluster,
  captured during Prep and consumed once by the restore on the new stateroot.
- ``SeedClusterInfo`` describes the *seed* cluster the image was built from.

Both carry an explicit version tag. Readers look the tag up in a registry of
supported schemas and refuse anything they do not know; they never attempt a
partial read. Any change to a field's meaning or presence must bump the tag.
"""

import json
from pathlib import Path
from typing import Any, Type, TypeVar

from pydantic import BaseModel, Field, ValidationError

from ibu.errors import SchemaIncompatibilityError, SeedVersionMismatchError

SEED_RECONFIGURATION_VERSION = 1
SEED_FORMAT_VERSION = 3

SEED_RECONFIGURATION_FILE = "manifest.json"
SEED_CLUSTER_INFO_FILE = "seed-cluster-info.json"

T = TypeVar("T", bound=BaseModel)


class ServingCrypto(BaseModel):
    localhost_signer_private_key: str = ""
    service_network_signer_private_key: str = ""
    loadbalancer_signer_private_key: str = ""


class ClientAuthCrypto(BaseModel):
    admin_ca_certificate: str = ""


class KubeAPICrypto(BaseModel):
    serving_crypto: ServingCrypto = Field(default_factory=ServingCrypto)
    client_auth_crypto: ClientAuthCrypto = Field(default_factory=ClientAuthCrypto)


class IngressCrypto(BaseModel):
    ingress_ca: str = ""


class KubeConfigCryptoRetention(BaseModel):
    """Key material that must survive the identity transplant so existing
    admin kubeconfigs keep working against the reconfigured cluster."""

    kube_api_crypto: KubeAPICrypto = Field(default_factory=KubeAPICrypto)
    ingress_crypto: IngressCrypto = Field(default_factory=IngressCrypto)


class SeedReconfiguration(BaseModel):
    """Identity of the cluster being upgraded, in portable form."""

    api_version: int = SEED_RECONFIGURATION_VERSION
    base_domain: str
    cluster_name: str
    cluster_id: str
    infra_id: str = ""
    node_ip: str
    release_registry: str = ""
    hostname: str
    kubeconfig_crypto_retention: KubeConfigCryptoRetention = Field(
        default_factory=KubeConfigCryptoRetention
    )
    ssh_key: str = ""
    pull_secret: str = ""
    # Empty means "delete the kubeadmin secret on the target"
    kubeadmin_password_hash: str = ""

    @property
    def cluster_domain(self) -> str:
        return f"{self.cluster_name}.{self.base_domain}"


class SeedClusterInfo(BaseModel):
    """Facts about the seed cluster, written once when the seed is built."""

    seed_format_version: int = SEED_FORMAT_VERSION
    seed_cluster_ocp_version: str = ""
    base_domain: str = ""
    cluster_name: str = ""
    node_ip: str = ""
    release_registry: str = ""
    mirror_registry_configured: bool = False
    sno_hostname: str = ""
    recert_image_pull_spec: str = ""

    @property
    def cluster_domain(self) -> str:
        return f"{self.cluster_name}.{self.base_domain}"


SEED_RECONFIGURATION_SCHEMAS: dict[int, Type[SeedReconfiguration]] = {
    SEED_RECONFIGURATION_VERSION: SeedReconfiguration,
}
SEED_CLUSTER_INFO_SCHEMAS: dict[int, Type[SeedClusterInfo]] = {
    SEED_FORMAT_VERSION: SeedClusterInfo,
}


def _load_versioned(
    path: Path, version_field: str, registry: dict[int, Type[T]]
) -> T:
    with open(path, "r", encoding="utf-8") as f:
        data: Any = json.load(f)

    if not isinstance(data, dict):
        raise SchemaIncompatibilityError(f"{path}: expected a JSON object")

    version = data.get(version_field)
    if isinstance(version, bool) or not isinstance(version, int):
        raise SchemaIncompatibilityError(
            f"{path}: missing or malformed {version_field} {version!r}"
        )

    model = registry.get(version)
    if model is None:
        supported = ", ".join(str(v) for v in sorted(registry))
        raise SchemaIncompatibilityError(
            f"{path}: unsupported {version_field} {version} (supported: {supported})"
        )

    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise SchemaIncompatibilityError(f"{path}: invalid content: {e}") from e


def load_seed_reconfiguration(path: Path) -> SeedReconfiguration:
    """Read the identity descriptor, refusing unknown schema versions.

    Raises:
        SchemaIncompatibilityError: If the version is unknown or the content
            does not match the schema of its version
        FileNotFoundError: If the descriptor does not exist
    """
    return _load_versioned(Path(path), "api_version", SEED_RECONFIGURATION_SCHEMAS)


def load_seed_cluster_info(path: Path) -> SeedClusterInfo:
    """Read the seed cluster record, refusing unknown seed format versions."""
    return _load_versioned(Path(path), "seed_format_version", SEED_CLUSTER_INFO_SCHEMAS)


def check_seed_version(
    seed_info: SeedClusterInfo, desired_version: str, fresh_install: bool = False
) -> None:
    """Ensure a seed image matches the version the user asked to upgrade to.

    A fresh install has no running version to protect, so the comparison is
    skipped there.

    Raises:
        SeedVersionMismatchError: On upgrade, when the versions differ
    """
    if fresh_install:
        return
    if seed_info.seed_cluster_ocp_version != desired_version:
        raise SeedVersionMismatchError(
            f"Seed image was built from OCP {seed_info.seed_cluster_ocp_version!r}, "
            f"but the requested version is {desired_version!r}"
        )
