"""Resource kinds the agent reads from the cluster API.

The gatherer looks up apiVersion/kind markers here instead of trusting what
the server returned, so a written manifest is replayable on its own.
"""

from typing import NamedTuple


class ResourceKind(NamedTuple):
    group: str
    version: str
    plural: str
    kind: str

    @property
    def api_version(self) -> str:
        return f"{self.group}/{self.version}" if self.group else self.version

    @property
    def list_kind(self) -> str:
        return f"{self.kind}List"

    def type_meta(self, as_list: bool = False) -> dict:
        return {
            "apiVersion": self.api_version,
            "kind": self.list_kind if as_list else self.kind,
        }


PROXY = ResourceKind("config.openshift.io", "v1", "proxies", "Proxy")
INFRASTRUCTURE = ResourceKind(
    "config.openshift.io", "v1", "infrastructures", "Infrastructure"
)
CLUSTER_VERSION = ResourceKind(
    "config.openshift.io", "v1", "clusterversions", "ClusterVersion"
)
IMAGE_DIGEST_MIRROR_SET = ResourceKind(
    "config.openshift.io", "v1", "imagedigestmirrorsets", "ImageDigestMirrorSet"
)
IMAGE_CONTENT_SOURCE_POLICY = ResourceKind(
    "operator.openshift.io",
    "v1alpha1",
    "imagecontentsourcepolicies",
    "ImageContentSourcePolicy",
)
CONFIG_MAP = ResourceKind("", "v1", "configmaps", "ConfigMap")
SECRET = ResourceKind("", "v1", "secrets", "Secret")

RESOURCE_KINDS: dict[str, ResourceKind] = {
    k.kind: k
    for k in (
        PROXY,
        INFRASTRUCTURE,
        CLUSTER_VERSION,
        IMAGE_DIGEST_MIRROR_SET,
        IMAGE_CONTENT_SOURCE_POLICY,
        CONFIG_MAP,
        SECRET,
    )
}


def lookup_kind(kind: str) -> ResourceKind:
    """Return the registered kind.

    Raises:
        KeyError: If the kind is not registered
    """
    try:
        return RESOURCE_KINDS[kind]
    except KeyError:
        raise KeyError(f"Unable to find API version for kind {kind!r}") from None
