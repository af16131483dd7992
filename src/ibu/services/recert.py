"""Certificate-rewrite (recert) tool invocation."""

import logging
import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

from ibu.errors import CommandError, RestoreError
from ibu.models.seed import SeedClusterInfo, SeedReconfiguration
from ibu.services.process import ProcessManager
from ibu.utils.files import marshal_to_file

RECERT_CONTAINER_NAME = "recert"
RECERT_CONFIG_FILE = "recert_config.json"
DEFAULT_ETCD_ENDPOINT = "localhost:2379"

CRYPTO_DIRS = [
    "/etc/kubernetes",
    "/var/lib/kubelet",
    "/etc/machine-config-daemon",
]
CRYPTO_FILES = [
    "/etc/mcs-machine-config-content.json",
]


class RecertConfig(BaseModel):
    """Configuration document handed to the recert container."""

    dry_run: bool = False
    etcd_endpoint: str = DEFAULT_ETCD_ENDPOINT
    crypto_dirs: list[str] = Field(default_factory=lambda: list(CRYPTO_DIRS))
    crypto_files: list[str] = Field(default_factory=lambda: list(CRYPTO_FILES))
    cluster_customization_dirs: list[str] = Field(default_factory=lambda: list(CRYPTO_DIRS))
    cluster_customization_files: list[str] = Field(default_factory=lambda: list(CRYPTO_FILES))
    cn_san_replace_rules: list[str] = Field(default_factory=list)
    use_key_rules: list[str] = Field(default_factory=list)
    use_cert_rules: list[str] = Field(default_factory=list)
    cluster_rename: str = ""
    hostname: str = ""
    ip: str = ""
    kubeadmin_password_hash: Optional[str] = None
    pull_secret: str = ""
    summary_file_clean: str = ""
    extend_expiration: bool = True


def _write_secret(path: Path, content: str) -> Path:
    path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(content)
    return path


def build_recert_config(
    seed: SeedClusterInfo,
    target: SeedReconfiguration,
    crypto_dir: Path,
    dry_run: bool = False,
) -> RecertConfig:
    """Map the seed's identity onto the target's.

    Retained key material is written under ``crypto_dir`` so recert reuses
    it instead of generating new keys.
    """
    replace_rules = [
        f"{seed.cluster_domain}:{target.cluster_domain}",
        f"{seed.sno_hostname}:{target.hostname}",
        f"{seed.node_ip}:{target.node_ip}",
    ]

    retention = target.kubeconfig_crypto_retention
    serving = retention.kube_api_crypto.serving_crypto
    key_rules = []
    for name, key in (
        ("kube-apiserver-localhost-signer", serving.localhost_signer_private_key),
        ("kube-apiserver-service-network-signer", serving.service_network_signer_private_key),
        ("kube-apiserver-lb-signer", serving.loadbalancer_signer_private_key),
        ("ingresskey-ingress-operator", retention.ingress_crypto.ingress_ca),
    ):
        if key:
            key_rules.append(f"{name} {_write_secret(crypto_dir / f'{name}.key', key)}")

    cert_rules = []
    admin_ca = retention.kube_api_crypto.client_auth_crypto.admin_ca_certificate
    if admin_ca:
        cert_rules.append(str(_write_secret(crypto_dir / "admin-kubeconfig-client-ca.crt", admin_ca)))

    cluster_rename = f"{target.cluster_name}:{target.base_domain}"
    if target.infra_id:
        cluster_rename += f":{target.infra_id}"

    return RecertConfig(
        dry_run=dry_run,
        cn_san_replace_rules=replace_rules,
        use_key_rules=key_rules,
        use_cert_rules=cert_rules,
        cluster_rename=cluster_rename,
        hostname=target.hostname,
        ip=target.node_ip,
        # recert treats an empty hash as "remove the kubeadmin secret"
        kubeadmin_password_hash=target.kubeadmin_password_hash,
        pull_secret=target.pull_secret,
        summary_file_clean=str(crypto_dir / "recert-summary.yaml"),
        extend_expiration=not dry_run,
    )


class RecertRunner:
    """Runs the recert container once per call, without retries."""

    def __init__(
        self,
        process_manager: ProcessManager,
        image: str,
        auth_file: Optional[Path],
        work_dir: Path,
    ):
        self.logger = logging.getLogger("ibu.recert")
        self.process_manager = process_manager
        self.image = image
        self.auth_file = auth_file
        self.work_dir = Path(work_dir)

    def _command(self, config_path: Path) -> list[str]:
        command = [
            "podman", "run", "--rm", "--network=host", "--privileged", "--replace",
            "--name", RECERT_CONTAINER_NAME,
            "-v", "/etc:/etc",
            "-v", "/var/lib/etcd:/var/lib/etcd",
            "-v", "/var/lib/kubelet:/var/lib/kubelet",
            "-v", f"{self.work_dir}:{self.work_dir}",
            "-e", f"RECERT_CONFIG={config_path}",
        ]
        if self.auth_file:
            command += ["--authfile", str(self.auth_file)]
        command.append(self.image)
        return command

    async def run(self, config: RecertConfig) -> None:
        """Run recert with the given configuration.

        Raises:
            RestoreError: If recert exits non-zero; partially rewritten
                credentials must not be treated as usable
        """
        mode = "validation (dry run)" if config.dry_run else "rewrite"
        config_path = self.work_dir / RECERT_CONFIG_FILE
        marshal_to_file(config.model_dump(mode="json"), config_path)
        os.chmod(config_path, 0o600)

        self.logger.info(f"Running recert {mode} with image {self.image}")
        try:
            await self.process_manager.run(*self._command(config_path))
        except CommandError as e:
            self.logger.error(f"recert {mode} failed: exit code {e.returncode}")
            raise RestoreError(f"recert {mode} failed: {e}") from e
        self.logger.info(f"recert {mode} completed")
