"""Agent configuration.

All process-wide paths live here and are passed to the services that need
them, so tests can point every component at an isolated root.
"""

import os
from pathlib import Path

from dotenv import find_dotenv, load_dotenv
from pydantic import BaseModel, Field

DEFAULT_INIT_MONITOR_TIMEOUT = 1800  # 30 minutes
DEFAULT_RECERT_IMAGE = "quay.io/edge-infrastructure/recert:v0"

# Relative to the host root
NM_CONNECTION_FOLDER = "etc/NetworkManager/system-connections"
SSH_KEY_FILE = "home/core/.ssh/authorized_keys.d/ignition"
CA_BUNDLE_FILE = "etc/pki/ca-trust/extracted/pem/tls-ca-bundle.pem"

# Relative to a stateroot var dir
OPT_OPENSHIFT = "opt/openshift"
CLUSTER_CONFIG_DIR = "cluster-configuration"
NETWORK_CONFIG_DIR = "network-configuration"


class GathererConfig(BaseModel):
    """Where the gatherer reads host files from."""

    host_root: Path = Path("/host")
    network_file_paths: list[str] = Field(
        default_factory=lambda: [NM_CONNECTION_FOLDER]
    )
    ssh_key_file: str = SSH_KEY_FILE
    ca_bundle_file: str = CA_BUNDLE_FILE

    def host_path(self, relative: str) -> Path:
        return self.host_root / relative.lstrip("/")


class AgentConfig(BaseModel):
    """Runtime configuration of the upgrade agent."""

    host_root: Path = Path("/host")
    workspace_dir: Path = Path("/var/lib/lca/workspace")
    state_file: Path = Path("/var/lib/lca/workspace/ibu.json")
    backup_dir: Path = Path("/var/tmp/backup")
    # Var dir of the new stateroot once it is booted
    new_stateroot_var_dir: Path = Path("/var")
    log_file: str = "./logs/ibu.log"

    host: str = "0.0.0.0"
    port: int = 12315

    default_init_monitor_timeout: int = DEFAULT_INIT_MONITOR_TIMEOUT
    # Empty means the recert image recorded in the seed
    recert_image: str = ""
    registry_auth_file: Path = Path("/var/lib/kubelet/config.json")
    use_host_namespace: bool = True

    @property
    def cluster_config_dir(self) -> Path:
        """Bundle root inside the booted new stateroot."""
        return self.new_stateroot_var_dir / OPT_OPENSHIFT / CLUSTER_CONFIG_DIR

    def gatherer_config(self) -> GathererConfig:
        return GathererConfig(host_root=self.host_root)

    @classmethod
    def from_env(cls) -> "AgentConfig":
        """Build configuration from IBU_* environment variables.

        A `.env` file in the working directory is loaded first if present.
        """
        load_dotenv(find_dotenv(usecwd=True))
        overrides = {}
        for name in cls.model_fields:
            value = os.getenv(f"IBU_{name.upper()}")
            if value is not None:
                overrides[name] = value
        return cls(**overrides)
