"""Host-side phase work: seed pull, stateroot setup, pivot and rollback.

The stage controller only sees the StageExecutor protocol. The ostree
implementation below drives podman, ostree and systemctl on the host.
"""

import json
import logging
import shutil
import tempfile
from pathlib import Path
from typing import Protocol

from ibu.config import AgentConfig
from ibu.models.seed import SEED_CLUSTER_INFO_FILE, SeedClusterInfo, load_seed_cluster_info
from ibu.models.upgrade import SeedImageRef
from ibu.services.process import ProcessManager, ServiceStatus

POST_REBOOT_CONFIG_UNIT = "installation-configuration.service"
KUBELET_UNIT = "kubelet.service"
SEED_WORKSPACE = "var/lib/lca/workspace"


class StageExecutor(Protocol):
    def stateroot_var_dir(self, seed_ref: SeedImageRef) -> Path: ...

    async def pull_seed_image(self, seed_ref: SeedImageRef) -> SeedClusterInfo: ...

    async def setup_stateroot(self, seed_ref: SeedImageRef) -> Path: ...

    async def pivot(self, seed_ref: SeedImageRef) -> None: ...

    async def reboot(self) -> None: ...

    async def booted_stateroot(self) -> str: ...

    async def run_post_reboot_config(self) -> bool: ...

    async def complete_upgrade(self) -> None: ...

    async def revert_deployment(self, pivoted: bool) -> None: ...

    async def restore_config(self) -> None: ...

    async def finalize_upgrade(self) -> None: ...

    async def finalize_rollback(self) -> None: ...


def stateroot_name(seed_ref: SeedImageRef) -> str:
    return f"rhcos_{seed_ref.version.replace('.', '_')}"


class OstreeStageExecutor:
    """StageExecutor for ostree-based hosts."""

    KUBELET_START_TIMEOUT = 300.0

    def __init__(self, process_manager: ProcessManager, config: AgentConfig):
        self.logger = logging.getLogger("ibu.executor")
        self.process_manager = process_manager
        self.config = config

    def stateroot_var_dir(self, seed_ref: SeedImageRef) -> Path:
        return self.config.host_root / "ostree" / "deploy" / stateroot_name(seed_ref) / "var"

    async def pull_seed_image(self, seed_ref: SeedImageRef) -> SeedClusterInfo:
        """Pull the seed image and read the cluster info baked into it."""
        self.logger.info(f"Pulling seed image {seed_ref.image}")
        await self.process_manager.run(
            "podman", "pull", "--authfile", str(self.config.registry_auth_file), seed_ref.image
        )
        mount_point = (await self.process_manager.run("podman", "image", "mount", seed_ref.image)).strip()
        try:
            # Copy out before unmounting
            with tempfile.TemporaryDirectory() as tmp:
                local = Path(tmp) / SEED_CLUSTER_INFO_FILE
                shutil.copy2(Path(mount_point) / SEED_WORKSPACE / SEED_CLUSTER_INFO_FILE, local)
                return load_seed_cluster_info(local)
        finally:
            await self.process_manager.run("podman", "image", "unmount", seed_ref.image)

    async def setup_stateroot(self, seed_ref: SeedImageRef) -> Path:
        name = stateroot_name(seed_ref)
        self.logger.info(f"Setting up stateroot {name}")
        await self.process_manager.run("ostree", "admin", "stateroot-init", name)
        await self.process_manager.run(
            "ostree", "container", "image", "deploy",
            "--stateroot", name,
            "--imgref", f"ostree-unverified-image:containers-storage:{seed_ref.image}",
            "--no-imgref",
        )
        # Deploying makes the new deployment default; keep booting the current one
        await self.process_manager.run("ostree", "admin", "set-default", "1")
        return self.stateroot_var_dir(seed_ref)

    async def pivot(self, seed_ref: SeedImageRef) -> None:
        self.logger.info(f"Making stateroot {stateroot_name(seed_ref)} the default deployment")
        await self.process_manager.run("ostree", "admin", "set-default", "1")

    async def reboot(self) -> None:
        """Reboot into the default deployment.

        Returns once systemd has accepted the request; the agent is stopped
        shortly after.
        """
        self.logger.warning("Rebooting the node")
        await self.process_manager.run("systemctl", "reboot")

    async def booted_stateroot(self) -> str:
        """Name of the stateroot the node is currently running from."""
        status = json.loads(await self.process_manager.run("rpm-ostree", "status", "--json"))
        for deployment in status.get("deployments", []):
            if deployment.get("booted"):
                return deployment["osname"]
        raise RuntimeError("rpm-ostree reports no booted deployment")

    async def run_post_reboot_config(self) -> bool:
        return await self.process_manager.wait_for_unit_completion(POST_REBOOT_CONFIG_UNIT)

    async def complete_upgrade(self) -> None:
        await self.process_manager.restart_service(KUBELET_UNIT)
        await self.process_manager.wait_for_service_status(
            KUBELET_UNIT, target_status=ServiceStatus.ACTIVE, timeout=self.KUBELET_START_TIMEOUT
        )

    async def revert_deployment(self, pivoted: bool) -> None:
        if not pivoted:
            self.logger.info("Never pivoted, the current deployment is still default")
            return
        self.logger.info("Reverting to the previous deployment")
        await self.process_manager.run("ostree", "admin", "set-default", "1")

    async def restore_config(self) -> None:
        await self.process_manager.restart_service(KUBELET_UNIT)

    async def finalize_upgrade(self) -> None:
        self.logger.info("Removing the previous deployment")
        await self.process_manager.run("ostree", "admin", "undeploy", "1")

    async def finalize_rollback(self) -> None:
        self.logger.info("Removing the rolled-back deployment")
        await self.process_manager.run("ostree", "admin", "undeploy", "1")
