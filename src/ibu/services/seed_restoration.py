"""Identity transplant on a seed-derived stateroot."""

import logging
from pathlib import Path
from typing import Optional, Sequence

from ibu.errors import RestoreError
from ibu.models.seed import (
    SEED_CLUSTER_INFO_FILE,
    SEED_RECONFIGURATION_FILE,
    SeedClusterInfo,
    SeedReconfiguration,
    load_seed_cluster_info,
    load_seed_reconfiguration,
)
from ibu.services.process import ProcessManager
from ibu.services.recert import RecertRunner, build_recert_config
from ibu.utils.files import remove_path

# Seed-time data that must not survive into the live cluster, relative to
# the host root
INSTALL_ONLY_PATHS = (
    "var/lib/lca/ibi-configuration",
    "var/tmp/seed-install",
    "etc/kubernetes/static-pod-resources/kube-apiserver-certs/secrets/node-kubeconfigs.seed",
)


def replace_registry(image: str, registry: str) -> str:
    """Point an image reference at another registry host."""
    if not registry:
        return image
    parts = image.split("/", 1)
    if len(parts) == 2 and ("." in parts[0] or ":" in parts[0] or parts[0] == "localhost"):
        return f"{registry}/{parts[1]}"
    return f"{registry}/{image}"


class SeedRestoration:
    """Removes seed leftovers and rewrites the seed identity to the target's.

    The seed cluster info tells what identity the seed filesystem carries;
    the seed reconfiguration descriptor tells what it must become.
    """

    def __init__(
        self,
        process_manager: ProcessManager,
        host_root: Path,
        backup_dir: Path,
        workspace_dir: Path,
        container_registry: str = "",
        auth_file: Optional[Path] = None,
        recert_image: str = "",
        skip_validation: bool = False,
        install_only_paths: Sequence[str] = INSTALL_ONLY_PATHS,
    ):
        """Initialize seed restoration.

        Args:
            process_manager: Runs the recert container
            host_root: Root of the seed-derived filesystem
            backup_dir: Seed-time backup directory to discard
            workspace_dir: Holds seed cluster info and recert scratch files
            container_registry: Registry to pull recert from, if mirrored
            auth_file: Registry credentials for pulling recert
            recert_image: Recert image; defaults to the one the seed was
                built with
            skip_validation: Skip the recert dry-run validation pass
            install_only_paths: Host-relative paths removed during cleanup
        """
        self.logger = logging.getLogger("ibu.seed_restoration")
        self.process_manager = process_manager
        self.host_root = Path(host_root)
        self.backup_dir = Path(backup_dir)
        self.workspace_dir = Path(workspace_dir)
        self.container_registry = container_registry
        self.auth_file = auth_file
        self.recert_image = recert_image
        self.skip_validation = skip_validation
        self.install_only_paths = list(install_only_paths)

    def remove_stale_artifacts(self) -> list[Path]:
        """Delete backup files and install-only data left by the seed.

        Returns:
            Paths that were removed

        Raises:
            RestoreError: If a path exists but cannot be removed
        """
        removed = []
        targets = []
        if self.backup_dir.is_dir():
            targets.extend(sorted(self.backup_dir.iterdir()))
        targets.extend(self.host_root / p for p in self.install_only_paths)

        for path in targets:
            try:
                if remove_path(path):
                    self.logger.info(f"Removed stale seed artifact {path}")
                    removed.append(path)
            except OSError as e:
                raise RestoreError(f"Failed to remove {path}: {e}") from e
        return removed

    def load_identity(
        self, cluster_config_dir: Path, seed_info_path: Optional[Path] = None
    ) -> tuple[SeedClusterInfo, SeedReconfiguration]:
        """Load and version-check both seed records.

        Args:
            cluster_config_dir: Bundle holding the reconfiguration descriptor
            seed_info_path: Seed cluster info; defaults to the workspace copy

        Raises:
            SchemaIncompatibilityError: If either record has an unknown version
            RestoreError: If a record is missing
        """
        seed_info_path = seed_info_path or self.workspace_dir / SEED_CLUSTER_INFO_FILE
        descriptor_path = Path(cluster_config_dir) / SEED_RECONFIGURATION_FILE
        try:
            seed_info = load_seed_cluster_info(seed_info_path)
            target = load_seed_reconfiguration(descriptor_path)
        except FileNotFoundError as e:
            raise RestoreError(f"Seed record not found: {e.filename}") from e

        self.logger.info(
            f"Restoring identity {seed_info.cluster_domain} -> {target.cluster_domain}, "
            f"hostname {seed_info.sno_hostname} -> {target.hostname}"
        )
        return seed_info, target

    def _recert_runner(self, seed_info: SeedClusterInfo) -> RecertRunner:
        image = self.recert_image or seed_info.recert_image_pull_spec
        if not image:
            raise RestoreError("No recert image given and none recorded in the seed")
        return RecertRunner(
            self.process_manager,
            replace_registry(image, self.container_registry),
            self.auth_file,
            self.workspace_dir / "recert",
        )

    async def restore_identity(
        self, cluster_config_dir: Path, seed_info_path: Optional[Path] = None
    ) -> None:
        """Rewrite certificates and configuration for the target identity.

        Raises:
            SchemaIncompatibilityError: Before recert runs, on unknown versions
            RestoreError: On any recert failure
        """
        seed_info, target = self.load_identity(cluster_config_dir, seed_info_path)
        runner = self._recert_runner(seed_info)
        crypto_dir = runner.work_dir / "crypto"

        if self.skip_validation:
            self.logger.warning("Skipping recert validation")
        else:
            await runner.run(build_recert_config(seed_info, target, crypto_dir, dry_run=True))

        await runner.run(build_recert_config(seed_info, target, crypto_dir))
        self.logger.info("Seed identity restored")

    async def cleanup_seed_cluster(self, cluster_config_dir: Path) -> None:
        """Clean up seed leftovers, then restore the cluster identity."""
        self.logger.info("Cleaning up seed cluster")
        self.remove_stale_artifacts()
        await self.restore_identity(cluster_config_dir)
