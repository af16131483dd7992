"""Image-based installation ISO builder."""

import logging
import shutil
from importlib import resources
from pathlib import Path
from typing import Optional

import aiofiles
import httpx
from jinja2 import Environment, StrictUndefined

from ibu.services.process import ProcessManager

BUTANE_TEMPLATE = "ibi-butane.template"
SEED_INSTALL_SCRIPT = "install-rhcos-and-restore-seed.sh"
BUTANE_FILES_DIR = "butaneFiles"
BUTANE_CONFIG_FILE = "config.bu"
IGNITION_FILE = "ibi-ignition.json"
RHCOS_LIVE_ISO_FILE = "rhcos-live.x86_64.iso"
IBI_ISO_FILE = "rhcos-ibi.iso"
BUTANE_IMAGE = "quay.io/coreos/butane:release"
COREOS_INSTALLER_IMAGE = "quay.io/coreos/coreos-installer:latest"


class ResourceBundle:
    """Static assets shipped inside the package."""

    def __init__(self, package: str = "ibu.data"):
        self.root = resources.files(package)

    def read_text(self, name: str) -> str:
        return self.root.joinpath(name).read_text(encoding="utf-8")

    def copy_to(self, name: str, target: Path) -> Path:
        with resources.as_file(self.root.joinpath(name)) as source:
            shutil.copyfile(source, target)
        return target


class InstallationIso:
    """Builds a live ISO that installs a node straight from a seed image.

    All intermediate files live in the work dir, which is mounted into the
    butane and coreos-installer containers.
    """

    def __init__(
        self,
        process_manager: ProcessManager,
        work_dir: Path,
        bundle: Optional[ResourceBundle] = None,
    ):
        self.logger = logging.getLogger("ibu.installation_media")
        self.process_manager = process_manager
        self.work_dir = Path(work_dir)
        self.bundle = bundle or ResourceBundle()
        self.chunk_size = 64 * 1024

    async def create(
        self,
        seed_image: str,
        seed_version: str,
        auth_file: Path,
        pull_secret_file: Path,
        lca_image: str,
        rhcos_live_iso_url: str,
        installation_disk: str,
        ssh_public_key_file: Optional[Path] = None,
    ) -> Path:
        """Create the installation ISO.

        Returns:
            Path to the ISO with the ignition embedded

        Raises:
            FileNotFoundError: If the work dir or an input file is missing
            httpx.HTTPError: If the live ISO download fails
            CommandError: If butane or coreos-installer fail
        """
        self.logger.info("Creating IBI installation ISO")
        if not self.work_dir.is_dir():
            raise FileNotFoundError(f"Work dir doesn't exist: {self.work_dir}")

        self.render_butane_config(
            seed_image, seed_version, auth_file, pull_secret_file,
            lca_image, installation_disk, ssh_public_key_file,
        )
        await self.render_ignition()
        await self.download_live_iso(rhcos_live_iso_url)
        iso_path = await self.embed_ignition()
        self.logger.info(f"Installation ISO created at: {iso_path}")
        return iso_path

    def render_butane_config(
        self,
        seed_image: str,
        seed_version: str,
        auth_file: Path,
        pull_secret_file: Path,
        lca_image: str,
        installation_disk: str,
        ssh_public_key_file: Optional[Path] = None,
    ) -> Path:
        """Render the butane config and stage the files it references."""
        ssh_public_key = ""
        if ssh_public_key_file is None:
            self.logger.info("SSH key not provided, skipping")
        else:
            ssh_public_key = Path(ssh_public_key_file).read_text(encoding="utf-8")

        # Referenced as local files relative to the work dir so butane
        # embeds them verbatim
        files_dir = self.work_dir / BUTANE_FILES_DIR
        files_dir.mkdir(mode=0o700, exist_ok=True)
        self.bundle.copy_to(SEED_INSTALL_SCRIPT, files_dir / "seedInstallScript")
        shutil.copyfile(pull_secret_file, files_dir / "pullSecret")
        shutil.copyfile(auth_file, files_dir / "backupSecret")

        env = Environment(undefined=StrictUndefined, keep_trailing_newline=True)
        template = env.from_string(self.bundle.read_text(BUTANE_TEMPLATE))
        content = template.render(
            seed_image=seed_image,
            seed_version=seed_version,
            backup_secret=f"{BUTANE_FILES_DIR}/backupSecret",
            pull_secret=f"{BUTANE_FILES_DIR}/pullSecret",
            ssh_public_key=ssh_public_key,
            install_seed_script=f"{BUTANE_FILES_DIR}/seedInstallScript",
            lca_image=lca_image,
            installation_disk=installation_disk,
        )

        config_path = self.work_dir / BUTANE_CONFIG_FILE
        config_path.write_text(content, encoding="utf-8")
        return config_path

    async def render_ignition(self) -> Path:
        ignition_path = self.work_dir / IGNITION_FILE
        if ignition_path.exists():
            self.logger.info(f"Ignition file exists ({ignition_path}), deleting it")
            ignition_path.unlink()

        ignition = await self.process_manager.run(
            "podman", "run",
            "-v", f"{self.work_dir}:/data:rw,Z",
            "--rm",
            BUTANE_IMAGE,
            "--pretty", "--strict",
            "-d", "/data",
            f"/data/{BUTANE_CONFIG_FILE}",
        )
        ignition_path.write_text(ignition, encoding="utf-8")
        return ignition_path

    async def download_live_iso(self, url: str) -> Path:
        """Download the RHCOS live ISO unless it is already in the work dir."""
        iso_path = self.work_dir / RHCOS_LIVE_ISO_FILE
        if iso_path.exists():
            self.logger.info(f"RHCOS live ISO ({iso_path}) exists, skipping download")
            return iso_path

        self.logger.info(f"Downloading live ISO from {url}")
        partial_path = iso_path.with_suffix(".part")
        async with httpx.AsyncClient(timeout=30.0, follow_redirects=True) as client:
            async with client.stream("GET", url) as response:
                response.raise_for_status()
                async with aiofiles.open(partial_path, "wb") as f:
                    async for chunk in response.aiter_bytes(chunk_size=self.chunk_size):
                        await f.write(chunk)
        partial_path.replace(iso_path)
        return iso_path

    async def embed_ignition(self) -> Path:
        iso_path = self.work_dir / IBI_ISO_FILE
        if iso_path.exists():
            self.logger.info(f"IBI ISO exists ({iso_path}), deleting it")
            iso_path.unlink()

        await self.process_manager.run(
            "podman", "run",
            "-v", f"{self.work_dir}:/data:rw,Z",
            COREOS_INSTALLER_IMAGE,
            "iso", "ignition", "embed",
            "-i", f"/data/{IGNITION_FILE}",
            "-o", f"/data/{IBI_ISO_FILE}",
            f"/data/{RHCOS_LIVE_ISO_FILE}",
        )
        return iso_path
