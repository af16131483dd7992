"""Command line entry points: agent server, seed restore and installation ISO."""

import asyncio
import logging
from pathlib import Path
from typing import Optional

import httpx
import typer

from ibu.config import DEFAULT_RECERT_IMAGE, AgentConfig
from ibu.errors import CommandError, GatherError, RestoreError, SchemaIncompatibilityError
from ibu.services.cluster_config import ClusterConfigGatherer
from ibu.services.cluster_info import KubeClusterInfoAccessor, load_kube_client
from ibu.services.installation_media import InstallationIso
from ibu.services.process import ProcessManager
from ibu.services.seed_restoration import SeedRestoration
from ibu.utils.logging import setup_logger

app = typer.Typer(help="Image-based upgrade agent for single-node clusters.")
logger = logging.getLogger("ibu.cli")

state = {"config": None}


def get_config() -> AgentConfig:
    if state["config"] is None:
        state["config"] = AgentConfig.from_env()
    return state["config"]


@app.callback()
def main(
    debug: bool = typer.Option(False, "--debug", "-d", help="Enable debug logging"),
):
    """Image-based upgrade agent."""
    config = get_config()
    setup_logger("ibu", config.log_file, level=logging.DEBUG if debug else logging.INFO)
    if debug:
        logger.debug("Debug mode enabled")


@app.command("serve")
def serve_cmd():
    """Run the agent's HTTP API."""
    from ibu.main import main as run_server

    run_server(get_config())


@app.command("restore")
def restore_cmd(
    registry: str = typer.Option("", "--registry", help="Registry to pull the recert image from"),
    authfile: Optional[Path] = typer.Option(None, "--authfile", help="Registry credentials file"),
    recert_image: str = typer.Option("", "--recert-image", help="Recert image (default: the one the seed was built with)"),
    skip_validation: bool = typer.Option(False, "--skip-validation", help="Skip the recert dry-run pass"),
    cluster_config_dir: Optional[Path] = typer.Option(
        None, "--cluster-config-dir", help="Cluster configuration bundle (default: inside the booted stateroot)"
    ),
):
    """Clean up seed leftovers and restore the cluster identity."""
    config = get_config()
    restoration = SeedRestoration(
        ProcessManager(use_host_namespace=config.use_host_namespace),
        host_root=config.host_root,
        backup_dir=config.backup_dir,
        workspace_dir=config.workspace_dir,
        container_registry=registry,
        auth_file=authfile,
        recert_image=recert_image,
        skip_validation=skip_validation,
    )
    try:
        asyncio.run(restoration.cleanup_seed_cluster(cluster_config_dir or config.cluster_config_dir))
    except (RestoreError, SchemaIncompatibilityError, OSError) as e:
        logger.error(f"Restore failed: {e}")
        raise typer.Exit(code=1)
    typer.echo("Seed cluster restored")


@app.command("seed-info")
def seed_info_cmd(
    output_dir: Path = typer.Option(..., "--output-dir", "-o", help="Where to write the seed cluster info"),
    recert_image: str = typer.Option("", "--recert-image", help="Recert image recorded in the seed"),
    kubeconfig: Optional[str] = typer.Option(None, "--kubeconfig", help="Kubeconfig of the seed cluster"),
):
    """Record the seed cluster's identity before creating a seed image."""
    config = get_config()
    gatherer = ClusterConfigGatherer(
        KubeClusterInfoAccessor(load_kube_client(kubeconfig)), config.gatherer_config()
    )
    try:
        info = gatherer.fetch_seed_cluster_info(
            output_dir, recert_image or config.recert_image or DEFAULT_RECERT_IMAGE
        )
    except GatherError as e:
        logger.error(str(e))
        raise typer.Exit(code=1)
    typer.echo(f"Seed cluster info written for {info.cluster_domain}")


@app.command("create-iso")
def create_iso_cmd(
    seed_image: str = typer.Option(..., "--seed-image", help="Seed image to install"),
    seed_version: str = typer.Option(..., "--seed-version", help="OCP version of the seed image"),
    authfile: Path = typer.Option(..., "--authfile", help="Registry credentials for the seed image"),
    pullsecretfile: Path = typer.Option(..., "--pullsecretfile", help="Cluster pull secret"),
    lca_image: str = typer.Option(..., "--lca-image", help="Agent image used to restore the seed"),
    rhcos_live_iso: str = typer.Option(..., "--rhcos-live-iso", help="URL of the RHCOS live ISO"),
    installation_disk: str = typer.Option(..., "--installation-disk", help="Disk to install to"),
    ssh_public_key: Optional[Path] = typer.Option(None, "--ssh-public-key", help="SSH public key for user core"),
    work_dir: Path = typer.Option(Path("."), "--dir", help="Work dir for intermediate files and the ISO"),
):
    """Create a live ISO that installs a node from a seed image."""
    iso = InstallationIso(ProcessManager(), work_dir)
    try:
        path = asyncio.run(
            iso.create(
                seed_image=seed_image,
                seed_version=seed_version,
                auth_file=authfile,
                pull_secret_file=pullsecretfile,
                lca_image=lca_image,
                rhcos_live_iso_url=rhcos_live_iso,
                installation_disk=installation_disk,
                ssh_public_key_file=ssh_public_key,
            )
        )
    except (CommandError, OSError, httpx.HTTPError) as e:
        logger.error(f"Failed to create installation ISO: {e}")
        raise typer.Exit(code=1)
    typer.echo(f"Installation ISO created at {path}")


if __name__ == "__main__":
    app()
