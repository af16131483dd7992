"""Unit tests for the command line."""

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from typer.testing import CliRunner

from ibu import cli
from ibu.config import AgentConfig
from ibu.errors import GatherError, RestoreError

runner = CliRunner()


@pytest.fixture(autouse=True)
def agent_config(tmp_path):
    config = AgentConfig(
        host_root=tmp_path / "host",
        workspace_dir=tmp_path / "workspace",
        log_file=str(tmp_path / "ibu.log"),
        use_host_namespace=False,
    )
    cli.state["config"] = config
    with patch("ibu.cli.setup_logger"):
        yield config
    cli.state["config"] = None


@pytest.mark.unit
class TestRestore:
    """ibu restore"""

    def test_success_uses_default_bundle(self, agent_config):
        with patch("ibu.cli.SeedRestoration") as restoration_cls:
            restoration_cls.return_value.cleanup_seed_cluster = AsyncMock()
            result = runner.invoke(cli.app, ["restore"])

        assert result.exit_code == 0
        assert "Seed cluster restored" in result.output
        restoration_cls.return_value.cleanup_seed_cluster.assert_awaited_once_with(
            Path("/var/opt/openshift/cluster-configuration")
        )

    def test_options_forwarded(self, tmp_path):
        with patch("ibu.cli.SeedRestoration") as restoration_cls:
            restoration_cls.return_value.cleanup_seed_cluster = AsyncMock()
            result = runner.invoke(cli.app, [
                "restore",
                "--registry", "mirror.local:5000",
                "--skip-validation",
                "--recert-image", "quay.io/recert:v1",
                "--cluster-config-dir", str(tmp_path / "bundle"),
            ])

        assert result.exit_code == 0
        kwargs = restoration_cls.call_args.kwargs
        assert kwargs["container_registry"] == "mirror.local:5000"
        assert kwargs["skip_validation"] is True
        assert kwargs["recert_image"] == "quay.io/recert:v1"
        restoration_cls.return_value.cleanup_seed_cluster.assert_awaited_once_with(tmp_path / "bundle")

    def test_failure_exits_non_zero(self):
        with patch("ibu.cli.SeedRestoration") as restoration_cls:
            restoration_cls.return_value.cleanup_seed_cluster = AsyncMock(
                side_effect=RestoreError("recert rewrite failed")
            )
            result = runner.invoke(cli.app, ["restore"])

        assert result.exit_code == 1
        assert "Seed cluster restored" not in result.output


@pytest.mark.unit
class TestSeedInfo:
    """ibu seed-info"""

    def test_writes_seed_info(self, tmp_path):
        with patch("ibu.cli.load_kube_client"), patch("ibu.cli.KubeClusterInfoAccessor"), \
                patch("ibu.cli.ClusterConfigGatherer") as gatherer_cls:
            gatherer_cls.return_value.fetch_seed_cluster_info.return_value = MagicMock(
                cluster_domain="seed.example.com"
            )
            result = runner.invoke(cli.app, ["seed-info", "-o", str(tmp_path)])

        assert result.exit_code == 0
        assert "seed.example.com" in result.output
        gatherer_cls.return_value.fetch_seed_cluster_info.assert_called_once_with(
            tmp_path, "quay.io/edge-infrastructure/recert:v0"
        )

    def test_gather_failure(self, tmp_path):
        with patch("ibu.cli.load_kube_client"), patch("ibu.cli.KubeClusterInfoAccessor"), \
                patch("ibu.cli.ClusterConfigGatherer") as gatherer_cls:
            gatherer_cls.return_value.fetch_seed_cluster_info.side_effect = GatherError("seed cluster info")
            result = runner.invoke(cli.app, ["seed-info", "-o", str(tmp_path)])

        assert result.exit_code == 1


@pytest.mark.unit
class TestCreateIso:
    """ibu create-iso"""

    ARGS = [
        "create-iso",
        "--seed-image", "quay.io/seed:4.14.2",
        "--seed-version", "4.14.2",
        "--authfile", "auth.json",
        "--pullsecretfile", "ps.json",
        "--lca-image", "quay.io/lca:4.14",
        "--rhcos-live-iso", "https://mirror.example.com/live.iso",
        "--installation-disk", "/dev/vda",
    ]

    def test_create(self, tmp_path):
        with patch("ibu.cli.InstallationIso") as iso_cls:
            iso_cls.return_value.create = AsyncMock(return_value=tmp_path / "rhcos-ibi.iso")
            result = runner.invoke(cli.app, self.ARGS + ["--dir", str(tmp_path)])

        assert result.exit_code == 0
        assert "rhcos-ibi.iso" in result.output
        assert iso_cls.call_args.args[1] == tmp_path
        kwargs = iso_cls.return_value.create.await_args.kwargs
        assert kwargs["installation_disk"] == "/dev/vda"
        assert kwargs["ssh_public_key_file"] is None

    def test_download_failure(self, tmp_path):
        with patch("ibu.cli.InstallationIso") as iso_cls:
            iso_cls.return_value.create = AsyncMock(side_effect=httpx.ConnectError("unreachable"))
            result = runner.invoke(cli.app, self.ARGS + ["--dir", str(tmp_path)])

        assert result.exit_code == 1

    def test_required_options(self):
        result = runner.invoke(cli.app, ["create-iso", "--seed-image", "quay.io/seed"])
        assert result.exit_code != 0


@pytest.mark.unit
def test_serve_runs_server(agent_config):
    with patch("ibu.main.main") as run_server:
        result = runner.invoke(cli.app, ["serve"])

    assert result.exit_code == 0
    run_server.assert_called_once_with(agent_config)
