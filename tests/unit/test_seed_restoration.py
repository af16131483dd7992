"""Unit tests for SeedRestoration."""

import json
from unittest.mock import AsyncMock, patch

import pytest

from ibu.errors import CommandError, RestoreError, SchemaIncompatibilityError
from ibu.services.seed_restoration import SeedRestoration, replace_registry

DESCRIPTOR = {
    "api_version": 1,
    "base_domain": "example.com",
    "cluster_name": "target",
    "cluster_id": "cid",
    "node_ip": "192.168.126.10",
    "hostname": "target-node",
}


@pytest.fixture
def layout(tmp_path, seed_cluster_info):
    """Seed-derived host with leftovers, a workspace and a bundle."""
    host = tmp_path / "host"
    (host / "var/lib/lca/ibi-configuration").mkdir(parents=True)
    (host / "var/tmp/seed-install").mkdir(parents=True)
    (host / "var/tmp/seed-install/data").write_text("x")

    backup = tmp_path / "backup"
    backup.mkdir()
    (backup / "etcd.tgz").write_text("old")
    (backup / "manifests").mkdir()

    workspace = tmp_path / "workspace"
    workspace.mkdir()
    (workspace / "seed-cluster-info.json").write_text(json.dumps(seed_cluster_info.model_dump(mode="json")))

    bundle = tmp_path / "cluster-configuration"
    bundle.mkdir()
    (bundle / "manifest.json").write_text(json.dumps(DESCRIPTOR))
    return host, backup, workspace, bundle


def _restoration(process_manager, layout, **kwargs):
    host, backup, workspace, _ = layout
    return SeedRestoration(process_manager, host, backup, workspace, **kwargs)


@pytest.mark.unit
class TestRemoveStaleArtifacts:
    """Test removal of seed leftovers."""

    def test_removes_backup_contents_and_install_only_paths(self, mock_process_manager, layout):
        host, backup, _, _ = layout
        restoration = _restoration(mock_process_manager, layout)

        removed = restoration.remove_stale_artifacts()

        assert backup.is_dir()
        assert list(backup.iterdir()) == []
        assert not (host / "var/lib/lca/ibi-configuration").exists()
        assert not (host / "var/tmp/seed-install").exists()
        assert len(removed) == 4

    def test_nothing_to_remove(self, mock_process_manager, tmp_path):
        restoration = SeedRestoration(mock_process_manager, tmp_path / "h", tmp_path / "b", tmp_path / "w")
        assert restoration.remove_stale_artifacts() == []


@pytest.mark.unit
class TestRestoreIdentity:
    """Test the recert-driven identity restore."""

    @pytest.mark.asyncio
    async def test_validation_then_rewrite(self, mock_process_manager, layout):
        bundle = layout[3]
        restoration = _restoration(mock_process_manager, layout)

        with patch("ibu.services.seed_restoration.RecertRunner.run", new_callable=AsyncMock) as run:
            await restoration.restore_identity(bundle)

        assert [c.args[0].dry_run for c in run.await_args_list] == [True, False]

    @pytest.mark.asyncio
    async def test_skip_validation(self, mock_process_manager, layout):
        restoration = _restoration(mock_process_manager, layout, skip_validation=True)

        with patch("ibu.services.seed_restoration.RecertRunner.run", new_callable=AsyncMock) as run:
            await restoration.restore_identity(layout[3])

        assert run.await_count == 1
        assert not run.await_args.args[0].dry_run

    @pytest.mark.asyncio
    async def test_registry_override_applies_to_seed_recert_image(self, mock_process_manager, layout):
        restoration = _restoration(mock_process_manager, layout, container_registry="mirror.local:5000", skip_validation=True)

        await restoration.restore_identity(layout[3])

        args = mock_process_manager.run.call_args.args
        assert args[-1] == "mirror.local:5000/edge-infrastructure/recert:v0"

    @pytest.mark.asyncio
    async def test_explicit_seed_info_path(self, mock_process_manager, layout, tmp_path):
        host, backup, workspace, bundle = layout
        moved = tmp_path / "elsewhere.json"
        (workspace / "seed-cluster-info.json").rename(moved)
        restoration = _restoration(mock_process_manager, layout, skip_validation=True)

        await restoration.restore_identity(bundle, moved)

        assert mock_process_manager.run.await_count == 1

    @pytest.mark.asyncio
    async def test_unknown_descriptor_version_fails_before_recert(self, mock_process_manager, layout):
        (layout[3] / "manifest.json").write_text(json.dumps({**DESCRIPTOR, "api_version": 99}))
        restoration = _restoration(mock_process_manager, layout)

        with pytest.raises(SchemaIncompatibilityError):
            await restoration.restore_identity(layout[3])

        mock_process_manager.run.assert_not_called()

    @pytest.mark.asyncio
    async def test_missing_descriptor(self, mock_process_manager, layout, tmp_path):
        restoration = _restoration(mock_process_manager, layout)

        with pytest.raises(RestoreError, match="not found"):
            await restoration.restore_identity(tmp_path / "missing")

    @pytest.mark.asyncio
    async def test_validation_failure_stops_before_rewrite(self, mock_process_manager, layout):
        mock_process_manager.run.side_effect = CommandError(["podman"], 1, "bad")
        restoration = _restoration(mock_process_manager, layout)

        with pytest.raises(RestoreError, match="validation"):
            await restoration.restore_identity(layout[3])

        assert mock_process_manager.run.await_count == 1

    @pytest.mark.asyncio
    async def test_cleanup_seed_cluster(self, mock_process_manager, layout):
        host = layout[0]
        restoration = _restoration(mock_process_manager, layout)

        await restoration.cleanup_seed_cluster(layout[3])

        assert not (host / "var/tmp/seed-install").exists()
        assert mock_process_manager.run.await_count == 2


@pytest.mark.unit
@pytest.mark.parametrize("image,registry,expected", [
    ("quay.io/org/recert:v1", "", "quay.io/org/recert:v1"),
    ("quay.io/org/recert:v1", "mirror:5000", "mirror:5000/org/recert:v1"),
    ("localhost/recert:v1", "mirror", "mirror/recert:v1"),
    ("org/recert:v1", "mirror", "mirror/org/recert:v1"),
])
def test_replace_registry(image, registry, expected):
    assert replace_registry(image, registry) == expected
