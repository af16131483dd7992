"""Unit tests for ProcessManager."""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from ibu.errors import CommandError
from ibu.services.process import NSENTER_PREFIX, ProcessManager, ServiceStatus


def _process(stdout=b"", stderr=b"", returncode=0):
    mock_process = AsyncMock()
    mock_process.communicate = AsyncMock(return_value=(stdout, stderr))
    mock_process.returncode = returncode
    return mock_process


@pytest.mark.unit
class TestProcessManager:
    """Test ProcessManager in isolation."""

    @pytest.fixture
    def process_manager(self):
        """Create ProcessManager instance."""
        return ProcessManager()

    @pytest.mark.asyncio
    async def test_run_returns_stdout(self, process_manager):
        with patch('asyncio.create_subprocess_exec', return_value=_process(b"deployed\n")) as exec_mock:
            output = await process_manager.run("ostree", "admin", "status")

        assert output == "deployed\n"
        assert exec_mock.call_args.args == ("ostree", "admin", "status")

    @pytest.mark.asyncio
    async def test_run_non_zero_raises(self, process_manager):
        with patch('asyncio.create_subprocess_exec', return_value=_process(stderr=b"no such image\n", returncode=125)):
            with pytest.raises(CommandError) as exc_info:
                await process_manager.run("podman", "pull", "quay.io/seed")

        assert exc_info.value.returncode == 125
        assert "no such image" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_run_in_host_namespace(self):
        process_manager = ProcessManager(use_host_namespace=True)

        with patch('asyncio.create_subprocess_exec', return_value=_process()) as exec_mock:
            await process_manager.run("systemctl", "restart", "kubelet.service")

        assert list(exec_mock.call_args.args) == NSENTER_PREFIX + ["systemctl", "restart", "kubelet.service"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("output,expected", [
        (b"active\n", ServiceStatus.ACTIVE),
        (b"inactive\n", ServiceStatus.INACTIVE),
        (b"failed\n", ServiceStatus.FAILED),
        (b"weird-status\n", ServiceStatus.UNKNOWN),
    ])
    async def test_get_service_status(self, process_manager, output, expected):
        """Test parsing systemctl is-active output."""
        # Non-zero exit is normal for anything but active
        with patch('asyncio.create_subprocess_exec', return_value=_process(output, returncode=3)):
            status = await process_manager.get_service_status("test.service")

        assert status == expected

    @pytest.mark.asyncio
    async def test_get_service_status_exception(self, process_manager):
        """Test get_service_status returns UNKNOWN on exception."""
        with patch('asyncio.create_subprocess_exec', side_effect=RuntimeError("Command failed")):
            status = await process_manager.get_service_status("test.service")

        assert status == ServiceStatus.UNKNOWN

    @pytest.mark.asyncio
    async def test_restart_service_success(self, process_manager):
        with patch.object(process_manager, 'run', new_callable=AsyncMock) as run:
            await process_manager.restart_service("kubelet.service")

        run.assert_awaited_once_with("systemctl", "restart", "kubelet.service")

    @pytest.mark.asyncio
    async def test_restart_service_failure(self, process_manager):
        with patch.object(process_manager, 'run', side_effect=CommandError(["systemctl"], 5, "Unit not found")):
            with pytest.raises(RuntimeError, match="Failed to restart"):
                await process_manager.restart_service("missing.service")

    @pytest.mark.asyncio
    async def test_wait_for_service_status_reached(self, process_manager):
        statuses = [ServiceStatus.ACTIVATING, ServiceStatus.ACTIVE]
        with patch.object(process_manager, 'get_service_status', side_effect=statuses), \
                patch('ibu.services.process.asyncio.sleep', new_callable=AsyncMock):
            await process_manager.wait_for_service_status(
                "kubelet.service", ServiceStatus.ACTIVE, timeout=5
            )

    @pytest.mark.asyncio
    async def test_wait_for_service_status_timeout(self, process_manager):
        process_manager.POLL_INTERVAL = 0.01
        with patch.object(process_manager, 'get_service_status', return_value=ServiceStatus.ACTIVATING):
            with pytest.raises(asyncio.TimeoutError):
                await process_manager.wait_for_service_status(
                    "kubelet.service", ServiceStatus.ACTIVE, timeout=0.05
                )


@pytest.mark.unit
class TestUnitCompletion:
    """Test waiting on oneshot units."""

    @pytest.fixture
    def process_manager(self):
        return ProcessManager()

    @pytest.mark.asyncio
    async def test_completes_cleanly(self, process_manager):
        statuses = [ServiceStatus.ACTIVATING, ServiceStatus.INACTIVE]
        with patch.object(process_manager, 'get_service_status', side_effect=statuses), \
                patch('ibu.services.process.asyncio.sleep', new_callable=AsyncMock):
            assert await process_manager.wait_for_unit_completion("installation-configuration.service")

    @pytest.mark.asyncio
    async def test_failed_unit(self, process_manager):
        with patch.object(process_manager, 'get_service_status', return_value=ServiceStatus.FAILED):
            assert not await process_manager.wait_for_unit_completion("installation-configuration.service")

    @pytest.mark.asyncio
    async def test_timeout(self, process_manager):
        process_manager.POLL_INTERVAL = 0.01
        with patch.object(process_manager, 'get_service_status', return_value=ServiceStatus.ACTIVATING):
            assert not await process_manager.wait_for_unit_completion(
                "installation-configuration.service", timeout=0.05
            )
