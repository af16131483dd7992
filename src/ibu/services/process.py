"""External command execution and systemd unit inspection."""

import asyncio
import logging
from enum import Enum

from ibu.errors import CommandError

NSENTER_PREFIX = [
    "nsenter", "--target", "1", "--cgroup", "--mount", "--ipc", "--pid", "--",
]


class ServiceStatus(str, Enum):
    """Output of ``systemctl is-active``."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    ACTIVATING = "activating"
    DEACTIVATING = "deactivating"
    FAILED = "failed"
    UNKNOWN = "unknown"


class ProcessManager:
    """Runs host commands synchronously from the caller's point of view.

    Commands are never retried here; a non-zero exit surfaces immediately as
    CommandError and the caller's failure policy decides what happens next.
    """

    POLL_INTERVAL = 2.0
    UNIT_COMPLETION_TIMEOUT = 600.0

    def __init__(self, use_host_namespace: bool = False):
        """Initialize process manager.

        Args:
            use_host_namespace: Wrap every command in nsenter targeting PID 1,
                for when the agent runs in a container
        """
        self.logger = logging.getLogger("ibu.process")
        self.use_host_namespace = use_host_namespace

    def _build_command(self, args: tuple[str, ...]) -> list[str]:
        command = [str(a) for a in args]
        if self.use_host_namespace:
            return NSENTER_PREFIX + command
        return command

    async def run(self, *args: str) -> str:
        """Run a command and return its stdout.

        Raises:
            CommandError: If the command exits non-zero
        """
        command = self._build_command(args)
        self.logger.debug(f"Executing: {' '.join(command)}")

        process = await asyncio.create_subprocess_exec(
            *command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await process.communicate()

        if process.returncode != 0:
            raise CommandError(command, process.returncode, stderr.decode())

        return stdout.decode()

    async def get_service_status(self, unit: str) -> ServiceStatus:
        """Get current state of a systemd unit.

        ``systemctl is-active`` exits non-zero for anything but active, so
        the exit code is ignored and the printed state is parsed instead.

        Returns:
            ServiceStatus, UNKNOWN if the state could not be determined
        """
        try:
            command = self._build_command(("systemctl", "is-active", unit))
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout, _ = await process.communicate()
            state = stdout.decode().strip()
            try:
                return ServiceStatus(state)
            except ValueError:
                self.logger.warning(f"Unexpected state for {unit}: {state!r}")
                return ServiceStatus.UNKNOWN
        except Exception as e:
            self.logger.error(f"Failed to query status of {unit}: {e}")
            return ServiceStatus.UNKNOWN

    async def wait_for_service_status(
        self,
        unit: str,
        target_status: ServiceStatus,
        timeout: float,
    ) -> None:
        """Poll a unit until it reaches the target state.

        Raises:
            asyncio.TimeoutError: If the state is not reached in time
        """

        async def _poll() -> None:
            while True:
                status = await self.get_service_status(unit)
                if status == target_status:
                    return
                self.logger.debug(
                    f"{unit} is {status.value}, waiting for {target_status.value}"
                )
                await asyncio.sleep(self.POLL_INTERVAL)

        await asyncio.wait_for(_poll(), timeout=timeout)

    async def wait_for_unit_completion(
        self, unit: str, timeout: float = UNIT_COMPLETION_TIMEOUT
    ) -> bool:
        """Wait for a oneshot unit to finish.

        Returns:
            True if the unit finished cleanly (inactive), False if it failed
            or did not finish within the timeout
        """
        terminal = (ServiceStatus.INACTIVE, ServiceStatus.FAILED)

        async def _poll() -> ServiceStatus:
            while True:
                status = await self.get_service_status(unit)
                if status in terminal:
                    return status
                await asyncio.sleep(self.POLL_INTERVAL)

        try:
            status = await asyncio.wait_for(_poll(), timeout=timeout)
        except asyncio.TimeoutError:
            self.logger.error(f"{unit} did not complete within {timeout}s")
            return False

        if status == ServiceStatus.FAILED:
            self.logger.error(f"{unit} failed")
            return False
        self.logger.info(f"{unit} completed successfully")
        return True

    async def restart_service(self, unit: str) -> None:
        """Restart a systemd unit.

        Raises:
            RuntimeError: If restart command fails
        """
        self.logger.info(f"Restarting service: {unit}")
        try:
            await self.run("systemctl", "restart", unit)
        except CommandError as e:
            raise RuntimeError(f"Failed to restart {unit}: {e}") from e
        self.logger.info(f"Service {unit} restarted successfully")
