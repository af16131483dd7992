"""Auto-rollback guards and the init-monitor watchdog."""

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, Optional

from ibu.config import DEFAULT_INIT_MONITOR_TIMEOUT
from ibu.models.upgrade import AutoRollbackOnFailure


class RollbackGuard(str, Enum):
    """Points in the upgrade where a failure may trigger automatic rollback."""

    POST_REBOOT_CONFIG = "PostRebootConfig"
    UPGRADE_COMPLETION = "UpgradeCompletion"
    INIT_MONITOR = "InitMonitor"


class AutoRollbackCoordinator:
    """Decides when a failure rolls back by itself and runs the init monitor.

    The init monitor is a timer started when the upgrade phase begins. If the
    upgrade has not completed when it expires, it asks the controller for a
    rollback. Stopping it cancels the timer only.
    """

    def __init__(
        self,
        request_rollback: Callable[[str], Awaitable[bool]],
        default_timeout: int = DEFAULT_INIT_MONITOR_TIMEOUT,
    ):
        """Initialize the coordinator.

        Args:
            request_rollback: Controller entry point, called with a reason
            default_timeout: Init-monitor timeout used when the policy gives
                none
        """
        self.logger = logging.getLogger("ibu.watchdog")
        self._request_rollback = request_rollback
        self.default_timeout = default_timeout
        self._task: Optional[asyncio.Task] = None

    @staticmethod
    def guard_enabled(policy: AutoRollbackOnFailure, guard: RollbackGuard) -> bool:
        if guard == RollbackGuard.POST_REBOOT_CONFIG:
            return not policy.disabled_for_post_reboot_config
        if guard == RollbackGuard.UPGRADE_COMPLETION:
            return not policy.disabled_for_upgrade_completion
        return not policy.disabled_init_monitor

    def init_monitor_timeout(self, policy: AutoRollbackOnFailure) -> int:
        """Seconds before the init monitor fires; non-positive means default."""
        if policy.init_monitor_timeout_seconds <= 0:
            return self.default_timeout
        return policy.init_monitor_timeout_seconds

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, policy: AutoRollbackOnFailure) -> bool:
        """Start the init monitor unless disabled or already running.

        Returns:
            True if a monitor is running after the call
        """
        if not self.guard_enabled(policy, RollbackGuard.INIT_MONITOR):
            self.logger.info("Init monitor disabled, not starting")
            return False
        if self.running:
            return True

        timeout = self.init_monitor_timeout(policy)
        self.logger.info(f"Starting init monitor ({timeout}s)")
        self._task = asyncio.create_task(self._monitor(timeout))
        return True

    async def stop(self) -> None:
        """Cancel the init monitor timer if it is still waiting."""
        task, self._task = self._task, None
        if task is None or task.done():
            return
        if task is asyncio.current_task():
            # Stopped from within the rollback the monitor itself requested
            return

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        self.logger.info("Init monitor stopped")

    async def _monitor(self, timeout: int) -> None:
        await asyncio.sleep(timeout)
        self.logger.warning(f"Init monitor expired after {timeout}s, requesting rollback")
        try:
            await self._request_rollback(f"Upgrade did not complete within {timeout}s")
        except Exception as e:
            self.logger.error(f"Auto-rollback request failed: {e}", exc_info=True)
