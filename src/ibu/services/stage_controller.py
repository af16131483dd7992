"""Stage controller: drives the upgrade resource through its stages.

The controller is the only writer of the resource status. Every status
change happens under one lock. Upgrade steps run outside it, so a watchdog
rollback request or a spec update is not held up by a slow step; the step
result is discarded if the upgrade was aborted in the meantime.
"""

import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Awaitable, Callable, NamedTuple, Optional

from ibu.config import CLUSTER_CONFIG_DIR, DEFAULT_INIT_MONITOR_TIMEOUT, OPT_OPENSHIFT
from ibu.errors import AdmissionRejectedError, InvalidTransitionError
from ibu.models.conditions import (
    ConditionList,
    ConditionReason,
    ConditionStatus,
    ConditionType,
)
from ibu.models.seed import SEED_CLUSTER_INFO_FILE, check_seed_version
from ibu.models.status import StageEnum
from ibu.models.upgrade import ImageBasedUpgrade, ImageBasedUpgradeSpec
from ibu.services.admission import current_stage, is_valid_transition, validate_update
from ibu.services.cluster_config import ClusterConfigGatherer
from ibu.services.executor import StageExecutor, stateroot_name
from ibu.services.seed_restoration import SeedRestoration
from ibu.services.state_manager import StateManager
from ibu.services.watchdog import AutoRollbackCoordinator, RollbackGuard
from ibu.utils.files import marshal_to_file

TRUE = ConditionStatus.TRUE
FALSE = ConditionStatus.FALSE


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PhaseFailed(Exception):
    """A phase step failed; carries the guard it falls under."""

    def __init__(self, guard: RollbackGuard, message: str):
        super().__init__(message)
        self.guard = guard
        self.message = message


class UpgradeStep(NamedTuple):
    guard: RollbackGuard
    name: str
    action: Callable[[], Awaitable[None]]
    # Recorded once the step succeeds
    marker: Optional[ConditionType] = None


class StageController:
    """Reconciles the desired stage in the spec with the observed stage.

    The observed stage is never stored separately; it is derived from the
    condition history (see ``current_stage``).
    """

    def __init__(
        self,
        state_manager: StateManager,
        executor: StageExecutor,
        gatherer: ClusterConfigGatherer,
        restorer: SeedRestoration,
        default_init_monitor_timeout: int = DEFAULT_INIT_MONITOR_TIMEOUT,
    ):
        """Initialize the controller.

        Args:
            state_manager: Holds and persists the resource
            executor: Host-side phase work
            gatherer: Collects cluster configuration during Prep
            restorer: Transplants the cluster identity during Upgrade
            default_init_monitor_timeout: Watchdog timeout when the policy
                gives none
        """
        self.logger = logging.getLogger("ibu.stage_controller")
        self.state_manager = state_manager
        self.executor = executor
        self.gatherer = gatherer
        self.restorer = restorer
        self.watchdog = AutoRollbackCoordinator(
            self.request_rollback, default_init_monitor_timeout
        )
        self._lock = asyncio.Lock()
        self._upgrade_running = False

    # Spec updates

    async def accept_spec(self, spec: ImageBasedUpgradeSpec) -> ImageBasedUpgrade:
        """Admission-check and store a new spec without reconciling.

        Raises:
            AdmissionRejectedError: If an immutable field changed while an
                upgrade is in progress
        """
        async with self._lock:
            old = self.state_manager.get_resource()
            new = old.model_copy(deep=True)
            new.spec = spec

            try:
                validate_update(old, new)
            except AdmissionRejectedError as e:
                self.logger.warning(f"Spec update rejected: {e.message}")
                old.status.conditions.set(
                    ConditionType.DEGRADED,
                    TRUE,
                    ConditionReason.ADMISSION_REJECTED,
                    e.message,
                    old.metadata.generation,
                )
                self.state_manager.save_resource(old)
                raise

            if new.spec != old.spec:
                new.metadata.generation += 1
                self.logger.info(
                    f"Accepted spec generation {new.metadata.generation}: "
                    f"stage={spec.stage.value}"
                )
            self.state_manager.save_resource(new)
            return new

    async def submit_spec(self, spec: ImageBasedUpgradeSpec) -> ImageBasedUpgrade:
        """Store a new spec and reconcile it."""
        await self.accept_spec(spec)
        return await self.reconcile()

    # Reconcile

    async def reconcile(self) -> ImageBasedUpgrade:
        """Move the resource towards its desired stage.

        Upgrade steps picked by this pass run after the lock is released.
        """
        async with self._lock:
            ibu = self.state_manager.get_resource()
            steps = await self._reconcile(ibu)
            ibu.status.observed_generation = ibu.metadata.generation
            self._save(ibu)
            if not steps:
                return ibu
            self._upgrade_running = True

        try:
            await self._run_upgrade_steps(steps)
        finally:
            self._upgrade_running = False
        return self.state_manager.get_resource()

    async def _reconcile(self, ibu: ImageBasedUpgrade) -> Optional[list[UpgradeStep]]:
        conditions = ibu.status.conditions
        if not ibu.has_status():
            self._set(ibu, ConditionType.IDLE, TRUE, ConditionReason.IDLE, "Idle")

        desired = ibu.spec.stage
        current = current_stage(ibu.status)

        if desired == current:
            if current == StageEnum.ROLLBACK and not conditions.is_true(
                ConditionType.ROLLBACK_COMPLETED
            ):
                # Interrupted or failed rollback; confirmed steps are skipped
                await self._rollback(ibu, self._rollback_reason(ibu), self._was_automatic(ibu))
            elif current == StageEnum.UPGRADE and conditions.is_true(
                ConditionType.UPGRADE_IN_PROGRESS
            ):
                return await self._resume_upgrade(ibu)
            else:
                self.logger.debug(f"Stage {current.value} already reached")
            return None

        if not is_valid_transition(current, desired):
            error = InvalidTransitionError(current, desired)
            self.logger.warning(str(error))
            self._set(
                ibu, ConditionType.DEGRADED, TRUE, ConditionReason.INVALID_TRANSITION, str(error)
            )
            return None

        self.logger.info(f"Transition {current.value} -> {desired.value}")
        if desired == StageEnum.PREP:
            await self._prep(ibu)
        elif desired == StageEnum.UPGRADE:
            return await self._upgrade(ibu)
        elif desired == StageEnum.ROLLBACK:
            await self._rollback(ibu, f"Rollback requested from {current.value}", automatic=False)
        elif current == StageEnum.UPGRADE:
            await self._finalize_upgrade(ibu)
        else:
            await self._finalize_rollback(ibu)

    # Prep

    def bundle_dir(self, ibu: ImageBasedUpgrade) -> Path:
        """Cluster configuration bundle inside the new stateroot."""
        var_dir = self.executor.stateroot_var_dir(ibu.spec.seed_image_ref)
        return var_dir / OPT_OPENSHIFT / CLUSTER_CONFIG_DIR

    async def _prep(self, ibu: ImageBasedUpgrade) -> None:
        seed_ref = ibu.spec.seed_image_ref
        if seed_ref is None or not seed_ref.image or not seed_ref.version:
            self._prep_failed(ibu, "spec.seedImageRef.image and version are required")
            return

        self._set(ibu, ConditionType.IDLE, FALSE, ConditionReason.IN_PROGRESS, "Prep in progress")
        self._set(ibu, ConditionType.PREP_IN_PROGRESS, TRUE, ConditionReason.IN_PROGRESS, "Prep in progress")
        self._start_phase(ibu)
        self._save(ibu)

        try:
            seed_info = await self.executor.pull_seed_image(seed_ref)
            check_seed_version(seed_info, seed_ref.version)
            var_dir = await self.executor.setup_stateroot(seed_ref)
            config_dir = await asyncio.to_thread(self.gatherer.fetch_cluster_config, var_dir)
            marshal_to_file(seed_info.model_dump(mode="json"), config_dir / SEED_CLUSTER_INFO_FILE)
        except Exception as e:
            self.logger.error(f"Prep failed: {e}", exc_info=True)
            self._prep_failed(ibu, f"Prep failed: {e}")
            return

        self._set(ibu, ConditionType.PREP_IN_PROGRESS, FALSE, ConditionReason.COMPLETED, "Prep completed")
        self._set(ibu, ConditionType.PREP_COMPLETED, TRUE, ConditionReason.COMPLETED, "Prep completed")
        self._clear_degraded(ibu)
        ibu.status.completed_at = _utcnow()
        self.logger.info("Prep completed")

    def _prep_failed(self, ibu: ImageBasedUpgrade, message: str) -> None:
        conditions = ibu.status.conditions
        if conditions.get(ConditionType.PREP_IN_PROGRESS) is not None:
            self._set(ibu, ConditionType.PREP_IN_PROGRESS, FALSE, ConditionReason.FAILED, message)
        self._set(ibu, ConditionType.PREP_COMPLETED, FALSE, ConditionReason.FAILED, message)
        self._set(ibu, ConditionType.DEGRADED, TRUE, ConditionReason.FAILED, message)
        # Back to the last stable stage; the next reconcile may retry
        self._set(ibu, ConditionType.IDLE, TRUE, ConditionReason.IDLE, message)

    # Upgrade

    async def _upgrade(self, ibu: ImageBasedUpgrade) -> Optional[list[UpgradeStep]]:
        if not ibu.status.conditions.is_true(ConditionType.PREP_COMPLETED):
            message = "Prep has not completed, can not start upgrade"
            self.logger.warning(message)
            self._set(ibu, ConditionType.DEGRADED, TRUE, ConditionReason.INVALID_TRANSITION, message)
            return None

        self._set(ibu, ConditionType.UPGRADE_IN_PROGRESS, TRUE, ConditionReason.IN_PROGRESS, "Upgrade in progress")
        self._start_phase(ibu)
        # Persist before the pivot so a restart knows an upgrade is running
        self._save(ibu)
        self.watchdog.start(ibu.spec.rollback_policy())
        return self._pre_pivot_steps(ibu)

    async def _resume_upgrade(self, ibu: ImageBasedUpgrade) -> Optional[list[UpgradeStep]]:
        if self._upgrade_running:
            self.logger.debug("Upgrade steps already running")
            return None
        if not ibu.status.conditions.is_true(ConditionType.UPGRADE_PIVOTED):
            self.logger.info("Upgrade interrupted before the pivot, starting over")
            return self._pre_pivot_steps(ibu)

        try:
            booted_into_seed = await self._booted_into_seed(ibu)
        except Exception as e:
            self.logger.error(f"Can not tell which stateroot is booted: {e}", exc_info=True)
            await self._upgrade_failed(
                ibu, PhaseFailed(RollbackGuard.POST_REBOOT_CONFIG, f"booted stateroot check failed: {e}")
            )
            return None
        if not booted_into_seed:
            # The init monitor rolls back if the node never comes up in the new stateroot
            self.logger.info(
                f"Waiting for the node to boot into {stateroot_name(ibu.spec.seed_image_ref)}"
            )
            return None

        self.logger.info("Booted into the new stateroot, resuming upgrade")
        return self._post_pivot_steps(ibu)

    async def _booted_into_seed(self, ibu: ImageBasedUpgrade) -> bool:
        return await self.executor.booted_stateroot() == stateroot_name(ibu.spec.seed_image_ref)

    def _pre_pivot_steps(self, ibu: ImageBasedUpgrade) -> list[UpgradeStep]:
        """Steps run from the original stateroot; they end in a reboot."""
        seed_ref = ibu.spec.seed_image_ref
        return [
            UpgradeStep(RollbackGuard.POST_REBOOT_CONFIG, "pivot",
                        lambda: self.executor.pivot(seed_ref), ConditionType.UPGRADE_PIVOTED),
            UpgradeStep(RollbackGuard.POST_REBOOT_CONFIG, "reboot", self.executor.reboot),
        ]

    def _post_pivot_steps(self, ibu: ImageBasedUpgrade) -> list[UpgradeStep]:
        """Steps run once the node has booted the seed-derived stateroot."""
        bundle_dir = self.bundle_dir(ibu)
        return [
            UpgradeStep(RollbackGuard.POST_REBOOT_CONFIG, "identity restore",
                        lambda: self.restorer.restore_identity(bundle_dir, bundle_dir / SEED_CLUSTER_INFO_FILE)),
            UpgradeStep(RollbackGuard.POST_REBOOT_CONFIG, "post-reboot configuration",
                        self._post_reboot_config),
            UpgradeStep(RollbackGuard.UPGRADE_COMPLETION, "upgrade completion",
                        self.executor.complete_upgrade, ConditionType.UPGRADE_COMPLETED),
        ]

    @staticmethod
    def _upgrade_in_flight(ibu: ImageBasedUpgrade) -> bool:
        return current_stage(ibu.status) == StageEnum.UPGRADE and ibu.status.conditions.is_true(
            ConditionType.UPGRADE_IN_PROGRESS
        )

    async def _run_upgrade_steps(self, steps: list[UpgradeStep]) -> None:
        """Run upgrade steps one by one without holding the lock.

        A step in flight is never interrupted. Before each step, and again
        when it returns, the resource is re-read; if the upgrade was aborted
        in between, the remaining steps are not attempted.
        """
        for step in steps:
            async with self._lock:
                if not self._upgrade_in_flight(self.state_manager.get_resource()):
                    self.logger.warning(f"Upgrade no longer in progress, not attempting {step.name}")
                    return

            self.logger.info(f"Upgrade step: {step.name}")
            failure = None
            try:
                await step.action()
            except Exception as e:
                self.logger.error(f"Upgrade step {step.name} failed: {e}", exc_info=True)
                failure = PhaseFailed(step.guard, f"{step.name} failed: {e}")

            async with self._lock:
                ibu = self.state_manager.get_resource()
                if not self._upgrade_in_flight(ibu):
                    self.logger.warning(f"Upgrade aborted while {step.name} was running, result discarded")
                    return
                if failure is not None:
                    await self._upgrade_failed(ibu, failure)
                elif step.marker == ConditionType.UPGRADE_COMPLETED:
                    await self._upgrade_completed(ibu)
                elif step.marker is not None:
                    self._set(ibu, step.marker, TRUE, ConditionReason.COMPLETED, step.name)
                ibu.status.observed_generation = ibu.metadata.generation
                self._save(ibu)
            if failure is not None:
                return

    async def _post_reboot_config(self) -> None:
        if not await self.executor.run_post_reboot_config():
            raise RuntimeError("post-reboot configuration did not finish successfully")

    async def _upgrade_completed(self, ibu: ImageBasedUpgrade) -> None:
        self._set(ibu, ConditionType.UPGRADE_IN_PROGRESS, FALSE, ConditionReason.COMPLETED, "Upgrade completed")
        self._set(ibu, ConditionType.UPGRADE_COMPLETED, TRUE, ConditionReason.COMPLETED, "Upgrade completed")
        self._clear_degraded(ibu)
        ibu.status.completed_at = _utcnow()
        await self.watchdog.stop()
        self.logger.info("Upgrade completed")

    async def _upgrade_failed(self, ibu: ImageBasedUpgrade, failure: PhaseFailed) -> None:
        self._set(ibu, ConditionType.UPGRADE_IN_PROGRESS, FALSE, ConditionReason.FAILED, failure.message)
        self._set(ibu, ConditionType.UPGRADE_COMPLETED, FALSE, ConditionReason.FAILED, failure.message)
        self._set(ibu, ConditionType.DEGRADED, TRUE, ConditionReason.FAILED, failure.message)

        if self.watchdog.guard_enabled(ibu.spec.rollback_policy(), failure.guard):
            self.logger.warning(f"Auto-rollback on {failure.guard.value} failure")
            await self._rollback(ibu, failure.message, automatic=True)
        else:
            self.logger.warning(
                f"Auto-rollback disabled for {failure.guard.value}, "
                f"manual intervention required"
            )

    # Rollback

    ROLLBACK_STEPS = (
        (ConditionType.ROLLBACK_DEPLOYMENT_REVERTED, "revert deployment"),
        (ConditionType.ROLLBACK_CONFIG_RESTORED, "restore configuration"),
    )

    @staticmethod
    def _was_automatic(ibu: ImageBasedUpgrade) -> bool:
        return any(
            c.reason == ConditionReason.AUTO_ROLLBACK
            for c in ibu.status.conditions.history(ConditionType.ROLLBACK_IN_PROGRESS)
        )

    @staticmethod
    def _rollback_reason(ibu: ImageBasedUpgrade) -> str:
        history = ibu.status.conditions.history(ConditionType.ROLLBACK_IN_PROGRESS)
        return history[0].message if history else "Rollback resumed"

    async def _rollback(self, ibu: ImageBasedUpgrade, reason: str, automatic: bool) -> None:
        conditions = ibu.status.conditions
        pivoted = conditions.is_true(ConditionType.UPGRADE_PIVOTED)
        await self.watchdog.stop()

        if automatic and ibu.spec.stage != StageEnum.ROLLBACK:
            # Retries of an automatic rollback go through the Rollback stage
            ibu.spec.stage = StageEnum.ROLLBACK
            ibu.metadata.generation += 1

        if conditions.is_true(ConditionType.UPGRADE_IN_PROGRESS):
            # Upgrade steps still running see this and stop
            self._set(ibu, ConditionType.UPGRADE_IN_PROGRESS, FALSE, ConditionReason.ABORTED, reason)
        if not conditions.is_true(ConditionType.ROLLBACK_IN_PROGRESS):
            self._start_phase(ibu)
        self._set(ibu, ConditionType.IDLE, FALSE, ConditionReason.IN_PROGRESS, "Rollback in progress")
        self._set(
            ibu,
            ConditionType.ROLLBACK_IN_PROGRESS,
            TRUE,
            ConditionReason.AUTO_ROLLBACK if automatic else ConditionReason.IN_PROGRESS,
            reason,
        )
        self._save(ibu)

        actions = {
            ConditionType.ROLLBACK_DEPLOYMENT_REVERTED: lambda: self.executor.revert_deployment(pivoted),
            ConditionType.ROLLBACK_CONFIG_RESTORED: self.executor.restore_config,
        }
        for marker, name in self.ROLLBACK_STEPS:
            if conditions.is_true(marker):
                self.logger.info(f"Rollback step {name} already done, skipping")
                continue
            try:
                await actions[marker]()
                # The original configuration is only back once its stateroot is booted
                reboot = (
                    marker == ConditionType.ROLLBACK_DEPLOYMENT_REVERTED
                    and pivoted
                    and await self._booted_into_seed(ibu)
                )
            except Exception as e:
                self._rollback_failed(ibu, f"Rollback step {name} failed: {e}")
                return
            self._set(ibu, marker, TRUE, ConditionReason.COMPLETED, name)
            self._save(ibu)

            if reboot:
                self.logger.info("Rebooting into the original stateroot to finish the rollback")
                try:
                    await self.executor.reboot()
                except Exception as e:
                    self._rollback_failed(ibu, f"Reboot into the original stateroot failed: {e}")
                return

        self._set(ibu, ConditionType.ROLLBACK_IN_PROGRESS, FALSE, ConditionReason.COMPLETED, "Rollback completed")
        self._set(ibu, ConditionType.ROLLBACK_COMPLETED, TRUE, ConditionReason.COMPLETED, "Rollback completed")
        ibu.status.completed_at = _utcnow()
        self.logger.info("Rollback completed")

        if automatic:
            ibu.spec.stage = StageEnum.IDLE
            ibu.metadata.generation += 1
            await self._finalize_rollback(ibu)

    def _rollback_failed(self, ibu: ImageBasedUpgrade, message: str) -> None:
        self.logger.error(message, exc_info=True)
        self._set(ibu, ConditionType.ROLLBACK_IN_PROGRESS, FALSE, ConditionReason.FAILED, message)
        self._set(ibu, ConditionType.ROLLBACK_COMPLETED, FALSE, ConditionReason.FAILED, message)
        self._set(ibu, ConditionType.DEGRADED, TRUE, ConditionReason.FAILED, message)

    async def request_rollback(self, reason: str) -> bool:
        """Roll back an in-flight upgrade on behalf of the watchdog.

        Upgrade steps do not hold the lock, so this runs even while a step
        is stuck; the stuck step's result is discarded once it returns.

        Returns:
            True if a rollback ran, False if there was nothing to roll back
        """
        async with self._lock:
            ibu = self.state_manager.get_resource()
            stage = current_stage(ibu.status)
            if stage != StageEnum.UPGRADE or ibu.status.conditions.is_true(
                ConditionType.UPGRADE_COMPLETED
            ):
                self.logger.info(f"Rollback request ignored in stage {stage.value}: {reason}")
                return False

            self.logger.warning(f"Auto-rollback requested: {reason}")
            self._set(ibu, ConditionType.DEGRADED, TRUE, ConditionReason.AUTO_ROLLBACK, reason)
            await self._rollback(ibu, reason, automatic=True)
            ibu.status.observed_generation = ibu.metadata.generation
            self._save(ibu)
            return True

    # Finalize

    async def _finalize_upgrade(self, ibu: ImageBasedUpgrade) -> None:
        if not ibu.status.conditions.is_true(ConditionType.UPGRADE_COMPLETED):
            self._set(
                ibu, ConditionType.DEGRADED, TRUE, ConditionReason.INVALID_TRANSITION,
                "Upgrade has not completed, roll back instead",
            )
            return
        await self._finalize(ibu, self.executor.finalize_upgrade, "Upgrade finalized")

    async def _finalize_rollback(self, ibu: ImageBasedUpgrade) -> None:
        if not ibu.status.conditions.is_true(ConditionType.ROLLBACK_COMPLETED):
            self._set(
                ibu, ConditionType.DEGRADED, TRUE, ConditionReason.INVALID_TRANSITION,
                "Rollback has not completed",
            )
            return
        await self._finalize(ibu, self.executor.finalize_rollback, "Rollback finalized")

    async def _finalize(self, ibu: ImageBasedUpgrade, cleanup, message: str) -> None:
        try:
            await cleanup()
        except Exception as e:
            self.logger.error(f"Finalize failed: {e}", exc_info=True)
            self._set(ibu, ConditionType.DEGRADED, TRUE, ConditionReason.FAILED, f"Finalize failed: {e}")
            return

        ibu.status.conditions = ConditionList()
        self._set(ibu, ConditionType.IDLE, TRUE, ConditionReason.FINALIZED, message)
        ibu.status.completed_at = _utcnow()
        self.logger.info(message)

    # Startup

    async def resume(self) -> None:
        """Re-arm the watchdog for an upgrade interrupted by a restart.

        The next reconcile picks the upgrade up where it stopped.
        """
        ibu = self.state_manager.get_resource()
        if ibu.status.conditions.is_true(ConditionType.UPGRADE_IN_PROGRESS):
            self.logger.info("Resuming watch over an in-flight upgrade")
            self.watchdog.start(ibu.spec.rollback_policy())

    async def shutdown(self) -> None:
        await self.watchdog.stop()

    # Helpers

    def _set(self, ibu, condition_type, status, reason, message="") -> None:
        ibu.status.conditions.set(condition_type, status, reason, message, ibu.metadata.generation)

    def _clear_degraded(self, ibu: ImageBasedUpgrade) -> None:
        if ibu.status.conditions.is_true(ConditionType.DEGRADED):
            self._set(ibu, ConditionType.DEGRADED, FALSE, ConditionReason.COMPLETED, "")

    @staticmethod
    def _start_phase(ibu: ImageBasedUpgrade) -> None:
        ibu.status.started_at = _utcnow()
        ibu.status.completed_at = None

    def _save(self, ibu: ImageBasedUpgrade) -> None:
        self.state_manager.save_resource(ibu)


_controller: Optional[StageController] = None


def set_controller(controller: Optional[StageController]) -> None:
    global _controller
    _controller = controller


def get_controller() -> StageController:
    """Return the controller wired up at startup."""
    if _controller is None:
        raise RuntimeError("Stage controller is not initialized")
    return _controller
