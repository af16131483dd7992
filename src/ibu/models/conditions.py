"""Condition records and the append-ordered condition history."""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class ConditionType(str, Enum):
    """Condition types reported on the upgrade resource."""

    IDLE = "Idle"
    PREP_IN_PROGRESS = "PrepInProgress"
    PREP_COMPLETED = "PrepCompleted"
    UPGRADE_IN_PROGRESS = "UpgradeInProgress"
    UPGRADE_COMPLETED = "UpgradeCompleted"
    ROLLBACK_IN_PROGRESS = "RollbackInProgress"
    ROLLBACK_COMPLETED = "RollbackCompleted"
    DEGRADED = "Degraded"

    # Step markers, consulted when an upgrade resumes after a reboot or a
    # rollback is retried
    UPGRADE_PIVOTED = "UpgradePivoted"
    ROLLBACK_DEPLOYMENT_REVERTED = "RollbackDeploymentReverted"
    ROLLBACK_CONFIG_RESTORED = "RollbackConfigRestored"


class ConditionStatus(str, Enum):
    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


class ConditionReason(str, Enum):
    IDLE = "Idle"
    IN_PROGRESS = "InProgress"
    COMPLETED = "Completed"
    FAILED = "Failed"
    INVALID_TRANSITION = "InvalidTransition"
    ADMISSION_REJECTED = "AdmissionRejected"
    ABORTED = "Aborted"
    AUTO_ROLLBACK = "AutoRollback"
    FINALIZED = "Finalized"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Condition(BaseModel):
    """A single observation about the resource at a point in time."""

    model_config = ConfigDict(populate_by_name=True)

    type: ConditionType
    status: ConditionStatus
    reason: ConditionReason
    message: str = ""
    observed_generation: int = Field(default=0, alias="observedGeneration")
    last_transition_time: datetime = Field(
        default_factory=_utcnow, alias="lastTransitionTime"
    )


class ConditionList(list):
    """Append-ordered condition history.

    Several entries of the same type may coexist; the most recently appended
    one is the current truth for that type.
    """

    def get(self, condition_type: ConditionType) -> Optional[Condition]:
        """Return the latest condition of a type, or None."""
        for condition in reversed(self):
            if condition.type == condition_type:
                return condition
        return None

    def is_true(self, condition_type: ConditionType) -> bool:
        condition = self.get(condition_type)
        return condition is not None and condition.status == ConditionStatus.TRUE

    def history(self, condition_type: ConditionType) -> list[Condition]:
        return [c for c in self if c.type == condition_type]

    def set(
        self,
        condition_type: ConditionType,
        status: ConditionStatus,
        reason: ConditionReason,
        message: str = "",
        generation: int = 0,
    ) -> Condition:
        """Record a condition, appending only when it differs from the latest.

        Returns:
            The condition that now reflects the type's state
        """
        latest = self.get(condition_type)
        if (
            latest is not None
            and latest.status == status
            and latest.reason == reason
            and latest.message == message
        ):
            return latest

        condition = Condition(
            type=condition_type,
            status=status,
            reason=reason,
            message=message,
            observed_generation=generation,
        )
        self.append(condition)
        return condition
