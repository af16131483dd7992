"""Update-time validation of the upgrade resource and the stage edge table."""

from typing import Any

from ibu.errors import AdmissionRejectedError
from ibu.models.conditions import ConditionType
from ibu.models.status import StageEnum
from ibu.models.upgrade import ImageBasedUpgrade, ImageBasedUpgradeStatus

# (attribute, schema field name)
IMMUTABLE_WHILE_IN_PROGRESS = (
    ("seed_image_ref", "seedImageRef"),
    ("oadp_content", "oadpContent"),
    ("extra_manifests", "extraManifests"),
    ("auto_rollback_on_failure", "autoRollbackOnFailure"),
)

VALID_TRANSITIONS: dict[StageEnum, frozenset] = {
    StageEnum.IDLE: frozenset({StageEnum.PREP}),
    StageEnum.PREP: frozenset({StageEnum.UPGRADE, StageEnum.ROLLBACK}),
    StageEnum.UPGRADE: frozenset({StageEnum.IDLE, StageEnum.ROLLBACK}),
    StageEnum.ROLLBACK: frozenset({StageEnum.IDLE}),
}


def _omitted_if_empty(value: Any) -> Any:
    # An empty list and an absent list serialize the same way
    if value == []:
        return None
    return value


def upgrade_in_progress(ibu: ImageBasedUpgrade) -> bool:
    """True once the controller has written status and Idle is not True."""
    return ibu.has_status() and not ibu.status.is_idle()


def validate_update(old: ImageBasedUpgrade, new: ImageBasedUpgrade) -> None:
    """Reject changes to fields that are frozen while an upgrade runs.

    Evaluated against the previous resource state.

    Raises:
        AdmissionRejectedError: Naming the first immutable field that changed
    """
    if not upgrade_in_progress(old):
        return

    for attr, field in IMMUTABLE_WHILE_IN_PROGRESS:
        before = _omitted_if_empty(getattr(old.spec, attr))
        after = _omitted_if_empty(getattr(new.spec, attr))
        if before != after:
            raise AdmissionRejectedError(
                f"spec.{field}",
                f"can not change spec.{field} while ibu is in progress",
            )


def is_valid_transition(current: StageEnum, desired: StageEnum) -> bool:
    """Whether ``desired`` is a legal edge from ``current``."""
    return desired in VALID_TRANSITIONS[current]


def current_stage(status: ImageBasedUpgradeStatus) -> StageEnum:
    """Derive the stage the resource is in from its condition history."""
    conditions = status.conditions
    if not conditions or conditions.is_true(ConditionType.IDLE):
        return StageEnum.IDLE
    if conditions.get(ConditionType.ROLLBACK_IN_PROGRESS) or conditions.get(
        ConditionType.ROLLBACK_COMPLETED
    ):
        return StageEnum.ROLLBACK
    if conditions.get(ConditionType.UPGRADE_IN_PROGRESS) or conditions.get(
        ConditionType.UPGRADE_COMPLETED
    ):
        return StageEnum.UPGRADE
    if conditions.get(ConditionType.PREP_IN_PROGRESS) or conditions.get(
        ConditionType.PREP_COMPLETED
    ):
        return StageEnum.PREP
    return StageEnum.IDLE
