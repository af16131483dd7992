"""ImageBasedUpgrade resource model.

Mirrors the cluster-scoped `imagebasedupgrades.lca.openshift.io` resource:
a singleton whose spec is written by the user and whose status is written
only by the stage controller.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ibu.models.conditions import Condition, ConditionList, ConditionType
from ibu.models.status import StageEnum

API_VERSION = "lca.openshift.io/v1alpha1"
KIND = "ImageBasedUpgrade"
RESOURCE_NAME = "upgrade"


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class PullSecretRef(_CamelModel):
    name: str


class ConfigMapRef(_CamelModel):
    name: str
    namespace: str


class SeedImageRef(_CamelModel):
    """Seed image and the OCP version it was built from."""

    version: str = ""
    image: str = ""
    pull_secret_ref: Optional[PullSecretRef] = Field(None, alias="pullSecretRef")


class AutoRollbackOnFailure(_CamelModel):
    """Per-guard switches for automatic rollback."""

    disabled_for_post_reboot_config: bool = Field(
        False, alias="disabledForPostRebootConfig"
    )
    disabled_for_upgrade_completion: bool = Field(
        False, alias="disabledForUpgradeCompletion"
    )
    disabled_init_monitor: bool = Field(False, alias="disabledInitMonitor")
    init_monitor_timeout_seconds: int = Field(
        0,
        alias="initMonitorTimeoutSeconds",
        description="Watchdog timeout; a value <= 0 means use the default",
    )


class ImageBasedUpgradeSpec(_CamelModel):
    stage: StageEnum = StageEnum.IDLE
    seed_image_ref: Optional[SeedImageRef] = Field(None, alias="seedImageRef")
    additional_images: Optional[ConfigMapRef] = Field(None, alias="additionalImages")
    oadp_content: Optional[list[ConfigMapRef]] = Field(None, alias="oadpContent")
    extra_manifests: Optional[list[ConfigMapRef]] = Field(None, alias="extraManifests")
    auto_rollback_on_failure: Optional[AutoRollbackOnFailure] = Field(
        None, alias="autoRollbackOnFailure"
    )

    def rollback_policy(self) -> AutoRollbackOnFailure:
        return self.auto_rollback_on_failure or AutoRollbackOnFailure()


class ObjectMeta(_CamelModel):
    name: str = RESOURCE_NAME
    generation: int = Field(1, ge=1)


class ImageBasedUpgradeStatus(_CamelModel):
    observed_generation: int = Field(0, alias="observedGeneration")
    started_at: Optional[datetime] = Field(None, alias="startedAt")
    completed_at: Optional[datetime] = Field(None, alias="completedAt")
    conditions: list[Condition] = Field(default_factory=ConditionList)

    @field_validator("conditions", mode="after")
    @classmethod
    def as_condition_list(cls, v: list[Condition]) -> ConditionList:
        """Wrap the parsed list so callers get last-wins lookups."""
        return ConditionList(v)

    def is_idle(self) -> bool:
        return self.conditions.is_true(ConditionType.IDLE)


class ImageBasedUpgrade(_CamelModel):
    """The upgrade resource."""

    api_version: str = Field(API_VERSION, alias="apiVersion")
    kind: str = KIND
    metadata: ObjectMeta = Field(default_factory=ObjectMeta)
    spec: ImageBasedUpgradeSpec = Field(default_factory=ImageBasedUpgradeSpec)
    status: ImageBasedUpgradeStatus = Field(default_factory=ImageBasedUpgradeStatus)

    def has_status(self) -> bool:
        """Whether the controller has ever written status."""
        return len(self.status.conditions) > 0
