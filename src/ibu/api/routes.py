"""API route handlers for the upgrade resource."""

import logging

from fastapi import APIRouter, BackgroundTasks, Depends
from fastapi.responses import JSONResponse

from ibu.api.models import ErrorResponse, ProgressData, ProgressResponse, ResourceResponse
from ibu.errors import AdmissionRejectedError, InvalidTransitionError
from ibu.models.conditions import ConditionStatus, ConditionType
from ibu.models.upgrade import ImageBasedUpgradeSpec
from ibu.services.admission import current_stage, is_valid_transition
from ibu.services.stage_controller import StageController, get_controller

router = APIRouter(prefix="/api/v1alpha1")
logger = logging.getLogger("ibu.api")

IN_PROGRESS_CONDITIONS = (
    ConditionType.PREP_IN_PROGRESS,
    ConditionType.UPGRADE_IN_PROGRESS,
    ConditionType.ROLLBACK_IN_PROGRESS,
)


def _error(code: int, msg: str, **extra) -> JSONResponse:
    body = ErrorResponse(code=code, msg=msg, **extra)
    return JSONResponse(status_code=200, content=body.model_dump(mode="json", exclude_none=True))


@router.get("/imagebasedupgrade", response_model=ResourceResponse)
async def get_imagebasedupgrade(controller: StageController = Depends(get_controller)):
    """GET /api/v1alpha1/imagebasedupgrade - Return the upgrade resource."""
    ibu = controller.state_manager.get_resource()
    return ResourceResponse(data=ibu.model_dump(mode="json", by_alias=True))


@router.put("/imagebasedupgrade/spec")
async def put_imagebasedupgrade_spec(
    spec: ImageBasedUpgradeSpec,
    background_tasks: BackgroundTasks,
    controller: StageController = Depends(get_controller),
):
    """PUT /api/v1alpha1/imagebasedupgrade/spec - Replace the desired spec.

    The spec is stored synchronously and reconciled in the background.

    Response codes:
        200: Spec accepted
        409: Requested stage is not reachable from the current stage
        422: An immutable field changed while an upgrade is in progress
    """
    try:
        ibu = await controller.accept_spec(spec)
    except AdmissionRejectedError as e:
        return _error(422, e.message, field=e.field)

    # Reconcile even on an invalid edge so the resource records it as Degraded
    background_tasks.add_task(_reconcile_workflow, controller)

    current = current_stage(ibu.status)
    if spec.stage != current and not is_valid_transition(current, spec.stage):
        error = InvalidTransitionError(current, spec.stage)
        return _error(409, str(error), stage=current)

    return JSONResponse(
        status_code=200,
        content={"code": 200, "msg": "success", "data": {"generation": ibu.metadata.generation}},
    )


@router.get("/progress", response_model=ProgressResponse)
async def get_progress(controller: StageController = Depends(get_controller)):
    """GET /api/v1alpha1/progress - Summarize where the upgrade stands."""
    ibu = controller.state_manager.get_resource()
    conditions = ibu.status.conditions
    degraded = conditions.get(ConditionType.DEGRADED)

    return ProgressResponse(
        data=ProgressData(
            stage=current_stage(ibu.status),
            desired_stage=ibu.spec.stage,
            in_progress=any(conditions.is_true(t) for t in IN_PROGRESS_CONDITIONS),
            message=conditions[-1].message if conditions else "",
            degraded=(
                degraded.message
                if degraded is not None and degraded.status == ConditionStatus.TRUE
                else None
            ),
            generation=ibu.metadata.generation,
            observed_generation=ibu.status.observed_generation,
        )
    )


async def _reconcile_workflow(controller: StageController) -> None:
    """Background task for reconciliation."""
    try:
        await controller.reconcile()
    except Exception as e:
        # Phase failures are recorded as conditions; this is persistence failing
        logger.error(f"Reconcile failed: {e}", exc_info=True)
