"""
Stage-advance handlers.

Schema detection, schema validation, schema versioning and geocoding are
provided by external services. In-process these tasks only close out their
progress entry and move the import job to the next stage, so the state
machine can be driven end to end.
"""

from typing import Any, Dict

from ..models.dataset import Dataset
from ..models.import_job import JobTask, ProcessingStage
from ..utils.logger import create_job_logger
from ..utils.persistence import IMPORT_JOBS
from .base import BaseJobHandler, JobHandlerContext


class StageAdvanceHandler(BaseJobHandler):
    """Moves an import job from ``stage`` to the stage that follows it."""

    def __init__(self, context: JobHandlerContext, task: str, stage: ProcessingStage,
                 next_stage: ProcessingStage):
        super().__init__(context)
        self.task = task
        self.stage = stage
        self.next_stage = next_stage

    def resolve_next_stage(self, dataset: Dataset) -> ProcessingStage:
        return self.next_stage

    async def handle(self, input: Dict[str, Any]) -> Dict[str, Any]:
        import_job_id = input["importJobId"]
        logger = create_job_logger(import_job_id, self.task)

        job, dataset, _ = await self.load_resources(import_job_id)

        if job.get("stage") != self.stage.value:
            logger.warning("Import job left stage before task ran", extra={
                "expected_stage": self.stage.value,
                "current_stage": job.get("stage")
            })
            return {"advanced": False, "stage": job.get("stage")}

        try:
            stages = (job.get("progress") or {}).get("stages") or {}
            if self.stage.value in stages:
                await self.context.progress.skip_stage(import_job_id, self.stage.value)

            next_stage = self.resolve_next_stage(dataset)
            await self.context.persistence.update(IMPORT_JOBS, import_job_id, {"stage": next_stage.value})
            logger.info("Advanced import job", extra={
                "from_stage": self.stage.value,
                "to_stage": next_stage.value
            })
            return {"advanced": True, "stage": next_stage.value}

        except Exception as e:
            logger.error("Stage advance failed", exc_info=True)
            await self.mark_job_failed(import_job_id, e)
            raise


class ValidateSchemaHandler(StageAdvanceHandler):
    """Datasets with a locked schema wait for manual approval."""

    def __init__(self, context: JobHandlerContext):
        super().__init__(context, JobTask.VALIDATE_SCHEMA.value,
                         ProcessingStage.VALIDATE_SCHEMA, ProcessingStage.GEOCODE_BATCH)

    def resolve_next_stage(self, dataset: Dataset) -> ProcessingStage:
        if dataset.require_approval:
            return ProcessingStage.AWAIT_APPROVAL
        return ProcessingStage.GEOCODE_BATCH


def create_stage_advance_handlers(context: JobHandlerContext) -> Dict[str, BaseJobHandler]:
    """
    Build the pass-through handlers keyed by task name.

    Args:
        context: Shared handler context

    Returns:
        Mapping of task name to handler
    """
    handlers: Dict[str, BaseJobHandler] = {
        JobTask.DETECT_SCHEMA.value: StageAdvanceHandler(
            context, JobTask.DETECT_SCHEMA.value,
            ProcessingStage.DETECT_SCHEMA, ProcessingStage.VALIDATE_SCHEMA
        ),
        JobTask.VALIDATE_SCHEMA.value: ValidateSchemaHandler(context),
        JobTask.CREATE_SCHEMA_VERSION.value: StageAdvanceHandler(
            context, JobTask.CREATE_SCHEMA_VERSION.value,
            ProcessingStage.CREATE_SCHEMA_VERSION, ProcessingStage.GEOCODE_BATCH
        ),
        JobTask.GEOCODE_BATCH.value: StageAdvanceHandler(
            context, JobTask.GEOCODE_BATCH.value,
            ProcessingStage.GEOCODE_BATCH, ProcessingStage.CREATE_EVENTS
        ),
    }
    return handlers
