"""
Create-events batch job.

Processes one page of rows from an import file into event documents, then
either queues the next page or finalizes the import job.
"""

import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from ..models.dataset import Dataset
from ..models.event import Event, ValidationStatus
from ..models.import_job import DuplicatesInfo, ImportFileStatus, JobTask, ProcessingStage
from ..services.type_transformation import TypeTransformationService
from ..utils.logger import create_job_logger, log_performance
from ..utils.persistence import EVENTS, IMPORT_FILES, IMPORT_JOBS
from .base import BaseJobHandler
from .event_creation_helpers import extract_coordinates, extract_timestamp, find_geocoding_result


class CreateEventsBatchJob(BaseJobHandler):
    """
    Materializes events for ``batchNumber`` of an import job.

    Row-level failures (ID generation, persistence) are counted and logged;
    they never abort the batch. A missing job, dataset or import file is a
    hard error.
    """

    task = JobTask.CREATE_EVENTS.value

    async def handle(self, input: Dict[str, Any]) -> Dict[str, Any]:
        import_job_id = input["importJobId"]
        batch_number = int(input.get("batchNumber") or 0)
        logger = create_job_logger(import_job_id, self.task)
        started = time.monotonic()

        job, dataset, import_file = await self.load_resources(import_job_id)

        try:
            batch_size = self.context.config.batch.event_creation
            rows = await self.context.read_batch(
                self.context.file_path_for(import_file),
                int(job.get("sheetIndex") or 0),
                batch_number * batch_size,
                batch_size,
            )

            if not rows:
                logger.info("No rows left, finalizing import job", extra={"batch_number": batch_number})
                await self.finalize(import_job_id)
                return {"completed": True}

            if batch_number == 0:
                await self.context.progress.start_stage(
                    import_job_id, ProcessingStage.CREATE_EVENTS.value, self._total_rows(job)
                )

            counters = await self.process_rows(rows, batch_number, batch_size, job, dataset, logger)
            await self.update_progress(import_job_id, batch_number, counters)

            log_performance(logger, "create-events batch", (time.monotonic() - started) * 1000,
                            batch_number=batch_number, rows=len(rows), **_public(counters))

            has_more = len(rows) == batch_size
            if has_more:
                await self.context.job_queue.queue(self.task, {
                    "importJobId": import_job_id,
                    "batchNumber": batch_number + 1,
                })
            else:
                await self.finalize(import_job_id)

            return {"batchNumber": batch_number, **_public(counters), "hasMore": has_more}

        except Exception as e:
            logger.error("Create-events batch failed", extra={"batch_number": batch_number}, exc_info=True)
            await self.mark_job_failed(import_job_id, e)
            raise

    @staticmethod
    def _total_rows(job: Dict[str, Any]) -> int:
        progress = job.get("progress") or {}
        if progress.get("total"):
            return int(progress["total"])
        summary = (job.get("duplicates") or {}).get("summary") or {}
        return int(summary.get("totalRows") or 0)

    async def process_rows(self, rows: List[Dict[str, Any]], batch_number: int, batch_size: int,
                           job: Dict[str, Any], dataset: Dataset, logger) -> Dict[str, Any]:
        """Create one event per non-duplicate row; returns counters and row errors."""
        skip_rows = DuplicatesInfo.from_dict(job.get("duplicates")).skipped_row_numbers()
        transformer = self._transformer_for(dataset)
        now = datetime.fromtimestamp(self.context.clock(), tz=timezone.utc)

        created = 0
        skipped = 0
        row_errors: List[Dict[str, Any]] = []

        for index, row in enumerate(rows):
            row_number = batch_number * batch_size + index
            if row_number in skip_rows:
                skipped += 1
                continue

            id_result = self.context.id_service.generate(row, dataset.id, dataset.id_strategy)
            if id_result.error:
                row_errors.append({"row": row_number, "error": id_result.error})
                continue

            if await self._event_exists(dataset.id, id_result.unique_id):
                skipped += 1
                continue

            data, status, transformations = row, ValidationStatus.PENDING, None
            if transformer is not None:
                result = await transformer.transform_record(row)
                changes = result["changes"]
                if any(change.error is None for change in changes):
                    data = result["transformed"]
                    status = ValidationStatus.TRANSFORMED
                    transformations = [change.to_dict() for change in changes]

            coordinates, source, geocoding_info = extract_coordinates(
                row, dataset.field_mappings, find_geocoding_result(job, row_number)
            )
            event = Event(
                dataset=dataset.id,
                import_job=job["id"],
                unique_id=id_result.unique_id,
                data=data,
                event_timestamp=extract_timestamp(row, dataset.field_mappings, now),
                validation_status=status,
                transformations=transformations,
                coordinates=coordinates,
                coordinate_source=source,
                geocoding_info=geocoding_info,
                content_hash=id_result.content_hash,
            )

            try:
                await self.context.persistence.create(EVENTS, event.to_dict())
                created += 1
            except Exception as e:
                logger.warning("Failed to create event", extra={"row_number": row_number, "error": str(e)})
                row_errors.append({"row": row_number, "error": str(e)})

        return {
            "eventsCreated": created,
            "eventsSkipped": skipped,
            "errors": len(row_errors),
            "rowErrors": row_errors,
        }

    def _transformer_for(self, dataset: Dataset) -> Optional[TypeTransformationService]:
        if not dataset.allow_transformations or not dataset.enabled_transformations:
            return None
        return TypeTransformationService(dataset.enabled_transformations, self.context.custom_transforms)

    async def _event_exists(self, dataset_id: Any, unique_id: str) -> bool:
        existing = await self.context.persistence.count(EVENTS, {
            "dataset": {"equals": dataset_id},
            "uniqueId": {"equals": unique_id},
        })
        return existing > 0

    async def update_progress(self, import_job_id: Any, batch_number: int, counters: Dict[str, Any]):
        persistence = self.context.persistence
        job = await persistence.find_by_id(IMPORT_JOBS, import_job_id)
        progress = dict(job.get("progress") or {})
        progress["current"] = int(progress.get("current") or 0) + counters["eventsCreated"]
        errors = list(job.get("errors") or []) + counters["rowErrors"]
        await persistence.update(IMPORT_JOBS, import_job_id, {"progress": progress, "errors": errors})

        stage = ProcessingStage.CREATE_EVENTS.value
        if stage in (progress.get("stages") or {}):
            await self.context.progress.update_stage_progress(import_job_id, stage, progress["current"], 0)
            await self.context.progress.complete_batch(import_job_id, stage, batch_number + 1)

    async def finalize(self, import_job_id: Any):
        """Record final results, complete the job and roll up the import file status."""
        persistence = self.context.persistence
        job = await persistence.find_by_id(IMPORT_JOBS, import_job_id)

        summary = (job.get("duplicates") or {}).get("summary") or {}
        results = {
            "totalEvents": await persistence.count(EVENTS, {"importJob": {"equals": import_job_id}}),
            "duplicatesSkipped": int(summary.get("internalDuplicates") or 0) + int(summary.get("externalDuplicates") or 0),
            "geocoded": len(job.get("geocodingResults") or {}),
            "errors": len(job.get("errors") or []),
        }

        if ProcessingStage.CREATE_EVENTS.value in ((job.get("progress") or {}).get("stages") or {}):
            await self.context.progress.complete_stage(import_job_id, ProcessingStage.CREATE_EVENTS.value)
            await self.context.progress.skip_pending_stages(import_job_id)

        await persistence.update(IMPORT_JOBS, import_job_id, {
            "stage": ProcessingStage.COMPLETED.value,
            "results": results,
        })
        await self.update_import_file_status_if_all_jobs_complete(job.get("importFile"))

    async def update_import_file_status_if_all_jobs_complete(self, import_file_ref: Any):
        persistence = self.context.persistence
        import_file_id = import_file_ref.get("id") if isinstance(import_file_ref, dict) else import_file_ref
        if import_file_id is None:
            return

        pending = await persistence.count(IMPORT_JOBS, {
            "importFile": {"equals": import_file_id},
            "stage": {"not_in": [ProcessingStage.COMPLETED.value, ProcessingStage.FAILED.value]},
        })
        if pending:
            return

        failed = await persistence.count(IMPORT_JOBS, {
            "importFile": {"equals": import_file_id},
            "stage": {"equals": ProcessingStage.FAILED.value},
        })
        status = ImportFileStatus.FAILED if failed else ImportFileStatus.COMPLETED
        await persistence.update(IMPORT_FILES, import_file_id, {"status": status.value})


def _public(counters: Dict[str, Any]) -> Dict[str, int]:
    return {key: counters[key] for key in ("eventsCreated", "eventsSkipped", "errors")}
