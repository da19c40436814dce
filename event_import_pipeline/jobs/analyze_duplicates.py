"""
Analyze-duplicates job.

Finds rows that repeat within the import file (internal duplicates) and
rows whose unique ID already exists among the dataset's events (external
duplicates), stores them on the import job and advances it to schema
detection.
"""

import time
from typing import Any, Dict, List, Tuple

from ..models.dataset import Dataset, IdStrategyType
from ..models.import_job import DuplicateRow, DuplicatesInfo, JobTask, ProcessingStage
from ..utils.logger import create_job_logger, log_performance
from ..utils.persistence import EVENTS, IMPORT_JOBS
from .base import BaseJobHandler

# Upper bound on uniqueIds per external lookup query
EXTERNAL_LOOKUP_CHUNK = 500


class AnalyzeDuplicatesJob(BaseJobHandler):
    """Duplicate analysis for one import job."""

    task = JobTask.ANALYZE_DUPLICATES.value

    async def handle(self, input: Dict[str, Any]) -> Dict[str, Any]:
        import_job_id = input["importJobId"]
        logger = create_job_logger(import_job_id, self.task)
        started = time.monotonic()
        stage = ProcessingStage.ANALYZE_DUPLICATES.value

        job, dataset, import_file = await self.load_resources(import_job_id)

        try:
            file_path = self.context.file_path_for(import_file)
            sheet_index = int(job.get("sheetIndex") or 0)
            total_rows = await self.context.count_rows(file_path, sheet_index)
            await self.context.progress.initialize_stage_progress(import_job_id, total_rows)

            if not dataset.deduplication_enabled:
                logger.info("Deduplication disabled, skipping analysis")
                info = DuplicatesInfo(total_rows=total_rows)
                await self.context.progress.skip_stage(import_job_id, stage)
            else:
                await self.context.progress.start_stage(import_job_id, stage, total_rows)
                info, first_ids = await self.analyze(file_path, sheet_index, dataset, total_rows)
                info.external = await self.find_external_duplicates(dataset, first_ids)
                await self.context.progress.complete_stage(import_job_id, stage)

            await self.context.persistence.update(IMPORT_JOBS, import_job_id, {
                "duplicates": info.to_dict(),
                "stage": ProcessingStage.DETECT_SCHEMA.value,
            })

            log_performance(logger, "duplicate analysis", (time.monotonic() - started) * 1000,
                            total_rows=total_rows, **info.summary)
            return {"success": True, "summary": info.summary}

        except Exception as e:
            logger.error("Duplicate analysis failed", exc_info=True)
            await self.mark_job_failed(import_job_id, e)
            raise

    def _dedup_key(self, row: Dict[str, Any], dataset: Dataset):
        """Return (unique_id, key used for matching) or None when no ID can be made."""
        result = self.context.id_service.generate(row, dataset.id, dataset.id_strategy)
        if result.error:
            return None
        if dataset.id_strategy.type == IdStrategyType.AUTO.value:
            return result.unique_id, f"content:{result.content_hash}"
        return result.unique_id, result.unique_id

    async def analyze(self, file_path: str, sheet_index: int, dataset: Dataset,
                      total_rows: int) -> Tuple[DuplicatesInfo, Dict[int, str]]:
        """
        Scan the file page by page recording internal duplicates.

        Returns:
            The duplicates info and the unique ID of each first occurrence by row number
        """
        page_size = self.context.config.batch.duplicate_analysis
        info = DuplicatesInfo(total_rows=total_rows)
        first_seen: Dict[str, int] = {}
        first_ids: Dict[int, str] = {}

        batch_number = 0
        while True:
            rows = await self.context.read_batch(file_path, sheet_index, batch_number * page_size, page_size)
            for index, row in enumerate(rows):
                row_number = batch_number * page_size + index
                keys = self._dedup_key(row, dataset)
                if keys is None:
                    continue
                unique_id, match_key = keys
                if match_key in first_seen:
                    info.internal.append(DuplicateRow(
                        row_number=row_number,
                        unique_id=unique_id,
                        first_occurrence=first_seen[match_key],
                    ))
                else:
                    first_seen[match_key] = row_number
                    first_ids[row_number] = unique_id
            if len(rows) < page_size:
                break
            batch_number += 1

        return info, first_ids

    async def find_external_duplicates(self, dataset: Dataset, first_ids: Dict[int, str]) -> List[DuplicateRow]:
        """Match first occurrences against events already stored for the dataset."""
        if dataset.id_strategy.type == IdStrategyType.AUTO.value:
            return []

        by_id = {unique_id: row_number for row_number, unique_id in first_ids.items()}
        ids = list(by_id)
        external: List[DuplicateRow] = []

        for start in range(0, len(ids), EXTERNAL_LOOKUP_CHUNK):
            chunk = ids[start:start + EXTERNAL_LOOKUP_CHUNK]
            existing = await self.context.persistence.find(EVENTS, {
                "dataset": {"equals": dataset.id},
                "uniqueId": {"in": chunk},
            })
            for event in existing:
                unique_id = event.get("uniqueId")
                if unique_id in by_id:
                    external.append(DuplicateRow(
                        row_number=by_id[unique_id],
                        unique_id=unique_id,
                        existing_event_id=event.get("id"),
                    ))

        return sorted(external, key=lambda row: row.row_number)
