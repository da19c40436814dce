"""
ProgressTrackingService for Event Import Pipeline

Maintains per-stage progress on an import job (rows and batches processed,
processing rate, time remaining) and a weighted overall percentage.
"""

import math
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from ..core.config import BatchConfig
from ..core.exceptions import ImportJobNotFoundError
from ..models.import_job import ProcessingStage
from ..utils.logger import get_logger, set_log_context
from ..utils.persistence import IMPORT_JOBS, PersistenceBackend

# Relative share of total processing time per stage
STAGE_TIME_WEIGHTS: Dict[str, int] = {
    ProcessingStage.ANALYZE_DUPLICATES.value: 10,
    ProcessingStage.DETECT_SCHEMA.value: 10,
    ProcessingStage.VALIDATE_SCHEMA.value: 5,
    ProcessingStage.AWAIT_APPROVAL.value: 0,
    ProcessingStage.CREATE_SCHEMA_VERSION.value: 2,
    ProcessingStage.GEOCODE_BATCH.value: 30,
    ProcessingStage.CREATE_EVENTS.value: 43,
}

TRACKED_STAGES = [stage for stage in STAGE_TIME_WEIGHTS]

# Rough seconds per weight unit for stages that have not started
PENDING_SECONDS_PER_WEIGHT = 10


class ProgressTrackingService:
    """Reads and writes ``progress.stages`` on import job documents."""

    def __init__(self, persistence: PersistenceBackend, batch_config: Optional[BatchConfig] = None,
                 clock: Optional[Callable[[], float]] = None):
        self.persistence = persistence
        self.batch_config = batch_config or BatchConfig()
        self._clock = clock or time.time

        self.logger = get_logger(__name__)
        set_log_context(self.logger, component="progress_tracking")

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    def get_batch_size_for_stage(self, stage: str) -> Optional[int]:
        if stage == ProcessingStage.ANALYZE_DUPLICATES.value:
            return self.batch_config.duplicate_analysis
        if stage == ProcessingStage.DETECT_SCHEMA.value:
            return self.batch_config.schema_detection
        if stage == ProcessingStage.CREATE_EVENTS.value:
            return self.batch_config.event_creation
        return None

    def _new_stage(self, rows_total: int, stage: str) -> Dict[str, Any]:
        batch_size = self.get_batch_size_for_stage(stage)
        return {
            "status": "pending",
            "startedAt": None,
            "completedAt": None,
            "rowsProcessed": 0,
            "rowsTotal": rows_total,
            "batchesProcessed": 0,
            "batchesTotal": math.ceil(rows_total / batch_size) if batch_size else 1,
            "currentBatchRows": 0,
            "currentBatchTotal": batch_size or rows_total,
            "rowsPerSecond": None,
            "estimatedSecondsRemaining": None,
        }

    async def _load(self, job_id: Any) -> Dict[str, Any]:
        job = await self.persistence.find_by_id(IMPORT_JOBS, job_id)
        if job is None:
            raise ImportJobNotFoundError(job_id)
        return job

    def _stages_of(self, job: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
        stages = (job.get("progress") or {}).get("stages")
        return dict(stages) if isinstance(stages, dict) else {}

    def _require_stage(self, stages: Dict[str, Dict[str, Any]], stage: str) -> Dict[str, Any]:
        if stage not in stages:
            raise ValueError(f"Stage {stage} not initialized")
        return dict(stages[stage])

    async def _save(self, job: Dict[str, Any], stages: Dict[str, Dict[str, Any]],
                    extra: Optional[Dict[str, Any]] = None):
        progress = dict(job.get("progress") or {})
        eta = self.estimate_completion_time(stages)
        progress.update({
            "stages": stages,
            "overallPercentage": self.calculate_weighted_progress(stages),
            "estimatedCompletionTime": eta.isoformat() if eta else None,
        })
        data = {"progress": progress}
        data.update(extra or {})
        await self.persistence.update(IMPORT_JOBS, job["id"], data)

    async def initialize_stage_progress(self, job_id: Any, total_rows: int):
        """Create pending progress entries for every tracked stage."""
        job = await self._load(job_id)
        stages = {stage: self._new_stage(total_rows, stage) for stage in TRACKED_STAGES}
        progress = dict(job.get("progress") or {})
        progress.update({
            "stages": stages,
            "overallPercentage": 0,
            "estimatedCompletionTime": None,
            "total": total_rows,
        })
        progress.setdefault("current", 0)
        await self.persistence.update(IMPORT_JOBS, job["id"], {"progress": progress})

    async def start_stage(self, job_id: Any, stage: str, rows_total: int):
        job = await self._load(job_id)
        stages = self._stages_of(job)
        batch_size = self.get_batch_size_for_stage(stage)
        current = stages.get(stage) or self._new_stage(rows_total, stage)
        current.update({
            "status": "in_progress",
            "startedAt": self._now().isoformat(),
            "rowsTotal": rows_total,
            "batchesTotal": math.ceil(rows_total / batch_size) if batch_size else 1,
            "currentBatchTotal": batch_size or rows_total,
        })
        stages[stage] = current
        await self._save(job, stages)

    async def update_stage_progress(self, job_id: Any, stage: str, rows_processed: int, current_batch_rows: int):
        job = await self._load(job_id)
        stages = self._stages_of(job)
        current = self._require_stage(stages, stage)

        elapsed = 0.0
        if current.get("startedAt"):
            started = datetime.fromisoformat(current["startedAt"])
            if started.tzinfo is None:
                started = started.replace(tzinfo=timezone.utc)
            elapsed = (self._now() - started).total_seconds()
        rows_per_second = rows_processed / elapsed if elapsed > 0 else None
        remaining = current["rowsTotal"] - rows_processed

        current.update({
            "rowsProcessed": rows_processed,
            "currentBatchRows": current_batch_rows,
            "rowsPerSecond": rows_per_second,
            "estimatedSecondsRemaining": remaining / rows_per_second if rows_per_second else None,
        })
        stages[stage] = current
        await self._save(job, stages)

    async def complete_batch(self, job_id: Any, stage: str, batch_number: int):
        job = await self._load(job_id)
        stages = self._stages_of(job)
        current = self._require_stage(stages, stage)
        current.update({"batchesProcessed": batch_number, "currentBatchRows": 0})
        stages[stage] = current
        await self._save(job, stages)

    async def complete_stage(self, job_id: Any, stage: str):
        await self._finish_stage(job_id, stage, "completed")

    async def skip_stage(self, job_id: Any, stage: str):
        await self._finish_stage(job_id, stage, "skipped")

    async def skip_pending_stages(self, job_id: Any):
        """Mark stages the job never entered (approval, schema versioning) as skipped."""
        job = await self._load(job_id)
        stages = self._stages_of(job)
        now = self._now().isoformat()
        for name, data in stages.items():
            if data.get("status") == "pending":
                stages[name] = {**data, "status": "skipped", "completedAt": now, "estimatedSecondsRemaining": 0}
        await self._save(job, stages)

    async def _finish_stage(self, job_id: Any, stage: str, status: str):
        job = await self._load(job_id)
        stages = self._stages_of(job)
        current = self._require_stage(stages, stage)
        current.update({
            "status": status,
            "completedAt": self._now().isoformat(),
            "estimatedSecondsRemaining": 0,
        })
        if status == "completed":
            current["rowsProcessed"] = current["rowsTotal"]
        stages[stage] = current
        await self._save(job, stages)

    @staticmethod
    def calculate_weighted_progress(stages: Dict[str, Dict[str, Any]]) -> int:
        """Overall percentage, each stage weighted by its expected duration."""
        total_weight = 0
        weighted = 0.0
        for name, data in stages.items():
            weight = STAGE_TIME_WEIGHTS.get(name, 0)
            if weight == 0:
                continue
            total_weight += weight

            status = data.get("status")
            if status in ("completed", "skipped"):
                stage_progress = 100.0
            elif status == "in_progress" and data.get("rowsTotal", 0) > 0:
                stage_progress = data.get("rowsProcessed", 0) / data["rowsTotal"] * 100
            else:
                stage_progress = 0.0
            weighted += stage_progress * weight

        if total_weight == 0:
            return 0
        return round(weighted / total_weight)

    def estimate_completion_time(self, stages: Dict[str, Dict[str, Any]]) -> Optional[datetime]:
        """ETA from the running stage's estimate plus rough costs of pending stages."""
        total_seconds = 0.0
        has_estimate = False
        for name, data in stages.items():
            weight = STAGE_TIME_WEIGHTS.get(name, 0)
            if weight == 0:
                continue
            status = data.get("status")
            if status == "in_progress":
                remaining = data.get("estimatedSecondsRemaining")
                if remaining is not None and math.isfinite(remaining):
                    total_seconds += remaining
                    has_estimate = True
            elif status == "pending":
                total_seconds += weight * PENDING_SECONDS_PER_WEIGHT

        if not has_estimate or total_seconds <= 0 or not math.isfinite(total_seconds):
            return None
        return self._now() + timedelta(seconds=total_seconds)
