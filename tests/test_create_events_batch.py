"""Tests for the create-events batch job."""

import pytest

from event_import_pipeline.core.config import BatchConfig, PipelineConfig
from event_import_pipeline.core.exceptions import ImportJobNotFoundError, UnsupportedFileTypeError
from event_import_pipeline.jobs.base import JobHandlerContext
from event_import_pipeline.jobs.create_events_batch import CreateEventsBatchJob
from event_import_pipeline.utils.persistence import DATASETS, EVENTS, IMPORT_FILES, IMPORT_JOBS

DATASET = {
    "name": "incidents",
    "idStrategy": {"type": "external", "externalIdPath": "ref"},
}


class Importer:
    """Seeds a dataset, import file and import job for one CSV."""

    def __init__(self, persistence, job_queue, clock, tmp_path, csv_writer):
        self.persistence = persistence
        self.job_queue = job_queue
        self.clock = clock
        self.tmp_path = tmp_path
        self.csv_writer = csv_writer

    def handler(self, batch_size=2):
        context = JobHandlerContext(
            persistence=self.persistence,
            job_queue=self.job_queue,
            config=PipelineConfig(batch=BatchConfig(event_creation=batch_size)),
            clock=self.clock,
        )
        return CreateEventsBatchJob(context)

    async def seed(self, rows, dataset=None, file_path=None, **job_fields):
        dataset_doc = await self.persistence.create(DATASETS, {**DATASET, **(dataset or {})})
        if file_path is None:
            file_path = str(self.csv_writer(self.tmp_path / "events.csv", rows))
        import_file = await self.persistence.create(IMPORT_FILES, {
            "filename": "events.csv",
            "filePath": file_path,
            "status": "processing",
        })
        job = await self.persistence.create(IMPORT_JOBS, {
            "dataset": dataset_doc["id"],
            "importFile": import_file["id"],
            "stage": "create-events",
            "sheetIndex": 0,
            "duplicates": {},
            "progress": {"current": 0, "total": len(rows)},
            "errors": [],
            **job_fields,
        })
        return job

    async def job(self, job_id):
        return await self.persistence.find_by_id(IMPORT_JOBS, job_id)

    async def events(self, job_id):
        return await self.persistence.find(EVENTS, {"importJob": job_id})


@pytest.fixture
def importer(persistence, job_queue, clock, tmp_path, csv_writer):
    return Importer(persistence, job_queue, clock, tmp_path, csv_writer)


@pytest.mark.asyncio
async def test_empty_page_finalizes_job(importer, persistence):
    job = await importer.seed(
        [{"ref": "A"}, {"ref": "B"}],
        duplicates={
            "internal": [{"rowNumber": 4, "uniqueId": "1:ext:X", "firstOccurrence": 2}],
            "external": [
                {"rowNumber": 7, "uniqueId": "1:ext:Y", "existingEventId": 1},
                {"rowNumber": 8, "uniqueId": "1:ext:Z", "existingEventId": 2},
            ],
            "summary": {"totalRows": 13, "uniqueRows": 10, "internalDuplicates": 1, "externalDuplicates": 2},
        },
    )
    for n in range(10):
        await persistence.create(EVENTS, {"dataset": 1, "importJob": job["id"], "uniqueId": f"1:ext:{n}"})

    result = await importer.handler().handle({"importJobId": job["id"], "batchNumber": 5})

    assert result == {"completed": True}
    stored = await importer.job(job["id"])
    assert stored["stage"] == "completed"
    assert stored["results"] == {"totalEvents": 10, "duplicatesSkipped": 3, "geocoded": 0, "errors": 0}
    assert importer.job_queue.history == []
    assert (await persistence.find_by_id(IMPORT_FILES, job["importFile"]))["status"] == "completed"


@pytest.mark.asyncio
async def test_full_page_queues_next_batch(importer):
    job = await importer.seed([{"ref": "A"}, {"ref": "B"}, {"ref": "C"}])
    handler = importer.handler(batch_size=2)

    first = await handler.handle({"importJobId": job["id"], "batchNumber": 0})

    assert first == {"batchNumber": 0, "eventsCreated": 2, "eventsSkipped": 0, "errors": 0, "hasMore": True}
    [queued] = importer.job_queue.history
    assert (queued.task, queued.input) == ("create-events", {"importJobId": job["id"], "batchNumber": 1})
    stored = await importer.job(job["id"])
    assert stored["stage"] == "create-events"
    assert stored["progress"]["current"] == 2
    assert stored["progress"]["stages"]["create-events"]["batchesProcessed"] == 1

    second = await handler.handle(queued.input)

    assert second["hasMore"] is False
    assert second["eventsCreated"] == 1
    stored = await importer.job(job["id"])
    assert stored["stage"] == "completed"
    assert stored["results"]["totalEvents"] == 3
    assert stored["progress"]["stages"]["create-events"]["status"] == "completed"
    assert sorted(event["uniqueId"] for event in await importer.events(job["id"])) == [
        "1:ext:A", "1:ext:B", "1:ext:C",
    ]


@pytest.mark.asyncio
async def test_rerunning_a_batch_does_not_duplicate_events(importer):
    job = await importer.seed([{"ref": "A"}, {"ref": "B"}])
    handler = importer.handler(batch_size=5)

    await handler.handle({"importJobId": job["id"], "batchNumber": 0})
    again = await handler.handle({"importJobId": job["id"], "batchNumber": 0})

    assert again["eventsCreated"] == 0
    assert again["eventsSkipped"] == 2
    assert len(await importer.events(job["id"])) == 2


@pytest.mark.asyncio
async def test_duplicates_existing_events_and_id_errors(importer, persistence):
    job = await importer.seed(
        [{"ref": ref, "title": f"Row {n}"} for n, ref in enumerate(["A", "B", "C", ""])],
        duplicates={"internal": [{"rowNumber": 1, "uniqueId": "1:ext:B", "firstOccurrence": 0}]},
    )
    await persistence.create(EVENTS, {"dataset": 1, "importJob": 99, "uniqueId": "1:ext:C"})

    result = await importer.handler(batch_size=10).handle({"importJobId": job["id"], "batchNumber": 0})

    assert result == {"batchNumber": 0, "eventsCreated": 1, "eventsSkipped": 2, "errors": 1, "hasMore": False}
    stored = await importer.job(job["id"])
    assert stored["stage"] == "completed"
    assert stored["errors"] == [{"row": 3, "error": "Missing external ID at path: ref"}]
    assert stored["results"]["errors"] == 1
    assert stored["results"]["totalEvents"] == 1


@pytest.mark.asyncio
async def test_transformations_coordinates_and_timestamps(importer):
    job = await importer.seed(
        [
            {"ref": "A", "count": "7", "lat": "59.9", "lng": "10.7", "date": "2024-05-01T10:00:00Z"},
            {"ref": "B", "count": "many", "lat": "", "lng": "", "date": ""},
        ],
        dataset={
            "schemaConfig": {"allowTransformations": True},
            "typeTransformations": [{"fieldPath": "count", "fromType": "string", "toType": "number"}],
            "fieldMappingOverrides": {"latitudePath": "lat", "longitudePath": "lng"},
        },
        geocodingResults={"1": {"coordinates": {"lat": 48.85, "lng": 2.35}, "confidence": 0.9}},
    )

    await importer.handler(batch_size=10).handle({"importJobId": job["id"], "batchNumber": 0})

    events = {event["uniqueId"]: event for event in await importer.events(job["id"])}
    first, second = events["1:ext:A"], events["1:ext:B"]

    assert first["data"]["count"] == 7
    assert first["validationStatus"] == "transformed"
    assert first["transformations"] == [{"path": "count", "oldValue": "7", "newValue": 7}]
    assert first["location"] == {"latitude": 59.9, "longitude": 10.7}
    assert first["coordinateSource"] == {"type": "import"}
    assert first["eventTimestamp"] == "2024-05-01T10:00:00+00:00"

    # Only failed changes, so the raw row is kept
    assert second["data"]["count"] == "many"
    assert second["validationStatus"] == "pending"
    assert second["transformations"] is None
    assert second["coordinateSource"] == {"type": "geocoded"}
    assert second["geocodingInfo"]["confidence"] == 0.9
    assert second["eventTimestamp"] == "2023-11-14T22:13:20+00:00"

    assert (await importer.job(job["id"]))["results"]["geocoded"] == 1


@pytest.mark.asyncio
async def test_transformations_ignored_when_not_allowed(importer):
    job = await importer.seed(
        [{"ref": "A", "count": "7"}],
        dataset={"typeTransformations": [{"fieldPath": "count", "fromType": "string", "toType": "number"}]},
    )

    await importer.handler().handle({"importJobId": job["id"], "batchNumber": 0})

    [event] = await importer.events(job["id"])
    assert event["data"]["count"] == "7"
    assert event["validationStatus"] == "pending"


@pytest.mark.asyncio
async def test_missing_job_raises(importer):
    with pytest.raises(ImportJobNotFoundError):
        await importer.handler().handle({"importJobId": 404, "batchNumber": 0})


@pytest.mark.asyncio
async def test_read_failure_marks_job_failed(importer, tmp_path):
    job = await importer.seed([{"ref": "A"}], file_path=str(tmp_path / "scan.pdf"))

    with pytest.raises(UnsupportedFileTypeError):
        await importer.handler().handle({"importJobId": job["id"], "batchNumber": 0})

    stored = await importer.job(job["id"])
    assert stored["stage"] == "failed"
    assert stored["errors"][-1]["error"].startswith("Unsupported file type")


@pytest.mark.asyncio
async def test_import_file_status_waits_for_sibling_jobs(importer, persistence):
    job = await importer.seed([{"ref": "A"}])
    sibling = await persistence.create(IMPORT_JOBS, {
        "dataset": job["dataset"],
        "importFile": job["importFile"],
        "stage": "detect-schema",
        "sheetIndex": 1,
    })
    handler = importer.handler()

    await handler.handle({"importJobId": job["id"], "batchNumber": 0})
    assert (await persistence.find_by_id(IMPORT_FILES, job["importFile"]))["status"] == "processing"

    await persistence.update(IMPORT_JOBS, sibling["id"], {"stage": "failed"})
    await handler.update_import_file_status_if_all_jobs_complete(job["importFile"])
    assert (await persistence.find_by_id(IMPORT_FILES, job["importFile"]))["status"] == "failed"
