"""
Basic usage example for Event Import Pipeline

This example imports a small CSV file end to end with the in-memory backends,
then shows the ID generation and type transformation services on their own.
"""

import asyncio
import csv
import tempfile
from pathlib import Path

from event_import_pipeline import (
    ImportPipeline,
    IdGenerationService,
    TypeTransformationService,
    load_config,
)
from event_import_pipeline.models.import_job import get_valid_transitions

ROWS = [
    {"ref": "INC-1", "title": "Flood", "date": "2024-05-01T08:00:00", "lat": "59.91", "lon": "10.75", "severity": "3"},
    {"ref": "INC-2", "title": "Fire", "date": "2024-05-02T12:30:00", "lat": "60.39", "lon": "5.32", "severity": "4"},
    {"ref": "INC-1", "title": "Flood", "date": "2024-05-01T08:00:00", "lat": "59.91", "lon": "10.75", "severity": "3"},
    {"ref": "INC-3", "title": "Storm", "date": "2024-05-03T17:45:00", "lat": "63.43", "lon": "10.39", "severity": "n/a"},
]


def write_sample_file(directory: Path) -> Path:
    path = directory / "incidents.csv"
    with path.open("w", newline="", encoding="utf-8") as f:
        writer = csv.DictWriter(f, fieldnames=list(ROWS[0]))
        writer.writeheader()
        writer.writerows(ROWS)
    return path


async def import_example(file_path: Path):
    """Import a CSV file through every stage of the pipeline."""
    print("🚀 Starting Event Import Pipeline Example")

    dataset = {
        "name": "Incidents",
        "idStrategy": {"type": "external", "externalIdPath": "ref"},
        "schemaConfig": {"allowTransformations": True},
        "typeTransformations": [
            {"fieldPath": "severity", "fromType": "string", "toType": "number", "transformStrategy": "parse"},
        ],
        "fieldMappingOverrides": {"timestampPath": "date", "latitudePath": "lat", "longitudePath": "lon"},
    }

    async with ImportPipeline(load_config()) as pipeline:
        job = await pipeline.import_file(dataset, str(file_path))

        print(f"✅ Import job {job['id']} finished in stage: {job['stage']}")
        print(f"📊 Results: {job['results']}")
        print(f"🔁 Duplicates: {job['duplicates']['summary']}")
        print(f"📈 Progress: {job['progress']['overallPercentage']}%")
        for error in job.get("errors") or []:
            print(f"⚠️  Row {error['row']}: {error['error']}")

        status = await pipeline.get_system_status()
        print(f"🏥 Queue history: {status['queue']['total_enqueued']} tasks")


def service_example():
    """Use the individual services without a pipeline."""
    print("\n🔧 Service Example")

    ids = IdGenerationService()
    computed = ids.generate(
        {"title": "Flood", "date": "2024-05-01"},
        dataset_id=7,
        id_strategy={"type": "computed", "computedIdFields": ["title", "date"]},
    )
    print(f"🆔 Computed ID: {computed.unique_id}")

    missing = ids.generate({}, dataset_id=7, id_strategy={"type": "external", "externalIdPath": "ref"})
    print(f"🆔 Missing external ID: {missing.error}")

    print(f"🔀 From geocode-batch: {[stage.value for stage in get_valid_transitions('geocode-batch')]}")


async def transformation_example():
    """Apply transformation rules to a single row."""
    print("\n🔄 Transformation Example")

    service = TypeTransformationService([
        {"fieldPath": "severity", "fromType": "string", "toType": "number", "transformStrategy": "parse"},
        {"fieldPath": "tags", "fromType": "string", "toType": "array",
         "transformStrategy": "custom", "customTransform": "split-list"},
    ])
    result = await service.transform_record({"severity": "4", "tags": "water, roads"})

    print(f"📝 Transformed: {result['transformed']}")
    for change in result["changes"]:
        print(f"   {change.path}: {change.old_value!r} -> {change.new_value!r}")


async def main():
    """Run all examples."""
    print("🎯 Event Import Pipeline - Examples\n")

    with tempfile.TemporaryDirectory() as directory:
        await import_example(write_sample_file(Path(directory)))

    service_example()
    await transformation_example()

    print("\n✅ All examples completed successfully!")


if __name__ == "__main__":
    asyncio.run(main())
