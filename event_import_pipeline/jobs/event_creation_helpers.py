"""
Helpers for turning imported rows into event documents.
"""

from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from ..models.dataset import FieldMappings
from ..models.event import CoordinateSource, Coordinates, GeocodingResult
from ..utils.field_paths import get_value_at_path

TIMESTAMP_FALLBACK_FIELDS = ("timestamp", "date", "datetime", "created_at", "event_date", "event_time")


def _to_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def extract_coordinates(
    row: Dict[str, Any],
    mappings: FieldMappings,
    geocoding: Optional[GeocodingResult] = None,
) -> Tuple[Optional[Coordinates], CoordinateSource, Optional[Dict[str, Any]]]:
    """
    Pick an event's coordinates.

    Imported latitude/longitude columns win when both parse and fall within
    range; otherwise a geocoding result for the row is used.

    Returns:
        (coordinates, source, geocoding info)
    """
    if mappings.latitude_path and mappings.longitude_path:
        lat = _to_float(get_value_at_path(row, mappings.latitude_path))
        lng = _to_float(get_value_at_path(row, mappings.longitude_path))
        if lat is not None and lng is not None:
            coords = Coordinates(latitude=lat, longitude=lng)
            if coords.is_valid():
                return coords, CoordinateSource.IMPORT, None

    if geocoding is not None and geocoding.coordinates.is_valid():
        info = {
            "confidence": geocoding.confidence,
            "formattedAddress": geocoding.formatted_address,
        }
        return geocoding.coordinates, CoordinateSource.GEOCODED, info

    return None, CoordinateSource.NONE, None


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value
    if value is None or value == "":
        return None
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None


def extract_timestamp(row: Dict[str, Any], mappings: FieldMappings, now: datetime) -> datetime:
    """Mapped timestamp column, then common timestamp field names, then ``now``."""
    if mappings.timestamp_path:
        parsed = _parse_timestamp(get_value_at_path(row, mappings.timestamp_path))
        if parsed is not None:
            return parsed

    for name in TIMESTAMP_FALLBACK_FIELDS:
        parsed = _parse_timestamp(row.get(name))
        if parsed is not None:
            return parsed

    return now


def find_geocoding_result(job: Dict[str, Any], row_number: int) -> Optional[GeocodingResult]:
    """Geocoding results are stored on the job keyed by row number."""
    results = job.get("geocodingResults") or {}
    data = results.get(str(row_number))
    if not data:
        return None
    try:
        return GeocodingResult.from_dict({"rowNumber": row_number, **data})
    except (TypeError, ValueError):
        return None
