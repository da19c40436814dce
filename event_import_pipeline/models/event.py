"""
Event data models for Event Import Pipeline

Events are the normalized records materialised from imported rows.
"""

from enum import Enum
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List
from dataclasses import dataclass, field


class ValidationStatus(Enum):
    PENDING = "pending"
    TRANSFORMED = "transformed"


class CoordinateSource(Enum):
    """Where an event's coordinates came from."""
    IMPORT = "import"
    GEOCODED = "geocoded"
    NONE = "none"


@dataclass
class Coordinates:
    latitude: float
    longitude: float

    def is_valid(self) -> bool:
        return -90.0 <= self.latitude <= 90.0 and -180.0 <= self.longitude <= 180.0

    def to_dict(self) -> Dict[str, float]:
        return {"latitude": self.latitude, "longitude": self.longitude}


@dataclass
class GeocodingResult:
    """Result computed by the geocode stage for one row."""
    row_number: int
    coordinates: Coordinates
    confidence: Optional[float] = None
    formatted_address: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'GeocodingResult':
        coords = data.get("coordinates") or {}
        return cls(
            row_number=int(data.get("rowNumber", 0)),
            coordinates=Coordinates(
                latitude=float(coords.get("lat", coords.get("latitude"))),
                longitude=float(coords.get("lng", coords.get("longitude"))),
            ),
            confidence=data.get("confidence"),
            formatted_address=data.get("formattedAddress"),
        )


@dataclass
class FieldChange:
    """One field-level change reported by the transformation service."""
    path: str
    old_value: Any
    new_value: Any
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {"path": self.path, "oldValue": self.old_value, "newValue": self.new_value}
        if self.error is not None:
            data["error"] = self.error
        return data


@dataclass
class Event:
    """A single normalized output record."""

    dataset: Any
    import_job: Any
    unique_id: str
    data: Dict[str, Any]
    event_timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    validation_status: ValidationStatus = ValidationStatus.PENDING
    transformations: Optional[List[Dict[str, Any]]] = None
    coordinates: Optional[Coordinates] = None
    coordinate_source: CoordinateSource = CoordinateSource.NONE
    geocoding_info: Optional[Dict[str, Any]] = None
    content_hash: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dataset": self.dataset,
            "importJob": self.import_job,
            "uniqueId": self.unique_id,
            "data": self.data,
            "eventTimestamp": self.event_timestamp.isoformat(),
            "location": self.coordinates.to_dict() if self.coordinates else None,
            "coordinateSource": {"type": self.coordinate_source.value},
            "geocodingInfo": self.geocoding_info,
            "validationStatus": self.validation_status.value,
            "transformations": self.transformations,
            "contentHash": self.content_hash,
        }
