"""
Dataset data models for Event Import Pipeline

A dataset carries the identity strategy used for deduplication, the schema
flags and the ordered type-transformation rules applied to imported rows.
"""

from enum import Enum
from typing import Optional, Dict, Any, List
from dataclasses import dataclass, field


class IdStrategyType(Enum):
    """Unique-ID strategy discriminator."""
    EXTERNAL = "external"
    COMPUTED = "computed"
    AUTO = "auto"
    HYBRID = "hybrid"


class TransformStrategy(Enum):
    """How a type transformation rule converts a value."""
    PARSE = "parse"
    CAST = "cast"
    CUSTOM = "custom"
    REJECT = "reject"


class FieldType(Enum):
    """Runtime value types recognised by transformation rules."""
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"
    ARRAY = "array"
    OBJECT = "object"
    NULL = "null"


@dataclass
class ComputedIdField:
    field_path: str

    def to_dict(self) -> Dict[str, Any]:
        return {"fieldPath": self.field_path}


@dataclass
class IdStrategy:
    """
    Identity strategy configuration.

    ``type`` selects the variant; ``external_id_path`` is used by external and
    hybrid, ``computed_id_fields`` by computed and hybrid.
    """
    type: str
    external_id_path: Optional[str] = None
    computed_id_fields: List[ComputedIdField] = field(default_factory=list)
    duplicate_strategy: str = "skip"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "externalIdPath": self.external_id_path,
            "computedIdFields": [f.to_dict() for f in self.computed_id_fields],
            "duplicateStrategy": self.duplicate_strategy,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'IdStrategy':
        fields = []
        for entry in data.get("computedIdFields") or []:
            if isinstance(entry, str):
                fields.append(ComputedIdField(field_path=entry))
            elif isinstance(entry, dict) and entry.get("fieldPath"):
                fields.append(ComputedIdField(field_path=str(entry["fieldPath"])))
        return cls(
            type=str(data.get("type", "")),
            external_id_path=data.get("externalIdPath"),
            computed_id_fields=fields,
            duplicate_strategy=data.get("duplicateStrategy") or "skip",
        )

    @classmethod
    def coerce(cls, value: Any) -> Optional['IdStrategy']:
        if value is None or isinstance(value, IdStrategy):
            return value
        if isinstance(value, dict):
            return cls.from_dict(value)
        raise TypeError(f"Unsupported idStrategy value: {type(value).__name__}")


@dataclass
class TransformationRule:
    """A single field-coercion rule."""
    field_path: str
    from_type: str
    to_type: str
    transform_strategy: str = TransformStrategy.PARSE.value
    enabled: bool = True
    custom_transform: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fieldPath": self.field_path,
            "fromType": self.from_type,
            "toType": self.to_type,
            "transformStrategy": self.transform_strategy,
            "enabled": self.enabled,
            "customTransform": self.custom_transform,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TransformationRule':
        return cls(
            field_path=str(data["fieldPath"]),
            from_type=str(data.get("fromType", "")),
            to_type=str(data.get("toType", "")),
            transform_strategy=str(data.get("transformStrategy") or TransformStrategy.PARSE.value),
            enabled=bool(data.get("enabled", True)),
            custom_transform=data.get("customTransform"),
        )


@dataclass
class FieldMappings:
    """Column mappings used while materialising events."""
    timestamp_path: Optional[str] = None
    latitude_path: Optional[str] = None
    longitude_path: Optional[str] = None
    location_path: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'FieldMappings':
        data = data or {}
        return cls(
            timestamp_path=data.get("timestampPath"),
            latitude_path=data.get("latitudePath"),
            longitude_path=data.get("longitudePath"),
            location_path=data.get("locationPath"),
        )


@dataclass
class Dataset:
    """Schema and identity configuration for a logical data source."""

    id: Any
    name: str = ""
    id_strategy: Optional[IdStrategy] = None
    allow_transformations: bool = False
    require_approval: bool = False
    type_transformations: List[TransformationRule] = field(default_factory=list)
    deduplication_enabled: bool = True
    field_mappings: FieldMappings = field(default_factory=FieldMappings)
    field_metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def enabled_transformations(self) -> List[TransformationRule]:
        return [rule for rule in self.type_transformations if rule.enabled]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "idStrategy": self.id_strategy.to_dict() if self.id_strategy else None,
            "schemaConfig": {
                "allowTransformations": self.allow_transformations,
                "locked": self.require_approval,
            },
            "typeTransformations": [rule.to_dict() for rule in self.type_transformations],
            "deduplicationConfig": {"enabled": self.deduplication_enabled},
            "fieldMappingOverrides": {
                "timestampPath": self.field_mappings.timestamp_path,
                "latitudePath": self.field_mappings.latitude_path,
                "longitudePath": self.field_mappings.longitude_path,
                "locationPath": self.field_mappings.location_path,
            },
            "fieldMetadata": self.field_metadata,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Dataset':
        schema_config = data.get("schemaConfig") or {}
        dedup_config = data.get("deduplicationConfig") or {}
        return cls(
            id=data.get("id"),
            name=data.get("name") or "",
            id_strategy=IdStrategy.coerce(data.get("idStrategy")),
            allow_transformations=bool(schema_config.get("allowTransformations", False)),
            require_approval=bool(schema_config.get("locked", False)),
            type_transformations=[
                TransformationRule.from_dict(rule) for rule in data.get("typeTransformations") or []
            ],
            deduplication_enabled=bool(dedup_config.get("enabled", True)),
            field_mappings=FieldMappings.from_dict(data.get("fieldMappingOverrides")),
            field_metadata=data.get("fieldMetadata") or {},
        )
