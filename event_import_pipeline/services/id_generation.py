"""
Unique ID generation for imported rows.

Supports four strategies, selected by the dataset's ``idStrategy.type``:

- external: ``{dataset}:ext:{value}`` from a field in the row
- computed: ``{dataset}:comp:{hash16}`` from a SHA-256 over chosen fields
- auto:     ``{dataset}:auto:{millis}:{random8}`` plus a content hash
- hybrid:   external first, computed as a fallback
"""

import hashlib
import json
import re
import secrets
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

from ..core.exceptions import IdGenerationError, MissingIdStrategyError
from ..models.dataset import IdStrategy, IdStrategyType
from ..utils.field_paths import get_value_at_path
from ..utils.logger import get_logger, set_log_context

MAX_ID_LENGTH = 255
VALID_ID_PATTERN = re.compile(r"^[A-Za-z0-9_.:\-]+$")


@dataclass
class IdGenerationResult:
    unique_id: str
    strategy: str
    content_hash: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"uniqueId": self.unique_id, "strategy": self.strategy}
        if self.content_hash is not None:
            data["contentHash"] = self.content_hash
        if self.error is not None:
            data["error"] = self.error
        return data


def _json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def sanitize_id(value: Any) -> str:
    """
    Trim and validate an externally supplied ID.

    Raises:
        IdGenerationError: If the trimmed value is empty, longer than 255
            characters or contains characters outside ``[A-Za-z0-9_.:-]``
    """
    sanitized = str(value).strip()
    if len(sanitized) < 1 or len(sanitized) > MAX_ID_LENGTH:
        raise IdGenerationError(
            f"Invalid ID length: {len(sanitized)} (must be 1-{MAX_ID_LENGTH} characters)"
        )
    if not VALID_ID_PATTERN.match(sanitized):
        raise IdGenerationError(
            f"Invalid ID format: {sanitized} (only alphanumeric, -, _, :, . allowed)"
        )
    return sanitized


def generate_content_hash(data: Any) -> str:
    """SHA-256 over the row's JSON form with sorted keys."""
    return hashlib.sha256(_json(data).encode("utf-8")).hexdigest()


class IdGenerationService:
    """
    Produces stable identifiers for imported rows.

    ``generate`` never raises for row-level problems: failures are reported
    through ``IdGenerationResult.error`` with an ``error`` strategy tag. A
    missing strategy is a configuration error and does raise.
    """

    def __init__(self, clock=None):
        self._clock = clock or time.time
        self.logger = get_logger(__name__)
        set_log_context(self.logger, component="id_generation")

    def generate(self, row: Dict[str, Any], dataset_id: Any,
                 id_strategy: Union[IdStrategy, Dict[str, Any], None]) -> IdGenerationResult:
        """
        Generate the unique ID for one row.

        Args:
            row: Raw row data
            dataset_id: Owning dataset id, used as ID prefix
            id_strategy: Strategy config (dataclass or ``idStrategy`` dict)

        Returns:
            IdGenerationResult

        Raises:
            MissingIdStrategyError: If ``id_strategy`` is absent
        """
        strategy = IdStrategy.coerce(id_strategy)
        if strategy is None:
            raise MissingIdStrategyError()

        try:
            if strategy.type == IdStrategyType.EXTERNAL.value:
                return self.generate_external_id(row, dataset_id, strategy)
            if strategy.type == IdStrategyType.COMPUTED.value:
                return self.generate_computed_id(row, dataset_id, strategy)
            if strategy.type == IdStrategyType.AUTO.value:
                return self.generate_auto_id(row, dataset_id)
            if strategy.type == IdStrategyType.HYBRID.value:
                return self.generate_hybrid_id(row, dataset_id, strategy)
            raise IdGenerationError(f"Unknown ID strategy: {strategy.type}", strategy=strategy.type)
        except Exception as e:
            self.logger.warning("ID generation failed", extra={
                "dataset_id": dataset_id,
                "strategy": strategy.type,
                "error": str(e)
            })
            return IdGenerationResult(
                unique_id=f"{dataset_id}:error:{int(self._clock() * 1000)}",
                strategy="error",
                error=str(e),
            )

    def generate_external_id(self, row: Dict[str, Any], dataset_id: Any,
                             strategy: IdStrategy) -> IdGenerationResult:
        path = strategy.external_id_path or ""
        value = get_value_at_path(row, path) if path else None
        if value is None or value == "":
            raise IdGenerationError(f"Missing external ID at path: {path}", strategy="external")

        return IdGenerationResult(
            unique_id=f"{dataset_id}:ext:{sanitize_id(value)}",
            strategy="external",
        )

    def generate_computed_id(self, row: Dict[str, Any], dataset_id: Any,
                             strategy: IdStrategy) -> IdGenerationResult:
        paths = [f.field_path for f in strategy.computed_id_fields]
        if not paths:
            raise IdGenerationError("No fields configured for computed ID", strategy="computed")

        values: Dict[str, Any] = {}
        missing: List[str] = []
        for path in paths:
            value = get_value_at_path(row, path)
            if value is None:
                missing.append(path)
            else:
                values[path] = value

        if missing:
            raise IdGenerationError(
                f"Missing required fields for computed ID: {', '.join(missing)}",
                strategy="computed"
            )

        hash_input = "|".join(f"{path}:{_json(values[path])}" for path in sorted(values))
        digest = hashlib.sha256(f"{dataset_id}:{hash_input}".encode("utf-8")).hexdigest()
        return IdGenerationResult(unique_id=f"{dataset_id}:comp:{digest[:16]}", strategy="computed")

    def generate_auto_id(self, row: Dict[str, Any], dataset_id: Any) -> IdGenerationResult:
        millis = int(self._clock() * 1000)
        return IdGenerationResult(
            unique_id=f"{dataset_id}:auto:{millis}:{secrets.token_hex(4)}",
            strategy="auto",
            content_hash=generate_content_hash(row),
        )

    def generate_hybrid_id(self, row: Dict[str, Any], dataset_id: Any,
                           strategy: IdStrategy) -> IdGenerationResult:
        try:
            return self.generate_external_id(row, dataset_id, strategy)
        except IdGenerationError as external_error:
            try:
                return self.generate_computed_id(row, dataset_id, strategy)
            except IdGenerationError as computed_error:
                raise IdGenerationError(
                    f"Hybrid ID generation failed. External: {external_error.message}. "
                    f"Computed: {computed_error.message}",
                    strategy="hybrid"
                ) from computed_error


_default_service = IdGenerationService()


def generate_unique_id(row: Dict[str, Any], dataset_id: Any,
                       id_strategy: Union[IdStrategy, Dict[str, Any], None]) -> IdGenerationResult:
    """Module-level shortcut using a shared stateless service."""
    return _default_service.generate(row, dataset_id, id_strategy)
