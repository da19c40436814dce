"""
Persistence collaborator for Event Import Pipeline

Defines the document-store contract used by the job handlers and an
in-memory implementation with simple ``where`` queries and after-change
hooks.
"""

import copy
import inspect
import itertools
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from ..core.exceptions import PersistenceError
from .field_paths import get_value_at_path
from .logger import get_logger, set_log_context

IMPORT_JOBS = "import-jobs"
IMPORT_FILES = "import-files"
DATASETS = "datasets"
EVENTS = "events"

Document = Dict[str, Any]
AfterChangeHook = Callable[[Document, Optional[Document], str], Union[None, Awaitable[None]]]


class PersistenceBackend(ABC):
    """
    Async document store.

    ``find_by_id`` returns None for unknown ids; callers decide whether that
    is an error.
    """

    @abstractmethod
    async def find_by_id(self, collection: str, id: Any) -> Optional[Document]:
        pass

    @abstractmethod
    async def find(self, collection: str, where: Optional[Dict[str, Any]] = None,
                   limit: Optional[int] = None) -> List[Document]:
        pass

    @abstractmethod
    async def create(self, collection: str, data: Document) -> Document:
        pass

    @abstractmethod
    async def update(self, collection: str, id: Any, data: Document) -> Document:
        pass

    @abstractmethod
    async def count(self, collection: str, where: Optional[Dict[str, Any]] = None) -> int:
        pass


def _normalize_id(value: Any) -> Any:
    if isinstance(value, dict):
        value = value.get("id")
    if isinstance(value, str) and value.isdigit():
        return int(value)
    return value


def _matches_condition(value: Any, condition: Any) -> bool:
    if not isinstance(condition, dict):
        return _normalize_id(value) == _normalize_id(condition)

    for operator, expected in condition.items():
        if operator == "equals":
            if _normalize_id(value) != _normalize_id(expected):
                return False
        elif operator == "not_equals":
            if _normalize_id(value) == _normalize_id(expected):
                return False
        elif operator == "in":
            if _normalize_id(value) not in {_normalize_id(v) for v in expected}:
                return False
        elif operator == "not_in":
            if _normalize_id(value) in {_normalize_id(v) for v in expected}:
                return False
        elif operator == "exists":
            if (value is not None) != bool(expected):
                return False
        elif operator == "greater_than":
            if value is None or not value > expected:
                return False
        elif operator == "less_than":
            if value is None or not value < expected:
                return False
        else:
            raise PersistenceError("find", f"unsupported query operator '{operator}'")
    return True


def matches_where(document: Document, where: Optional[Dict[str, Any]]) -> bool:
    """Evaluate a ``{path: value | {operator: value}}`` query against a document."""
    if not where:
        return True
    for path, condition in where.items():
        if path == "and":
            if not all(matches_where(document, clause) for clause in condition):
                return False
            continue
        if path == "or":
            if not any(matches_where(document, clause) for clause in condition):
                return False
            continue
        if not _matches_condition(get_value_at_path(document, path), condition):
            return False
    return True


class InMemoryPersistence(PersistenceBackend):
    """
    Dict-backed document store.

    Documents are deep-copied on the way in and out so callers never share
    mutable state with the store. Hooks registered with ``add_after_change_hook``
    run after every create and update of their collection.
    """

    def __init__(self, clock: Optional[Callable[[], float]] = None):
        self._collections: Dict[str, Dict[Any, Document]] = {}
        self._id_counters: Dict[str, Any] = {}
        self._hooks: Dict[str, List[AfterChangeHook]] = {}
        self._clock = clock or time.time

        self.logger = get_logger(__name__)
        set_log_context(self.logger, component="persistence")

    def _timestamp(self) -> str:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc).isoformat()

    def _store(self, collection: str) -> Dict[Any, Document]:
        return self._collections.setdefault(collection, {})

    def add_after_change_hook(self, collection: str, hook: AfterChangeHook):
        self._hooks.setdefault(collection, []).append(hook)

    async def _run_hooks(self, collection: str, doc: Document, previous: Optional[Document]):
        for hook in self._hooks.get(collection, []):
            result = hook(copy.deepcopy(doc), copy.deepcopy(previous), collection)
            if inspect.isawaitable(result):
                await result

    async def find_by_id(self, collection: str, id: Any) -> Optional[Document]:
        doc = self._store(collection).get(_normalize_id(id))
        return copy.deepcopy(doc) if doc is not None else None

    async def find(self, collection: str, where: Optional[Dict[str, Any]] = None,
                   limit: Optional[int] = None) -> List[Document]:
        results = [
            copy.deepcopy(doc) for doc in self._store(collection).values()
            if matches_where(doc, where)
        ]
        return results[:limit] if limit is not None else results

    async def create(self, collection: str, data: Document) -> Document:
        store = self._store(collection)
        counter = self._id_counters.setdefault(collection, itertools.count(1))

        doc = copy.deepcopy(data)
        doc_id = _normalize_id(doc.get("id")) if doc.get("id") is not None else next(counter)
        while doc.get("id") is None and doc_id in store:
            doc_id = next(counter)
        if doc_id in store:
            raise PersistenceError("create", f"duplicate id {doc_id}", collection=collection)

        now = self._timestamp()
        doc.update({"id": doc_id, "createdAt": doc.get("createdAt", now), "updatedAt": now})
        store[doc_id] = doc

        await self._run_hooks(collection, doc, None)
        return copy.deepcopy(doc)

    async def update(self, collection: str, id: Any, data: Document) -> Document:
        store = self._store(collection)
        doc_id = _normalize_id(id)
        previous = store.get(doc_id)
        if previous is None:
            raise PersistenceError("update", f"document {id} not found", collection=collection)

        doc = copy.deepcopy(previous)
        doc.update(copy.deepcopy(data))
        doc["id"] = doc_id
        doc["updatedAt"] = self._timestamp()
        store[doc_id] = doc

        await self._run_hooks(collection, doc, previous)
        return copy.deepcopy(doc)

    async def delete(self, collection: str, id: Any) -> bool:
        return self._store(collection).pop(_normalize_id(id), None) is not None

    async def count(self, collection: str, where: Optional[Dict[str, Any]] = None) -> int:
        return sum(1 for doc in self._store(collection).values() if matches_where(doc, where))
