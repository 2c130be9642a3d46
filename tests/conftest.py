from __future__ import annotations

import copy
from datetime import UTC, datetime
from typing import Any
from unittest.mock import Mock
import uuid

import pytest

from nerdy_k8s_orchestrator.events import EventRecorder
from nerdy_k8s_orchestrator.k8s import ConflictError, ObjectNotFoundError, StoreError
from nerdy_k8s_orchestrator.models import Record


class FakeObjectStore:
    """In-memory stand-in for ObjectStore with resource-version conflict checks."""

    def __init__(self) -> None:
        self.objects: dict[tuple[str, str | None, str], dict[str, Any]] = {}
        self.updates: list[Record] = []
        self.created: list[Record] = []
        self.deleted: list[str] = []
        self.fail_get: dict[str, StoreError] = {}
        self.fail_create: dict[str, StoreError] = {}
        self.fail_update: dict[str, StoreError] = {}
        self.fail_delete: dict[str, StoreError] = {}
        self._version = 0

    def _key(self, record_type: type[Record], name: str, namespace: str | None) -> tuple[str, str | None, str]:
        kind = record_type.KIND
        return kind.kind, namespace if kind.namespaced else None, name

    def _next_version(self) -> str:
        self._version += 1
        return str(self._version)

    def add(self, record: Record) -> Record:
        body = record.to_dict()
        metadata = body["metadata"]
        metadata["resourceVersion"] = self._next_version()
        metadata.setdefault("uid", str(uuid.uuid4()))
        self.objects[self._key(type(record), record.metadata.name, record.metadata.namespace)] = body
        return type(record).from_dict(copy.deepcopy(body))

    def body(self, record_type: type[Record], name: str, namespace: str | None = None) -> dict[str, Any]:
        return self.objects[self._key(record_type, name, namespace)]

    def get(self, record_type: type[Record], name: str, namespace: str | None = None) -> Any:
        if name in self.fail_get:
            raise self.fail_get[name]
        key = self._key(record_type, name, namespace)
        if key not in self.objects:
            raise ObjectNotFoundError(f"{record_type.KIND.kind} {name} not found", status=404)
        return record_type.from_dict(copy.deepcopy(self.objects[key]))

    def list(self, record_type: type[Record], namespace: str | None = None) -> list[Any]:
        kind = record_type.KIND.kind
        return [
            record_type.from_dict(copy.deepcopy(body))
            for (item_kind, item_namespace, _name), body in sorted(self.objects.items(), key=lambda item: item[0][2])
            if item_kind == kind and (namespace is None or item_namespace == namespace)
        ]

    def create(self, record: Record) -> Any:
        if record.metadata.name in self.fail_create:
            raise self.fail_create[record.metadata.name]
        key = self._key(type(record), record.metadata.name, record.metadata.namespace)
        if key in self.objects:
            raise ConflictError(f"{record.KIND.kind} {record.metadata.name} already exists", status=409)
        self.created.append(record)
        return self.add(record)

    def update(self, record: Record) -> Any:
        if record.metadata.name in self.fail_update:
            raise self.fail_update[record.metadata.name]
        key = self._key(type(record), record.metadata.name, record.metadata.namespace)
        if key not in self.objects:
            raise ObjectNotFoundError(f"{record.KIND.kind} {record.metadata.name} not found", status=404)
        stored_version = self.objects[key]["metadata"].get("resourceVersion")
        if record.metadata.resource_version != stored_version:
            raise ConflictError(f"{record.KIND.kind} {record.metadata.name} was modified", status=409)
        self.updates.append(record)
        body = record.to_dict()
        body["metadata"]["resourceVersion"] = self._next_version()
        self.objects[key] = body
        return type(record).from_dict(copy.deepcopy(body))

    def delete(self, record_type: type[Record], name: str, namespace: str | None = None) -> bool:
        if name in self.fail_delete:
            raise self.fail_delete[name]
        key = self._key(record_type, name, namespace)
        if key not in self.objects:
            return False
        del self.objects[key]
        self.deleted.append(name)
        return True


class FixedClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def store() -> FakeObjectStore:
    return FakeObjectStore()


@pytest.fixture
def events() -> Mock:
    return Mock(spec=EventRecorder)


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(datetime(2024, 5, 14, 22, 30, 0, tzinfo=UTC))
