# tests/conftest.py
"""Shared test fixtures and collaborator fakes.

The exporters only talk to InventoryDirectory, TagMetadataResolver and
IngestionClient, so every test runs against the in-memory versions below:
- FakeDirectory: instances keyed by ref, scripted notification pages
- FakeResolver: fixed custom field definitions
- RecordingClient: captures uploads, can fail or block on demand
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

import pytest

from vmsync.contracts import (
    ChangeKind,
    ChangeNotification,
    DirectoryError,
    FieldDefinition,
    InstanceRecord,
    NotificationHandler,
    RawTag,
    UploadError,
)

ENV_FIELD = 101
TIER_FIELD = 102


class FakeDirectory:
    """In-memory InventoryDirectory."""

    def __init__(self, instances: Sequence[InstanceRecord] = ()) -> None:
        self.instances: dict[str, InstanceRecord] = {i.ref: i for i in instances}
        self.pages: list[list[ChangeNotification]] = []
        self.subscribe_error: Exception | None = None
        self.list_error: Exception | None = None
        self.before_page: Callable[[int], None] | None = None
        self.subscribed_scopes: list[str] = []
        self.lookup_errors: dict[str, Exception] = {}

    def put(self, instance: InstanceRecord) -> None:
        self.instances[instance.ref] = instance

    def list_instances(self, scope: str) -> list[str]:
        if self.list_error is not None:
            raise self.list_error
        return list(self.instances)

    def get_instances(self, refs: Sequence[str]) -> list[InstanceRecord]:
        return [self.instances[ref] for ref in refs if ref in self.instances]

    def get_instance(self, ref: str) -> InstanceRecord:
        if ref in self.lookup_errors:
            raise self.lookup_errors[ref]
        try:
            return self.instances[ref]
        except KeyError:
            raise DirectoryError(f"Instance {ref} not found") from None

    def subscribe(self, scope: str, on_batch: NotificationHandler, stop: threading.Event) -> None:
        """Deliver scripted pages, then return (or raise subscribe_error)."""
        self.subscribed_scopes.append(scope)
        for index, page in enumerate(self.pages):
            if self.before_page is not None:
                self.before_page(index)
            if stop.is_set():
                return
            on_batch(page)
        if self.subscribe_error is not None:
            raise self.subscribe_error


class FakeResolver:
    """TagMetadataResolver with fixed definitions."""

    def __init__(self, definitions: Sequence[FieldDefinition] = ()) -> None:
        self.definitions = list(definitions)

    def list_field_definitions(self) -> list[FieldDefinition]:
        return list(self.definitions)


@dataclass
class Upload:
    payload: bytes
    append: bool

    @property
    def lines(self) -> list[str]:
        return self.payload.decode("utf-8").splitlines()


@dataclass
class RecordingClient:
    """IngestionClient that records uploads.

    fail_next: number of upcoming uploads that raise UploadError
    gate: when set, upload() waits on it (after signalling entered)
    """

    uploads: list[Upload] = field(default_factory=list)
    attempts: int = 0
    fail_next: int = 0
    gate: threading.Event | None = None
    entered: threading.Event = field(default_factory=threading.Event)

    def upload(self, payload: bytes, *, append: bool) -> str:
        self.attempts += 1
        self.entered.set()
        if self.gate is not None:
            assert self.gate.wait(5.0), "test gate never opened"
        if self.fail_next > 0:
            self.fail_next -= 1
            raise UploadError("Upload rejected with HTTP 503", status_code=503)
        self.uploads.append(Upload(payload=payload, append=append))
        return "200 OK"


def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    """Poll predicate until true or timeout. Returns the final result."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def tagged(ref: str, name: str, address: str, **tags: str) -> InstanceRecord:
    """Build an InstanceRecord using the env/tier fields by name."""
    ids = {"env": ENV_FIELD, "tier": TIER_FIELD}
    return InstanceRecord(
        ref=ref,
        name=name,
        address=address,
        tags=tuple(RawTag(field_id=ids[k], value=v) for k, v in tags.items()),
    )


def notification(kind: ChangeKind, ref: str | None, key: int = 1) -> ChangeNotification:
    return ChangeNotification(kind=kind, ref=ref, key=key)


@pytest.fixture
def field_definitions() -> list[FieldDefinition]:
    return [FieldDefinition(ENV_FIELD, "env"), FieldDefinition(TIER_FIELD, "tier")]


@pytest.fixture
def resolver(field_definitions: list[FieldDefinition]) -> FakeResolver:
    return FakeResolver(field_definitions)


@pytest.fixture
def tag_map(field_definitions: list[FieldDefinition]):
    from vmsync.export.formatting import build_tag_map

    return build_tag_map(field_definitions)


@pytest.fixture
def directory() -> FakeDirectory:
    return FakeDirectory(
        [
            tagged("vm-1", "A", "10.0.0.1", env="prod"),
            tagged("vm-2", "B", ""),
        ]
    )


@pytest.fixture
def client() -> RecordingClient:
    return RecordingClient()
