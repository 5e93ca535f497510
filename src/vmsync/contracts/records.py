# src/vmsync/contracts/records.py
"""Value types shared by the exporters and the collaborator adapters.

All records are frozen. InstanceRecord is resolved at the directory
boundary so nothing downstream inspects vSphere objects.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum

# Field id -> field name. Built once per run, read-only afterwards.
TagMap = Mapping[int, str]


class ChangeKind(StrEnum):
    """Kinds of change notification the incremental pipeline distinguishes.

    Values:
        RENAMED: Instance was renamed
        TAG_CHANGED: A custom field value on an instance changed
        OTHER: Anything else (ignored)
    """

    RENAMED = "renamed"
    TAG_CHANGED = "tag_changed"
    OTHER = "other"


@dataclass(frozen=True)
class RawTag:
    """One custom field value as stored on an instance."""

    field_id: int
    value: str


@dataclass(frozen=True)
class FieldDefinition:
    """Custom field definition: numeric id and human-readable name."""

    field_id: int
    name: str


@dataclass(frozen=True)
class InstanceRecord:
    """Current state of one instance as reported by the directory.

    ref is the opaque directory reference (a managed object id for vSphere).
    address is the empty string when the guest has no known address.
    """

    ref: str
    name: str
    address: str = ""
    tags: tuple[RawTag, ...] = ()


@dataclass(frozen=True)
class ChangeNotification:
    """A change event delivered by the directory subscription.

    ref is None when the event does not point at an instance.
    """

    kind: ChangeKind
    ref: str | None
    key: int = 0
    description: str = ""


@dataclass(frozen=True)
class RowRecord:
    """Normalized export row: one line of the uploaded CSV.

    tags is the formatted tag string (see export.formatting.format_tags),
    empty when the instance has no resolvable tags.
    """

    address: str
    segment: str
    name: str
    tags: str = ""

    def as_row(self) -> list[str]:
        """Return the CSV cell values in header order."""
        return [self.address, self.segment, self.name, self.tags]


@dataclass(frozen=True)
class SnapshotResult:
    """Outcome of a snapshot export."""

    rows_exported: int
    upload_status: str
    rows: tuple[RowRecord, ...] = field(default=(), repr=False)
