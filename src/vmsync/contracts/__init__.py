"""Shared contracts: value types, collaborator protocols and errors."""

from vmsync.contracts.errors import (
    BackpressureTimeout,
    ConnectivityError,
    DirectoryError,
    ExporterClosedError,
    SubscriptionError,
    SyncError,
    UploadError,
)
from vmsync.contracts.protocols import (
    IngestionClient,
    InventoryDirectory,
    NotificationHandler,
    TagMetadataResolver,
)
from vmsync.contracts.records import (
    ChangeKind,
    ChangeNotification,
    FieldDefinition,
    InstanceRecord,
    RawTag,
    RowRecord,
    SnapshotResult,
    TagMap,
)

__all__ = [
    "BackpressureTimeout",
    "ChangeKind",
    "ChangeNotification",
    "ConnectivityError",
    "DirectoryError",
    "ExporterClosedError",
    "FieldDefinition",
    "IngestionClient",
    "InstanceRecord",
    "InventoryDirectory",
    "NotificationHandler",
    "RawTag",
    "RowRecord",
    "SnapshotResult",
    "SubscriptionError",
    "SyncError",
    "TagMap",
    "TagMetadataResolver",
    "UploadError",
]
