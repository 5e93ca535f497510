# src/vmsync/contracts/protocols.py
"""Protocol definitions for the external collaborators.

The exporters only depend on these narrow interfaces so tests can swap in
in-memory fakes. The vSphere and HTTP implementations live in
vmsync.clients.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Sequence
from typing import Protocol, runtime_checkable

from vmsync.contracts.records import ChangeNotification, FieldDefinition, InstanceRecord

NotificationHandler = Callable[[Sequence[ChangeNotification]], None]


@runtime_checkable
class InventoryDirectory(Protocol):
    """Inventory Directory Service.

    Error handling:
        - list_instances/get_instances raise ConnectivityError when the
          endpoint is unreachable and DirectoryError when the scope is unknown
        - get_instance raises DirectoryError when the instance is gone or
          its data cannot be read
        - subscribe raises SubscriptionError when the stream fails
    """

    def list_instances(self, scope: str) -> list[str]:
        """Return references for every instance under scope."""
        ...

    def get_instances(self, refs: Sequence[str]) -> list[InstanceRecord]:
        """Resolve name, address and raw tags for many instances at once."""
        ...

    def get_instance(self, ref: str) -> InstanceRecord:
        """Resolve name, address and raw tags for one instance."""
        ...

    def subscribe(
        self,
        scope: str,
        on_batch: NotificationHandler,
        stop: threading.Event,
    ) -> None:
        """Deliver change notifications for scope until stop is set.

        Blocks. on_batch is called synchronously with each page of
        notifications in delivery order.
        """
        ...


@runtime_checkable
class TagMetadataResolver(Protocol):
    """Source of custom field definitions."""

    def list_field_definitions(self) -> list[FieldDefinition]:
        """Return all custom field definitions."""
        ...


@runtime_checkable
class IngestionClient(Protocol):
    """Client for the downstream ingestion platform.

    upload raises UploadError when the platform rejects the payload and
    ConnectivityError when it cannot be reached. TLS verification is fixed
    when the client is constructed.
    """

    def upload(self, payload: bytes, *, append: bool) -> str:
        """Upload a serialized batch and return the platform's status text.

        append=True adds rows to the existing inventory, append=False
        replaces it.
        """
        ...
