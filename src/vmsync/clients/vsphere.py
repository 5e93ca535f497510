# src/vmsync/clients/vsphere.py
"""vSphere-backed Inventory Directory Service and Tag Metadata Resolver.

Instance state is read through the PropertyCollector in one batched
round trip; only the three properties the export needs are requested.
Change notifications come from an EventHistoryCollector filtered to the
datacenter and to rename / custom field change events.

vSphere objects never leave this module: everything is converted to
InstanceRecord, FieldDefinition and ChangeNotification here.
"""

from __future__ import annotations

import threading
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any
from urllib.parse import urlparse

import structlog
from pyVim.connect import Disconnect, SmartConnect
from pyVmomi import vim, vmodl

from vmsync.contracts.errors import ConnectivityError, DirectoryError, SubscriptionError
from vmsync.contracts.protocols import NotificationHandler
from vmsync.contracts.records import ChangeKind, ChangeNotification, FieldDefinition, InstanceRecord, RawTag

if TYPE_CHECKING:
    from vmsync.core.config import VCenterSettings

logger = structlog.get_logger(__name__)

INSTANCE_PROPERTIES: tuple[str, ...] = ("name", "guest.ipAddress", "customValue")
EVENT_TYPE_IDS: tuple[str, ...] = ("VmRenamedEvent", "CustomFieldValueChangedEvent")


def _parse_object_content(oc: Any) -> tuple[Any, dict[str, Any]]:
    """Split a PropertyCollector ObjectContent into (obj, {property: value})."""
    props = {p.name: p.val for p in (oc.propSet or [])}
    return oc.obj, props


def parse_instance(obj: Any, props: dict[str, Any]) -> InstanceRecord:
    """Convert retrieved VirtualMachine properties to an InstanceRecord.

    Raises:
        DirectoryError: If the name is missing or a custom value is malformed
    """
    ref = obj._moId
    name = props.get("name")
    if not isinstance(name, str) or not name:
        raise DirectoryError(f"Instance {ref} has no name")

    tags: list[RawTag] = []
    for cv in props.get("customValue") or []:
        try:
            tags.append(RawTag(field_id=int(cv.key), value=str(getattr(cv, "value", ""))))
        except (AttributeError, TypeError, ValueError) as e:
            raise DirectoryError(f"Instance {ref} has a malformed custom value: {e}") from e

    return InstanceRecord(
        ref=ref,
        name=name,
        address=props.get("guest.ipAddress") or "",
        tags=tuple(tags),
    )


def classify_event(event: Any) -> ChangeNotification:
    """Map a vSphere event to a ChangeNotification.

    Custom field changes count only when they target a virtual machine.
    """
    key = int(getattr(event, "key", 0) or 0)
    description = getattr(event, "fullFormattedMessage", "") or ""

    vm_arg = getattr(event, "vm", None)
    vm = vm_arg.vm if vm_arg is not None else None

    if isinstance(event, vim.event.VmRenamedEvent):
        kind = ChangeKind.RENAMED
    elif isinstance(event, vim.event.CustomFieldValueChangedEvent):
        if vm is None and event.entity is not None and isinstance(event.entity.entity, vim.VirtualMachine):
            vm = event.entity.entity
        kind = ChangeKind.TAG_CHANGED if vm is not None else ChangeKind.OTHER
    else:
        kind = ChangeKind.OTHER

    ref = vm._moId if vm is not None and kind is not ChangeKind.OTHER else None
    return ChangeNotification(kind=kind, ref=ref, key=key, description=description)


class VSphereDirectory:
    """Inventory directory and tag resolver over a vSphere service instance.

    scope is a datacenter name. An empty scope selects the only datacenter
    when exactly one exists.
    """

    def __init__(
        self,
        service_instance: Any,
        *,
        page_size: int = 10,
        poll_interval: float = 5.0,
    ) -> None:
        self._si = service_instance
        self._content = service_instance.RetrieveContent()
        self._page_size = page_size
        self._poll_interval = poll_interval

    @classmethod
    def connect(
        cls,
        settings: VCenterSettings,
        *,
        insecure: bool = False,
        page_size: int = 10,
        poll_interval: float = 5.0,
    ) -> VSphereDirectory:
        """Log in to vCenter.

        Credentials come from settings, falling back to the user info in
        the URL.

        Raises:
            ConnectivityError: If vCenter is unreachable or rejects the login
        """
        parsed = urlparse(settings.url)
        host = parsed.hostname or settings.url
        try:
            si = SmartConnect(
                host=host,
                port=parsed.port or 443,
                user=settings.username or parsed.username or "",
                pwd=settings.password or parsed.password or "",
                disableSslCertValidation=insecure,
            )
        except vim.fault.InvalidLogin as e:
            raise ConnectivityError(f"vCenter {host} rejected login: {e.msg}") from e
        except (OSError, vmodl.MethodFault) as e:
            raise ConnectivityError(f"Cannot connect to vCenter {host}: {e}") from e
        logger.info("Connected to vCenter", host=host)
        return cls(si, page_size=page_size, poll_interval=poll_interval)

    def close(self) -> None:
        """Log out of vCenter."""
        try:
            Disconnect(self._si)
        except (OSError, vmodl.MethodFault) as e:
            logger.warning("vCenter logout failed", error=str(e))

    # ------------------------------------------------------------------
    # TagMetadataResolver
    # ------------------------------------------------------------------

    def list_field_definitions(self) -> list[FieldDefinition]:
        """Return the custom field definitions known to vCenter.

        Raises:
            ConnectivityError: If vCenter cannot be reached
        """
        try:
            fields = self._content.customFieldsManager.field or []
        except (OSError, vmodl.MethodFault) as e:
            raise ConnectivityError(f"Cannot read custom field definitions: {e}") from e
        return [FieldDefinition(field_id=int(f.key), name=str(f.name)) for f in fields]

    # ------------------------------------------------------------------
    # InventoryDirectory
    # ------------------------------------------------------------------

    def find_datacenter(self, scope: str) -> Any:
        """Return the datacenter object for scope.

        Raises:
            DirectoryError: If no (or, for an empty scope, no single) datacenter matches
        """
        view = self._content.viewManager.CreateContainerView(self._content.rootFolder, [vim.Datacenter], True)
        try:
            datacenters = list(view.view)
        finally:
            view.Destroy()

        if not scope:
            if len(datacenters) == 1:
                return datacenters[0]
            raise DirectoryError(f"Datacenter must be named, found {len(datacenters)}")
        for dc in datacenters:
            if dc.name == scope:
                return dc
        raise DirectoryError(f"Datacenter '{scope}' not found")

    def list_instances(self, scope: str) -> list[str]:
        """Return managed object ids of every virtual machine in the datacenter."""
        try:
            dc = self.find_datacenter(scope)
            view = self._content.viewManager.CreateContainerView(dc.vmFolder, [vim.VirtualMachine], True)
            try:
                return [vm._moId for vm in view.view]
            finally:
                view.Destroy()
        except (OSError, vmodl.RuntimeFault) as e:
            raise ConnectivityError(f"Cannot list instances in '{scope}': {e}") from e

    def get_instances(self, refs: Sequence[str]) -> list[InstanceRecord]:
        """Resolve many instances in one PropertyCollector call.

        Malformed instances are skipped with a warning.

        Raises:
            DirectoryError: If an instance vanished between listing and retrieval
        """
        try:
            contents = self._retrieve(refs)
        except vmodl.fault.ManagedObjectNotFound as e:
            raise DirectoryError(f"Instance vanished during retrieval: {e.obj}") from e

        records: list[InstanceRecord] = []
        for obj, props in contents:
            try:
                records.append(parse_instance(obj, props))
            except DirectoryError as e:
                logger.warning("Skipping malformed instance", ref=obj._moId, error=str(e))
        return records

    def get_instance(self, ref: str) -> InstanceRecord:
        """Resolve one instance.

        Raises:
            DirectoryError: If the instance no longer exists or is malformed
        """
        try:
            contents = self._retrieve([ref])
        except vmodl.fault.ManagedObjectNotFound as e:
            raise DirectoryError(f"Instance {ref} not found") from e
        if not contents:
            raise DirectoryError(f"Instance {ref} not found")
        obj, props = contents[0]
        return parse_instance(obj, props)

    def _retrieve(self, refs: Sequence[str]) -> list[tuple[Any, dict[str, Any]]]:
        stub = self._si._stub
        filter_spec = vmodl.query.PropertyCollector.FilterSpec(
            objectSet=[vmodl.query.PropertyCollector.ObjectSpec(obj=vim.VirtualMachine(ref, stub), skip=False) for ref in refs],
            propSet=[
                vmodl.query.PropertyCollector.PropertySpec(
                    type=vim.VirtualMachine,
                    pathSet=list(INSTANCE_PROPERTIES),
                    all=False,
                )
            ],
        )
        try:
            result = self._content.propertyCollector.RetrieveContents([filter_spec])
        except vmodl.fault.ManagedObjectNotFound:
            raise
        except (OSError, vmodl.RuntimeFault) as e:
            raise ConnectivityError(f"Property retrieval failed: {e}") from e
        return [_parse_object_content(oc) for oc in result or []]

    def subscribe(self, scope: str, on_batch: NotificationHandler, stop: threading.Event) -> None:
        """Tail rename and custom field events for the datacenter until stop is set.

        The most recent page of events is delivered first, then new events
        as they arrive. Errors raised by on_batch propagate unchanged.

        Raises:
            SubscriptionError: If the event collector cannot be created or read
        """
        try:
            dc = self.find_datacenter(scope)
            filter_spec = vim.event.EventFilterSpec(
                entity=vim.event.EventFilterSpec.ByEntity(entity=dc, recursion="all"),
                eventTypeId=list(EVENT_TYPE_IDS),
            )
            collector = self._content.eventManager.CreateCollectorForEvents(filter_spec)
            collector.ResetCollector()
        except DirectoryError as e:
            raise SubscriptionError(str(e)) from e
        except (OSError, vmodl.MethodFault) as e:
            raise SubscriptionError(f"Cannot create event collector for '{scope}': {e}") from e

        try:
            while not stop.is_set():
                try:
                    events = collector.ReadNextEvents(self._page_size)
                except (OSError, vmodl.MethodFault) as e:
                    raise SubscriptionError(f"Event stream for '{scope}' failed: {e}") from e
                if not events:
                    stop.wait(self._poll_interval)
                    continue
                on_batch([classify_event(event) for event in events])
        finally:
            try:
                collector.DestroyCollector()
            except (OSError, vmodl.MethodFault) as e:
                logger.debug("Event collector cleanup failed", error=str(e))
