# src/vmsync/sync.py
"""Run orchestration: snapshot export, then optionally the incremental pipeline.

Control flow:
    run_sync -> SnapshotExporter (always)
             -> ChangeEventConsumer + BatchExporter until stop is set

The tag map is built once before either pipeline starts and is read-only
afterwards, so both threads share it without synchronization.
"""

from __future__ import annotations

import contextlib
import signal
import threading
from collections.abc import Callable, Iterator
from typing import Any

from vmsync.contracts.protocols import IngestionClient, InventoryDirectory, TagMetadataResolver
from vmsync.contracts.records import SnapshotResult, TagMap
from vmsync.core.config import ExportSettings, SyncSettings
from vmsync.core.logging import get_logger, run_context
from vmsync.export.batch import BatchExporter
from vmsync.export.consumer import ChangeEventConsumer
from vmsync.export.formatting import build_tag_map
from vmsync.export.snapshot import SnapshotExporter

logger = get_logger(__name__)


def load_tag_map(resolver: TagMetadataResolver) -> TagMap:
    """Fetch custom field definitions and freeze them into a TagMap."""
    tag_map = build_tag_map(resolver.list_field_definitions())
    logger.info("Custom field definitions loaded", fields=len(tag_map))
    return tag_map


def run_incremental(
    directory: InventoryDirectory,
    client: IngestionClient,
    tag_map: TagMap,
    scope: str,
    export: ExportSettings,
    stop: threading.Event,
) -> dict[str, Any]:
    """Follow change events and ship deltas until stop is set.

    The exporter always gets a final best-effort flush, also when the
    subscription fails.

    Returns:
        Final exporter health metrics

    Raises:
        SubscriptionError: If the notification stream fails
    """
    exporter = BatchExporter(
        client,
        flush_interval=export.flush_interval_seconds,
        queue_size=export.queue_size,
    )
    exporter.start()
    consumer = ChangeEventConsumer(directory, tag_map, exporter.submit, segment=export.segment)
    try:
        consumer.start(scope, stop)
    finally:
        exporter.close()
    return exporter.health_metrics


def run_sync(
    directory: InventoryDirectory,
    resolver: TagMetadataResolver,
    client: IngestionClient,
    settings: SyncSettings,
    *,
    subscribe: bool = False,
    stop: threading.Event | None = None,
    on_snapshot: Callable[[SnapshotResult], None] | None = None,
) -> SnapshotResult:
    """Export the full snapshot, then follow changes when subscribe is set.

    Args:
        on_snapshot: Called with the snapshot result before subscribing

    Raises:
        ConnectivityError, DirectoryError, UploadError: Snapshot failures
        SubscriptionError: If the incremental pipeline's stream fails
    """
    scope = settings.vcenter.datacenter
    with run_context(datacenter=scope or "<only>"):
        tag_map = load_tag_map(resolver)
        snapshot = SnapshotExporter(directory, client, tag_map, segment=settings.export.segment).run(scope)
        if on_snapshot is not None:
            on_snapshot(snapshot)

        if subscribe:
            run_incremental(directory, client, tag_map, scope, settings.export, stop or threading.Event())
    return snapshot


@contextlib.contextmanager
def stop_on_signals(stop: threading.Event) -> Iterator[threading.Event]:
    """Set stop on SIGINT/SIGTERM while the block runs.

    After the first signal SIGINT reverts to KeyboardInterrupt, so a second
    Ctrl-C aborts without waiting for the final flush. Off the main thread
    no handlers can be installed and stop is only set by the caller.
    """
    if threading.current_thread() is not threading.main_thread():
        yield stop
        return

    def _handler(signum: int, frame: Any) -> None:
        logger.info("Stop requested", signal=signal.Signals(signum).name)
        stop.set()
        signal.signal(signal.SIGINT, signal.default_int_handler)

    previous = {sig: signal.signal(sig, _handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield stop
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)
