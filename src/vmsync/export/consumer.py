# src/vmsync/export/consumer.py
"""ChangeEventConsumer: turns change notifications into export rows.

Runs on the subscription thread. For each rename or tag change it
re-reads the instance, builds a row and hands it to on_row, which is
expected to be BatchExporter.submit (a bounded, normally non-blocking
enqueue).
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Sequence

import structlog

from vmsync.contracts.errors import ConnectivityError, DirectoryError, SubscriptionError
from vmsync.contracts.protocols import InventoryDirectory
from vmsync.contracts.records import ChangeKind, ChangeNotification, RowRecord, TagMap
from vmsync.export.formatting import DEFAULT_SEGMENT, build_row

logger = structlog.get_logger(__name__)

RELEVANT_KINDS = frozenset({ChangeKind.RENAMED, ChangeKind.TAG_CHANGED})


class ChangeEventConsumer:
    """Subscribe to change notifications and publish rows for affected instances.

    Per-notification problems (instance gone or unreachable, no address)
    skip that notification only. A failing subscription is fatal and
    surfaces as SubscriptionError from start().
    """

    def __init__(
        self,
        directory: InventoryDirectory,
        tag_map: TagMap,
        on_row: Callable[[RowRecord], None],
        *,
        segment: str = DEFAULT_SEGMENT,
    ) -> None:
        self._directory = directory
        self._tag_map = tag_map
        self._on_row = on_row
        self._segment = segment
        self.rows_published = 0

    def start(self, scope: str, stop: threading.Event) -> None:
        """Consume notifications for scope until stop is set.

        Blocks the calling thread.

        Raises:
            SubscriptionError: If the notification stream fails
        """
        logger.info("Subscribing to change events", scope=scope)
        try:
            self._directory.subscribe(scope, self.handle_batch, stop)
        except SubscriptionError:
            raise
        except Exception as e:
            raise SubscriptionError(f"Change subscription for '{scope}' failed: {e}") from e
        logger.info("Change subscription stopped", scope=scope, rows_published=self.rows_published)

    def handle_batch(self, notifications: Sequence[ChangeNotification]) -> int:
        """Process one delivered page of notifications in order.

        Returns:
            Number of rows published for this page
        """
        published = 0
        for notification in notifications:
            if notification.kind not in RELEVANT_KINDS or notification.ref is None:
                continue
            row = self._resolve(notification)
            if row is None:
                continue
            self._on_row(row)
            published += 1
            logger.info(
                "Found eligible event for instance",
                kind=notification.kind.value,
                instance=row.name,
                address=row.address,
                tags=row.tags,
            )
        self.rows_published += published
        return published

    def _resolve(self, notification: ChangeNotification) -> RowRecord | None:
        assert notification.ref is not None
        try:
            instance = self._directory.get_instance(notification.ref)
        except DirectoryError as e:
            logger.warning("Skipping change event, instance unreadable", ref=notification.ref, error=str(e))
            return None
        except ConnectivityError as e:
            # Lookup failures cost one row; only a broken event stream is fatal
            logger.warning("Skipping change event, instance lookup failed", ref=notification.ref, error=str(e))
            return None

        row = build_row(instance, self._tag_map, self._segment)
        if row is None:
            logger.debug("Skipping change event, instance has no address", ref=notification.ref, instance=instance.name)
        return row
