# src/vmsync/export/snapshot.py
"""SnapshotExporter: one-shot full inventory export.

Fetches every instance in scope, builds rows for instances with an
address, sorts them by name and uploads the whole set once with replace
semantics. Any fetch error aborts the run before anything is uploaded.
"""

from __future__ import annotations

import structlog

from vmsync.contracts.protocols import IngestionClient, InventoryDirectory
from vmsync.contracts.records import RowRecord, SnapshotResult, TagMap
from vmsync.export.formatting import DEFAULT_SEGMENT, build_row, serialize_rows

logger = structlog.get_logger(__name__)


class SnapshotExporter:
    """Export the full inventory of a scope in a single replace upload.

    Example:
        >>> exporter = SnapshotExporter(directory, client, tag_map)
        >>> result = exporter.run("DC1")
        >>> result.rows_exported
        42
    """

    def __init__(
        self,
        directory: InventoryDirectory,
        client: IngestionClient,
        tag_map: TagMap,
        *,
        segment: str = DEFAULT_SEGMENT,
    ) -> None:
        self._directory = directory
        self._client = client
        self._tag_map = tag_map
        self._segment = segment

    def collect(self, scope: str) -> list[RowRecord]:
        """Fetch instances in scope and build their rows, sorted by name.

        The sort is stable, so instances with equal names keep retrieval order.

        Raises:
            ConnectivityError: If the directory cannot be reached
            DirectoryError: If the scope cannot be listed
        """
        refs = self._directory.list_instances(scope)
        instances = self._directory.get_instances(refs) if refs else []
        logger.info("Instances found", scope=scope, count=len(instances))

        rows: list[RowRecord] = []
        for instance in sorted(instances, key=lambda i: i.name):
            row = build_row(instance, self._tag_map, self._segment)
            if row is None:
                logger.debug("Skipping instance without address", instance=instance.name, ref=instance.ref)
                continue
            rows.append(row)
        return rows

    def run(self, scope: str) -> SnapshotResult:
        """Collect and upload the full snapshot.

        Raises:
            ConnectivityError: If the directory or ingestion endpoint is unreachable
            DirectoryError: If the scope cannot be listed
            UploadError: If the ingestion platform rejects the upload
        """
        rows = self.collect(scope)
        payload = serialize_rows(rows)
        logger.info("Uploading inventory snapshot", rows=len(rows), bytes=len(payload))
        status = self._client.upload(payload, append=False)
        logger.info("Inventory snapshot uploaded", rows=len(rows), status=status)
        return SnapshotResult(rows_exported=len(rows), upload_status=status, rows=tuple(rows))
