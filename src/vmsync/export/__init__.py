"""Export pipeline: tag formatting, snapshot export and incremental batching."""

from vmsync.export.batch import Batch, BatchExporter
from vmsync.export.consumer import ChangeEventConsumer
from vmsync.export.formatting import (
    DEFAULT_SEGMENT,
    HEADER,
    build_row,
    build_tag_map,
    format_tags,
    render_table,
    serialize_rows,
)
from vmsync.export.snapshot import SnapshotExporter

__all__ = [
    "DEFAULT_SEGMENT",
    "HEADER",
    "Batch",
    "BatchExporter",
    "ChangeEventConsumer",
    "SnapshotExporter",
    "build_row",
    "build_tag_map",
    "format_tags",
    "render_table",
    "serialize_rows",
]
