# src/vmsync/export/formatting.py
"""Tag formatting and CSV serialization for export rows.

Tag strings are ``name=value`` pairs joined by ``;`` with a trailing ``;``
after every pair, including the last one.

Pairs are ordered by (name, value) so that the same tag set always renders
to the same string regardless of the order the directory returned it in.
Repeated exports of an unchanged instance therefore produce byte-identical
rows.
"""

from __future__ import annotations

import csv
import io
from collections.abc import Iterable
from types import MappingProxyType

import structlog

from vmsync.contracts.records import FieldDefinition, InstanceRecord, RawTag, RowRecord, TagMap

logger = structlog.get_logger(__name__)

HEADER: tuple[str, ...] = ("IP", "VRF", "VM Name", "VM Tags")
TAG_SEPARATOR = ";"
DEFAULT_SEGMENT = "Default"


def build_tag_map(definitions: Iterable[FieldDefinition]) -> TagMap:
    """Build the read-only field id -> name mapping.

    Later definitions with the same id replace earlier ones.
    """
    return MappingProxyType({d.field_id: d.name for d in definitions})


def format_tags(raw_tags: Iterable[RawTag], tag_map: TagMap) -> str:
    """Render raw tags as a deterministic ``name=value;`` string.

    Tags whose field id has no entry in tag_map are skipped. Two tags that
    resolve to the same name are both emitted.

    Args:
        raw_tags: Custom field values from one instance
        tag_map: Field id -> field name mapping

    Returns:
        Formatted tag string, empty when no tag resolves
    """
    pairs: list[tuple[str, str]] = []
    for tag in raw_tags:
        name = tag_map.get(tag.field_id)
        if name is None:
            logger.debug("Skipping tag with unknown field id", field_id=tag.field_id)
            continue
        pairs.append((name, tag.value))

    pairs.sort()
    return "".join(f"{name}={value}{TAG_SEPARATOR}" for name, value in pairs)


def build_row(instance: InstanceRecord, tag_map: TagMap, segment: str = DEFAULT_SEGMENT) -> RowRecord | None:
    """Build the export row for an instance.

    Returns None when the instance has no address; such instances are
    never exported.
    """
    if not instance.address:
        return None
    return RowRecord(
        address=instance.address,
        segment=segment,
        name=instance.name,
        tags=format_tags(instance.tags, tag_map),
    )


def serialize_rows(rows: Iterable[RowRecord]) -> bytes:
    """Serialize rows as CSV with the fixed header row."""
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(HEADER)
    for row in rows:
        writer.writerow(row.as_row())
    return buf.getvalue().encode("utf-8")


def render_table(rows: Iterable[RowRecord]) -> str:
    """Render rows as an aligned text table for console output."""
    lines = [(row.address, row.name, row.tags) for row in rows]
    if not lines:
        return ""
    addr_width = max(len(address) for address, _, _ in lines)
    name_width = max(len(name) for _, name, _ in lines)
    out = []
    for address, name, tags in lines:
        out.append(f"{address:<{addr_width}}  {name:<{name_width}}  {tags}".rstrip())
    return "\n".join(out)
