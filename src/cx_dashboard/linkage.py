"""cx_dashboard.linkage

Structural linkage of fragments derived from one source record.  No I/O.
"""

from __future__ import annotations

from cx_dashboard.field_mapper import MappedRecord


def link_record(mapped: MappedRecord, contact_id: str, activity_id: str | None = None) -> MappedRecord:
    """Attach foreign keys to the activity / survey fragments of one record.

    Every child gets contact_id.  A survey co-located with an activity in the
    same record points at that activity; otherwise its activity_id is None.
    """
    if mapped.activity is not None:
        mapped.activity["contact_id"] = contact_id
    if mapped.survey is not None:
        mapped.survey["contact_id"] = contact_id
        mapped.survey["activity_id"] = activity_id if mapped.activity is not None else None
    return mapped
