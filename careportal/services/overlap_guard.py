# careportal/services/overlap_guard.py
from datetime import tzinfo
from typing import Iterable, List, Optional

from .slot_service import BusyEntry
from .time_window import TimeInterval, overlaps


def find_conflicts(
    candidate: TimeInterval,
    resource_id: str,
    existing: Iterable[BusyEntry],
    exclude_id: Optional[str] = None,
) -> List[BusyEntry]:
    """Entries of the same doctor that overlap ``candidate``, minus the one being edited."""
    return [
        entry for entry in existing
        if entry.resource_id == resource_id
        and not (exclude_id is not None and entry.id == exclude_id)
        and overlaps(candidate, entry.interval)
    ]


def check_conflict(
    candidate: TimeInterval,
    resource_id: str,
    existing: Iterable[BusyEntry],
    exclude_id: Optional[str] = None,
) -> bool:
    return bool(find_conflicts(candidate, resource_id, existing, exclude_id))


def describe_conflict(conflicts: List[BusyEntry], tz: tzinfo) -> str:
    """User-facing message naming the first clashing interval."""
    if not conflicts:
        return ""
    first = min(conflicts, key=lambda e: e.interval.start)
    start = first.interval.start.astimezone(tz).strftime("%H:%M")
    end = first.interval.end.astimezone(tz).strftime("%H:%M")
    what = "blocked time" if first.kind == "blocked" else "an existing appointment"
    message = f"The selected time overlaps {what} from {start} to {end}. Please choose another slot."
    if len(conflicts) > 1:
        message += f" ({len(conflicts)} conflicting entries)"
    return message
