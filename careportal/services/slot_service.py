# careportal/services/slot_service.py
"""Bookable slot computation for a doctor's business day.

Everything here is pure: callers fetch consultation rows, turn them into
``BusyEntry`` values with ``busy_entries_from_consultations`` and ask
``available_slots`` for the grid. Nothing is persisted.
"""
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from enum import Enum
from typing import Iterable, List, Optional, Sequence, Tuple

import structlog

from ..errors import InputValidationError
from ..models import ConsultationStatus, EventType
from .time_window import TimeInterval, add_minutes, local_datetime, overlaps

logger = structlog.get_logger(__name__)


class BusyKind(str, Enum):
    appointment = "appointment"
    blocked = "blocked"


@dataclass(frozen=True)
class BusyEntry:
    id: str
    interval: TimeInterval
    resource_id: Optional[str]
    kind: BusyKind = BusyKind.appointment
    counter_party_id: Optional[str] = None


@dataclass(frozen=True)
class SlotGridConfig:
    open_hour: int = 8
    close_hour: int = 20
    granularity_minutes: int = 30
    tz: tzinfo = timezone.utc

    @classmethod
    def from_settings(cls, settings) -> "SlotGridConfig":
        return cls(
            open_hour=settings.business_open_hour,
            close_hour=settings.business_close_hour,
            granularity_minutes=settings.slot_granularity_minutes,
            tz=settings.clinic_tz,
        )

    @property
    def slot_count(self) -> int:
        return (self.close_hour - self.open_hour) * 60 // self.granularity_minutes


@dataclass(frozen=True)
class Slot:
    grid: TimeInterval
    interval: TimeInterval
    available: bool
    blocking_entry_ids: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def start(self) -> datetime:
        return self.grid.start


# First match wins; an explicit event_type always takes precedence
_TITLE_KEYWORDS = (
    (("consultation",), EventType.consultation),
    (("blocked", "break", "lunch", "unavailable"), EventType.blocked),
    (("follow",), EventType.followup),
    (("meeting", "meet"), EventType.meeting),
    (("reminder",), EventType.reminder),
)

# Kinds that must name the doctor and the patient
RESOURCE_BOUND_KINDS = frozenset({EventType.consultation, EventType.followup})


def infer_event_kind(title: Optional[str], explicit: Optional[EventType] = None) -> EventType:
    if explicit:
        return EventType(explicit)
    lowered = (title or "").lower()
    for keywords, kind in _TITLE_KEYWORDS:
        if any(word in lowered for word in keywords):
            return kind
    return EventType.consultation


def generate_slot_grid(day: date, config: SlotGridConfig) -> List[TimeInterval]:
    """Fixed-width candidate intervals from opening to closing hour."""
    start = local_datetime(day, time(hour=config.open_hour), config.tz)
    return [
        TimeInterval.from_duration(add_minutes(start, i * config.granularity_minutes), config.granularity_minutes)
        for i in range(config.slot_count)
    ]


def _applicable_entries(
    entries: Sequence[BusyEntry],
    resource_filter: Optional[str],
    patient_id: Optional[str],
    exclude_entry_id: Optional[str],
) -> List[BusyEntry]:
    applicable = []
    for entry in entries:
        if exclude_entry_id is not None and entry.id == exclude_entry_id:
            continue
        if resource_filter is None:
            applicable.append(entry)
        elif entry.resource_id == resource_filter:
            applicable.append(entry)
        elif patient_id is not None and entry.counter_party_id == patient_id:
            # The patient cannot be in two consultations at once
            applicable.append(entry)
    return applicable


def available_slots(
    day: date,
    duration_minutes: int,
    busy_entries: Iterable[BusyEntry],
    resource_filter: Optional[str] = None,
    requires_resource: bool = False,
    patient_id: Optional[str] = None,
    exclude_entry_id: Optional[str] = None,
    config: Optional[SlotGridConfig] = None,
) -> List[Slot]:
    """Mark every grid slot for ``day`` as available or blocked.

    Each grid slot is extended to ``duration_minutes`` from its start and
    tested against the busy entries that apply. A slot whose extended
    interval runs past closing time is still offered.

    When ``requires_resource`` is set and no doctor was selected, every slot
    is reported unavailable so the caller forces an explicit choice.
    """
    if duration_minutes is None or duration_minutes <= 0:
        raise InputValidationError({"duration_minutes": "Duration must be a positive number of minutes."})

    config = config or SlotGridConfig()
    grid = generate_slot_grid(day, config)

    if requires_resource and not resource_filter:
        return [Slot(grid=cell, interval=TimeInterval.from_duration(cell.start, duration_minutes), available=False)
                for cell in grid]

    entries = _applicable_entries(list(busy_entries), resource_filter, patient_id, exclude_entry_id)
    slots = []
    for cell in grid:
        extended = TimeInterval.from_duration(cell.start, duration_minutes)
        blocking = tuple(entry.id for entry in entries if overlaps(extended, entry.interval))
        slots.append(Slot(grid=cell, interval=extended, available=not blocking, blocking_entry_ids=blocking))

    logger.debug("slots_computed",
        day=day.isoformat(),
        resource_id=resource_filter,
        duration_minutes=duration_minutes,
        available=sum(1 for s in slots if s.available))
    return slots


def is_selection_available(slots: Sequence[Slot], selected_start: Optional[datetime]) -> bool:
    """False when a previously chosen start time is no longer bookable."""
    if selected_start is None:
        return False
    return any(slot.available and slot.start == selected_start for slot in slots)


def consultation_interval(row, tz: tzinfo, default_minutes: int) -> TimeInterval:
    """Interval covered by a consultation row.

    End time wins over duration; without either the default length is used.
    """
    start = local_datetime(row.consultation_date, row.consultation_time, tz)
    if row.end_time is not None:
        end = local_datetime(row.consultation_date, row.end_time, tz)
        if end <= start:
            end += timedelta(days=1)
        return TimeInterval(start, end)
    minutes = row.duration_minutes if row.duration_minutes and row.duration_minutes > 0 else default_minutes
    return TimeInterval.from_duration(start, minutes)


def busy_entries_from_consultations(rows: Iterable, tz: tzinfo, default_minutes: int = 30) -> List[BusyEntry]:
    entries = []
    for row in rows:
        if row.status == ConsultationStatus.cancelled:
            continue
        entries.append(BusyEntry(
            id=row.id,
            interval=consultation_interval(row, tz, default_minutes),
            resource_id=row.doctor_id,
            kind=BusyKind.blocked if row.patient_id is None else BusyKind.appointment,
            counter_party_id=row.patient_id,
        ))
    return entries
