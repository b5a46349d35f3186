# careportal/routers/slots.py
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from typing import Optional
from datetime import date

from .. import schemas, models
from ..config import get_settings
from ..database import get_db
from ..errors import CarePortalError, to_http_exception
from ..models import EventType, ProfileRole
from ..security import get_current_user
from ..services import booking_service
from ..services.slot_service import RESOURCE_BOUND_KINDS

router = APIRouter(
    prefix="/slots",
    tags=["slots"],
    dependencies=[Depends(get_current_user)],
    responses={404: {"description": "Not found"}},
)


@router.get("/{target_date}", response_model=schemas.SlotAvailabilityResponse)
def get_available_slots(
    target_date: date,
    duration: Optional[int] = Query(None, description="Requested length in minutes"),
    doctor_id: Optional[str] = None,
    event_type: Optional[EventType] = None,
    exclude_id: Optional[str] = Query(None, description="Consultation being edited"),
    db: Session = Depends(get_db),
    current_user: models.Profile = Depends(get_current_user),
):
    """
    Bookable slots for a business day.
    Consultations need a doctor; without one every slot is reported unavailable.
    A patient's own consultations with other doctors also block their slots.
    """
    settings = get_settings()
    duration = duration if duration is not None else settings.default_appointment_minutes
    if current_user.role == ProfileRole.doctor and not doctor_id:
        doctor_id = current_user.id
    patient_id = current_user.id if current_user.role == ProfileRole.patient else None
    kind = event_type or EventType.consultation

    try:
        slots = booking_service.slots_for_day(
            db, target_date, duration,
            doctor_id=doctor_id,
            patient_id=patient_id,
            event_type=kind,
            exclude_id=exclude_id,
            settings=settings,
        )
    except CarePortalError as e:
        raise to_http_exception(e)

    return schemas.SlotAvailabilityResponse(
        day=target_date,
        doctor_id=doctor_id,
        duration_minutes=duration,
        requires_doctor=kind in RESOURCE_BOUND_KINDS,
        timezone=settings.clinic_timezone,
        slots=[
            schemas.SlotResponse(
                start=slot.interval.start,
                end=slot.interval.end,
                grid_end=slot.grid.end,
                available=slot.available,
                blocking_entry_ids=list(slot.blocking_entry_ids),
            )
            for slot in slots
        ],
    )
