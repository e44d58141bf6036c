from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from serviceai.config import settings
from serviceai.container import Services
from serviceai.models import Appointment, AppointmentStatus, Language, ToolCall
from serviceai.utils.business_hours import default_office_hours, load_zone
from serviceai.utils.logging import logger

NO_SLOTS = {
    Language.EN: "I'm sorry, there are no openings on {day}. Would another day work for you?",
    Language.ES: "Lo siento, no hay citas disponibles el {day}. ¿Le funcionaría otro día?",
}
SOME_SLOTS = {
    Language.EN: "On {day} we have openings at {times}.",
    Language.ES: "El {day} tenemos disponibilidad a las {times}.",
}


def _parse_date(value: Any, today: date) -> Optional[date]:
    if not value:
        return today
    text = str(value).strip().lower()
    if text in ("today", "hoy"):
        return today
    if text in ("tomorrow", "mañana", "manana"):
        return today + timedelta(days=1)
    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        return None


def _overlaps(start: datetime, end: datetime, appointment: Appointment) -> bool:
    booked_start = appointment.scheduled_start
    if booked_start.tzinfo is None:
        booked_start = booked_start.replace(tzinfo=timezone.utc)
    booked_end = booked_start + timedelta(minutes=appointment.duration_minutes)
    return start < booked_end and booked_start < end


def open_slots(
    day: date,
    tz_key: Optional[str],
    booked: List[Appointment],
    now: datetime,
    slot_minutes: Optional[int] = None
) -> List[datetime]:
    """Slot start times inside business hours that are free and not in the past"""
    zone = load_zone(tz_key)
    hours = default_office_hours()
    width = timedelta(minutes=slot_minutes or settings.appointment_slot_minutes)
    active = [a for a in booked if a.status != AppointmentStatus.CANCELLED]

    cursor = datetime.combine(day, hours.start, tzinfo=zone)
    close = datetime.combine(day, hours.end, tzinfo=zone)
    slots: List[datetime] = []
    while cursor + width <= close:
        if cursor > now and not any(_overlaps(cursor, cursor + width, a) for a in active):
            slots.append(cursor)
        cursor += width
    return slots


async def check_availability(services: Services, call: ToolCall) -> Dict[str, Any]:
    """Open appointment slots for a date (parameters: date, YYYY-MM-DD / today / tomorrow)"""
    if not call.organization_id:
        return {"success": False, "error": "Organization could not be resolved for this call"}
    organization = await services.persistence.get_organization(call.organization_id)
    if not organization:
        return {"success": False, "error": "Organization not found"}

    zone = load_zone(organization.timezone)
    now = services.clock()
    day = _parse_date(call.parameters.get("date"), now.astimezone(zone).date())
    if day is None:
        return {"success": False, "error": f"Invalid date: {call.parameters.get('date')}"}

    day_start = datetime.combine(day, datetime.min.time(), tzinfo=zone)
    booked = await services.persistence.list_appointments(
        organization.id,
        day_start.astimezone(timezone.utc),
        (day_start + timedelta(days=1)).astimezone(timezone.utc),
    )
    slots = open_slots(day, organization.timezone, booked, now)
    logger.info(f"📅 {len(slots)} open slot(s) on {day.isoformat()} for {organization.id}")

    labels = [slot.strftime("%I:%M %p").lstrip("0") for slot in slots]
    day_label = day.isoformat()
    if labels:
        message = SOME_SLOTS[call.language].format(day=day_label, times=", ".join(labels[:4]))
    else:
        message = NO_SLOTS[call.language].format(day=day_label)

    return {
        "success": True,
        "date": day_label,
        "timezone": zone.key,
        "available": bool(slots),
        "slots": [{"start": slot.isoformat(), "label": label} for slot, label in zip(slots, labels)],
        "message": message,
    }
