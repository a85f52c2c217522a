"""
Meeting scheduler for 30-minute consultations.

Slots run from 09:00 to 16:30 on weekdays. Bookings live in process memory;
a calendar integration would replace this class behind the same methods.
"""

from typing import Dict, Any, List, Optional
from datetime import date, datetime
import asyncio
import uuid
import structlog

from session_core.domain.models.errors import ValidationError

logger = structlog.get_logger(__name__)

WORKING_DAYS = {0, 1, 2, 3, 4}  # Monday to Friday
MEETING_DURATION_MINUTES = 30
TIME_SLOTS = [
    f"{hour:02d}:{minute:02d}"
    for hour in range(9, 17)
    for minute in (0, 30)
]


class MeetingScheduler:
    """Books consultation slots and rejects double bookings"""

    def __init__(self, today: Optional[date] = None):
        self._today = today
        self.meetings: Dict[str, Dict[str, Any]] = {}
        self._booked: Dict[str, str] = {}
        self._lock = asyncio.Lock()

    def today(self) -> date:
        return self._today or datetime.utcnow().date()

    @staticmethod
    def _parse_date(value: str) -> date:
        try:
            return date.fromisoformat(value)
        except ValueError:
            raise ValidationError(f"Invalid date '{value}', expected YYYY-MM-DD")

    def _check_slot(self, day: date, time_slot: str):
        if day < self.today():
            raise ValidationError("Meetings cannot be booked in the past")
        if day.weekday() not in WORKING_DAYS:
            raise ValidationError("Meetings can only be booked on weekdays")
        if time_slot not in TIME_SLOTS:
            raise ValidationError(f"'{time_slot}' is not a bookable slot")

    async def available_slots(self, day_value: str) -> List[str]:
        """Free slots for a day"""

        day = self._parse_date(day_value)
        if day < self.today() or day.weekday() not in WORKING_DAYS:
            return []
        async with self._lock:
            return [slot for slot in TIME_SLOTS if f"{day.isoformat()}T{slot}" not in self._booked]

    async def book(
        self,
        name: str,
        email: str,
        preferred_date: str,
        preferred_time: str,
        time_zone: str = "UTC",
        company: Optional[str] = None,
        notes: Optional[str] = None,
        lead_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Book a slot; raises ValidationError when it is invalid or taken"""

        day = self._parse_date(preferred_date)
        self._check_slot(day, preferred_time)
        slot_key = f"{day.isoformat()}T{preferred_time}"

        async with self._lock:
            if slot_key in self._booked:
                raise ValidationError(f"The slot {preferred_date} {preferred_time} is no longer available")

            meeting_id = f"mtg_{uuid.uuid4().hex[:12]}"
            meeting = {
                "id": meeting_id,
                "lead_id": lead_id,
                "name": name,
                "email": email,
                "company": company,
                "meeting_date": day.isoformat(),
                "meeting_time": preferred_time,
                "time_zone": time_zone,
                "duration_minutes": MEETING_DURATION_MINUTES,
                "status": "scheduled",
                "meeting_link": f"https://meet.example.com/{meeting_id}",
                "notes": notes,
                "created_at": datetime.utcnow().isoformat(),
            }
            self.meetings[meeting_id] = meeting
            self._booked[slot_key] = meeting_id

        logger.info("Meeting booked", meeting_id=meeting_id, meeting_date=meeting["meeting_date"], meeting_time=preferred_time)
        return dict(meeting)
