"""Google Calendar v3 client over the shared aiohttp session."""

import asyncio
from datetime import timedelta
from typing import Optional
from urllib.parse import quote
from zoneinfo import ZoneInfo

import aiohttp
from loguru import logger

from clinicflow.exceptions import Unavailable, ValidationError
from clinicflow.models import parse_local_datetime
from clinicflow.resilience import CircuitBreakerConfig, CircuitOpenError, get_circuit_breaker

CALENDAR_API = "https://www.googleapis.com/calendar/v3"
CALENDAR_TIMEOUT = 15
EVENT_DURATION = timedelta(hours=1)


class GoogleCalendarClient:
    def __init__(
        self,
        session: aiohttp.ClientSession,
        calendar_id: Optional[str],
        token: Optional[str],
        timezone_name: str,
        base_url: str = CALENDAR_API,
    ):
        self.session = session
        self.calendar_id = calendar_id
        self.token = token
        self.timezone_name = timezone_name
        self.tz = ZoneInfo(timezone_name)
        self.base_url = base_url.rstrip("/")
        self._enabled = bool(calendar_id and token)
        self.circuit = get_circuit_breaker("calendar", CircuitBreakerConfig(trip_on=(Unavailable,)))

    def is_enabled(self) -> bool:
        return self._enabled

    def build_event(
        self,
        patient_name: str,
        email: str,
        phone: str,
        date: str,
        time: str,
        visit_type: str,
        reason: str = "",
    ) -> dict:
        start = parse_local_datetime(date, time, self.tz)
        if start is None:
            raise ValidationError(f"Cannot schedule a calendar entry for '{date} {time}'")
        end = start + EVENT_DURATION
        event = {
            "summary": f"{patient_name} - {visit_type}",
            "description": (
                f"Patient: {patient_name}\nEmail: {email}\nPhone: {phone}\n"
                f"Reason: {reason or 'Not specified'}"
            ),
            "start": {"dateTime": start.isoformat(), "timeZone": self.timezone_name},
            "end": {"dateTime": end.isoformat(), "timeZone": self.timezone_name},
            "reminders": {
                "useDefault": False,
                "overrides": [
                    {"method": "email", "minutes": 24 * 60},
                    {"method": "popup", "minutes": 30},
                ],
            },
        }
        if email:
            event["attendees"] = [{"email": email}]
        return event

    async def create_event(self, event: dict) -> str:
        """Insert event and return the calendar's event id."""
        if not self._enabled:
            raise Unavailable("Google Calendar is not configured")

        try:
            data = await self.circuit.call(self._insert, event)
        except CircuitOpenError as e:
            raise Unavailable(str(e)) from e

        event_id = data.get("id", "")
        logger.info(f"Calendar event created: {event_id} ({event.get('summary', '')})")
        return event_id

    async def _insert(self, event: dict) -> dict:
        url = f"{self.base_url}/calendars/{quote(self.calendar_id, safe='')}/events"
        try:
            async with asyncio.timeout(CALENDAR_TIMEOUT):
                async with self.session.post(
                    url,
                    headers={
                        "Authorization": f"Bearer {self.token}",
                        "Content-Type": "application/json",
                    },
                    json=event,
                ) as response:
                    if response.status not in (200, 201):
                        error_text = await response.text()
                        raise Unavailable(f"Google Calendar error {response.status}: {error_text[:200]}")
                    data = await response.json()
        except asyncio.TimeoutError:
            raise Unavailable(f"Google Calendar timed out after {CALENDAR_TIMEOUT}s")
        except aiohttp.ClientError as e:
            raise Unavailable(f"Google Calendar unreachable: {e}") from e
        return data
