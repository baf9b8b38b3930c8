"""
Google Calendar Service
Read-only lookup of busy intervals on the studio calendar
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Optional, Protocol

import httpx

from ..config import (
    APPOINTMENT_DURATION_MINUTES,
    CALENDAR_TIMEOUT_SECONDS,
    GOOGLE_CALENDAR_ID,
    GOOGLE_CLIENT_ID,
    GOOGLE_CLIENT_SECRET,
    GOOGLE_REFRESH_TOKEN,
)
from ..domain.scheduling.time_calculator import day_bounds_utc, utcnow

logger = logging.getLogger(__name__)

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_CALENDAR_API = "https://www.googleapis.com/calendar/v3"


class CalendarGatewayError(Exception):
    """Calendar lookup failed (network, auth, timeout or bad response)"""


@dataclass(frozen=True)
class BusyInterval:
    start: datetime
    end: datetime

    def starts_at(self, instant: datetime) -> bool:
        return self.start == instant

    def contains(self, instant: datetime) -> bool:
        return self.start <= instant < self.end or instant == self.start


class ExternalCalendarGateway(Protocol):
    async def get_busy_intervals(self, day: date) -> list[BusyInterval]: ...


class NullCalendarGateway:
    """Used when no calendar credentials are configured"""

    async def get_busy_intervals(self, day: date) -> list[BusyInterval]:
        return []


class GoogleCalendarGateway:
    """
    Fetches timed events for a business-local day via the Calendar REST API.

    Access tokens come from the OAuth refresh-token grant and are reused until
    five minutes before they expire.
    """

    def __init__(
        self,
        client_id: Optional[str] = GOOGLE_CLIENT_ID,
        client_secret: Optional[str] = GOOGLE_CLIENT_SECRET,
        refresh_token: Optional[str] = GOOGLE_REFRESH_TOKEN,
        calendar_id: str = GOOGLE_CALENDAR_ID,
        timeout: float = CALENDAR_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.refresh_token = refresh_token
        self.calendar_id = calendar_id or "primary"
        self.timeout = timeout
        self.transport = transport
        self._access_token: Optional[str] = None
        self._token_expires_at: Optional[datetime] = None

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret and self.refresh_token)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self.transport)

    async def _get_access_token(self, client: httpx.AsyncClient) -> str:
        if (
            self._access_token
            and self._token_expires_at
            and self._token_expires_at > utcnow() + timedelta(minutes=5)
        ):
            return self._access_token

        logger.info("🔄 Refreshing Google Calendar access token...")
        response = await client.post(
            GOOGLE_TOKEN_URL,
            data={
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "refresh_token": self.refresh_token,
                "grant_type": "refresh_token",
            },
        )
        if response.status_code != 200:
            raise CalendarGatewayError(f"Token refresh failed: {response.status_code}")

        tokens = response.json()
        access_token = tokens.get("access_token")
        if not access_token:
            raise CalendarGatewayError("No access token in refresh response")

        self._access_token = access_token
        self._token_expires_at = utcnow() + timedelta(seconds=int(tokens.get("expires_in", 3600)))
        return access_token

    async def get_busy_intervals(self, day: date) -> list[BusyInterval]:
        if not self.is_configured:
            return []

        time_min, time_max = day_bounds_utc(day)
        try:
            async with self._client() as client:
                access_token = await self._get_access_token(client)
                response = await client.get(
                    f"{GOOGLE_CALENDAR_API}/calendars/{self.calendar_id}/events",
                    headers={"Authorization": f"Bearer {access_token}"},
                    params={
                        "timeMin": time_min.isoformat(),
                        "timeMax": time_max.isoformat(),
                        "singleEvents": "true",
                        "orderBy": "startTime",
                    },
                )
        except httpx.HTTPError as e:
            raise CalendarGatewayError(f"Calendar request failed: {e}") from e

        if response.status_code != 200:
            raise CalendarGatewayError(f"Calendar events.list returned {response.status_code}")

        intervals = []
        for event in response.json().get("items", []):
            if event.get("status") == "cancelled":
                continue
            start = (event.get("start") or {}).get("dateTime")
            end = (event.get("end") or {}).get("dateTime")
            # All-day events carry only a date and do not block slots
            if not start:
                continue
            try:
                start_dt = datetime.fromisoformat(start.replace("Z", "+00:00"))
                if end:
                    end_dt = datetime.fromisoformat(end.replace("Z", "+00:00"))
                else:
                    # Open-ended events block one appointment length
                    end_dt = start_dt + timedelta(minutes=APPOINTMENT_DURATION_MINUTES)
            except ValueError:
                logger.warning(f"⚠️ Skipping calendar event with unparseable times: {start!r}")
                continue
            intervals.append(BusyInterval(start=start_dt, end=end_dt))

        logger.info(f"📅 Found {len(intervals)} calendar events for {day.isoformat()}")
        return intervals


def get_calendar_gateway() -> ExternalCalendarGateway:
    """FastAPI dependency"""
    return _default_gateway


_default_gateway: ExternalCalendarGateway = (
    GoogleCalendarGateway() if GOOGLE_CLIENT_ID and GOOGLE_REFRESH_TOKEN else NullCalendarGateway()
)
