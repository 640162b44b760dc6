"""
Google Calendar API client used as the scheduler's calendar provider.

Reads busy intervals through the freeBusy endpoint and writes confirmed
reservations as events. Failures are classified as transient (429, 5xx,
network errors after retries) or permanent (other 4xx) so the batch
service can decide whether to degrade or fail.
"""

import asyncio
from datetime import datetime
from typing import Any

import httpx

from coffeechat.features.batch_scheduling.domain.errors import CalendarProviderError
from coffeechat.features.batch_scheduling.domain.models import TimeInterval
from coffeechat.infrastructure.observability.logging import get_logger
from coffeechat.models.domain.calendar_domain import CalendarEvent, parse_busy_periods

logger = get_logger(__name__)

CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
CALENDAR_PRIMARY = "primary"

REQUEST_TIMEOUT = 30  # seconds
MAX_RETRIES = 3
BACKOFF_FACTOR = 2
RETRY_STATUS_CODES = {429, 500, 502, 503, 504}


class GoogleCalendarError(CalendarProviderError):
    """Google Calendar API error with the provider's error details attached."""

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        status_code: int | None = None,
        response_data: dict | None = None,
        transient: bool | None = None,
    ):
        if transient is None:
            transient = status_code is None or status_code in RETRY_STATUS_CODES
        super().__init__(message, transient=transient, status_code=status_code)
        self.error_code = error_code
        self.response_data = response_data or {}


class GoogleCalendarService:
    """
    Calendar provider backed by the Google Calendar REST API.

    `account_ref` is a valid OAuth access token for the calendar owner.
    Token exchange and refresh happen elsewhere.
    """

    def __init__(self, backoff_factor: float = BACKOFF_FACTOR):
        self.backoff_factor = backoff_factor
        self._client = self._create_client()

    def _create_client(self) -> httpx.AsyncClient:
        timeout = httpx.Timeout(REQUEST_TIMEOUT)
        limits = httpx.Limits(max_keepalive_connections=20, max_connections=50)
        return httpx.AsyncClient(timeout=timeout, limits=limits)

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def _request_with_retry(self, method: str, url: str, **kwargs) -> httpx.Response:
        """Execute an HTTP request with retry and exponential backoff."""
        for attempt in range(1, MAX_RETRIES + 1):
            try:
                response = await self._client.request(method, url, **kwargs)
                if response.status_code in RETRY_STATUS_CODES and attempt < MAX_RETRIES:
                    backoff = self.backoff_factor * (2 ** (attempt - 1))
                    logger.debug(
                        "Calendar API retrying request",
                        attempt=attempt,
                        status_code=response.status_code,
                        backoff_seconds=backoff,
                    )
                    await asyncio.sleep(backoff)
                    continue
                return response
            except httpx.RequestError as e:
                if attempt >= MAX_RETRIES:
                    raise GoogleCalendarError(
                        f"Calendar API unreachable: {e}", error_code="network", transient=True
                    ) from e
                backoff = self.backoff_factor * (2 ** (attempt - 1))
                logger.debug(
                    "Calendar API request error, retrying",
                    attempt=attempt,
                    error=str(e),
                    backoff_seconds=backoff,
                )
                await asyncio.sleep(backoff)
        raise GoogleCalendarError("Calendar API retry loop exhausted", transient=True)

    def _get_auth_headers(self, access_token: str) -> dict:
        return {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def _handle_api_response(self, response: httpx.Response, operation: str) -> dict:
        """
        Validate a Calendar API response.

        Raises:
            GoogleCalendarError: If the response is not a success
        """
        if response.is_success:
            try:
                return response.json() if response.text else {}
            except ValueError as e:
                logger.error("Invalid Calendar API response body", operation=operation)
                raise GoogleCalendarError(f"Invalid response format: {e}", transient=False) from e

        try:
            error_data = response.json() if response.text else {}
        except ValueError:
            error_data = {}

        error_info = error_data.get("error", {}) if isinstance(error_data, dict) else {}
        error_code = str(error_info.get("code", response.status_code))
        error_message = error_info.get("message", "Unknown Calendar API error")

        logger.error(
            "Calendar API request failed",
            operation=operation,
            status_code=response.status_code,
            error_code=error_code,
            error_message=error_message,
        )
        raise GoogleCalendarError(
            self._map_calendar_error(error_code, error_message),
            error_code=error_code,
            status_code=response.status_code,
            response_data=error_data,
        )

    def _map_calendar_error(self, error_code: str, error_message: str) -> str:
        error_mappings = {
            "400": "Invalid calendar request format.",
            "401": "Calendar authorization expired. Please reconnect.",
            "403": "Calendar access denied. Please check permissions.",
            "404": "Calendar not found.",
            "429": "Too many calendar requests. Please try again later.",
            "500": "Google Calendar service temporarily unavailable.",
        }
        return error_mappings.get(error_code, f"Calendar error: {error_message}")

    async def get_busy_intervals(
        self,
        account_ref: str,
        start: datetime,
        end: datetime,
        calendar_id: str = CALENDAR_PRIMARY,
    ) -> list[TimeInterval]:
        """
        Busy intervals for one calendar in [start, end).

        Raises:
            GoogleCalendarError: transient or permanent provider failure
        """
        url = f"{CALENDAR_API_BASE_URL}/freeBusy"
        query = {
            "timeMin": start.isoformat(),
            "timeMax": end.isoformat(),
            "items": [{"id": calendar_id}],
        }

        response = await self._request_with_retry(
            "POST", url, headers=self._get_auth_headers(account_ref), json=query
        )
        data = self._handle_api_response(response, "free_busy")

        calendar = data.get("calendars", {}).get(calendar_id, {})
        if calendar.get("errors"):
            reasons = [error.get("reason", "unknown") for error in calendar["errors"]]
            raise GoogleCalendarError(
                f"Calendar returned errors: {', '.join(reasons)}",
                error_code=reasons[0],
                transient="backendError" in reasons,
            )

        intervals = parse_busy_periods(calendar.get("busy", []))
        logger.debug("Busy intervals fetched", calendar_id=calendar_id, count=len(intervals))
        return intervals

    async def create_event(
        self,
        account_ref: str,
        interval: TimeInterval,
        attendee: str | None,
        summary: str,
        timezone_str: str = "UTC",
        description: str = "",
        calendar_id: str = CALENDAR_PRIMARY,
    ) -> str:
        """
        Create an event for a confirmed reservation.

        Returns:
            The provider's event id
        """
        url = f"{CALENDAR_API_BASE_URL}/calendars/{calendar_id}/events"
        event_data: dict[str, Any] = {
            "summary": summary,
            "description": description,
            "start": {"dateTime": interval.start.isoformat(), "timeZone": timezone_str},
            "end": {"dateTime": interval.end.isoformat(), "timeZone": timezone_str},
        }
        if attendee:
            event_data["attendees"] = [{"email": attendee}]

        response = await self._request_with_retry(
            "POST", url, headers=self._get_auth_headers(account_ref), json=event_data
        )
        event = CalendarEvent(self._handle_api_response(response, "create_event"))
        if not event.id:
            raise GoogleCalendarError("Calendar API returned an event without id", transient=False)

        logger.info("Calendar event created", event_id=event.id, start=interval.start.isoformat())
        return event.id

    async def health_check(self) -> dict[str, Any]:
        health_data = {
            "healthy": True,
            "service": "google_calendar",
            "api_base_url": CALENDAR_API_BASE_URL,
            "request_timeout": REQUEST_TIMEOUT,
            "max_retries": MAX_RETRIES,
        }
        try:
            response = await self._client.request("HEAD", CALENDAR_API_BASE_URL, timeout=5.0)
            reachable = response.status_code in (200, 401, 403, 404)
            health_data["api_connectivity"] = (
                "ok" if reachable else f"error_{response.status_code}"
            )
        except httpx.RequestError as e:
            health_data["api_connectivity"] = f"error_{type(e).__name__}"
            health_data["healthy"] = False
        return health_data


# Singleton instance for application use
google_calendar_service = GoogleCalendarService()
