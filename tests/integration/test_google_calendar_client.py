from datetime import UTC, datetime

import httpx
import pytest
import pytest_asyncio

from coffeechat.features.batch_scheduling.domain.models import TimeInterval
from coffeechat.services.calendar.google_client import (
    CALENDAR_API_BASE_URL,
    GoogleCalendarError,
    GoogleCalendarService,
)

FREE_BUSY_URL = f"{CALENDAR_API_BASE_URL}/freeBusy"
EVENTS_URL = f"{CALENDAR_API_BASE_URL}/calendars/primary/events"

START = datetime(2030, 3, 4, tzinfo=UTC)
END = datetime(2030, 3, 6, tzinfo=UTC)


@pytest_asyncio.fixture
async def calendar():
    service = GoogleCalendarService(backoff_factor=0)
    yield service
    await service.close()


@pytest.mark.asyncio
async def test_free_busy_parses_and_merges_periods(httpx_mock, calendar):
    httpx_mock.add_response(
        method="POST",
        url=FREE_BUSY_URL,
        json={
            "calendars": {
                "primary": {
                    "busy": [
                        {"start": "2030-03-04T14:00:00Z", "end": "2030-03-04T15:00:00Z"},
                        {"start": "2030-03-04T09:00:00Z", "end": "2030-03-04T10:00:00Z"},
                        {"start": "2030-03-04T09:30:00Z", "end": "2030-03-04T11:00:00Z"},
                    ]
                }
            }
        },
    )

    intervals = await calendar.get_busy_intervals("token-1", START, END)

    assert intervals == [
        TimeInterval(datetime(2030, 3, 4, 9, tzinfo=UTC), datetime(2030, 3, 4, 11, tzinfo=UTC)),
        TimeInterval(datetime(2030, 3, 4, 14, tzinfo=UTC), datetime(2030, 3, 4, 15, tzinfo=UTC)),
    ]
    request = httpx_mock.get_request()
    assert request.headers["Authorization"] == "Bearer token-1"


@pytest.mark.asyncio
async def test_forbidden_is_permanent(httpx_mock, calendar):
    httpx_mock.add_response(
        method="POST",
        url=FREE_BUSY_URL,
        status_code=403,
        json={"error": {"code": 403, "message": "Forbidden"}},
    )

    with pytest.raises(GoogleCalendarError) as exc_info:
        await calendar.get_busy_intervals("token-1", START, END)

    assert exc_info.value.transient is False
    assert exc_info.value.status_code == 403
    assert len(httpx_mock.get_requests()) == 1


@pytest.mark.asyncio
async def test_server_errors_are_retried_then_transient(httpx_mock, calendar):
    for _ in range(3):
        httpx_mock.add_response(method="POST", url=FREE_BUSY_URL, status_code=503)

    with pytest.raises(GoogleCalendarError) as exc_info:
        await calendar.get_busy_intervals("token-1", START, END)

    assert exc_info.value.transient is True
    assert len(httpx_mock.get_requests()) == 3


@pytest.mark.asyncio
async def test_retry_recovers_after_one_failure(httpx_mock, calendar):
    httpx_mock.add_response(method="POST", url=FREE_BUSY_URL, status_code=429)
    httpx_mock.add_response(
        method="POST", url=FREE_BUSY_URL, json={"calendars": {"primary": {"busy": []}}}
    )

    assert await calendar.get_busy_intervals("token-1", START, END) == []


@pytest.mark.asyncio
async def test_calendar_level_not_found_is_permanent(httpx_mock, calendar):
    httpx_mock.add_response(
        method="POST",
        url=FREE_BUSY_URL,
        json={"calendars": {"primary": {"errors": [{"domain": "global", "reason": "notFound"}]}}},
    )

    with pytest.raises(GoogleCalendarError) as exc_info:
        await calendar.get_busy_intervals("token-1", START, END)

    assert exc_info.value.transient is False
    assert exc_info.value.error_code == "notFound"


@pytest.mark.asyncio
async def test_create_event_returns_event_id(httpx_mock, calendar):
    httpx_mock.add_response(
        method="POST",
        url=EVENTS_URL,
        json={"id": "evt-42", "status": "confirmed"},
    )
    interval = TimeInterval(
        datetime(2030, 3, 5, 10, tzinfo=UTC), datetime(2030, 3, 5, 11, tzinfo=UTC)
    )

    event_id = await calendar.create_event(
        "token-1", interval, "alice@example.com", "Coffee chat with Alice"
    )

    assert event_id == "evt-42"
    body = httpx_mock.get_request().read()
    assert b"alice@example.com" in body


@pytest.mark.asyncio
async def test_health_check_reachable_api(httpx_mock, calendar):
    httpx_mock.add_response(method="HEAD", url=CALENDAR_API_BASE_URL, status_code=404)

    health = await calendar.health_check()

    assert health["healthy"] is True
    assert health["api_connectivity"] == "ok"


@pytest.mark.asyncio
async def test_health_check_unreachable_api(httpx_mock, calendar):
    httpx_mock.add_exception(httpx.ConnectError("connection refused"))

    health = await calendar.health_check()

    assert health["healthy"] is False
    assert health["api_connectivity"] == "error_ConnectError"
