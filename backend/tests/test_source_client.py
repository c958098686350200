"""Tests for the SIS HTTP client: auth header, pagination, retries, error mapping."""

from datetime import date

import httpx
import pytest

from attendance_sync.enums import SourceShape
from attendance_sync.errors import (
    FatalAuthError,
    SourceRequestError,
    TransientNetworkError,
    UnsupportedEndpoint,
)
from attendance_sync.sources.client import SISClient


def test_sends_certificate_header_and_date_params(sis_client, fake_sis):
    fake_sis.on("/schools/001/attendance", [])

    response = sis_client.fetch_attendance("001", date(2024, 8, 15), date(2024, 8, 16))

    request = fake_sis.calls[0]
    assert request.headers["AERIES-CERT"] == "test-cert"
    assert request.url.params["StartDate"] == "20240815"
    assert request.url.params["EndDate"] == "20240816"
    assert response.shape == SourceShape.DAY_LEVEL
    assert response.school_code == "001"
    assert response.school_year == "2024-2025"
    assert len(response) == 0


def test_history_shapes_use_school_year_paths(sis_client, fake_sis):
    fake_sis.on("/schools/001/AttendanceHistory/details/year/2024-2025", [{"StudentID": 1}])
    fake_sis.on("/schools/001/AttendanceHistory/summary", [{"StudentID": 1}, {"StudentID": 2}])

    details = sis_client.fetch_attendance("001", date(2024, 9, 1), date(2024, 9, 30), SourceShape.DETAIL_HISTORY)
    summary = sis_client.fetch_attendance("001", date(2024, 9, 1), date(2024, 9, 30), SourceShape.SUMMARY)

    assert len(details) == 1
    assert len(summary) == 2
    assert summary.shape == SourceShape.SUMMARY


def test_enrollment_follows_record_offsets(fake_sis, sleeps):
    pages = {1: [{"StudentID": 1}, {"StudentID": 2}], 3: [{"StudentID": 3}]}

    def students(request):
        start = int(request.url.params["StartingRecord"])
        return httpx.Response(200, json=pages.get(start, []))

    fake_sis.on("/schools/001/students", students)
    client = SISClient(
        base_url="https://sis.test/admin/api/v5",
        certificate="c",
        min_interval=0,
        page_size=2,
        transport=httpx.MockTransport(fake_sis),
        sleep=sleeps.append,
    )

    records = client.fetch_enrollment("001")

    assert [r["StudentID"] for r in records] == [1, 2, 3]
    assert [c.url.params["EndingRecord"] for c in fake_sis.calls] == ["2", "4"]


def _paged_client(fake_sis, sleeps, **kwargs):
    return SISClient(
        base_url="https://sis.test/admin/api/v5",
        certificate="c",
        min_interval=0,
        page_size=2,
        transport=httpx.MockTransport(fake_sis),
        sleep=sleeps.append,
        **kwargs,
    )


def test_enrollment_stops_when_offsets_are_ignored(fake_sis, sleeps):
    # Every request gets the same full first page back
    fake_sis.on("/schools/001/students", [{"StudentID": 1}, {"StudentID": 2}])

    records = _paged_client(fake_sis, sleeps).fetch_enrollment("001")

    assert [r["StudentID"] for r in records] == [1, 2]
    assert len(fake_sis.calls) == 2


def test_enrollment_page_cap_raises(fake_sis, sleeps):
    def students(request):
        start = int(request.url.params["StartingRecord"])
        return httpx.Response(200, json=[{"StudentID": start}, {"StudentID": start + 1}])

    fake_sis.on("/schools/001/students", students)

    with pytest.raises(SourceRequestError) as exc:
        _paged_client(fake_sis, sleeps, max_pages=3).fetch_enrollment("001")

    assert exc.value.details["pages"] == 3
    assert exc.value.details["records"] == 6
    assert len(fake_sis.calls) == 3


def test_retries_server_errors_then_succeeds(sis_client, fake_sis, sleeps):
    responses = iter([httpx.Response(503), httpx.Response(500), httpx.Response(200, json=[{"SchoolCode": "001"}])])
    fake_sis.on("/schools", lambda request: next(responses))

    schools = sis_client.fetch_schools()

    assert schools == [{"SchoolCode": "001"}]
    assert len(fake_sis.calls) == 3
    assert len(sleeps) == 2
    # Jittered exponential backoff: attempt 0 in [0.5, 1], attempt 1 in [1, 2]
    assert 0.5 <= sleeps[0] <= 1.0
    assert 1.0 <= sleeps[1] <= 2.0


def test_retry_after_header_is_honoured_up_to_cap(sis_client, fake_sis, sleeps):
    responses = iter([
        httpx.Response(429, headers={"Retry-After": "3"}),
        httpx.Response(429, headers={"Retry-After": "120"}),
        httpx.Response(200, json=[]),
    ])
    fake_sis.on("/schools", lambda request: next(responses))

    sis_client.fetch_schools()

    assert sleeps == [3.0, 8.0]


def test_exhausted_retries_raise_transient_error(sis_client, fake_sis, sleeps):
    fake_sis.on("/schools", lambda request: httpx.Response(502))

    with pytest.raises(TransientNetworkError) as exc:
        sis_client.fetch_schools()

    assert exc.value.retryable is True
    assert exc.value.details["attempts"] == 3
    assert len(fake_sis.calls) == 3
    # No sleep after the final attempt
    assert len(sleeps) == 2


def test_timeouts_are_retried(sis_client, fake_sis):
    def boom(request):
        raise httpx.ReadTimeout("timed out", request=request)

    fake_sis.on("/schools", boom)

    with pytest.raises(TransientNetworkError):
        sis_client.fetch_schools()
    assert len(fake_sis.calls) == 3


@pytest.mark.parametrize("status", [401, 403])
def test_auth_failures_are_fatal_and_not_retried(sis_client, fake_sis, status):
    fake_sis.on("/schools", lambda request: httpx.Response(status))

    with pytest.raises(FatalAuthError):
        sis_client.fetch_schools()
    assert len(fake_sis.calls) == 1


def test_missing_endpoint_is_unsupported(sis_client, fake_sis):
    with pytest.raises(UnsupportedEndpoint):
        sis_client.fetch_attendance("001", date(2024, 8, 15), date(2024, 8, 15))
    assert len(fake_sis.calls) == 1


def test_other_client_errors_are_not_retried(sis_client, fake_sis):
    fake_sis.on("/schools", lambda request: httpx.Response(400, text="bad request"))

    with pytest.raises(SourceRequestError) as exc:
        sis_client.fetch_schools()
    assert exc.value.details["status"] == 400
    assert len(fake_sis.calls) == 1


def test_non_json_body_is_a_request_error(sis_client, fake_sis):
    fake_sis.on("/schools", lambda request: httpx.Response(200, text="<html>maintenance</html>"))

    with pytest.raises(SourceRequestError):
        sis_client.fetch_schools()


def test_minimum_interval_between_requests(fake_sis, sleeps):
    fake_sis.on("/schools", [])
    # last-request mark, start, latency per call; second call checks elapsed first
    ticks = iter([10.0, 10.0, 10.05, 10.1, 10.5, 10.5, 10.55])
    client = SISClient(
        base_url="https://sis.test/admin/api/v5",
        certificate="c",
        min_interval=0.5,
        transport=httpx.MockTransport(fake_sis),
        sleep=sleeps.append,
        clock=lambda: next(ticks),
    )

    client.fetch_schools()
    client.fetch_schools()

    assert len(sleeps) == 1
    assert sleeps[0] == pytest.approx(0.4)
