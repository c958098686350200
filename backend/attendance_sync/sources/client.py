"""HTTP client for the source Student Information System.

All endpoints live under ``/admin/api/v5`` and authenticate with a
certificate header. The client owns three concerns only:

- a fixed minimum interval between requests (upstream rate limit),
- retries with capped, jittered exponential backoff on 429/5xx/timeouts,
- mapping HTTP outcomes onto the pipeline error taxonomy.

It keeps no state beyond the time of the last request.
"""

import logging
import random
import time
from datetime import date
from typing import Any, Callable

import httpx

from attendance_sync.config import get_settings
from attendance_sync.enums import SourceShape
from attendance_sync.errors import (
    FatalAuthError,
    SourceRequestError,
    TransientNetworkError,
    UnsupportedEndpoint,
)
from attendance_sync.sources.shapes import SourceResponse, attendance_path, school_year_for

logger = logging.getLogger(__name__)

RETRYABLE_STATUSES = {429, 500, 502, 503, 504}


class SISClient:
    """Rate-limited, retrying client for the SIS admin API."""

    def __init__(
        self,
        base_url: str | None = None,
        certificate: str | None = None,
        *,
        cert_header: str | None = None,
        timeout: float | None = None,
        min_interval: float | None = None,
        max_attempts: int | None = None,
        backoff_base: float | None = None,
        backoff_max: float | None = None,
        page_size: int | None = None,
        max_pages: int | None = None,
        school_year_start_month: int | None = None,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        settings = get_settings()
        self.base_url = (base_url or settings.sis_base_url).rstrip("/")
        self.min_interval = settings.sis_min_request_interval if min_interval is None else min_interval
        self.max_attempts = max_attempts or settings.sis_max_attempts
        self.backoff_base = settings.sis_backoff_base if backoff_base is None else backoff_base
        self.backoff_max = settings.sis_backoff_max if backoff_max is None else backoff_max
        self.page_size = page_size or settings.sis_page_size
        self.max_pages = max_pages or settings.sis_max_pages
        self.school_year_start_month = school_year_start_month or settings.school_year_start_month
        self._sleep = sleep
        self._clock = clock
        self._last_request_at: float | None = None

        header = cert_header or settings.sis_cert_header
        self._client = httpx.Client(
            base_url=self.base_url,
            timeout=settings.sis_request_timeout if timeout is None else timeout,
            headers={
                header: certificate if certificate is not None else settings.sis_certificate,
                "Accept": "application/json",
            },
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "SISClient":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Public endpoints
    # ------------------------------------------------------------------

    def fetch_schools(self) -> list[dict]:
        """List schools known to the SIS."""
        return self._as_list(self._request("/schools"), "/schools")

    def fetch_enrollment(self, school_code: str) -> list[dict]:
        """All enrolled students for a school, following record-offset pagination."""
        return self._paginate(f"/schools/{school_code}/students")

    def fetch_attendance(
        self,
        school_code: str,
        start: date,
        end: date,
        shape: SourceShape = SourceShape.DAY_LEVEL,
    ) -> SourceResponse:
        """Attendance for a school and date range from one endpoint family.

        Raises UnsupportedEndpoint when the SIS does not expose ``shape``.
        """
        school_year = school_year_for(start, self.school_year_start_month)
        path = attendance_path(shape, school_code, school_year)
        params = None
        if shape == SourceShape.DAY_LEVEL:
            params = {"StartDate": start.strftime("%Y%m%d"), "EndDate": end.strftime("%Y%m%d")}

        records = self._as_list(self._request(path, params=params), path)
        return SourceResponse(
            shape=shape,
            school_code=school_code,
            records=records,
            start_date=start,
            end_date=end,
            school_year=school_year,
        )

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _wait_for_rate_limit(self) -> None:
        """Block until the minimum interval since the last request has passed."""
        if self._last_request_at is not None:
            elapsed = self._clock() - self._last_request_at
            if elapsed < self.min_interval:
                self._sleep(self.min_interval - elapsed)
        self._last_request_at = self._clock()

    def _backoff_delay(self, attempt: int, retry_after: str | None = None) -> float:
        """Delay before retry number ``attempt`` (0-based): base * 2^attempt, capped, jittered."""
        if retry_after:
            try:
                return min(float(retry_after), self.backoff_max)
            except ValueError:
                pass
        delay = min(self.backoff_base * (2 ** attempt), self.backoff_max)
        return random.uniform(delay / 2, delay)

    def _request(self, path: str, params: dict[str, Any] | None = None) -> Any:
        last_error = None

        for attempt in range(self.max_attempts):
            self._wait_for_rate_limit()
            started = self._clock()
            retry_after = None

            try:
                response = self._client.get(path, params=params)
            except (httpx.TimeoutException, httpx.TransportError) as e:
                latency_ms = round((self._clock() - started) * 1000, 1)
                last_error = f"{type(e).__name__}: {e}"
                logger.warning(
                    f"SIS request {path} failed on attempt {attempt + 1}/{self.max_attempts}: {last_error}",
                    extra={"endpoint": path, "status": None, "latency_ms": latency_ms, "attempt": attempt + 1},
                )
            else:
                latency_ms = round((self._clock() - started) * 1000, 1)
                status = response.status_code

                if status in (401, 403):
                    self._log_request(path, status, latency_ms, None, attempt)
                    raise FatalAuthError(
                        f"SIS rejected credentials for {path} (HTTP {status})",
                        details={"endpoint": path, "status": status},
                    )

                if status == 404:
                    self._log_request(path, status, latency_ms, None, attempt)
                    raise UnsupportedEndpoint(
                        f"SIS endpoint not available: {path}",
                        details={"endpoint": path, "status": status},
                    )

                if status in RETRYABLE_STATUSES:
                    self._log_request(path, status, latency_ms, None, attempt)
                    last_error = f"HTTP {status}"
                    retry_after = response.headers.get("Retry-After")
                elif status >= 400:
                    self._log_request(path, status, latency_ms, None, attempt)
                    raise SourceRequestError(
                        f"SIS request {path} failed with HTTP {status}",
                        details={"endpoint": path, "status": status, "body": response.text[:500]},
                    )
                else:
                    try:
                        data = response.json()
                    except ValueError as e:
                        raise SourceRequestError(
                            f"SIS returned a non-JSON body for {path}",
                            details={"endpoint": path, "status": status, "error": str(e)},
                        ) from e
                    count = len(data) if isinstance(data, list) else 1
                    self._log_request(path, status, latency_ms, count, attempt)
                    return data

            if attempt + 1 < self.max_attempts:
                self._sleep(self._backoff_delay(attempt, retry_after))

        raise TransientNetworkError(
            f"SIS request {path} failed after {self.max_attempts} attempts: {last_error}",
            details={"endpoint": path, "attempts": self.max_attempts, "last_error": last_error},
        )

    def _paginate(self, path: str) -> list[dict]:
        """Fetch all pages using StartingRecord/EndingRecord offsets (1-based, inclusive).

        Stops early when a page starts with the same record as the one before it,
        which is what an endpoint that ignores the offsets returns.
        """
        records: list[dict] = []
        start = 1
        pages = 0
        previous_first = None
        while True:
            if pages >= self.max_pages:
                raise SourceRequestError(
                    f"SIS {path} still returning full pages after {pages} pages",
                    details={"endpoint": path, "pages": pages, "records": len(records)},
                )
            end = start + self.page_size - 1
            page = self._as_list(
                self._request(path, params={"StartingRecord": start, "EndingRecord": end}),
                path,
            )
            pages += 1
            if page and previous_first is not None and page[0] == previous_first:
                logger.warning(f"SIS {path} repeated the previous page at record {start}; ignoring offsets")
                break
            records.extend(page)
            if len(page) < self.page_size:
                break
            previous_first = page[0]
            start = end + 1
        logger.info(f"Fetched {len(records)} records from {path}")
        return records

    @staticmethod
    def _as_list(data: Any, path: str) -> list[dict]:
        if isinstance(data, list):
            return data
        if data is None:
            return []
        raise SourceRequestError(
            f"Expected a JSON array from {path}, got {type(data).__name__}",
            details={"endpoint": path},
        )

    @staticmethod
    def _log_request(path: str, status: int, latency_ms: float, records: int | None, attempt: int) -> None:
        logger.info(
            f"SIS {path} -> {status} in {latency_ms}ms ({records if records is not None else '-'} records)",
            extra={
                "endpoint": path,
                "status": status,
                "latency_ms": latency_ms,
                "records": records,
                "attempt": attempt + 1,
            },
        )
