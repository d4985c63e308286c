"""Unit tests for the error taxonomy and retry policy."""
import pytest

from calsync.services.calendar.base import retry_with_backoff, select_primary_calendar
from calsync.services.calendar.errors import (
    CalendarSyncError,
    ErrorCategory,
    SyncErrorKind,
    classify_http_status,
    is_retryable,
)


class TestClassifyHttpStatus:

    @pytest.mark.parametrize("status, kind", [
        (400, SyncErrorKind.BAD_REQUEST),
        (401, SyncErrorKind.UNAUTHORIZED),
        (403, SyncErrorKind.FORBIDDEN),
        (404, SyncErrorKind.NOT_FOUND),
        (408, SyncErrorKind.TIMEOUT),
        (422, SyncErrorKind.BAD_REQUEST),
        (429, SyncErrorKind.RATE_LIMITED),
        (500, SyncErrorKind.SERVER_ERROR),
        (503, SyncErrorKind.SERVER_ERROR),
    ])
    def test_status_mapping(self, status, kind):
        assert classify_http_status(status) == kind

    def test_success_codes_are_not_errors(self):
        assert classify_http_status(201) is None

    def test_only_transient_kinds_are_retryable(self):
        retryable = {kind for kind in SyncErrorKind if kind.retryable}
        assert retryable == {SyncErrorKind.TIMEOUT, SyncErrorKind.RATE_LIMITED, SyncErrorKind.SERVER_ERROR}

    def test_auth_kinds_deactivate(self):
        assert SyncErrorKind.UNAUTHORIZED.deactivates_connection
        assert SyncErrorKind.EXPIRED_TOKEN.deactivates_connection
        assert SyncErrorKind.APP_PASSWORD_REQUIRED.deactivates_connection
        assert not SyncErrorKind.FORBIDDEN.deactivates_connection
        assert SyncErrorKind.UNAUTHORIZED.category == ErrorCategory.AUTH_FAILURE
        assert SyncErrorKind.PARSE_FAILED.category == ErrorCategory.PARSE_FAILURE

    def test_default_message(self):
        error = CalendarSyncError(SyncErrorKind.RATE_LIMITED, status_code=429)
        assert "Rate limit" in error.message
        assert is_retryable(error)
        assert not is_retryable(ValueError("boom"))


class TestRetryWithBackoff:

    def test_retryable_error_runs_four_attempts(self, sleeps):
        calls = []

        def always_rate_limited():
            calls.append(1)
            raise CalendarSyncError(SyncErrorKind.RATE_LIMITED, status_code=429)

        with pytest.raises(CalendarSyncError) as exc_info:
            retry_with_backoff(always_rate_limited, sleep=sleeps.append, max_retries=3, base_delay=1)

        assert exc_info.value.kind == SyncErrorKind.RATE_LIMITED
        assert len(calls) == 4
        assert sleeps == [1, 2, 4]

    def test_non_retryable_error_fails_immediately(self, sleeps):
        calls = []

        def forbidden():
            calls.append(1)
            raise CalendarSyncError(SyncErrorKind.FORBIDDEN, status_code=403)

        with pytest.raises(CalendarSyncError):
            retry_with_backoff(forbidden, sleep=sleeps.append)

        assert len(calls) == 1
        assert sleeps == []

    def test_recovers_after_transient_failure(self, sleeps):
        outcomes = [CalendarSyncError(SyncErrorKind.TIMEOUT), CalendarSyncError(SyncErrorKind.SERVER_ERROR), "ok"]

        def flaky():
            outcome = outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        assert retry_with_backoff(flaky, sleep=sleeps.append) == "ok"
        assert sleeps == [1, 2]


class TestSelectPrimaryCalendar:

    def test_prefers_named_calendar(self):
        urls = [
            "https://dav.example.com/calendars/robin/birthdays/",
            "https://dav.example.com/calendars/robin/work/",
            "https://dav.example.com/calendars/robin/personal/",
        ]
        assert select_primary_calendar(urls) == "https://dav.example.com/calendars/robin/work/"

    def test_falls_back_to_first(self):
        urls = ["https://dav.example.com/a/", "https://dav.example.com/b/"]
        assert select_primary_calendar(urls) == "https://dav.example.com/a/"

    def test_empty(self):
        assert select_primary_calendar([]) is None
