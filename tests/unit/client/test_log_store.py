"""
Unit tests for LogStore.

Tests:
- Append validation and secret scrubbing
- Filter assembly for query / stats
- Stats invariant: total == sum(by_status) == sum(by_date)
"""

from datetime import date, datetime, timezone

import pytest

from formsync_client.errors import SchemaMissing, ValidationError
from formsync_client.logs import LogStore, aggregate_stats
from formsync_client.models import LogEntry, LogFilters, LogStats


class TestAppend:
    def test_append_returns_id(self, mock_db, mock_cursor):
        mock_cursor.fetchone.return_value = {"id": 11}

        entry_id = LogStore(mock_db).append(
            LogEntry(form_id=3, integration_id="mailchimp", status="SUCCESS", message="ok")
        )

        assert entry_id == 11
        stmt, params = mock_cursor.execute.call_args[0]
        assert "INSERT INTO integration_logs" in stmt
        assert params["status"] == "success"
        assert params["form_id"] == 3

    def test_append_requires_integration_id(self, mock_db, mock_cursor):
        with pytest.raises(ValidationError):
            LogStore(mock_db).append(LogEntry(integration_id=" ", message="x"))
        mock_cursor.execute.assert_not_called()

    def test_append_masks_secrets_in_data(self, mock_db, mock_cursor):
        mock_cursor.fetchone.return_value = {"id": 1}

        LogStore(mock_db).append(
            LogEntry(
                integration_id="hubspot",
                data={"api_key": "abc123", "nested": {"access_token": "t0k"}, "email": "a@x.com"},
            )
        )

        data = mock_cursor.execute.call_args[0][1]["data"].obj
        assert data["api_key"] == "***"
        assert data["nested"]["access_token"] == "***"
        assert data["email"] == "a@x.com"


class TestQuery:
    def test_no_filters_matches_all(self, mock_db, mock_cursor):
        mock_cursor.fetchall.return_value = []

        LogStore(mock_db).query()

        stmt, params = mock_cursor.execute.call_args[0]
        assert "WHERE" not in stmt
        assert "ORDER BY created_at DESC, id DESC" in stmt
        assert params == {"limit": 50, "offset": 0}

    def test_filters_become_named_parameters(self, mock_db, mock_cursor):
        mock_cursor.fetchall.return_value = [
            {
                "id": 2,
                "form_id": 3,
                "submission_id": None,
                "integration_id": "mailchimp",
                "status": "error",
                "message": "boom",
                "data": {},
                "created_at": datetime(2024, 1, 2, tzinfo=timezone.utc),
                "updated_at": datetime(2024, 1, 2, tzinfo=timezone.utc),
            }
        ]
        since = datetime(2024, 1, 1, tzinfo=timezone.utc)

        rows = LogStore(mock_db).query(
            LogFilters(integration_id="mailchimp", status="Error", date_from=since), limit=10
        )

        stmt, params = mock_cursor.execute.call_args[0]
        assert "integration_id = %(integration_id)s" in stmt
        assert "status = %(status)s" in stmt
        assert "created_at >= %(date_from)s" in stmt
        assert "form_id = %(form_id)s" not in stmt
        assert params["status"] == "error"
        assert params["date_from"] == since
        assert params["limit"] == 10
        assert rows[0].message == "boom"

    def test_query_degrades_to_empty(self, mock_db, mock_cursor):
        mock_cursor.execute.side_effect = SchemaMissing("no table")

        assert LogStore(mock_db).query() == []


class TestStats:
    def test_seven_success_three_error(self, mock_db, mock_cursor):
        mock_cursor.fetchall.return_value = [
            {"status": "success", "day": date(2024, 1, 2), "count": 7},
            {"status": "error", "day": date(2024, 1, 2), "count": 3},
        ]

        stats = LogStore(mock_db).stats(
            LogFilters(integration_id="mailchimp", date_from=datetime(2024, 1, 1))
        )

        assert stats.total == 10
        assert stats.by_status == {"success": 7, "error": 3}
        assert stats.by_date == {"2024-01-02": 10}
        stmt = mock_cursor.execute.call_args[0][0]
        assert "GROUP BY status, DATE(created_at)" in stmt
        assert mock_cursor.execute.call_count == 1

    def test_invariant_across_days_and_statuses(self):
        rows = [
            {"status": "success", "day": date(2024, 1, 1), "count": 4},
            {"status": "success", "day": date(2024, 1, 2), "count": 2},
            {"status": "warning", "day": date(2024, 1, 2), "count": 1},
            {"status": "error", "day": date(2024, 1, 3), "count": 5},
        ]

        stats = aggregate_stats(rows)

        assert stats.total == 12
        assert stats.total == sum(stats.by_status.values()) == sum(stats.by_date.values())
        assert stats.by_date["2024-01-02"] == 3

    def test_stats_degrade_to_empty(self, mock_db, mock_cursor):
        mock_cursor.execute.side_effect = SchemaMissing("no table")

        assert LogStore(mock_db).stats() == LogStats()


def test_delete_older_than(mock_db, mock_cursor):
    mock_cursor.rowcount = 6

    assert LogStore(mock_db).delete_older_than(90) == 6
    assert mock_cursor.execute.call_args[0][1] == {"days": 90}


def test_delete_older_than_rejects_negative(mock_db):
    with pytest.raises(ValidationError):
        LogStore(mock_db).delete_older_than(-5)
