"""
Unit tests for AnalyticsStore.
"""

import pytest

from formsync_client.analytics import AnalyticsStore
from formsync_client.errors import SchemaMissing, ValidationError
from formsync_client.models import AnalyticsEvent


def test_record_scrubs_event_data(mock_db, mock_cursor):
    mock_cursor.fetchone.return_value = {"id": 4}

    event_id = AnalyticsStore(mock_db).record(
        AnalyticsEvent(
            form_id=2,
            audience_id="L1",
            event_type="delivery_success",
            event_data={"queue_item_id": 9, "api_key": "abc"},
        )
    )

    assert event_id == 4
    params = mock_cursor.execute.call_args[0][1]
    assert params["event_data"].obj == {"queue_item_id": 9, "api_key": "***"}


def test_record_requires_event_type(mock_db, mock_cursor):
    with pytest.raises(ValidationError):
        AnalyticsStore(mock_db).record(AnalyticsEvent(form_id=1, audience_id="L1", event_type=""))
    mock_cursor.execute.assert_not_called()


def test_summary_filters(mock_db, mock_cursor):
    mock_cursor.fetchall.return_value = [
        {"event_type": "delivery_success", "count": 5},
        {"event_type": "delivery_error", "count": 2},
    ]

    summary = AnalyticsStore(mock_db).summary(form_id=2, audience_id="L1")

    assert summary == {"delivery_success": 5, "delivery_error": 2}
    stmt, params = mock_cursor.execute.call_args[0]
    assert "WHERE form_id = %(form_id)s AND audience_id = %(audience_id)s" in stmt
    assert params == {"form_id": 2, "audience_id": "L1"}


def test_summary_degrades_to_empty(mock_db, mock_cursor):
    mock_cursor.execute.side_effect = SchemaMissing("no table")

    assert AnalyticsStore(mock_db).summary() == {}


def test_cleanup(mock_db, mock_cursor):
    mock_cursor.rowcount = 12

    assert AnalyticsStore(mock_db).cleanup(30) == 12
    assert mock_cursor.execute.call_args[0][1] == {"days": 30}
