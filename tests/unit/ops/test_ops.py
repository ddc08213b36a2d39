"""
Unit tests for settings, wiring and the operational CLI.
"""

import json
from unittest.mock import MagicMock, patch

import pytest
from typer.testing import CliRunner

from formsync.adapters import JsonApiAdapter
from formsync.cache import MemoryCacheBackend
from formsync_client.models import FieldMapping, LogStats, QueueStatistics
from formsync_ops.cli import app
from formsync_ops.config import Settings
from formsync_ops.wiring import build_pipeline

runner = CliRunner()


@pytest.fixture
def settings(mock_dsn):
    return Settings(
        DATABASE_URL=mock_dsn,
        SECRET_KEY="unit-test-secret",
        INTEGRATIONS="mailchimp, hubspot",
        CACHE_INVALIDATION="flush",
        MAX_ATTEMPTS=3,
    )


class TestSettings:
    def test_integration_ids(self, settings):
        assert settings.integration_ids == ["mailchimp", "hubspot"]

    def test_urls(self):
        s = Settings(DATABASE_URL="postgresql+psycopg://u:p@h/db")

        assert s.database_url == "postgresql://u:p@h/db"
        assert s.sqlalchemy_url == "postgresql+psycopg://u:p@h/db"

    def test_env_prefix(self, monkeypatch):
        monkeypatch.setenv("FORMSYNC_DATABASE_URL", "postgresql://env/db")
        monkeypatch.setenv("FORMSYNC_BATCH_SIZE", "7")

        s = Settings()

        assert s.DATABASE_URL == "postgresql://env/db"
        assert s.BATCH_SIZE == 7


class TestWiring:
    def test_build_pipeline(self, settings):
        db = MagicMock()

        p = build_pipeline(settings, db=db, cache_backend=MemoryCacheBackend())

        assert p.db is db
        assert p.cache.invalidation == "flush"
        assert p.recovery.max_attempts == 3
        assert set(p.dispatcher._adapters) == {"mailchimp", "hubspot"}
        assert isinstance(p.dispatcher._adapters["hubspot"], JsonApiAdapter)
        assert p.dispatcher._mappings is p.mappings
        assert p.dispatcher.stale_after == 300
        p.close()
        db.close.assert_called_once()

    def test_secret_key_required(self, mock_dsn):
        with pytest.raises(ValueError, match="SECRET_KEY"):
            build_pipeline(Settings(DATABASE_URL=mock_dsn), db=MagicMock())


@pytest.fixture
def pipeline():
    p = MagicMock()
    p.monitor.statistics.return_value = QueueStatistics(total=5, pending=2, completed=3)
    p.monitor.retry_all_failed.return_value = 2
    p.audit.stats.return_value = LogStats(total=10, by_status={"success": 7, "error": 3})
    return p


class TestCli:
    def test_queue_stats(self, pipeline):
        with patch("formsync_ops.cli._pipeline", return_value=pipeline):
            result = runner.invoke(app, ["queue-stats"])

        assert result.exit_code == 0
        assert json.loads(result.output)["pending"] == 2
        pipeline.close.assert_called_once()

    def test_retry_failed(self, pipeline):
        with patch("formsync_ops.cli._pipeline", return_value=pipeline):
            result = runner.invoke(app, ["retry-failed"])

        assert result.exit_code == 0
        assert json.loads(result.output) == {"reset": 2}

    def test_log_stats_passes_filters(self, pipeline):
        with patch("formsync_ops.cli._pipeline", return_value=pipeline):
            result = runner.invoke(
                app, ["log-stats", "--integration", "mailchimp", "--from", "2024-01-01"]
            )

        assert result.exit_code == 0
        filters = pipeline.audit.stats.call_args[0][0]
        assert filters.integration_id == "mailchimp"
        assert filters.date_from.year == 2024
        assert json.loads(result.output)["by_status"] == {"success": 7, "error": 3}

    def test_enqueue_applies_priority(self, pipeline):
        pipeline.queue.enqueue.return_value = 9
        with patch("formsync_ops.cli._pipeline", return_value=pipeline):
            result = runner.invoke(
                app,
                ["enqueue", "--form-id", "1", "--list-id", "L1",
                 "--payload", '{"email": "a@x.com"}', "--vip"],
            )

        assert result.exit_code == 0
        item = pipeline.queue.enqueue.call_args[0][0]
        assert item.priority == 20
        assert item.payload == {"email": "a@x.com"}

    def test_enqueue_rejects_bad_json(self, pipeline):
        with patch("formsync_ops.cli._pipeline", return_value=pipeline):
            result = runner.invoke(
                app, ["enqueue", "--form-id", "1", "--list-id", "L1", "--payload", "{nope"]
            )

        assert result.exit_code == 1

    def test_ping_reports_tables(self, pipeline):
        pipeline.db.health.return_value = True
        pipeline.cache.healthy.return_value = True
        pipeline.db.table_exists.return_value = True
        with patch("formsync_ops.cli._pipeline", return_value=pipeline):
            result = runner.invoke(app, ["ping"])

        assert result.exit_code == 0
        out = json.loads(result.output)
        assert out["database"] is True
        assert out["tables"]["batch_queue"] is True
        assert len(out["tables"]) == 6

    def test_analytics_summary(self, pipeline):
        pipeline.analytics.summary.return_value = {"delivery_success": 4}
        with patch("formsync_ops.cli._pipeline", return_value=pipeline):
            result = runner.invoke(app, ["analytics", "--form-id", "2"])

        assert result.exit_code == 0
        assert json.loads(result.output) == {"delivery_success": 4}
        pipeline.analytics.summary.assert_called_once_with(2, None)

    def test_reclaim(self, pipeline):
        pipeline.dispatcher.reclaim_stale.return_value = 3
        with patch("formsync_ops.cli._pipeline", return_value=pipeline):
            result = runner.invoke(app, ["reclaim"])

        assert result.exit_code == 0
        assert json.loads(result.output) == {"reclaimed": 3}
        pipeline.close.assert_called_once()

    def test_form_fields_show(self, pipeline):
        pipeline.forms.get_form_fields.return_value = [{"name": "email"}]
        with patch("formsync_ops.cli._pipeline", return_value=pipeline):
            result = runner.invoke(app, ["form-fields", "--form-id", "4"])

        assert result.exit_code == 0
        assert json.loads(result.output) == {"form_id": 4, "fields": [{"name": "email"}]}
        pipeline.forms.save_form_fields.assert_not_called()

    def test_form_fields_set(self, pipeline):
        pipeline.forms.get_form_fields.return_value = [{"name": "phone"}]
        with patch("formsync_ops.cli._pipeline", return_value=pipeline):
            result = runner.invoke(
                app, ["form-fields", "--form-id", "4", "--set", '[{"name": "phone"}]']
            )

        assert result.exit_code == 0
        pipeline.forms.save_form_fields.assert_called_once_with(4, [{"name": "phone"}])

    def test_form_fields_rejects_non_list(self, pipeline):
        with patch("formsync_ops.cli._pipeline", return_value=pipeline):
            result = runner.invoke(app, ["form-fields", "--form-id", "4", "--set", "{}"])

        assert result.exit_code == 1
        pipeline.forms.save_form_fields.assert_not_called()

    def test_mappings_set_keeps_order(self, pipeline):
        pipeline.mappings.get.return_value = [
            FieldMapping(form_id=1, integration_id="mailchimp", form_field="email",
                         integration_field="EMAIL")
        ]
        with patch("formsync_ops.cli._pipeline", return_value=pipeline):
            result = runner.invoke(
                app,
                ["mappings", "--form-id", "1",
                 "--set", '{"first": "FNAME", "email": "EMAIL"}'],
            )

        assert result.exit_code == 0
        form_id, integration, saved = pipeline.mappings.save.call_args[0]
        assert (form_id, integration) == (1, "mailchimp")
        assert [(m.form_field, m.integration_field, m.mapping_order) for m in saved] == [
            ("first", "FNAME", 0),
            ("email", "EMAIL", 1),
        ]
        assert json.loads(result.output)[0]["integration_field"] == "EMAIL"
