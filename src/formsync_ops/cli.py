from __future__ import annotations

import json
import signal
import subprocess
import sys
import threading
from datetime import datetime
from pathlib import Path
from typing import Optional

import typer
from loguru import logger
from prometheus_client import start_http_server

from formsync_client import FieldMapping, LogFilters, QueueItem, calculate_priority
from formsync_client.errors import FormSyncError
from formsync_client.sql import Table
from formsync_ops.config import get_settings
from formsync_ops.logging import configure_logging
from formsync_ops.wiring import Pipeline, build_pipeline

app = typer.Typer(help="formsync delivery pipeline CLI")

DATE_FORMATS = ["%Y-%m-%d", "%Y-%m-%dT%H:%M:%S", "%Y-%m-%dT%H:%M:%S%z"]


def _pipeline() -> Pipeline:
    settings = get_settings()
    configure_logging(settings.LOG_LEVEL, settings.LOG_JSON)
    return build_pipeline(settings)


def _echo(data) -> None:
    typer.echo(json.dumps(data, indent=2, default=str))


# ---------------------------
# Health / schema
# ---------------------------


@app.command("ping")
def ping():
    """Check database and cache connectivity and that every table exists."""
    p = _pipeline()
    try:
        _echo(
            {
                "database": p.db.health(),
                "cache": p.cache.healthy(),
                "tables": {t.value: p.db.table_exists(t) for t in Table},
            }
        )
    except FormSyncError as e:
        logger.error(f"Ping failed: {e}")
        sys.exit(1)
    finally:
        p.close()


@app.command("schema-version")
def schema_version():
    p = _pipeline()
    try:
        _echo({"schema_version": p.db.schema_version()})
    finally:
        p.close()


@app.command()
def migrate(target: str = "head"):
    """Run Alembic migrations to the specified target (default: head)."""
    settings = get_settings()
    logger.info(f"Running migrations to {target}")
    result = subprocess.run(
        ["alembic", "-c", settings.ALEMBIC_INI, "upgrade", target],
        capture_output=True,
        text=True,
        cwd=Path(__file__).parent.parent.parent,
    )
    if result.returncode != 0:
        logger.error(f"Migration failed: {result.stderr}")
        sys.exit(1)
    logger.success(f"Successfully migrated to {target}")
    if result.stdout:
        logger.info(f"Migration output: {result.stdout}")


# ---------------------------
# Queue
# ---------------------------


@app.command("enqueue")
def enqueue(
    form_id: int = typer.Option(..., "--form-id"),
    list_id: str = typer.Option(..., "--list-id"),
    payload: str = typer.Option(..., "--payload", help="JSON object"),
    integration: str = typer.Option("mailchimp", "--integration"),
    submission_id: Optional[int] = typer.Option(None, "--submission-id"),
    double_optin: bool = typer.Option(False, "--double-optin"),
    vip: bool = typer.Option(False, "--vip"),
):
    p = _pipeline()
    try:
        item_id = p.queue.enqueue(
            QueueItem(
                form_id=form_id,
                submission_id=submission_id,
                integration_id=integration,
                list_id=list_id,
                payload=json.loads(payload),
                priority=calculate_priority(double_optin, vip),
            )
        )
        p.monitor.invalidate()
        _echo({"id": item_id})
    except (FormSyncError, ValueError) as e:
        logger.error(f"Enqueue failed: {e}")
        sys.exit(1)
    finally:
        p.close()


@app.command("dispatch")
def dispatch(
    max_size: Optional[int] = typer.Option(None, "--max-size"),
    loop: bool = typer.Option(False, "--loop", help="Keep polling until interrupted"),
):
    """Deliver one batch, or run as a worker with --loop."""
    settings = get_settings()
    p = _pipeline()
    try:
        if not loop:
            _echo(vars(p.dispatcher.run_once(max_size)))
            return
        if settings.METRICS_PORT:
            start_http_server(settings.METRICS_PORT)
            logger.info(f"Metrics exposed on :{settings.METRICS_PORT}")
        stop = threading.Event()
        signal.signal(signal.SIGTERM, lambda *_: stop.set())
        try:
            p.dispatcher.run_forever(settings.POLL_INTERVAL, stop)
        except KeyboardInterrupt:
            stop.set()
    finally:
        p.close()


@app.command("sweep")
def sweep(limit: Optional[int] = typer.Option(None, "--limit")):
    """Redeliver scheduled retries that are due."""
    p = _pipeline()
    try:
        _echo(vars(p.dispatcher.sweep_retries(limit)))
    finally:
        p.close()


@app.command("reclaim")
def reclaim():
    """Return items stuck in processing past FORMSYNC_STALE_CLAIM_SECONDS to the queue."""
    p = _pipeline()
    try:
        _echo({"reclaimed": p.dispatcher.reclaim_stale()})
    finally:
        p.close()


@app.command("queue-stats")
def queue_stats():
    p = _pipeline()
    try:
        _echo(p.monitor.statistics().model_dump())
    finally:
        p.close()


@app.command("retry-failed")
def retry_failed():
    """Reset every failed item to pending with a zero retry count."""
    p = _pipeline()
    try:
        _echo({"reset": p.monitor.retry_all_failed()})
    finally:
        p.close()


@app.command("purge")
def purge(
    days: int = typer.Option(30, "--days", help="Delete terminal items older than this"),
    logs: bool = typer.Option(False, "--logs", help="Also delete old log and analytics rows"),
):
    p = _pipeline()
    try:
        result = {"queue": p.monitor.purge(days)}
        if logs:
            result["logs"] = p.logs.delete_older_than(days)
            result["analytics"] = p.analytics.cleanup(days)
        _echo(result)
    except FormSyncError as e:
        logger.error(f"Purge failed: {e}")
        sys.exit(1)
    finally:
        p.close()


# ---------------------------
# Forms / field mappings
# ---------------------------


@app.command("form-fields")
def form_fields(
    form_id: int = typer.Option(..., "--form-id"),
    set_fields: Optional[str] = typer.Option(None, "--set", help="JSON list of field definitions"),
):
    """Show a form's field definitions, or replace them with --set."""
    p = _pipeline()
    try:
        if set_fields is not None:
            fields = json.loads(set_fields)
            if not isinstance(fields, list):
                raise ValueError("--set must be a JSON list")
            p.forms.save_form_fields(form_id, fields)
        _echo({"form_id": form_id, "fields": p.forms.get_form_fields(form_id)})
    except (FormSyncError, ValueError) as e:
        logger.error(f"Form fields failed: {e}")
        sys.exit(1)
    finally:
        p.close()


@app.command("mappings")
def mappings(
    form_id: int = typer.Option(..., "--form-id"),
    integration: str = typer.Option("mailchimp", "--integration"),
    set_map: Optional[str] = typer.Option(
        None, "--set", help='JSON object {"form_field": "integration_field"}'
    ),
):
    """Show the field mappings of a form/integration pair, or replace them with --set."""
    p = _pipeline()
    try:
        if set_map is not None:
            pairs = json.loads(set_map)
            if not isinstance(pairs, dict):
                raise ValueError("--set must be a JSON object")
            p.mappings.save(
                form_id,
                integration,
                [
                    FieldMapping(
                        form_id=form_id,
                        integration_id=integration,
                        form_field=src,
                        integration_field=dst,
                        mapping_order=order,
                    )
                    for order, (src, dst) in enumerate(pairs.items())
                ],
            )
        _echo([m.model_dump() for m in p.mappings.get(form_id, integration)])
    except (FormSyncError, ValueError) as e:
        logger.error(f"Mappings failed: {e}")
        sys.exit(1)
    finally:
        p.close()


# ---------------------------
# Integration log
# ---------------------------


def _filters(
    integration: Optional[str],
    form_id: Optional[int],
    status: Optional[str],
    date_from: Optional[datetime],
    date_to: Optional[datetime],
) -> LogFilters:
    return LogFilters(
        integration_id=integration,
        form_id=form_id,
        status=status,
        date_from=date_from,
        date_to=date_to,
    )


@app.command("logs")
def logs(
    integration: Optional[str] = typer.Option(None, "--integration"),
    form_id: Optional[int] = typer.Option(None, "--form-id"),
    status: Optional[str] = typer.Option(None, "--status"),
    date_from: Optional[datetime] = typer.Option(None, "--from", formats=DATE_FORMATS),
    date_to: Optional[datetime] = typer.Option(None, "--to", formats=DATE_FORMATS),
    limit: int = typer.Option(50, "--limit"),
    offset: int = typer.Option(0, "--offset"),
):
    p = _pipeline()
    try:
        entries = p.audit.query(_filters(integration, form_id, status, date_from, date_to), limit, offset)
        for e in entries:
            typer.echo(e.model_dump_json())
    finally:
        p.close()


@app.command("log-stats")
def log_stats(
    integration: Optional[str] = typer.Option(None, "--integration"),
    form_id: Optional[int] = typer.Option(None, "--form-id"),
    status: Optional[str] = typer.Option(None, "--status"),
    date_from: Optional[datetime] = typer.Option(None, "--from", formats=DATE_FORMATS),
    date_to: Optional[datetime] = typer.Option(None, "--to", formats=DATE_FORMATS),
):
    p = _pipeline()
    try:
        _echo(p.audit.stats(_filters(integration, form_id, status, date_from, date_to)).model_dump())
    finally:
        p.close()


@app.command("analytics")
def analytics(
    form_id: Optional[int] = typer.Option(None, "--form-id"),
    audience: Optional[str] = typer.Option(None, "--audience"),
):
    """Delivery event counts by type."""
    p = _pipeline()
    try:
        _echo(p.analytics.summary(form_id, audience))
    finally:
        p.close()


if __name__ == "__main__":
    app()
