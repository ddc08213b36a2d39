"""Initial schema for formsync

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-18

Adds:
- integration_logs: append-only integration event log
- integration_settings: per-integration key/value settings (typed, optionally encrypted)
- field_mappings: form field -> integration field mappings
- batch_queue: delivery work queue with priority, retry and schedule columns
- analytics_events: per form/audience delivery events
- form_meta: per form key/value metadata (field definitions)
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic
revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None

UPDATED_AT_TABLES = [
    "integration_logs",
    "integration_settings",
    "field_mappings",
    "batch_queue",
    "form_meta",
]


def _timestamps():
    return [
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
    ]


def upgrade() -> None:
    # Integration log
    op.create_table(
        "integration_logs",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("form_id", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("submission_id", sa.BigInteger),
        sa.Column("integration_id", sa.String(100), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="info"),
        sa.Column("message", sa.Text, nullable=False, server_default=""),
        sa.Column("data", postgresql.JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        *_timestamps(),
    )
    op.create_index("ix_integration_logs_form_id", "integration_logs", ["form_id"])
    op.create_index("ix_integration_logs_integration_id", "integration_logs", ["integration_id"])
    op.create_index("ix_integration_logs_status", "integration_logs", ["status"])
    op.create_index("ix_integration_logs_created_at", "integration_logs", ["created_at"])
    op.create_index(
        "ix_integration_logs_form_integration", "integration_logs", ["form_id", "integration_id"]
    )
    op.create_index(
        "ix_integration_logs_status_created", "integration_logs", ["status", "created_at"]
    )

    # Settings
    op.create_table(
        "integration_settings",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("integration_id", sa.String(100), nullable=False),
        sa.Column("setting_key", sa.String(255), nullable=False),
        sa.Column("setting_value", sa.Text),
        sa.Column("setting_type", sa.String(20), nullable=False, server_default="string"),
        sa.Column("is_encrypted", sa.Boolean, nullable=False, server_default=sa.text("false")),
        *_timestamps(),
        sa.UniqueConstraint("integration_id", "setting_key", name="uq_integration_settings_key"),
        sa.CheckConstraint(
            "setting_type IN ('string','integer','float','boolean','array')",
            name="ck_integration_settings_type",
        ),
    )

    # Field mappings
    op.create_table(
        "field_mappings",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("form_id", sa.BigInteger, nullable=False),
        sa.Column("integration_id", sa.String(100), nullable=False),
        sa.Column("form_field", sa.String(255), nullable=False),
        sa.Column("integration_field", sa.String(255), nullable=False),
        sa.Column("field_type", sa.String(50), nullable=False, server_default="text"),
        sa.Column("is_required", sa.Boolean, nullable=False, server_default=sa.text("false")),
        sa.Column("mapping_order", sa.Integer, nullable=False, server_default="0"),
        *_timestamps(),
        sa.UniqueConstraint(
            "form_id", "integration_id", "form_field", name="uq_field_mappings_form_field"
        ),
    )

    # Work queue
    op.create_table(
        "batch_queue",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("form_id", sa.BigInteger, nullable=False),
        sa.Column("submission_id", sa.BigInteger),
        sa.Column("integration_id", sa.String(100), nullable=False, server_default="mailchimp"),
        sa.Column("list_id", sa.String(255), nullable=False),
        sa.Column("operation", sa.String(20), nullable=False, server_default="subscribe"),
        sa.Column("subscriber_data", postgresql.JSONB, nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("priority", sa.Integer, nullable=False, server_default="0"),
        sa.Column("retry_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text),
        sa.Column("remote_batch_id", sa.String(255)),
        sa.Column("scheduled_at", sa.TIMESTAMP(timezone=True)),
        *_timestamps(),
        sa.CheckConstraint(
            "status IN ('pending','processing','retrying','completed','failed')",
            name="ck_batch_queue_status",
        ),
        sa.CheckConstraint(
            "operation IN ('subscribe','unsubscribe','update')", name="ck_batch_queue_operation"
        ),
        sa.CheckConstraint("retry_count >= 0", name="ck_batch_queue_retry_count"),
    )
    op.create_index("ix_batch_queue_status", "batch_queue", ["status"])
    op.create_index("ix_batch_queue_priority", "batch_queue", ["priority"])
    op.create_index("ix_batch_queue_form_id", "batch_queue", ["form_id"])
    op.create_index("ix_batch_queue_list_id", "batch_queue", ["list_id"])
    op.create_index("ix_batch_queue_created_at", "batch_queue", ["created_at"])
    op.execute(
        """
        CREATE INDEX ix_batch_queue_claim
            ON batch_queue (priority DESC, created_at ASC, id ASC)
            WHERE status IN ('pending', 'retrying');
    """
    )
    op.execute(
        """
        CREATE INDEX ix_batch_queue_scheduled
            ON batch_queue (integration_id, scheduled_at)
            WHERE status = 'retrying';
    """
    )

    # Analytics
    op.create_table(
        "analytics_events",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("form_id", sa.BigInteger, nullable=False),
        sa.Column("audience_id", sa.String(255), nullable=False),
        sa.Column("event_type", sa.String(100), nullable=False),
        sa.Column(
            "event_data", postgresql.JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")
        ),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
    )
    op.create_index("ix_analytics_events_form_id", "analytics_events", ["form_id"])
    op.create_index("ix_analytics_events_audience_id", "analytics_events", ["audience_id"])
    op.create_index("ix_analytics_events_event_type", "analytics_events", ["event_type"])
    op.create_index("ix_analytics_events_created_at", "analytics_events", ["created_at"])

    # Form meta
    op.create_table(
        "form_meta",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("form_id", sa.BigInteger, nullable=False),
        sa.Column("meta_key", sa.String(255), nullable=False),
        sa.Column("meta_value", sa.Text),
        *_timestamps(),
        sa.UniqueConstraint("form_id", "meta_key", name="uq_form_meta_key"),
    )

    op.execute(
        """
        CREATE OR REPLACE FUNCTION update_updated_at_column()
        RETURNS TRIGGER AS $$
        BEGIN
            NEW.updated_at = NOW();
            RETURN NEW;
        END;
        $$ language 'plpgsql';
    """
    )

    for table in UPDATED_AT_TABLES:
        op.execute(
            f"""
            CREATE TRIGGER update_{table}_updated_at
            BEFORE UPDATE ON {table}
            FOR EACH ROW EXECUTE FUNCTION update_updated_at_column();
        """
        )


def downgrade() -> None:
    for table in UPDATED_AT_TABLES:
        op.execute(f"DROP TRIGGER IF EXISTS update_{table}_updated_at ON {table}")
    op.execute("DROP FUNCTION IF EXISTS update_updated_at_column()")

    op.drop_table("form_meta")
    op.drop_table("analytics_events")
    op.drop_table("batch_queue")
    op.drop_table("field_mappings")
    op.drop_table("integration_settings")
    op.drop_table("integration_logs")
