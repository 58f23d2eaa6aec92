"""
Initial schema - all 9 tables

Revision ID: 001
Revises: None
Create Date: 2026-10-18
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    # 1. Job tasks
    op.create_table(
        "job_tasks",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("job_type", sa.String(50), nullable=False),
        sa.Column("channel_id", sa.String(128)),
        sa.Column("run_for_dt", sa.Date),
        sa.Column("dedupe_key", sa.String(255), nullable=False, unique=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("attempt", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_attempt", sa.Integer, nullable=False, server_default="3"),
        sa.Column("run_after", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("locked_by", sa.String(255)),
        sa.Column("locked_at", sa.DateTime),
        sa.Column("last_error", sa.Text),
        *_timestamps(),
        sa.CheckConstraint(
            "status IN ('pending', 'running', 'retrying', 'succeeded', 'dead')",
            name="ck_job_task_status",
        ),
    )
    op.create_index("ix_job_tasks_claimable", "job_tasks", ["status", "run_after"])
    op.create_index("ix_job_tasks_tenant_type", "job_tasks", ["tenant_id", "job_type", "channel_id"])

    # 2. Channel connections
    op.create_table(
        "channel_connections",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("oauth_provider", sa.String(50), nullable=False, server_default="youtube"),
        sa.Column("channel_id", sa.String(128)),
        sa.Column("access_token", sa.Text),
        sa.Column("refresh_token", sa.Text),
        sa.Column("expires_at", sa.DateTime),
        *_timestamps(),
        sa.UniqueConstraint("tenant_id", "oauth_provider", "channel_id", name="uq_channel_connection"),
    )

    # 3. Video daily metrics
    op.create_table(
        "video_daily_metrics",
        sa.Column("tenant_id", sa.String(64), primary_key=True),
        sa.Column("channel_id", sa.String(128), primary_key=True),
        sa.Column("dt", sa.Date, primary_key=True),
        sa.Column("video_id", sa.String(128), primary_key=True),
        sa.Column("is_channel_total", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("revenue_usd", sa.Float, nullable=False, server_default="0"),
        sa.Column("impressions", sa.Integer, nullable=False, server_default="0"),
        sa.Column("impressions_ctr", sa.Float),
        sa.Column("views", sa.Integer, nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
    )
    op.create_index(
        "ix_vdm_channel_total",
        "video_daily_metrics",
        ["tenant_id", "channel_id", "is_channel_total", "dt"],
    )

    # 4. Observed actions
    op.create_table(
        "observed_actions",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("channel_id", sa.String(128), nullable=False),
        sa.Column("dt", sa.Date, nullable=False),
        sa.Column("action_type", sa.String(50), nullable=False),
        sa.Column("meta", sa.JSON),
        *_timestamps(),
        sa.UniqueConstraint("tenant_id", "channel_id", "dt", "action_type", name="uq_observed_action"),
    )

    # 5. Decision daily
    op.create_table(
        "decision_daily",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("channel_id", sa.String(128), nullable=False),
        sa.Column("as_of_dt", sa.Date, nullable=False),
        sa.Column("direction", sa.String(16), nullable=False),
        sa.Column("confidence", sa.Float, nullable=False),
        sa.Column("evidence", sa.JSON, nullable=False),
        sa.Column("forbidden", sa.JSON, nullable=False),
        sa.Column("reevaluate", sa.JSON, nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("tenant_id", "channel_id", "as_of_dt", name="uq_decision_daily"),
        sa.CheckConstraint("direction IN ('PROTECT', 'EXPLOIT', 'EXPLORE')", name="ck_decision_direction"),
    )

    # 6. Decision outcome
    op.create_table(
        "decision_outcome",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("channel_id", sa.String(128), nullable=False),
        sa.Column("decision_dt", sa.Date, nullable=False),
        sa.Column("outcome_dt", sa.Date, nullable=False),
        sa.Column("revenue_change_pct_7d", sa.Float),
        sa.Column("catastrophic_flag", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("new_top_asset_flag", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("notes", sa.JSON),
        *_timestamps(),
        sa.UniqueConstraint("tenant_id", "channel_id", "decision_dt", "outcome_dt", name="uq_decision_outcome"),
    )

    # 7. Policy params
    op.create_table(
        "policy_params",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("channel_id", sa.String(128), nullable=False),
        sa.Column("version", sa.String(64), nullable=False),
        sa.Column("params_json", sa.JSON, nullable=False),
        sa.Column("created_by", sa.String(64), nullable=False, server_default="system"),
        *_timestamps(),
        sa.UniqueConstraint("tenant_id", "channel_id", "version", name="uq_policy_params_version"),
    )

    # 8. Policy eval report
    op.create_table(
        "policy_eval_report",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("channel_id", sa.String(128), nullable=False),
        sa.Column("candidate_version", sa.String(64), nullable=False),
        sa.Column("replay_metrics_json", sa.JSON, nullable=False),
        sa.Column("approved", sa.Boolean, nullable=False, server_default=sa.false()),
        *_timestamps(),
        sa.UniqueConstraint("tenant_id", "channel_id", "candidate_version", name="uq_policy_eval_report"),
    )

    # 9. YouTube alerts
    op.create_table(
        "yt_alerts",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("channel_id", sa.String(128), nullable=False),
        sa.Column("alert_key", sa.String(64), nullable=False),
        sa.Column("kind", sa.String(64), nullable=False),
        sa.Column("severity", sa.String(20), nullable=False),
        sa.Column("message", sa.Text, nullable=False),
        sa.Column("details_json", sa.JSON),
        sa.Column("detected_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("resolved_at", sa.DateTime),
        *_timestamps(),
        sa.UniqueConstraint("tenant_id", "channel_id", "alert_key", name="uq_yt_alert_key"),
        sa.CheckConstraint("severity IN ('info', 'warning', 'error', 'critical')", name="ck_yt_alert_severity"),
    )
    op.create_index("ix_yt_alerts_open", "yt_alerts", ["tenant_id", "channel_id", "resolved_at"])


def downgrade() -> None:
    tables = [
        "yt_alerts",
        "policy_eval_report",
        "policy_params",
        "decision_outcome",
        "decision_daily",
        "observed_actions",
        "video_daily_metrics",
        "channel_connections",
        "job_tasks",
    ]
    for table in tables:
        op.drop_table(table)
