"""
ChannelPilot Database Models

9 tables for the channel decision pipeline.
Multi-tenant via tenant_id leading every key.

Tables:
  Queue:
  1. job_tasks             - Durable task rows (dedupe_key unique)

  Channel data:
  2. channel_connections   - OAuth credentials per (tenant, channel)
  3. video_daily_metrics   - Per-video and channel-total daily metrics
  4. observed_actions      - Derived creator actions (publish counts)

  Decisions:
  5. decision_daily        - One recommendation per (tenant, channel, day)
  6. decision_outcome      - Lagged outcome label for a past decision
  7. policy_params         - Versioned engine configuration
  8. policy_eval_report    - Replay evaluation of a candidate version

  Guardrails:
  9. yt_alerts             - Key-addressed open/resolved alerts
"""

from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from db.session import Base

TASK_STATUSES = ("pending", "running", "retrying", "succeeded", "dead")
ALERT_SEVERITIES = ("info", "warning", "error", "critical")

# Channel-total metric rows still need a value for the video_id key column.
CHANNEL_TOTAL_VIDEO_ID = "__channel_total__"

# ─── 1. Job Tasks ───────────────────────────────────────────────────────────


class JobTask(Base):
    __tablename__ = "job_tasks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String(64), nullable=False)
    job_type = Column(String(50), nullable=False)
    channel_id = Column(String(128), nullable=True)
    run_for_dt = Column(Date, nullable=True)
    dedupe_key = Column(String(255), nullable=False, unique=True)
    status = Column(String(20), nullable=False, default="pending")
    attempt = Column(Integer, nullable=False, default=0)
    max_attempt = Column(Integer, nullable=False, default=3)
    run_after = Column(DateTime, nullable=False, default=datetime.utcnow)
    locked_by = Column(String(255))
    locked_at = Column(DateTime)
    last_error = Column(Text)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_job_tasks_claimable", "status", "run_after"),
        Index("ix_job_tasks_tenant_type", "tenant_id", "job_type", "channel_id"),
        CheckConstraint(
            "status IN ('pending', 'running', 'retrying', 'succeeded', 'dead')",
            name="ck_job_task_status",
        ),
    )


# ─── 2. Channel Connections ─────────────────────────────────────────────────


class ChannelConnection(Base):
    __tablename__ = "channel_connections"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String(64), nullable=False)
    oauth_provider = Column(String(50), nullable=False, default="youtube")
    channel_id = Column(String(128))
    access_token = Column(Text)
    refresh_token = Column(Text)
    expires_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "oauth_provider", "channel_id", name="uq_channel_connection"),
    )


# ─── 3. Video Daily Metrics ─────────────────────────────────────────────────


class VideoDailyMetric(Base):
    __tablename__ = "video_daily_metrics"

    tenant_id = Column(String(64), primary_key=True)
    channel_id = Column(String(128), primary_key=True)
    dt = Column(Date, primary_key=True)
    video_id = Column(String(128), primary_key=True)
    is_channel_total = Column(Boolean, nullable=False, default=False)
    revenue_usd = Column(Float, nullable=False, default=0.0)
    impressions = Column(Integer, nullable=False, default=0)
    impressions_ctr = Column(Float)
    views = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_vdm_channel_total", "tenant_id", "channel_id", "is_channel_total", "dt"),
    )


# ─── 4. Observed Actions ────────────────────────────────────────────────────


class ObservedAction(Base):
    __tablename__ = "observed_actions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String(64), nullable=False)
    channel_id = Column(String(128), nullable=False)
    dt = Column(Date, nullable=False)
    action_type = Column(String(50), nullable=False)
    meta = Column(JSON, default=dict)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "channel_id", "dt", "action_type", name="uq_observed_action"),
    )


# ─── 5. Decision Daily ──────────────────────────────────────────────────────


class DecisionDaily(Base):
    __tablename__ = "decision_daily"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String(64), nullable=False)
    channel_id = Column(String(128), nullable=False)
    as_of_dt = Column(Date, nullable=False)
    direction = Column(String(16), nullable=False)
    confidence = Column(Float, nullable=False)
    evidence = Column(JSON, nullable=False, default=list)
    forbidden = Column(JSON, nullable=False, default=list)
    reevaluate = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "channel_id", "as_of_dt", name="uq_decision_daily"),
        CheckConstraint("direction IN ('PROTECT', 'EXPLOIT', 'EXPLORE')", name="ck_decision_direction"),
    )


# ─── 6. Decision Outcome ────────────────────────────────────────────────────


class DecisionOutcome(Base):
    __tablename__ = "decision_outcome"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String(64), nullable=False)
    channel_id = Column(String(128), nullable=False)
    decision_dt = Column(Date, nullable=False)
    outcome_dt = Column(Date, nullable=False)
    revenue_change_pct_7d = Column(Float)
    catastrophic_flag = Column(Boolean, nullable=False, default=False)
    new_top_asset_flag = Column(Boolean, nullable=False, default=False)
    notes = Column(JSON)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "channel_id", "decision_dt", "outcome_dt", name="uq_decision_outcome"),
    )


# ─── 7. Policy Params ───────────────────────────────────────────────────────


class PolicyParams(Base):
    __tablename__ = "policy_params"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String(64), nullable=False)
    channel_id = Column(String(128), nullable=False)
    version = Column(String(64), nullable=False)
    params_json = Column(JSON, nullable=False)
    created_by = Column(String(64), nullable=False, default="system")
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "channel_id", "version", name="uq_policy_params_version"),
    )


# ─── 8. Policy Eval Report ──────────────────────────────────────────────────


class PolicyEvalReport(Base):
    __tablename__ = "policy_eval_report"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String(64), nullable=False)
    channel_id = Column(String(128), nullable=False)
    candidate_version = Column(String(64), nullable=False)
    replay_metrics_json = Column(JSON, nullable=False)
    approved = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "channel_id", "candidate_version", name="uq_policy_eval_report"),
    )


# ─── 9. YouTube Alerts ──────────────────────────────────────────────────────


class YtAlert(Base):
    __tablename__ = "yt_alerts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String(64), nullable=False)
    channel_id = Column(String(128), nullable=False)
    alert_key = Column(String(64), nullable=False)
    kind = Column(String(64), nullable=False)
    severity = Column(String(20), nullable=False)
    message = Column(Text, nullable=False)
    details_json = Column(JSON)
    detected_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    resolved_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "channel_id", "alert_key", name="uq_yt_alert_key"),
        Index("ix_yt_alerts_open", "tenant_id", "channel_id", "resolved_at"),
        CheckConstraint("severity IN ('info', 'warning', 'error', 'critical')", name="ck_yt_alert_severity"),
    )
