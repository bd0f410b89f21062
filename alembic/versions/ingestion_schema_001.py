"""Ingestion schema: websites, sessions, events, ip reputation, idempotency ledger, api keys

Revision ID: ingestion_schema_001
Revises:
Create Date: 2026-10-18
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "ingestion_schema_001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # --- Websites ---
    op.create_table(
        "website",
        sa.Column("website_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("domain", sa.String(500), nullable=False),
        sa.Column("name", sa.String(100), nullable=True),
        sa.Column("allowed_domains", postgresql.JSONB, nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("proxy_mode", sa.String(20), nullable=False, server_default="none"),
        sa.Column("api_rate_limit_per_minute", sa.Integer, nullable=True, server_default="5000"),
        sa.Column("public_stats_enabled", sa.Boolean, server_default=sa.text("false")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()")),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("website_id"),
    )

    # --- Dashboard logins (self-tracking gate) ---
    op.create_table(
        "user_sessions",
        sa.Column("token_hash", sa.String(64), nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()")),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("token_hash"),
    )
    op.create_index("ix_user_sessions_user_id", "user_sessions", ["user_id"])

    # --- Sessions ---
    op.create_table(
        "session",
        sa.Column("session_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("website_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("browser", sa.String(20), nullable=True),
        sa.Column("os", sa.String(20), nullable=True),
        sa.Column("device", sa.String(20), nullable=True),
        sa.Column("screen", sa.String(11), nullable=True),
        sa.Column("language", sa.String(35), nullable=True),
        sa.Column("country", sa.String(2), nullable=True),
        sa.Column("region", sa.String(100), nullable=True),
        sa.Column("city", sa.String(100), nullable=True),
        sa.Column("distinct_id", sa.String(50), nullable=True),
        sa.Column("entry_page", sa.String(500), nullable=True),
        sa.Column("exit_page", sa.String(500), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()")),
        sa.PrimaryKeyConstraint("session_id"),
    )
    op.create_index("ix_session_website_id", "session", ["website_id"])
    op.create_index("ix_session_website_created", "session", ["website_id", "created_at"])

    # --- Events (append-only) ---
    op.create_table(
        "website_event",
        sa.Column("event_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("website_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("session_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("visit_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("page_title", sa.String(500), nullable=True),
        sa.Column("hostname", sa.String(100), nullable=True),
        sa.Column("url_path", sa.String(500), nullable=True),
        sa.Column("url_query", sa.String(500), nullable=True),
        sa.Column("referrer_path", sa.String(500), nullable=True),
        sa.Column("referrer_query", sa.String(500), nullable=True),
        sa.Column("referrer_domain", sa.String(500), nullable=True),
        sa.Column("event_name", sa.String(50), nullable=True),
        sa.Column("tag", sa.String(50), nullable=True),
        sa.Column("event_type", sa.SmallInteger, nullable=False, server_default="1"),
        sa.Column("scroll_depth", sa.SmallInteger, nullable=True),
        sa.Column("engagement_time", sa.Integer, nullable=True),
        sa.Column("props", postgresql.JSONB, nullable=True),
        sa.Column("utm_source", sa.String(255), nullable=True),
        sa.Column("utm_medium", sa.String(255), nullable=True),
        sa.Column("utm_campaign", sa.String(255), nullable=True),
        sa.Column("utm_term", sa.String(255), nullable=True),
        sa.Column("utm_content", sa.String(255), nullable=True),
        sa.Column("goal_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.PrimaryKeyConstraint("event_id"),
        sa.CheckConstraint("scroll_depth BETWEEN 0 AND 100", name="ck_website_event_scroll_depth"),
        sa.CheckConstraint("engagement_time >= 0", name="ck_website_event_engagement_time"),
    )
    op.create_index("ix_website_event_session_id", "website_event", ["session_id"])
    op.create_index("ix_website_event_website_created", "website_event", ["website_id", "created_at"])
    op.create_index("ix_website_event_visit", "website_event", ["visit_id"])

    # --- IP reputation ---
    op.create_table(
        "ip_metadata",
        sa.Column("ip", sa.String(45), nullable=False),
        sa.Column("first_seen", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_seen", sa.DateTime(timezone=True), nullable=False),
        sa.Column("total_requests", sa.Integer, nullable=False, server_default="0"),
        sa.Column("requests_last_hour", sa.Integer, nullable=False, server_default="0"),
        sa.Column("requests_last_minute", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_requests_per_minute", sa.Integer, nullable=False, server_default="0"),
        sa.Column("is_bot", sa.Boolean, nullable=False, server_default=sa.text("false")),
        sa.Column("bot_type", sa.String(50), nullable=True),
        sa.Column("confidence", sa.SmallInteger, nullable=False, server_default="0"),
        sa.Column("detection_reason", sa.Text, nullable=True),
        sa.Column("unique_user_agents", sa.Integer, nullable=False, server_default="0"),
        sa.Column("user_agent_sample", postgresql.JSONB, nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("country", sa.String(2), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("ip"),
    )
    op.create_index(
        "ix_ip_metadata_bots", "ip_metadata", ["last_seen"],
        postgresql_where=sa.text("is_bot"),
    )

    # --- Idempotency ledger (one partition per day, created by maintenance) ---
    op.execute("""
        CREATE TABLE event_idempotency (
            event_id UUID NOT NULL,
            website_id UUID NOT NULL,
            day DATE NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            PRIMARY KEY (event_id, website_id, day)
        ) PARTITION BY RANGE (day)
    """)
    op.create_index("ix_event_idempotency_website_event", "event_idempotency", ["website_id", "event_id"])
    op.execute("""
        DO $$
        DECLARE
            d DATE;
        BEGIN
            FOR i IN 0..7 LOOP
                d := CURRENT_DATE + i;
                EXECUTE format(
                    'CREATE TABLE IF NOT EXISTS %I PARTITION OF event_idempotency FOR VALUES FROM (%L) TO (%L)',
                    'event_idempotency_' || to_char(d, 'YYYY_MM_DD'), d, d + 1
                );
            END LOOP;
        END $$;
    """)

    # --- Rate-limit windows ---
    op.create_table(
        "rate_limit_counters",
        sa.Column("bucket_key", sa.String(64), nullable=False),
        sa.Column("window_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("hits", sa.Integer, nullable=False, server_default="0"),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("bucket_key", "window_start"),
    )
    op.create_index("ix_rate_limit_counters_expires_at", "rate_limit_counters", ["expires_at"])

    # --- API keys ---
    op.create_table(
        "api_keys",
        sa.Column("key_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("website_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("created_by", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("key_hash", sa.String(64), nullable=False),
        sa.Column("key_prefix", sa.String(16), nullable=False),
        sa.Column("name", sa.String(100), nullable=True),
        sa.Column("scopes", postgresql.JSONB, nullable=False, server_default=sa.text("'[\"ingest\"]'::jsonb")),
        sa.Column("rate_limit_per_minute", sa.Integer, nullable=False, server_default="1000"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()")),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("key_id"),
    )
    op.create_index("ix_api_keys_website_id", "api_keys", ["website_id"])
    op.create_index("ix_api_keys_key_hash", "api_keys", ["key_hash"], unique=True)


def downgrade() -> None:
    op.drop_table("api_keys")
    op.drop_table("rate_limit_counters")
    op.execute("DROP TABLE IF EXISTS event_idempotency CASCADE")
    op.drop_table("ip_metadata")
    op.drop_table("website_event")
    op.drop_table("session")
    op.drop_table("user_sessions")
    op.drop_table("website")
