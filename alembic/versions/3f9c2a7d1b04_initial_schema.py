"""initial schema

Revision ID: 3f9c2a7d1b04
Revises:
Create Date: 2026-10-16 09:12:41.518203

"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "3f9c2a7d1b04"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")


def upgrade() -> None:
    # Uploaded files, one row per distinct content checksum
    op.create_table(
        "uploads",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("filename", sa.Text(), nullable=False),
        sa.Column("checksum", sa.String(length=64), nullable=False),
        sa.Column("size", sa.BigInteger(), nullable=False),
        sa.Column("uploaded_at", sa.BigInteger(), nullable=False),
        sa.Column("raw_key", sa.String(length=512), nullable=True),
        sa.Column("total_records", sa.Integer(), nullable=False),
        sa.Column("inserted_records", sa.Integer(), nullable=False),
        sa.Column("deduped_records", sa.Integer(), nullable=False),
        sa.Column(
            "rollups_applied", sa.Boolean(), server_default=sa.false(), nullable=False
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("checksum"),
    )

    # Canonical events
    op.create_table(
        "waf_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("correlation_id", sa.Text(), nullable=False),
        sa.Column("event_ts", sa.BigInteger(), nullable=False),
        sa.Column("src_ip", sa.Text(), nullable=True),
        sa.Column("src_country", sa.Text(), nullable=True),
        sa.Column("src_asn", sa.BigInteger(), nullable=True),
        sa.Column("colo", sa.Text(), nullable=True),
        sa.Column("host", sa.Text(), nullable=True),
        sa.Column("path", sa.Text(), nullable=True),
        sa.Column("method", sa.Text(), nullable=True),
        sa.Column("status", sa.Integer(), nullable=True),
        sa.Column("rule_id", sa.Text(), nullable=True),
        sa.Column("rule_name", sa.Text(), nullable=True),
        sa.Column("rule_type", sa.String(length=16), nullable=False),
        sa.Column("action", sa.String(length=16), nullable=False),
        sa.Column("service", sa.Text(), nullable=True),
        sa.Column("mitigation_reason", sa.Text(), nullable=True),
        sa.Column("ua", sa.Text(), nullable=True),
        sa.Column("tls_fingerprint", sa.Text(), nullable=True),
        sa.Column("bytes", sa.BigInteger(), nullable=True),
        sa.Column("threat_score", sa.Integer(), nullable=True),
        sa.Column("file_id", sa.Integer(), nullable=True),
        sa.Column("ingested_at", sa.BigInteger(), nullable=True),
        sa.ForeignKeyConstraint(["file_id"], ["uploads.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("correlation_id", "event_ts", name="uq_waf_events_correlation_ts"),
    )
    op.create_index("ix_waf_events_event_ts", "waf_events", ["event_ts"], unique=False)
    op.create_index("ix_waf_events_action", "waf_events", ["action"], unique=False)
    op.create_index("ix_waf_events_rule_id", "waf_events", ["rule_id"], unique=False)
    op.create_index("ix_waf_events_src_ip", "waf_events", ["src_ip"], unique=False)
    op.create_index("ix_waf_events_host", "waf_events", ["host"], unique=False)
    op.create_index("ix_waf_events_file_id", "waf_events", ["file_id"], unique=False)
    op.create_index(
        "ix_waf_events_event_ts_action", "waf_events", ["event_ts", "action"], unique=False
    )

    # Rollups
    op.create_table(
        "daily_actions",
        sa.Column("date", sa.String(length=10), nullable=False),
        sa.Column("action", sa.String(length=16), nullable=False),
        sa.Column("count", sa.Integer(), nullable=False),
        sa.Column("last_updated", sa.BigInteger(), nullable=False),
        sa.PrimaryKeyConstraint("date", "action"),
    )

    op.create_table(
        "top_rules",
        sa.Column("rule_id", sa.Text(), nullable=False),
        sa.Column("rule_name", sa.Text(), nullable=True),
        sa.Column("rule_type", sa.String(length=16), nullable=True),
        sa.Column("count", sa.Integer(), nullable=False),
        sa.Column("last_seen", sa.BigInteger(), nullable=True),
        sa.Column("last_updated", sa.BigInteger(), nullable=False),
        sa.PrimaryKeyConstraint("rule_id"),
    )
    op.create_index("ix_top_rules_count", "top_rules", ["count"], unique=False)

    op.create_table(
        "top_ips",
        sa.Column("src_ip", sa.Text(), nullable=False),
        sa.Column("count", sa.Integer(), nullable=False),
        sa.Column("countries", JSON_TYPE, nullable=True),
        sa.Column("asns", JSON_TYPE, nullable=True),
        sa.Column("last_seen", sa.BigInteger(), nullable=True),
        sa.Column("last_updated", sa.BigInteger(), nullable=False),
        sa.PrimaryKeyConstraint("src_ip"),
    )
    op.create_index("ix_top_ips_count", "top_ips", ["count"], unique=False)

    op.create_table(
        "attack_paths",
        sa.Column("path_hash", sa.String(length=64), nullable=False),
        sa.Column("path", sa.Text(), nullable=False),
        sa.Column("method", sa.Text(), nullable=True),
        sa.Column("status", sa.Integer(), nullable=True),
        sa.Column("count", sa.Integer(), nullable=False),
        sa.Column("last_seen", sa.BigInteger(), nullable=True),
        sa.Column("last_updated", sa.BigInteger(), nullable=False),
        sa.PrimaryKeyConstraint("path_hash"),
    )
    op.create_index("ix_attack_paths_count", "attack_paths", ["count"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_attack_paths_count", table_name="attack_paths")
    op.drop_table("attack_paths")
    op.drop_index("ix_top_ips_count", table_name="top_ips")
    op.drop_table("top_ips")
    op.drop_index("ix_top_rules_count", table_name="top_rules")
    op.drop_table("top_rules")
    op.drop_table("daily_actions")
    op.drop_index("ix_waf_events_event_ts_action", table_name="waf_events")
    op.drop_index("ix_waf_events_file_id", table_name="waf_events")
    op.drop_index("ix_waf_events_host", table_name="waf_events")
    op.drop_index("ix_waf_events_src_ip", table_name="waf_events")
    op.drop_index("ix_waf_events_rule_id", table_name="waf_events")
    op.drop_index("ix_waf_events_action", table_name="waf_events")
    op.drop_index("ix_waf_events_event_ts", table_name="waf_events")
    op.drop_table("waf_events")
    op.drop_table("uploads")
