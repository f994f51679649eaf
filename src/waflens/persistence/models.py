"""SQLModel table definitions for persistence."""

import time

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    ForeignKey,
    Index,
    Integer,
    Text,
    UniqueConstraint,
    false,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlmodel import Field, SQLModel

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite)
JSONVariant = JSON().with_variant(JSONB(), "postgresql")


def epoch_ms() -> int:
    """Current wall-clock time in milliseconds since the epoch."""
    return int(time.time() * 1000)


class Upload(SQLModel, table=True):
    """One ingested file, identified by the checksum of its content."""

    __tablename__ = "uploads"

    id: int | None = Field(default=None, primary_key=True)
    filename: str = Field(sa_column=Column(Text, nullable=False))
    checksum: str = Field(max_length=64, unique=True)
    size: int = Field(default=0, sa_column=Column(BigInteger, nullable=False, default=0))
    uploaded_at: int = Field(
        default_factory=epoch_ms, sa_column=Column(BigInteger, nullable=False)
    )
    raw_key: str | None = Field(default=None, max_length=512)
    total_records: int = Field(default=0)
    inserted_records: int = Field(default=0)
    deduped_records: int = Field(default=0)
    # Set once the file's events are reflected in the rollup tables
    rollups_applied: bool = Field(
        default=False,
        sa_column=Column(Boolean, nullable=False, default=False, server_default=false()),
    )


class WafEvent(SQLModel, table=True):
    """Canonical security event. Immutable once stored."""

    __tablename__ = "waf_events"
    __table_args__ = (
        UniqueConstraint("correlation_id", "event_ts", name="uq_waf_events_correlation_ts"),
        Index("ix_waf_events_event_ts", "event_ts"),
        Index("ix_waf_events_action", "action"),
        Index("ix_waf_events_rule_id", "rule_id"),
        Index("ix_waf_events_src_ip", "src_ip"),
        Index("ix_waf_events_host", "host"),
        Index("ix_waf_events_file_id", "file_id"),
        Index("ix_waf_events_event_ts_action", "event_ts", "action"),
    )

    id: int | None = Field(default=None, primary_key=True)
    correlation_id: str = Field(sa_column=Column(Text, nullable=False))
    event_ts: int = Field(sa_column=Column(BigInteger, nullable=False))
    src_ip: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    src_country: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    src_asn: int | None = Field(default=None, sa_column=Column(BigInteger, nullable=True))
    colo: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    host: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    path: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    method: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    status: int | None = Field(default=None)
    rule_id: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    rule_name: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    rule_type: str = Field(default="unknown", max_length=16)  # managed, custom, unknown
    action: str = Field(default="unknown", max_length=16)
    service: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    mitigation_reason: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    ua: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    tls_fingerprint: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    bytes: int | None = Field(default=None, sa_column=Column(BigInteger, nullable=True))
    threat_score: int | None = Field(default=None)
    file_id: int | None = Field(
        default=None,
        sa_column=Column(Integer, ForeignKey("uploads.id", ondelete="CASCADE"), nullable=True),
    )
    ingested_at: int | None = Field(default=None, sa_column=Column(BigInteger, nullable=True))


# =============================================================================
# Rollup tables (derived, rebuildable from waf_events)
# =============================================================================


class DailyAction(SQLModel, table=True):
    """Event counts per UTC day and action."""

    __tablename__ = "daily_actions"

    date: str = Field(primary_key=True, max_length=10)  # YYYY-MM-DD
    action: str = Field(primary_key=True, max_length=16)
    count: int = Field(default=0)
    last_updated: int = Field(
        default_factory=epoch_ms, sa_column=Column(BigInteger, nullable=False)
    )


class TopRule(SQLModel, table=True):
    """Per-rule totals."""

    __tablename__ = "top_rules"
    __table_args__ = (Index("ix_top_rules_count", "count"),)

    rule_id: str = Field(sa_column=Column(Text, primary_key=True))
    rule_name: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    rule_type: str | None = Field(default=None, max_length=16)
    count: int = Field(default=0)
    last_seen: int | None = Field(default=None, sa_column=Column(BigInteger, nullable=True))
    last_updated: int = Field(
        default_factory=epoch_ms, sa_column=Column(BigInteger, nullable=False)
    )


class TopIP(SQLModel, table=True):
    """Per-source-IP totals with the distinct countries and ASNs seen."""

    __tablename__ = "top_ips"
    __table_args__ = (Index("ix_top_ips_count", "count"),)

    src_ip: str = Field(sa_column=Column(Text, primary_key=True))
    count: int = Field(default=0)
    countries: list[str] = Field(default_factory=list, sa_column=Column(JSONVariant))
    asns: list[int] = Field(default_factory=list, sa_column=Column(JSONVariant))
    last_seen: int | None = Field(default=None, sa_column=Column(BigInteger, nullable=True))
    last_updated: int = Field(
        default_factory=epoch_ms, sa_column=Column(BigInteger, nullable=False)
    )


class AttackPath(SQLModel, table=True):
    """Per path x method x status totals."""

    __tablename__ = "attack_paths"
    __table_args__ = (Index("ix_attack_paths_count", "count"),)

    path_hash: str = Field(primary_key=True, max_length=64)
    path: str = Field(sa_column=Column(Text, nullable=False))
    method: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    status: int | None = Field(default=None)
    count: int = Field(default=0)
    last_seen: int | None = Field(default=None, sa_column=Column(BigInteger, nullable=True))
    last_updated: int = Field(
        default_factory=epoch_ms, sa_column=Column(BigInteger, nullable=False)
    )


ROLLUP_MODELS: tuple[type[SQLModel], ...] = (DailyAction, TopRule, TopIP, AttackPath)
