"""Projector folding stored events into the rollup tables.

The rollup tables are derived caches of ``waf_events``. The common path is
incremental: after a file is ingested its rows are folded in memory and
merged with accumulate-on-conflict upserts. Reindexing a file instead
recomputes the buckets it touches from the full event table, so repeated
reindexes never double count. ``rebuild`` regenerates everything from
scratch.
"""

from __future__ import annotations

import hashlib
from collections import Counter
from collections.abc import AsyncIterator, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy import and_, case, delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from waflens.persistence.models import (
    ROLLUP_MODELS,
    AttackPath,
    DailyAction,
    TopIP,
    TopRule,
    WafEvent,
    epoch_ms,
)
from waflens.persistence.store import chunked, dialect_insert

logger = structlog.get_logger()

ROLLUP_COLUMNS = (
    WafEvent.id,
    WafEvent.event_ts,
    WafEvent.action,
    WafEvent.rule_id,
    WafEvent.rule_name,
    WafEvent.rule_type,
    WafEvent.src_ip,
    WafEvent.src_country,
    WafEvent.src_asn,
    WafEvent.path,
    WafEvent.method,
    WafEvent.status,
)

# Rows per upsert statement and values per IN (...) clause
WRITE_CHUNK = 500
# Above this many touched buckets a targeted refresh costs more than a rebuild
MAX_REFRESH_KEYS = 5000

DAY_MS = 24 * 60 * 60 * 1000


def day_of(event_ts: int) -> str:
    """UTC calendar day (YYYY-MM-DD) of an epoch-ms timestamp."""
    return datetime.fromtimestamp(event_ts / 1000, tz=timezone.utc).strftime("%Y-%m-%d")


def day_bounds(day: str) -> tuple[int, int]:
    """Epoch-ms half-open range [start, end) covering a UTC day."""
    start = datetime.strptime(day, "%Y-%m-%d").replace(tzinfo=timezone.utc)
    start_ms = int(start.timestamp() * 1000)
    return start_ms, start_ms + DAY_MS


def path_hash(path: str, method: str | None, status: int | None) -> str:
    """Deterministic key for an attack-path bucket."""
    status_part = "" if status is None else str(status)
    return hashlib.sha256(f"{method or ''}|{status_part}|{path}".encode()).hexdigest()


def _later(current: int | None, candidate: int | None) -> int | None:
    if current is None:
        return candidate
    if candidate is None:
        return current
    return max(current, candidate)


@dataclass
class RuleTotals:
    rule_name: str | None = None
    rule_type: str | None = None
    count: int = 0
    last_seen: int | None = None


@dataclass
class IPTotals:
    count: int = 0
    countries: set[str] = field(default_factory=set)
    asns: set[int] = field(default_factory=set)
    last_seen: int | None = None


@dataclass
class PathTotals:
    path: str
    method: str | None
    status: int | None
    count: int = 0
    last_seen: int | None = None


@dataclass
class RollupKeys:
    """The rollup buckets a set of events contributes to."""

    days: set[str] = field(default_factory=set)
    rule_ids: set[str] = field(default_factory=set)
    ips: set[str] = field(default_factory=set)
    paths: set[tuple[str, str | None, int | None]] = field(default_factory=set)

    def __or__(self, other: RollupKeys) -> RollupKeys:
        return RollupKeys(
            days=self.days | other.days,
            rule_ids=self.rule_ids | other.rule_ids,
            ips=self.ips | other.ips,
            paths=self.paths | other.paths,
        )

    def __len__(self) -> int:
        return len(self.days) + len(self.rule_ids) + len(self.ips) + len(self.paths)

    @property
    def path_hashes(self) -> set[str]:
        return {path_hash(*key) for key in self.paths}


class RollupAccumulator:
    """In-memory fold of event rows into the four rollup shapes."""

    def __init__(self) -> None:
        self.daily: Counter[tuple[str, str]] = Counter()
        self.rules: dict[str, RuleTotals] = {}
        self.ips: dict[str, IPTotals] = {}
        self.paths: dict[str, PathTotals] = {}
        self.events = 0

    def add(self, row: Any) -> None:
        """Fold one event row (any object exposing the event columns)."""
        self.events += 1
        event_ts = row.event_ts
        self.daily[(day_of(event_ts), row.action or "unknown")] += 1

        if row.rule_id:
            rule = self.rules.setdefault(row.rule_id, RuleTotals())
            if row.rule_name and (rule.rule_name is None or event_ts >= (rule.last_seen or 0)):
                rule.rule_name = row.rule_name
            if row.rule_type and (rule.rule_type in (None, "unknown")):
                rule.rule_type = row.rule_type
            rule.count += 1
            rule.last_seen = _later(rule.last_seen, event_ts)

        if row.src_ip:
            ip = self.ips.setdefault(row.src_ip, IPTotals())
            ip.count += 1
            if row.src_country:
                ip.countries.add(row.src_country)
            if row.src_asn is not None:
                ip.asns.add(row.src_asn)
            ip.last_seen = _later(ip.last_seen, event_ts)

        if row.path:
            key = path_hash(row.path, row.method, row.status)
            totals = self.paths.get(key)
            if totals is None:
                totals = self.paths[key] = PathTotals(row.path, row.method, row.status)
            totals.count += 1
            totals.last_seen = _later(totals.last_seen, event_ts)

    def extend(self, rows: Iterable[Any]) -> RollupAccumulator:
        for row in rows:
            self.add(row)
        return self

    def is_empty(self) -> bool:
        return self.events == 0

    def keys(self) -> RollupKeys:
        return RollupKeys(
            days={day for day, _ in self.daily},
            rule_ids=set(self.rules),
            ips=set(self.ips),
            paths={(p.path, p.method, p.status) for p in self.paths.values()},
        )

    def restrict(self, keys: RollupKeys) -> RollupAccumulator:
        """Copy keeping only the buckets named in ``keys``."""
        restricted = RollupAccumulator()
        restricted.events = self.events
        restricted.daily = Counter(
            {bucket: n for bucket, n in self.daily.items() if bucket[0] in keys.days}
        )
        restricted.rules = {k: v for k, v in self.rules.items() if k in keys.rule_ids}
        restricted.ips = {k: v for k, v in self.ips.items() if k in keys.ips}
        hashes = keys.path_hashes
        restricted.paths = {k: v for k, v in self.paths.items() if k in hashes}
        return restricted


class RollupProjector:
    """Maintains daily_actions, top_rules, top_ips and attack_paths.

    The projector never commits; it runs inside the caller's transaction.
    """

    def __init__(self, session: AsyncSession, page_size: int = 5000):
        """Initialize the projector with a database session.

        Args:
            session: Async SQLAlchemy session for database operations
            page_size: Event rows fetched per query while scanning
        """
        self.session = session
        self.page_size = page_size

    async def project_file(self, file_id: int) -> RollupKeys:
        """Fold a file's stored events into the rollups (accumulate mode).

        Args:
            file_id: Upload whose events were just inserted

        Returns:
            The buckets that were updated
        """
        accumulator = await self._fold(WafEvent.file_id == file_id)
        await self._merge(accumulator)
        logger.info(
            "file_projected",
            file_id=file_id,
            events=accumulator.events,
            daily_buckets=len(accumulator.daily),
            rules=len(accumulator.rules),
            ips=len(accumulator.ips),
            paths=len(accumulator.paths),
        )
        return accumulator.keys()

    async def keys_for_file(self, file_id: int) -> RollupKeys:
        """Buckets touched by the events a file currently owns."""
        accumulator = await self._fold(WafEvent.file_id == file_id)
        return accumulator.keys()

    async def refresh(self, keys: RollupKeys) -> None:
        """Recompute the given buckets from the full event table.

        Args:
            keys: Buckets to recompute; rows for buckets with no remaining
                events are removed
        """
        if not keys:
            return
        if len(keys) > MAX_REFRESH_KEYS:
            logger.info("rollup_refresh_fallback_rebuild", keys=len(keys))
            await self.rebuild()
            return

        accumulator = await self._fold(self._criteria_for(keys))
        await self._delete_buckets(keys)
        await self._merge(accumulator.restrict(keys))
        logger.info("rollups_refreshed", keys=len(keys), events=accumulator.events)

    async def rebuild(self) -> int:
        """Wipe every rollup table and regenerate it from all stored events.

        Returns:
            Number of events folded
        """
        for model in ROLLUP_MODELS:
            await self.session.execute(delete(model))
        accumulator = await self._fold()
        await self._merge(accumulator)
        logger.info("rollups_rebuilt", events=accumulator.events)
        return accumulator.events

    # =========================================================================
    # Scanning
    # =========================================================================

    async def _scan(self, *criteria: Any) -> AsyncIterator[Any]:
        """Yield event rows in id order using keyset pagination."""
        last_id = 0
        while True:
            stmt = (
                select(*ROLLUP_COLUMNS)
                .where(WafEvent.id > last_id, *criteria)
                .order_by(WafEvent.id)
                .limit(self.page_size)
            )
            rows = (await self.session.execute(stmt)).all()
            if not rows:
                return
            for row in rows:
                yield row
            last_id = rows[-1].id

    async def _fold(self, *criteria: Any) -> RollupAccumulator:
        accumulator = RollupAccumulator()
        async for row in self._scan(*criteria):
            accumulator.add(row)
        return accumulator

    @staticmethod
    def _criteria_for(keys: RollupKeys) -> Any:
        clauses = []
        for day in sorted(keys.days):
            start, end = day_bounds(day)
            clauses.append(and_(WafEvent.event_ts >= start, WafEvent.event_ts < end))
        for chunk in chunked(sorted(keys.rule_ids), WRITE_CHUNK):
            clauses.append(WafEvent.rule_id.in_(chunk))
        for chunk in chunked(sorted(keys.ips), WRITE_CHUNK):
            clauses.append(WafEvent.src_ip.in_(chunk))
        for chunk in chunked(sorted({path for path, _, _ in keys.paths}), WRITE_CHUNK):
            clauses.append(WafEvent.path.in_(chunk))
        return or_(*clauses)

    async def _delete_buckets(self, keys: RollupKeys) -> None:
        targets = (
            (DailyAction.date, keys.days),
            (TopRule.rule_id, keys.rule_ids),
            (TopIP.src_ip, keys.ips),
            (AttackPath.path_hash, keys.path_hashes),
        )
        for column, values in targets:
            for chunk in chunked(sorted(values), WRITE_CHUNK):
                await self.session.execute(delete(column.class_).where(column.in_(chunk)))

    # =========================================================================
    # Accumulate-on-conflict writes
    # =========================================================================

    async def _merge(self, accumulator: RollupAccumulator) -> None:
        now = epoch_ms()
        await self._merge_daily(accumulator, now)
        await self._merge_rules(accumulator, now)
        await self._merge_ips(accumulator, now)
        await self._merge_paths(accumulator, now)

    async def _merge_daily(self, accumulator: RollupAccumulator, now: int) -> None:
        rows = [
            {"date": day, "action": action, "count": count, "last_updated": now}
            for (day, action), count in sorted(accumulator.daily.items())
        ]
        table = DailyAction.__table__
        for chunk in chunked(rows, WRITE_CHUNK):
            stmt = dialect_insert(self.session, table).values(list(chunk))
            stmt = stmt.on_conflict_do_update(
                index_elements=["date", "action"],
                set_={
                    "count": table.c.count + stmt.excluded.count,
                    "last_updated": stmt.excluded.last_updated,
                },
            )
            await self.session.execute(stmt)

    async def _merge_rules(self, accumulator: RollupAccumulator, now: int) -> None:
        rows = [
            {
                "rule_id": rule_id,
                "rule_name": totals.rule_name,
                "rule_type": totals.rule_type,
                "count": totals.count,
                "last_seen": totals.last_seen,
                "last_updated": now,
            }
            for rule_id, totals in sorted(accumulator.rules.items())
        ]
        table = TopRule.__table__
        for chunk in chunked(rows, WRITE_CHUNK):
            stmt = dialect_insert(self.session, table).values(list(chunk))
            excluded = stmt.excluded
            stmt = stmt.on_conflict_do_update(
                index_elements=["rule_id"],
                set_={
                    "rule_name": func.coalesce(excluded.rule_name, table.c.rule_name),
                    "rule_type": func.coalesce(
                        func.nullif(excluded.rule_type, "unknown"),
                        table.c.rule_type,
                        excluded.rule_type,
                    ),
                    "count": table.c.count + excluded.count,
                    "last_seen": _greatest(table.c.last_seen, excluded.last_seen),
                    "last_updated": excluded.last_updated,
                },
            )
            await self.session.execute(stmt)

    async def _merge_ips(self, accumulator: RollupAccumulator, now: int) -> None:
        if not accumulator.ips:
            return

        # Country/ASN sets are unioned with what is stored; counts accumulate in SQL
        existing: dict[str, Any] = {}
        for chunk in chunked(sorted(accumulator.ips), WRITE_CHUNK):
            result = await self.session.execute(
                select(TopIP.src_ip, TopIP.countries, TopIP.asns).where(TopIP.src_ip.in_(chunk))
            )
            existing.update({row.src_ip: row for row in result.all()})

        rows = []
        for src_ip, totals in sorted(accumulator.ips.items()):
            stored = existing.get(src_ip)
            countries = set(totals.countries)
            asns = set(totals.asns)
            if stored is not None:
                countries.update(stored.countries or [])
                asns.update(stored.asns or [])
            rows.append(
                {
                    "src_ip": src_ip,
                    "count": totals.count,
                    "countries": sorted(countries),
                    "asns": sorted(asns),
                    "last_seen": totals.last_seen,
                    "last_updated": now,
                }
            )

        table = TopIP.__table__
        for chunk in chunked(rows, WRITE_CHUNK):
            stmt = dialect_insert(self.session, table).values(list(chunk))
            excluded = stmt.excluded
            stmt = stmt.on_conflict_do_update(
                index_elements=["src_ip"],
                set_={
                    "count": table.c.count + excluded.count,
                    "countries": excluded.countries,
                    "asns": excluded.asns,
                    "last_seen": _greatest(table.c.last_seen, excluded.last_seen),
                    "last_updated": excluded.last_updated,
                },
            )
            await self.session.execute(stmt)

    async def _merge_paths(self, accumulator: RollupAccumulator, now: int) -> None:
        rows = [
            {
                "path_hash": key,
                "path": totals.path,
                "method": totals.method,
                "status": totals.status,
                "count": totals.count,
                "last_seen": totals.last_seen,
                "last_updated": now,
            }
            for key, totals in sorted(accumulator.paths.items())
        ]
        table = AttackPath.__table__
        for chunk in chunked(rows, WRITE_CHUNK):
            stmt = dialect_insert(self.session, table).values(list(chunk))
            excluded = stmt.excluded
            stmt = stmt.on_conflict_do_update(
                index_elements=["path_hash"],
                set_={
                    "count": table.c.count + excluded.count,
                    "last_seen": _greatest(table.c.last_seen, excluded.last_seen),
                    "last_updated": excluded.last_updated,
                },
            )
            await self.session.execute(stmt)


def _greatest(current: Any, candidate: Any) -> Any:
    """Portable max() of two nullable columns (GREATEST is not in SQLite)."""
    return case(
        (current.is_(None), candidate),
        (candidate.is_(None), current),
        (candidate > current, candidate),
        else_=current,
    )
