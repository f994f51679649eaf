"""Rollup views and rebuild endpoint."""

from __future__ import annotations

from typing import Optional

import structlog
from fastapi import APIRouter, Query
from pydantic import BaseModel
from sqlalchemy import desc, select

from waflens.api.deps import DbSession, IngestionServiceDep
from waflens.persistence.models import AttackPath, DailyAction, TopIP, TopRule

logger = structlog.get_logger()

router = APIRouter(prefix="/rollups", tags=["rollups"])


# Response models
class DailyActionItem(BaseModel):
    """Event count for one UTC day and action."""

    date: str
    action: str
    count: int


class DailyActionsResponse(BaseModel):
    items: list[DailyActionItem]
    total: int


class TopRuleItem(BaseModel):
    """Rule hit counts."""

    rule_id: str
    rule_name: Optional[str]
    rule_type: Optional[str]
    count: int
    last_seen: Optional[int]


class TopRulesResponse(BaseModel):
    items: list[TopRuleItem]
    total: int


class TopIPItem(BaseModel):
    """Source IP hit counts with observed countries and ASNs."""

    src_ip: str
    count: int
    countries: list[str]
    asns: list[int]
    last_seen: Optional[int]


class TopIPsResponse(BaseModel):
    items: list[TopIPItem]
    total: int


class AttackPathItem(BaseModel):
    """Hit counts for one path, method and status combination."""

    path_hash: str
    path: str
    method: Optional[str]
    status: Optional[int]
    count: int
    last_seen: Optional[int]


class AttackPathsResponse(BaseModel):
    items: list[AttackPathItem]
    total: int


class RebuildResponse(BaseModel):
    status: str
    events: int


@router.get("/daily-actions", response_model=DailyActionsResponse)
async def get_daily_actions(
    db: DbSession,
    since: Optional[str] = Query(None, description="First day (YYYY-MM-DD), inclusive"),
    until: Optional[str] = Query(None, description="Last day (YYYY-MM-DD), inclusive"),
    limit: int = Query(500, ge=1, le=5000, description="Maximum rows to return"),
) -> DailyActionsResponse:
    """Get per-day action counts, newest day first."""
    query = select(DailyAction)
    if since:
        query = query.where(DailyAction.date >= since)
    if until:
        query = query.where(DailyAction.date <= until)
    query = query.order_by(desc(DailyAction.date), DailyAction.action).limit(limit)

    result = await db.execute(query)
    rows = result.scalars().all()
    return DailyActionsResponse(
        items=[DailyActionItem(date=r.date, action=r.action, count=r.count) for r in rows],
        total=len(rows),
    )


@router.get("/rules", response_model=TopRulesResponse)
async def get_top_rules(
    db: DbSession,
    limit: int = Query(50, ge=1, le=500, description="Number of rules to return"),
) -> TopRulesResponse:
    """Get the most frequently matched rules."""
    result = await db.execute(
        select(TopRule).order_by(desc(TopRule.count), TopRule.rule_id).limit(limit)
    )
    rules = result.scalars().all()
    return TopRulesResponse(
        items=[
            TopRuleItem(
                rule_id=rule.rule_id,
                rule_name=rule.rule_name,
                rule_type=rule.rule_type,
                count=rule.count,
                last_seen=rule.last_seen,
            )
            for rule in rules
        ],
        total=len(rules),
    )


@router.get("/ips", response_model=TopIPsResponse)
async def get_top_ips(
    db: DbSession,
    limit: int = Query(50, ge=1, le=500, description="Number of IPs to return"),
) -> TopIPsResponse:
    """Get the most active source IPs."""
    result = await db.execute(select(TopIP).order_by(desc(TopIP.count), TopIP.src_ip).limit(limit))
    ips = result.scalars().all()
    return TopIPsResponse(
        items=[
            TopIPItem(
                src_ip=ip.src_ip,
                count=ip.count,
                countries=ip.countries or [],
                asns=ip.asns or [],
                last_seen=ip.last_seen,
            )
            for ip in ips
        ],
        total=len(ips),
    )


@router.get("/paths", response_model=AttackPathsResponse)
async def get_attack_paths(
    db: DbSession,
    limit: int = Query(50, ge=1, le=500, description="Number of paths to return"),
) -> AttackPathsResponse:
    """Get the most targeted request paths."""
    result = await db.execute(
        select(AttackPath).order_by(desc(AttackPath.count), AttackPath.path_hash).limit(limit)
    )
    paths = result.scalars().all()
    return AttackPathsResponse(
        items=[
            AttackPathItem(
                path_hash=p.path_hash,
                path=p.path,
                method=p.method,
                status=p.status,
                count=p.count,
                last_seen=p.last_seen,
            )
            for p in paths
        ],
        total=len(paths),
    )


@router.post("/rebuild", response_model=RebuildResponse)
async def rebuild_rollups(service: IngestionServiceDep) -> RebuildResponse:
    """Regenerate every rollup table from the stored events."""
    events = await service.rebuild_rollups()
    logger.info("rollup_rebuild_requested", events=events)
    return RebuildResponse(status="rebuilt", events=events)
