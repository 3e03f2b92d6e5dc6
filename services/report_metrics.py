from __future__ import annotations

import calendar
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

STALE_DEAL_DAYS = 30
LONG_CYCLE_DAYS = 180
ATTENTION_DAYS = 30
TIMELINE_DAYS = 30
MONTHLY_BREAKDOWN_MONTHS = 6
TOP_TERRITORIES = 5
TOP_ORGANIZATIONS = 10
VELOCITY_STAGES = ["lead_discovery", "contacted", "sampled_visited", "follow_up", "close"]

Record = Mapping[str, Any]


# ---------------------------------------------------------------------------
# Primitives
# ---------------------------------------------------------------------------

def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse a datetime or ISO-8601 string into an aware UTC datetime."""
    if isinstance(value, datetime):
        return _as_utc(value)
    raw = str(value or "").strip()
    if not raw:
        return None
    try:
        return _as_utc(datetime.fromisoformat(raw.replace("Z", "+00:00")))
    except ValueError:
        return None


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat().replace("+00:00", "Z") if value else None


def safe_div(numerator: float, denominator: float) -> float:
    if not denominator:
        return 0
    return numerator / denominator


def _safe_float(value: Any) -> float:
    if value is None:
        return 0.0
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _amount(record: Record) -> float:
    return _safe_float(record.get("amount"))


def _probability(record: Record) -> float:
    return _safe_float(record.get("probability"))


def _weighted(record: Record) -> float:
    return _amount(record) * _probability(record) / 100


def _mean(values: Sequence[float]) -> float:
    return safe_div(sum(values), len(values))


def _with_status(deals: Iterable[Record], status: str) -> List[Record]:
    return [deal for deal in deals if deal.get("status") == status]


def won_revenue(deals: Iterable[Record]) -> float:
    return sum(_amount(deal) for deal in _with_status(deals, "won"))


def active_pipeline(deals: Iterable[Record]) -> float:
    return sum(_amount(deal) for deal in _with_status(deals, "active"))


def _days_between(start: Optional[datetime], end: Optional[datetime]) -> Optional[float]:
    if start is None or end is None:
        return None
    return (end - start).total_seconds() / 86400.0


def _days_since(value: Any, now: datetime) -> Optional[float]:
    return _days_between(parse_timestamp(value), now)


def _in_window(value: Any, start: datetime, end: datetime) -> bool:
    moment = parse_timestamp(value)
    return moment is not None and start <= moment < end


def _on_or_after(value: Any, start: datetime) -> bool:
    moment = parse_timestamp(value)
    return moment is not None and moment >= start


def _in_closed_range(value: Any, start: datetime, end: datetime) -> bool:
    moment = parse_timestamp(value)
    return moment is not None and start <= moment <= end


def _group_by(items: Iterable[Record], key_fn: Callable[[Record], Any]) -> Dict[Any, List[Record]]:
    groups: Dict[Any, List[Record]] = {}
    for item in items:
        groups.setdefault(key_fn(item), []).append(item)
    return groups


def _account_managers(organizations: Iterable[Record]) -> List[Any]:
    managers: List[Any] = []
    for org in organizations:
        manager = org.get("accountManager")
        if manager and manager not in managers:
            managers.append(manager)
    return managers


def _rank_by_revenue(items: Iterable[Dict[str, Any]], limit: int, key: Callable[[Dict[str, Any]], float]) -> List[Dict[str, Any]]:
    # sorted() is stable, so equal revenue keeps input order.
    return sorted(items, key=key, reverse=True)[:limit]


# ---------------------------------------------------------------------------
# Executive dashboard
# ---------------------------------------------------------------------------

def summarize_account_managers(organizations: Sequence[Record], deals: Sequence[Record]) -> List[Dict[str, Any]]:
    """Per account manager rollup; deals are attributed through their organization."""
    manager_by_org = {org.get("id"): org.get("accountManager") for org in organizations}
    deals_by_manager = _group_by(deals, lambda deal: manager_by_org.get(deal.get("organizationId")))
    rollup = []
    for manager in _account_managers(organizations):
        manager_deals = deals_by_manager.get(manager, [])
        rollup.append(
            {
                "accountManager": manager,
                "organizationCount": sum(1 for org in organizations if org.get("accountManager") == manager),
                "dealCount": len(manager_deals),
                "revenue": won_revenue(manager_deals),
                "pipelineValue": active_pipeline(manager_deals),
            }
        )
    return rollup


def _organizations_with_revenue(organizations: Sequence[Record], deals: Sequence[Record]) -> List[Dict[str, Any]]:
    deals_by_org = _group_by(deals, lambda deal: deal.get("organizationId"))
    return [dict(org, revenue=won_revenue(deals_by_org.get(org.get("id"), []))) for org in organizations]


def generate_activity_timeline(
    interactions: Sequence[Record],
    deals: Sequence[Record],
    days: int,
    now: datetime,
) -> List[Dict[str, Any]]:
    interactions_by_day = _group_by(interactions, lambda item: _day_key(item.get("createdAt")))
    deals_by_day = _group_by(deals, lambda item: _day_key(item.get("createdAt")))
    timeline = []
    for offset in range(days - 1, -1, -1):
        day = (now - timedelta(days=offset)).date().isoformat()
        day_deals = deals_by_day.get(day, [])
        timeline.append(
            {
                "date": day,
                "interactions": len(interactions_by_day.get(day, [])),
                "deals": len(day_deals),
                "revenue": won_revenue(day_deals),
            }
        )
    return timeline


def _day_key(value: Any) -> Optional[str]:
    moment = parse_timestamp(value)
    return moment.date().isoformat() if moment else None


def _stale_active_deals(deals: Iterable[Record], now: datetime) -> List[Record]:
    stale = []
    for deal in _with_status(deals, "active"):
        age = _days_since(deal.get("updatedAt"), now)
        if age is not None and age > STALE_DEAL_DAYS:
            stale.append(deal)
    return stale


def generate_executive_alerts(metrics: Mapping[str, Any], deals: Sequence[Record], now: datetime) -> List[Dict[str, str]]:
    alerts = []
    if metrics["dealWinRate"] < 20:
        alerts.append(
            {
                "type": "warning",
                "priority": "high",
                "message": f"Deal win rate is low at {metrics['dealWinRate']:.1f}%",
                "action": "Review deal qualification process",
            }
        )
    if metrics["interactionCompletionRate"] < 60:
        alerts.append(
            {
                "type": "warning",
                "priority": "medium",
                "message": f"Interaction completion rate is {metrics['interactionCompletionRate']:.1f}%",
                "action": "Focus on follow-up execution",
            }
        )
    stale = _stale_active_deals(deals, now)
    if stale:
        alerts.append(
            {
                "type": "info",
                "priority": "medium",
                "message": f"{len(stale)} deals haven't been updated in 30+ days",
                "action": "Review and update stale deals",
            }
        )
    return alerts


def _quick_stats(
    organizations: Sequence[Record],
    interactions: Sequence[Record],
    deals: Sequence[Record],
    now: datetime,
) -> Dict[str, int]:
    attention_cutoff = now - timedelta(days=ATTENTION_DAYS)
    needing_attention = 0
    for org in organizations:
        updated = parse_timestamp(org.get("updatedAt"))
        if updated is not None and updated < attention_cutoff:
            needing_attention += 1

    overdue = 0
    for interaction in interactions:
        if interaction.get("isCompleted"):
            continue
        follow_up = parse_timestamp(interaction.get("followUpDate"))
        if follow_up is not None and follow_up < now:
            overdue += 1

    hot = [
        deal
        for deal in _with_status(deals, "active")
        if _probability(deal) > 75 and _amount(deal) > 25000
    ]
    return {
        "organizationsNeedingAttention": needing_attention,
        "overdueFollowUps": overdue,
        "hotProspects": len(hot),
    }


def compute_executive_dashboard(
    organizations: Sequence[Record],
    contacts: Sequence[Record],
    interactions: Sequence[Record],
    deals: Sequence[Record],
    period_days: int = 30,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Executive overview for the `period_days` window ending at `now`.

    Only interactions are windowed (by createdAt); the previous window of the
    same length feeds the trend figures. Organizations, contacts and deals
    are taken whole.
    """
    now = _as_utc(now) if now else _now_utc()
    days = int(period_days)
    start = now - timedelta(days=days)
    previous_start = start - timedelta(days=days)

    current = [item for item in interactions if _in_window(item.get("createdAt"), start, now)]
    previous = [item for item in interactions if _in_window(item.get("createdAt"), previous_start, start)]
    completed = [item for item in current if item.get("isCompleted")]
    previous_completed = [item for item in previous if item.get("isCompleted")]
    won = _with_status(deals, "won")

    active_orgs = 0
    for org in organizations:
        updated = parse_timestamp(org.get("updatedAt"))
        if updated is not None and updated >= start:
            active_orgs += 1

    metrics = {
        "totalRevenue": won_revenue(deals),
        "pipelineValue": active_pipeline(deals),
        "totalOrganizations": len(organizations),
        "activeOrganizations": active_orgs,
        "totalContacts": len(contacts),
        "totalInteractions": len(current),
        "completedInteractions": len(completed),
        "totalDeals": len(deals),
        "wonDeals": len(won),
        "lostDeals": len(_with_status(deals, "lost")),
        "interactionCompletionRate": safe_div(len(completed), len(current)) * 100,
        "dealWinRate": safe_div(len(won), len(deals)) * 100,
    }

    trends = {
        "interactionGrowth": safe_div(len(current) - len(previous), len(previous)) * 100,
        "completionRateChange": (
            (safe_div(len(completed), len(current)) - safe_div(len(previous_completed), len(previous))) * 100
            if previous
            else 0
        ),
    }

    rollup = summarize_account_managers(organizations, deals)
    territory_performance = _rank_by_revenue(rollup, len(rollup), key=lambda item: item["revenue"])
    top_performers = {
        "territories": territory_performance[:TOP_TERRITORIES],
        "organizations": _rank_by_revenue(
            _organizations_with_revenue(organizations, deals),
            TOP_ORGANIZATIONS,
            key=lambda item: item["revenue"],
        ),
    }

    return {
        "summary": {
            "period": f"{days} days",
            "generatedAt": _iso(now),
            "totalRevenue": metrics["totalRevenue"],
            "pipelineValue": metrics["pipelineValue"],
            "conversionRate": metrics["dealWinRate"],
            "activityLevel": metrics["interactionCompletionRate"],
        },
        "metrics": metrics,
        "trends": trends,
        "territoryPerformance": territory_performance,
        "topPerformers": top_performers,
        "timeline": generate_activity_timeline(current, deals, TIMELINE_DAYS, now),
        "alerts": generate_executive_alerts(metrics, deals, now),
        "quickStats": _quick_stats(organizations, current, deals, now),
    }


# ---------------------------------------------------------------------------
# Territory (account manager) performance
# ---------------------------------------------------------------------------

def trailing_month_ranges(now: datetime, months: int = MONTHLY_BREAKDOWN_MONTHS) -> List[tuple]:
    """Closed (label, first instant, last instant) ranges, oldest month first."""
    ranges = []
    current_index = now.year * 12 + (now.month - 1)
    for offset in range(months - 1, -1, -1):
        year, month_zero = divmod(current_index - offset, 12)
        month = month_zero + 1
        last_day = calendar.monthrange(year, month)[1]
        start = datetime(year, month, 1, tzinfo=timezone.utc)
        end = datetime(year, month, last_day, 23, 59, 59, 999999, tzinfo=timezone.utc)
        ranges.append((f"{year:04d}-{month:02d}", start, end))
    return ranges


def _monthly_breakdown(interactions: Sequence[Record], deals: Sequence[Record], now: datetime) -> List[Dict[str, Any]]:
    breakdown = []
    for label, start, end in trailing_month_ranges(now):
        month_deals = [deal for deal in deals if _in_closed_range(deal.get("createdAt"), start, end)]
        breakdown.append(
            {
                "month": label,
                "interactions": sum(
                    1 for item in interactions if _in_closed_range(item.get("createdAt"), start, end)
                ),
                "deals": len(month_deals),
                "revenue": won_revenue(month_deals),
            }
        )
    return breakdown


def last_activity_date(org_id: Any, interactions: Iterable[Record], deals: Iterable[Record]) -> Optional[str]:
    dates = [
        parse_timestamp(item.get("createdAt"))
        for item in list(interactions) + list(deals)
        if item.get("organizationId") == org_id
    ]
    dates = [value for value in dates if value is not None]
    return _iso(max(dates)) if dates else None


def _manager_performance(
    manager: Any,
    manager_orgs: Sequence[Record],
    interactions: Sequence[Record],
    deals: Sequence[Record],
    now: datetime,
) -> Dict[str, Any]:
    org_ids = {org.get("id") for org in manager_orgs}
    manager_interactions = [item for item in interactions if item.get("organizationId") in org_ids]
    manager_deals = [deal for deal in deals if deal.get("organizationId") in org_ids]
    won = _with_status(manager_deals, "won")
    completed = [item for item in manager_interactions if item.get("isCompleted")]
    revenue = won_revenue(manager_deals)

    organizations = []
    for org in manager_orgs:
        org_deals = [deal for deal in manager_deals if deal.get("organizationId") == org.get("id")]
        organizations.append(
            {
                "id": org.get("id"),
                "name": org.get("name"),
                "lastActivity": last_activity_date(org.get("id"), interactions, deals),
                "dealCount": len(org_deals),
                "revenue": won_revenue(org_deals),
            }
        )

    return {
        "accountManager": manager,
        "metrics": {
            "organizationCount": len(manager_orgs),
            "interactionCount": len(manager_interactions),
            "completionRate": safe_div(len(completed), len(manager_interactions)) * 100,
            "dealCount": len(manager_deals),
            "winRate": safe_div(len(won), len(manager_deals)) * 100,
            "revenue": revenue,
            "pipelineValue": active_pipeline(manager_deals),
            "avgDealSize": safe_div(revenue, len(won)),
        },
        "organizations": organizations,
        "monthlyBreakdown": _monthly_breakdown(manager_interactions, manager_deals, now),
    }


def compute_territory_performance(
    organizations: Sequence[Record],
    interactions: Sequence[Record],
    deals: Sequence[Record],
    account_manager: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
    period_days: Optional[int] = None,
) -> List[Dict[str, Any]]:
    now = _as_utc(now) if now else _now_utc()
    if account_manager:
        organizations = [org for org in organizations if org.get("accountManager") == account_manager]
    org_ids = {org.get("id") for org in organizations}
    scoped_interactions = [item for item in interactions if item.get("organizationId") in org_ids]
    if period_days is not None:
        since = now - timedelta(days=int(period_days))
        scoped_interactions = [item for item in scoped_interactions if _on_or_after(item.get("createdAt"), since)]
    scoped_deals = [deal for deal in deals if deal.get("organizationId") in org_ids]

    orgs_by_manager = _group_by(organizations, lambda org: org.get("accountManager"))
    performance = [
        _manager_performance(manager, orgs_by_manager[manager], scoped_interactions, scoped_deals, now)
        for manager in _account_managers(organizations)
    ]
    return sorted(performance, key=lambda item: item["metrics"]["revenue"], reverse=True)


def compute_territory_benchmarks(performance: Sequence[Mapping[str, Any]]) -> Dict[str, float]:
    """Cross-manager means; an empty list reports 0 for every benchmark."""

    def _avg(key: str) -> float:
        return _mean([item["metrics"][key] for item in performance])

    return {
        "avgInteractionCount": _avg("interactionCount"),
        "avgCompletionRate": _avg("completionRate"),
        "avgWinRate": _avg("winRate"),
        "avgRevenue": _avg("revenue"),
        "avgDealSize": _avg("avgDealSize"),
    }


def build_territory_performance_report(
    organizations: Sequence[Record],
    interactions: Sequence[Record],
    deals: Sequence[Record],
    account_manager: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
    period_days: Optional[int] = None,
) -> Dict[str, Any]:
    performance = compute_territory_performance(
        organizations,
        interactions,
        deals,
        account_manager,
        now=now,
        period_days=period_days,
    )
    if account_manager:
        data: Any = next((item for item in performance if item["accountManager"] == account_manager), None)
    else:
        data = performance
    return {
        "data": data,
        "benchmarks": compute_territory_benchmarks(performance),
        "summary": {
            "totalTerritories": len(performance),
            "totalRevenue": sum(item["metrics"]["revenue"] for item in performance),
            "totalPipeline": sum(item["metrics"]["pipelineValue"] for item in performance),
            "totalOrganizations": sum(item["metrics"]["organizationCount"] for item in performance),
        },
    }


# ---------------------------------------------------------------------------
# Pipeline health
# ---------------------------------------------------------------------------

def _pipeline_by_stage(active_deals: Sequence[Record]) -> List[Dict[str, Any]]:
    stages = _group_by(active_deals, lambda deal: deal.get("stage") or "unknown")
    return [
        {
            "stage": stage,
            "count": len(stage_deals),
            "value": sum(_amount(deal) for deal in stage_deals),
            "avgProbability": _mean([_probability(deal) for deal in stage_deals]),
            "weightedValue": sum(_weighted(deal) for deal in stage_deals),
        }
        for stage, stage_deals in stages.items()
    ]


def calculate_stage_velocity(deals: Sequence[Record], now: datetime) -> List[Dict[str, Any]]:
    velocity = []
    for stage in VELOCITY_STAGES:
        in_stage = [deal for deal in deals if deal.get("stage") == stage]
        ages = [_days_since(deal.get("createdAt"), now) for deal in _with_status(in_stage, "active")]
        ages = [age for age in ages if age is not None]
        velocity.append({"stage": stage, "avgDays": int(_mean(ages)), "dealsInStage": len(in_stage)})
    return velocity


def calculate_deal_velocity(won_deals: Sequence[Record], lost_deals: Sequence[Record]) -> float:
    """Mean days from creation to last update over closed deals."""
    durations = [
        _days_between(parse_timestamp(deal.get("createdAt")), parse_timestamp(deal.get("updatedAt")))
        for deal in list(won_deals) + list(lost_deals)
    ]
    return _mean([value for value in durations if value is not None])


def _risk_analysis(active_deals: Sequence[Record], now: datetime) -> Dict[str, int]:
    long_cycle = 0
    for deal in active_deals:
        age = _days_since(deal.get("createdAt"), now)
        if age is not None and age > LONG_CYCLE_DAYS:
            long_cycle += 1
    return {
        "staleDeals": len(_stale_active_deals(active_deals, now)),
        "lowProbabilityHighValue": sum(
            1 for deal in active_deals if _probability(deal) < 25 and _amount(deal) > 50000
        ),
        "longSalesCycle": long_cycle,
    }


def _forecast(active_deals: Sequence[Record], now: datetime) -> Dict[str, Any]:
    closing = []
    for deal in active_deals:
        closing_date = parse_timestamp(deal.get("expectedClosingDate"))
        if closing_date and closing_date.year == now.year and closing_date.month == now.month:
            closing.append(deal)
    return {
        "currentQuarter": {
            "committed": sum(_amount(deal) for deal in active_deals if _probability(deal) >= 90),
            "bestCase": sum(_weighted(deal) for deal in active_deals if _probability(deal) >= 50),
            "pipeline": sum(_amount(deal) for deal in active_deals),
        },
        "closingThisMonth": closing,
    }


def calculate_pipeline_health_score(health_metrics: Mapping[str, float], risk_analysis: Mapping[str, int]) -> float:
    score = 100

    if health_metrics["winRate"] < 20:
        score -= 30
    elif health_metrics["winRate"] < 40:
        score -= 15

    if health_metrics["dealVelocity"] > 120:
        score -= 20
    elif health_metrics["dealVelocity"] > 90:
        score -= 10

    if health_metrics["pipelineCoverage"] < 2:
        score -= 25
    elif health_metrics["pipelineCoverage"] < 3:
        score -= 10

    score -= risk_analysis["staleDeals"] * 2
    score -= risk_analysis["longSalesCycle"] * 3
    score -= risk_analysis["lowProbabilityHighValue"] * 5

    return max(0, min(100, score))


def generate_pipeline_recommendations(risk_analysis: Mapping[str, int], health_metrics: Mapping[str, float]) -> List[str]:
    recommendations = []
    if health_metrics["winRate"] < 30:
        recommendations.append("Improve lead qualification process to increase win rate")
    if health_metrics["dealVelocity"] > 120:
        recommendations.append("Focus on accelerating deal progression through stages")
    if risk_analysis["staleDeals"] > 5:
        recommendations.append("Schedule reviews for deals without recent activity")
    if health_metrics["pipelineCoverage"] < 3:
        recommendations.append("Increase prospecting activities to build pipeline")
    return recommendations


def compute_pipeline_health(
    deals: Sequence[Record],
    account_manager: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    now = _as_utc(now) if now else _now_utc()
    if account_manager:
        deals = [deal for deal in deals if (deal.get("organization") or {}).get("accountManager") == account_manager]

    active = _with_status(deals, "active")
    won = _with_status(deals, "won")
    lost = _with_status(deals, "lost")
    pipeline_value = sum(_amount(deal) for deal in active)
    won_value = sum(_amount(deal) for deal in won)

    risk = _risk_analysis(active, now)
    health_metrics = {
        "dealVelocity": calculate_deal_velocity(won, lost),
        "winRate": safe_div(len(won), len(deals)) * 100,
        "avgDealSize": safe_div(won_value, len(won)),
        # Coverage against a quarterly target estimated as a quarter of won value.
        "pipelineCoverage": safe_div(pipeline_value, won_value / 4) if active else 0,
    }

    return {
        "summary": {
            "totalDeals": len(deals),
            "activeDeals": len(active),
            "totalPipelineValue": pipeline_value,
            "weightedPipelineValue": sum(_weighted(deal) for deal in active),
            "healthScore": calculate_pipeline_health_score(health_metrics, risk),
        },
        "pipelineByStage": _pipeline_by_stage(active),
        "stageVelocity": calculate_stage_velocity(deals, now),
        "riskAnalysis": risk,
        "forecast": _forecast(active, now),
        "healthMetrics": health_metrics,
        "recommendations": generate_pipeline_recommendations(risk, health_metrics),
    }
