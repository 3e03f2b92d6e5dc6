import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

import azure.functions as func

from function_app import app, rate_limiter
from reports_shared import (
    ReportAuthError,
    caller_identifier,
    error_response,
    json_response,
    resolve_report_user,
    scope_records,
    scope_records_for_user,
    with_db_retry,
)
from repository.reports_repo import fetch_dashboard_records, fetch_pipeline_deals, fetch_territory_records
from services.rate_limiter import RequestRateLimiter
from services.report_metrics import (
    build_territory_performance_report,
    compute_executive_dashboard,
    compute_pipeline_health,
)
from services.territory_filter import ScopedUser
from shared.config import get_report_settings
from utils.cors import build_cors_headers

logger = logging.getLogger(__name__)

REPORT_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]
# Rate-limit key shared by every path outside REPORT_HANDLERS.
UNKNOWN_REPORT_ENDPOINT = "reports/unknown"


class InvalidPeriodError(ValueError):
    pass


def _iso(moment: datetime) -> str:
    return moment.isoformat().replace("+00:00", "Z")


def parse_period(raw: Any, default: int) -> int:
    """Parse a `period` query value in days; blank means the default."""
    text = str(raw if raw is not None else "").strip()
    if not text:
        return default
    try:
        days = int(text)
    except ValueError as exc:
        raise InvalidPeriodError(f"period must be a positive number of days, got {text!r}") from exc
    if days <= 0:
        raise InvalidPeriodError(f"period must be a positive number of days, got {text!r}")
    return days


def _report_path(req: func.HttpRequest) -> str:
    route_params = getattr(req, "route_params", None) or {}
    return str(route_params.get("path") or "").strip("/").lower()


def _executive_dashboard(db, user: ScopedUser, params, now: datetime) -> Dict[str, Any]:
    days = parse_period(params.get("period"), get_report_settings()["default_period_days"])
    compare_with = params.get("compareWith") or "previous_period"
    # Two windows back so the trend figures have a comparison period.
    records = fetch_dashboard_records(db, now - timedelta(days=2 * days))
    scoped = scope_records_for_user(user, records)
    data = compute_executive_dashboard(
        scoped["organizations"],
        scoped["contacts"],
        scoped["interactions"],
        scoped["deals"],
        period_days=days,
        now=now,
    )
    return {
        "data": data,
        "generated": _iso(now),
        "period": f"{days} days",
        "compareWith": compare_with,
    }


def _territory_performance(db, user: ScopedUser, params, now: datetime) -> Dict[str, Any]:
    days = parse_period(params.get("period"), get_report_settings()["territory_period_days"])
    account_manager = params.get("accountManager") or None
    records = fetch_territory_records(db, account_manager=account_manager, since=now - timedelta(days=days))
    scoped = scope_records_for_user(user, records)
    report = build_territory_performance_report(
        scoped["organizations"],
        scoped["interactions"],
        scoped["deals"],
        account_manager,
        now=now,
        period_days=days,
    )
    report.update({"generated": _iso(now), "period": f"{days} days"})
    return report


def _pipeline_health(db, user: ScopedUser, params, now: datetime) -> Dict[str, Any]:
    account_manager = params.get("accountManager") or None
    deals = scope_records(user, fetch_pipeline_deals(db, account_manager), "deals")
    return {
        "data": compute_pipeline_health(deals, account_manager, now=now),
        "generated": _iso(now),
    }


REPORT_HANDLERS: Dict[str, Callable[..., Dict[str, Any]]] = {
    "executive-dashboard": _executive_dashboard,
    "territory-performance": _territory_performance,
    "pipeline-health": _pipeline_health,
}


def handle_reports_request(
    req: func.HttpRequest,
    *,
    limiter: RequestRateLimiter,
    session_factory=None,
    now: Optional[datetime] = None,
) -> func.HttpResponse:
    cors = build_cors_headers(req, REPORT_METHODS)
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=200, headers=cors)

    path = _report_path(req)
    endpoint = f"reports/{path}" if path in REPORT_HANDLERS else UNKNOWN_REPORT_ENDPOINT
    identifier = caller_identifier(req)

    if limiter.should_block(identifier):
        logger.warning("Blocked report request from %s after repeated failures", identifier)
        return error_response("forbidden", "Too many failed requests; try again later", 403, cors)
    decision = limiter.check(identifier, endpoint)
    if not decision.allowed:
        return error_response(
            "rate_limited",
            "Too many requests",
            429,
            cors,
            headers={
                "Retry-After": str(limiter.retry_after(decision)),
                "X-RateLimit-Remaining": "0",
            },
        )
    rate_headers = {"X-RateLimit-Remaining": str(decision.remaining)}
    moment = now or datetime.now(timezone.utc)

    def _work(db):
        user = resolve_report_user(req, db)
        if req.method != "GET":
            return 405, {"error": "method_not_allowed", "message": f"{req.method} is not supported"}
        handler = REPORT_HANDLERS.get(path)
        if handler is None:
            return 404, {"error": "not_found", "message": f"Unknown report endpoint: {path or '/'}"}
        return 200, handler(db, user, req.params or {}, moment)

    try:
        status, payload = with_db_retry(_work, session_factory=session_factory)
    except ReportAuthError as exc:
        limiter.record_failure(identifier, endpoint)
        return error_response("unauthorized", str(exc), 401, cors, rate_headers)
    except InvalidPeriodError as exc:
        return error_response("invalid_period", str(exc), 400, cors, rate_headers)
    except Exception as exc:  # pylint: disable=broad-except
        logger.exception("Report %s failed", endpoint)
        limiter.record_failure(identifier, endpoint)
        return error_response("internal_error", str(exc), 500, cors, rate_headers)

    return json_response(payload, status, cors, rate_headers)


@app.function_name(name="ReportsApi")
@app.route(route="reports/{*path}", methods=REPORT_METHODS, auth_level=func.AuthLevel.ANONYMOUS)
def reports_api(req: func.HttpRequest) -> func.HttpResponse:
    return handle_reports_request(req, limiter=rate_limiter)
