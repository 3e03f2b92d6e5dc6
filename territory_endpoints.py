import logging
from typing import Any, Dict, List, Optional, Tuple

import azure.functions as func

from function_app import app, rate_limiter
from reports_shared import (
    ReportAuthError,
    caller_identifier,
    error_response,
    json_response,
    resolve_report_user,
    with_db_retry,
)
from services.rate_limiter import RequestRateLimiter
from services.territory_filter import parse_territory, validate_territory
from services.territory_scope import TerritoryScope
from utils.cors import build_cors_headers

logger = logging.getLogger(__name__)

TERRITORY_METHODS = ["GET", "POST", "OPTIONS"]
ACTION_METHODS = {
    "scope": "GET",
    "validate": "POST",
    "filter": "POST",
    "access": "POST",
}


class BadRequestError(ValueError):
    pass


def _territory_list(raw: Any) -> List[str]:
    if raw is None:
        return []
    if isinstance(raw, str):
        return [area.strip() for area in raw.split(",")] if raw.strip() else []
    if isinstance(raw, list):
        return ["" if area is None else str(area) for area in raw]
    raise BadRequestError("territory must be a list or a comma-separated string")


def _json_body(req: func.HttpRequest) -> Dict[str, Any]:
    try:
        body = req.get_json()
    except ValueError as exc:
        raise BadRequestError("Request body must be JSON") from exc
    if not isinstance(body, dict):
        raise BadRequestError("Request body must be a JSON object")
    return body


def _scope_summary(scope: TerritoryScope, req: func.HttpRequest) -> Dict[str, Any]:
    return scope.summary()


def _validate(scope: TerritoryScope, req: func.HttpRequest) -> Dict[str, Any]:
    territory = _territory_list(_json_body(req).get("territory"))
    result = validate_territory(territory)
    result["parsed"] = parse_territory(",".join(territory))
    return result


def _filter(scope: TerritoryScope, req: func.HttpRequest) -> Dict[str, Any]:
    body = _json_body(req)
    resource = str(body.get("resource") or "").strip()
    if not resource:
        raise BadRequestError("resource is required")
    query = body.get("query")
    if query is not None and not isinstance(query, dict):
        raise BadRequestError("query must be an object")
    return {
        "resource": resource,
        "query": scope.list_query(resource, query),
        "hasRestrictions": scope.has_restrictions,
    }


def _access(scope: TerritoryScope, req: func.HttpRequest) -> Dict[str, Any]:
    body = _json_body(req)
    resource_type = str(body.get("resourceType") or "").strip()
    if not resource_type:
        raise BadRequestError("resourceType is required")
    record = body.get("record")
    if record is not None and not isinstance(record, dict):
        raise BadRequestError("record must be an object")
    return scope.record_access(record, resource_type)


TERRITORY_HANDLERS = {
    "scope": _scope_summary,
    "validate": _validate,
    "filter": _filter,
    "access": _access,
}


def handle_territory_request(
    req: func.HttpRequest,
    *,
    limiter: RequestRateLimiter,
    session_factory=None,
) -> func.HttpResponse:
    cors = build_cors_headers(req, TERRITORY_METHODS)
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=200, headers=cors)

    action = str((getattr(req, "route_params", None) or {}).get("action") or "").strip().lower()
    endpoint = f"territory/{action}"
    identifier = caller_identifier(req)
    if limiter.should_block(identifier):
        return error_response("forbidden", "Too many failed requests; try again later", 403, cors)
    decision = limiter.check(identifier, endpoint)
    if not decision.allowed:
        return error_response(
            "rate_limited",
            "Too many requests",
            429,
            cors,
            headers={"Retry-After": str(limiter.retry_after(decision)), "X-RateLimit-Remaining": "0"},
        )

    def _work(db) -> Tuple[int, Optional[Dict[str, Any]]]:
        scope = TerritoryScope(resolve_report_user(req, db))
        handler = TERRITORY_HANDLERS.get(action)
        if handler is None:
            return 404, {"error": "not_found", "message": f"Unknown territory endpoint: {action or '/'}"}
        if req.method != ACTION_METHODS[action]:
            return 405, {"error": "method_not_allowed", "message": f"{req.method} is not supported"}
        return 200, handler(scope, req)

    try:
        status, payload = with_db_retry(_work, session_factory=session_factory)
    except ReportAuthError as exc:
        limiter.record_failure(identifier, endpoint)
        return error_response("unauthorized", str(exc), 401, cors)
    except BadRequestError as exc:
        return error_response("invalid_request", str(exc), 400, cors)
    except Exception as exc:  # pylint: disable=broad-except
        logger.exception("Territory %s failed", endpoint)
        limiter.record_failure(identifier, endpoint)
        return error_response("internal_error", str(exc), 500, cors)

    return json_response(payload, status, cors)


@app.function_name(name="TerritoryApi")
@app.route(route="territory/{action}", methods=TERRITORY_METHODS, auth_level=func.AuthLevel.ANONYMOUS)
def territory_api(req: func.HttpRequest) -> func.HttpResponse:
    return handle_territory_request(req, limiter=rate_limiter)
