from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

import azure.functions as func
from sqlalchemy.exc import OperationalError

from repository.reports_repo import find_user_by_email, user_territory
from services.territory_filter import ScopedUser, can_access_record
from shared.config import get_auth_session_secret, get_auth_session_ttl_seconds
from shared.db import SessionLocal, engine

logger = logging.getLogger(__name__)

MISSING_AUTH_MESSAGE = "Missing authorization header"
INVALID_TOKEN_MESSAGE = "Invalid or expired token"


class ReportAuthError(Exception):
    pass


def _normalize_email(value: Any) -> str:
    return str(value or "").strip().lower()


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64url_decode(raw: str) -> Optional[bytes]:
    value = str(raw or "").strip()
    if not value:
        return None
    padding = "=" * ((4 - len(value) % 4) % 4)
    try:
        return base64.urlsafe_b64decode(value + padding)
    except (ValueError, TypeError):
        return None


def _sign(secret: str, payload_bytes: bytes) -> bytes:
    return hmac.new(secret.encode("utf-8"), payload_bytes, hashlib.sha256).digest()


def issue_auth_session_token(
    email: str,
    *,
    role: Optional[str] = None,
    ttl_seconds: Optional[int] = None,
) -> Tuple[Optional[str], Optional[str]]:
    """Return (token, expires_at_iso); (None, None) without an email or secret."""
    normalized_email = _normalize_email(email)
    if not normalized_email:
        return None, None
    secret = get_auth_session_secret()
    if not secret:
        return None, None
    expires_in = ttl_seconds if isinstance(ttl_seconds, int) and ttl_seconds > 0 else get_auth_session_ttl_seconds()
    expires_at = datetime.now(timezone.utc) + timedelta(seconds=expires_in)
    payload: Dict[str, Any] = {
        "email": normalized_email,
        "exp": int(expires_at.timestamp()),
    }
    if role:
        payload["role"] = str(role).strip().lower()
    payload_bytes = json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")
    token = f"{_b64url_encode(payload_bytes)}.{_b64url_encode(_sign(secret, payload_bytes))}"
    return token, expires_at.isoformat()


def verify_auth_session_token(token: str) -> Optional[Dict[str, Any]]:
    raw = str(token or "").strip()
    if "." not in raw:
        return None
    payload_part, sig_part = raw.split(".", 1)
    payload_bytes = _b64url_decode(payload_part)
    sig_bytes = _b64url_decode(sig_part)
    if not payload_bytes or not sig_bytes:
        return None
    secret = get_auth_session_secret()
    if not secret:
        return None
    if not hmac.compare_digest(_sign(secret, payload_bytes), sig_bytes):
        return None
    try:
        payload = json.loads(payload_bytes.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return None
    if not isinstance(payload, dict):
        return None
    try:
        exp_ts = int(payload.get("exp") or 0)
    except (TypeError, ValueError):
        return None
    if exp_ts <= int(datetime.now(timezone.utc).timestamp()):
        return None
    email = _normalize_email(payload.get("email"))
    if not email:
        return None
    payload["email"] = email
    return payload


def extract_bearer_token(req: func.HttpRequest) -> str:
    headers = req.headers or {}
    auth_header = str(headers.get("Authorization") or headers.get("authorization") or "").strip()
    if not auth_header:
        return ""
    parts = auth_header.split(" ", 1)
    if len(parts) == 2 and parts[0].strip().lower() == "bearer":
        return parts[1].strip()
    return ""


def _has_auth_header(req: func.HttpRequest) -> bool:
    headers = req.headers or {}
    return bool(str(headers.get("Authorization") or headers.get("authorization") or "").strip())


def resolve_report_user(req: func.HttpRequest, db) -> ScopedUser:
    """
    Resolve the caller behind the bearer token to a ScopedUser.
    Role and territory always come from the users table, never from the token.
    """
    if not _has_auth_header(req):
        raise ReportAuthError(MISSING_AUTH_MESSAGE)
    payload = verify_auth_session_token(extract_bearer_token(req))
    if not payload:
        logger.warning("Rejected report request with an invalid session token")
        raise ReportAuthError(INVALID_TOKEN_MESSAGE)
    user = find_user_by_email(db, payload["email"])
    if not user or user.is_active is False:
        logger.warning("Session token for %s does not match an active user", payload["email"])
        raise ReportAuthError(INVALID_TOKEN_MESSAGE)
    return ScopedUser(
        id=user.id,
        role=str(user.role or ""),
        territory=user_territory(user),
        principals=[str(name) for name in (user.principals_json or []) if name is not None],
        email=user.email,
    )


def caller_identifier(req: func.HttpRequest) -> str:
    """Rate-limit key: the token's email when it verifies, else the client address."""
    payload = verify_auth_session_token(extract_bearer_token(req))
    if payload:
        return payload["email"]
    headers = req.headers or {}
    forwarded = str(headers.get("x-forwarded-for") or headers.get("X-Forwarded-For") or "").strip()
    if forwarded:
        return forwarded.split(",")[0].strip()
    return "anonymous"


def json_response(
    payload: Any,
    status: int,
    cors: Mapping[str, str],
    headers: Optional[Mapping[str, str]] = None,
) -> func.HttpResponse:
    merged = dict(cors)
    if headers:
        merged.update(headers)
    return func.HttpResponse(
        json.dumps(payload, default=str),
        status_code=status,
        mimetype="application/json",
        headers=merged,
    )


def error_response(
    code: str,
    message: str,
    status: int,
    cors: Mapping[str, str],
    headers: Optional[Mapping[str, str]] = None,
) -> func.HttpResponse:
    return json_response({"error": code, "message": message}, status, cors, headers)


def scope_records(
    user: ScopedUser,
    records: Iterable[Mapping[str, Any]],
    resource_type: str,
) -> List[Mapping[str, Any]]:
    return [record for record in records if can_access_record(user, record, resource_type)]


def scope_records_for_user(user: ScopedUser, records: Mapping[str, List[Mapping[str, Any]]]) -> Dict[str, List[Any]]:
    """Drop every record outside the caller's territory, per resource key."""
    return {resource: scope_records(user, items, resource) for resource, items in records.items()}


def with_db_retry(work_fn, *, session_factory=None, max_attempts: int = 2):
    """
    Run a DB operation with a single retry on OperationalError.
    Disposes the engine between attempts to clear bad connections.
    """
    factory = session_factory or SessionLocal
    last_exc = None
    for attempt in range(max_attempts):
        db = factory()
        try:
            return work_fn(db)
        except OperationalError as exc:  # database dropped connection
            last_exc = exc
            logger.warning("DB OperationalError (attempt %s/%s): %s", attempt + 1, max_attempts, exc)
            db.rollback()
            engine.dispose()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
    if last_exc:
        raise last_exc
    raise RuntimeError("DB operation failed after retries")
