from __future__ import annotations

import os
from typing import Dict, Iterable, List, Set
from urllib.parse import urlsplit

import azure.functions as func

DEFAULT_ALLOWED_HEADERS = [
    "Content-Type",
    "Authorization",
    "x-user-email",
]
EXPOSED_HEADERS = "Retry-After, X-RateLimit-Remaining"


def _raw_origins() -> str:
    return (
        os.getenv("ALLOWED_ORIGINS")
        or os.getenv("CORS")
        or os.getenv("CORS_ORIGIN")
        or os.getenv("CORS_ALLOWED_ORIGINS")
        or "*"
    )


def _parse_origins(raw: str) -> List[str]:
    """Split comma-separated origins, honoring a wildcard if present."""
    origins: List[str] = []
    for origin in raw.split(","):
        cleaned = origin.strip()
        if not cleaned:
            continue
        if cleaned == "*":
            return ["*"]
        origins.append(cleaned)
    return origins


def _env_flag(names: Iterable[str], default: bool = False) -> bool:
    truthy = {"1", "true", "yes", "y"}
    falsy = {"0", "false", "no", "n"}
    for name in names:
        raw = os.getenv(name)
        if raw is None:
            continue
        lowered = raw.lower()
        if lowered in truthy:
            return True
        if lowered in falsy:
            return False
    return default


def allowed_origins() -> List[str]:
    return _parse_origins(_raw_origins())


def allow_credentials() -> bool:
    return _env_flag(["CORS_ALLOW_CREDENTIALS", "CORS_CREDENTIALS", "CORSCredentials"])


def _is_local_origin(origin: str | None) -> bool:
    if not origin:
        return False
    host = urlsplit(origin).hostname or ""
    return host in {"localhost", "127.0.0.1"}


def _origin_matches(origin: str, allowed: str) -> bool:
    """
    Compare an Origin header with one allow-list entry. Entries may carry a
    `*.` subdomain wildcard or omit the scheme, in which case any scheme matches.
    """
    if not origin or not allowed:
        return False
    origin_parts = urlsplit(origin.strip().rstrip("/").lower())
    entry = allowed.strip().rstrip("/").lower()
    if "://" not in entry:
        entry_scheme, entry_netloc = "", entry
    else:
        entry_scheme, entry_netloc = entry.split("://", 1)
    if entry_scheme and entry_scheme != origin_parts.scheme:
        return False
    if entry_netloc.startswith("*."):
        suffix = entry_netloc[1:]
        return origin_parts.netloc.endswith(suffix) and origin_parts.netloc != suffix[1:]
    if ":" in entry_netloc:
        return origin_parts.netloc == entry_netloc
    return origin_parts.hostname == entry_netloc and (origin_parts.port is None or not entry_scheme)


def _allow_headers(req: func.HttpRequest) -> str:
    """Known application headers plus anything the browser preflight asks for."""
    requested = (req.headers or {}).get("Access-Control-Request-Headers", "")
    merged: Dict[str, str] = {}
    for name in DEFAULT_ALLOWED_HEADERS:
        merged[name.lower()] = name
    for name in requested.split(","):
        cleaned = name.strip()
        if cleaned:
            merged.setdefault(cleaned.lower(), cleaned)
    return ", ".join(merged.values())


def build_cors_headers(req: func.HttpRequest, allowed_methods: Iterable[str]) -> Dict[str, str]:
    """Return CORS headers for the request origin if allowed."""
    headers_in = req.headers or {}
    origin = headers_in.get("origin") or headers_in.get("Origin")
    seen: Set[str] = set()
    methods_list: List[str] = []
    for method in allowed_methods:
        normalized = method.strip().upper()
        if not normalized or normalized in seen:
            continue
        seen.add(normalized)
        methods_list.append(normalized)
    if "OPTIONS" not in seen:
        methods_list.append("OPTIONS")

    origins = allowed_origins()
    credentials = allow_credentials()
    allow_all = not origins or "*" in origins
    origin_allowed = allow_all or any(_origin_matches(origin or "", entry) for entry in origins)
    if not origin_allowed and _is_local_origin(origin):
        origin_allowed = True

    headers: Dict[str, str] = {"Vary": "Origin"}
    if not origin_allowed:
        return headers

    # When credentials are allowed, echo the caller's origin instead of "*".
    if credentials and origin:
        allow_origin = origin
    elif allow_all:
        allow_origin = "*"
    else:
        allow_origin = origin or "*"
    headers.update(
        {
            "Access-Control-Allow-Origin": allow_origin,
            "Access-Control-Allow-Methods": ", ".join(methods_list),
            "Access-Control-Allow-Headers": _allow_headers(req),
            "Access-Control-Expose-Headers": EXPOSED_HEADERS,
        }
    )
    if credentials:
        headers["Access-Control-Allow-Credentials"] = "true"
    return headers
