"""Since-last-read API endpoint with client-id cookies, auth, and rate limiting."""

from __future__ import annotations

import hmac
import json
import time
from dataclasses import dataclass
from functools import lru_cache
from http.cookies import CookieError, SimpleCookie
from typing import Any
from urllib.parse import parse_qs, urlparse

from config import get_config
from continuity.candidates import CandidateStoreError
from continuity.engine import ContinuityEngine
from continuity.normalization import ANONYMOUS_CLIENT_ID
from continuity.observability import LogContext, get_logger

CLIENT_ID_HEADER = "x-digest-client-id"
CLIENT_ID_COOKIE = "the_digest_client_id"
COOKIE_MAX_AGE_SECONDS = 60 * 60 * 24 * 365
RATE_LIMIT_WINDOW_SECONDS = 60
RATE_LIMIT_MAX_REQUESTS = 20

_REQUEST_LOG: dict[str, list[float]] = {}


@dataclass(frozen=True)
class EndpointResponse:
    """HTTP-like response shape used by tests and serverless adapters."""

    status_code: int
    headers: dict[str, str]
    body: dict[str, Any]


def process_request(
    *,
    method: str,
    headers: dict[str, str] | None,
    query: dict[str, str] | None,
    raw_body: str,
    engine: ContinuityEngine,
    api_secret: str | None = None,
    now_ts: float | None = None,
) -> EndpointResponse:
    """Serve GET (snapshot) and POST (acknowledge) for one request."""
    request_headers = _normalize_headers(headers)
    now_value = now_ts if now_ts is not None else time.time()
    verb = method.upper()

    if verb not in {"GET", "POST"}:
        return EndpointResponse(
            status_code=405,
            headers=_base_headers(),
            body={"error": "method_not_allowed"},
        )

    if verb == "POST":
        auth_error = _check_authorization(request_headers, api_secret)
        if auth_error is not None:
            return EndpointResponse(
                status_code=401,
                headers=_base_headers(),
                body={"error": auth_error},
            )

    remote_addr = request_headers.get("x-forwarded-for", "") or request_headers.get("x-real-ip", "")
    client_key = remote_addr.split(",", 1)[0].strip() or "unknown"
    retry_after_ms = _rate_limit_retry_after(client_key=client_key, now_ts=now_value)
    if retry_after_ms is not None:
        return EndpointResponse(
            status_code=429,
            headers=_base_headers(),
            body={"error": "Too many requests", "retryAfterMs": retry_after_ms},
        )

    client_id = resolve_client_id(request_headers)

    if verb == "GET":
        depth = (query or {}).get("depth")
        try:
            payload = engine.get_since_last_read(client_id, depth)
        except CandidateStoreError as exc:
            get_logger().error(
                "since_last_read_failed",
                context=LogContext(client_id=client_id, depth=depth),
                error=str(exc),
            )
            return EndpointResponse(
                status_code=500,
                headers=_base_headers(),
                body={"error": str(exc) or "Failed to fetch since-last-read snapshot"},
            )
        return EndpointResponse(
            status_code=200,
            headers=_base_headers(client_id=payload.state.client_id),
            body=payload.to_dict(),
        )

    body = _parse_payload(raw_body)
    depth_value = body.get("depth")
    until_value = body.get("untilAt")
    result = engine.acknowledge(
        client_id,
        depth_value if isinstance(depth_value, str) else None,
        until_value if isinstance(until_value, str) else None,
    )
    return EndpointResponse(
        status_code=200,
        headers=_base_headers(client_id=result.client_id),
        body={"success": True, "state": result.to_dict()},
    )


def resolve_client_id(headers: dict[str, str]) -> str:
    """Header first, then cookie, then the anonymous id."""
    header_id = headers.get(CLIENT_ID_HEADER, "").strip()
    if header_id:
        return header_id

    cookie_header = headers.get("cookie", "")
    if cookie_header:
        cookies: SimpleCookie = SimpleCookie()
        try:
            cookies.load(cookie_header)
        except CookieError:
            return ANONYMOUS_CLIENT_ID
        morsel = cookies.get(CLIENT_ID_COOKIE)
        if morsel is not None and morsel.value.strip():
            return morsel.value.strip()

    return ANONYMOUS_CLIENT_ID


@lru_cache(maxsize=1)
def _default_engine() -> ContinuityEngine:
    from runtime import build_runtime

    return build_runtime(get_config()).engine


def handler(request: Any) -> Any:
    """Vercel-style handler adapter."""
    method = str(getattr(request, "method", "GET"))
    headers = dict(getattr(request, "headers", {}) or {})
    query = _parse_query(request)

    body_value = getattr(request, "body", b"")
    if isinstance(body_value, (bytes, bytearray)):
        raw_body = body_value.decode("utf-8", errors="replace")
    else:
        raw_body = str(body_value or "")

    response = process_request(
        method=method,
        headers=headers,
        query=query,
        raw_body=raw_body,
        engine=_default_engine(),
        api_secret=get_config().api_secret,
    )

    # Vercel python runtime accepts tuple (body, status, headers).
    return json.dumps(response.body), response.status_code, response.headers


def _parse_query(request: Any) -> dict[str, str]:
    args = getattr(request, "args", None)
    if isinstance(args, dict):
        return {str(k): str(v) for k, v in args.items()}
    url = str(getattr(request, "url", "") or getattr(request, "path", "") or "")
    parsed = parse_qs(urlparse(url).query)
    return {key: values[0] for key, values in parsed.items() if values}


def _parse_payload(raw_body: str) -> dict[str, Any]:
    if not raw_body.strip():
        return {}
    try:
        payload = json.loads(raw_body)
    except json.JSONDecodeError:
        return {}
    if not isinstance(payload, dict):
        return {}
    return payload


def _normalize_headers(headers: dict[str, str] | None) -> dict[str, str]:
    if not headers:
        return {}
    return {str(k).lower(): str(v) for k, v in headers.items()}


def _check_authorization(headers: dict[str, str], api_secret: str | None) -> str | None:
    """Return an error message, or None when the request may proceed."""
    if not api_secret:
        return None
    auth_header = headers.get("authorization", "")
    if not auth_header:
        return "Missing Authorization header"
    parts = auth_header.split(" ")
    if len(parts) != 2 or parts[0] != "Bearer":
        return "Invalid Authorization header format. Expected: Bearer <token>"
    if not hmac.compare_digest(parts[1], api_secret):
        return "Invalid API token"
    return None


def _base_headers(*, client_id: str | None = None) -> dict[str, str]:
    headers = {"Content-Type": "application/json"}
    if client_id:
        headers["Set-Cookie"] = (
            f"{CLIENT_ID_COOKIE}={client_id}; Max-Age={COOKIE_MAX_AGE_SECONDS}; "
            "Path=/; SameSite=Lax"
        )
    return headers


def _rate_limit_retry_after(*, client_key: str, now_ts: float) -> int | None:
    """Record this request; return milliseconds to wait when over the limit."""
    earliest = now_ts - RATE_LIMIT_WINDOW_SECONDS
    _drop_idle_addresses(earliest)
    entries = _REQUEST_LOG.get(client_key, [])
    retained = [value for value in entries if value > earliest]
    if len(retained) >= RATE_LIMIT_MAX_REQUESTS:
        _REQUEST_LOG[client_key] = retained
        retry_after = retained[0] + RATE_LIMIT_WINDOW_SECONDS - now_ts
        return max(int(retry_after * 1000), 0)
    retained.append(now_ts)
    _REQUEST_LOG[client_key] = retained
    return None


def _drop_idle_addresses(earliest: float) -> None:
    idle = [
        key for key, entries in _REQUEST_LOG.items() if not entries or entries[-1] <= earliest
    ]
    for key in idle:
        del _REQUEST_LOG[key]
