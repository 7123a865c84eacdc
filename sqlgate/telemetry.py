from datetime import datetime
from typing import Any, Optional

from fastapi import Request

REDACTED = "***REDACTED***"

SENSITIVE_FIELDS = {
    "password",
    "token",
    "secret",
    "apikey",
    "api_key",
    "x-api-key",
    "authorization",
    "creditcard",
    "ssn",
}


def sanitize_body(body: Any) -> Any:
    """Return a copy of ``body`` with sensitive values redacted at any depth."""
    if isinstance(body, dict):
        return {
            key: REDACTED if str(key).lower() in SENSITIVE_FIELDS else sanitize_body(value)
            for key, value in body.items()
        }
    if isinstance(body, list):
        return [sanitize_body(item) for item in body]
    return body


def get_client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    if request.headers.get("x-real-ip"):
        return request.headers["x-real-ip"]
    if request.client:
        return request.client.host
    return "unknown"


def build_audit_entry(
    request: Request,
    *,
    request_id: str,
    body: Any,
    request_size: int,
    status_code: int,
    response_size: int,
    start_time: datetime,
    end_time: datetime,
    endpoint_id: Optional[str] = None,
    credential_id: Optional[str] = None,
    error_message: Optional[str] = None,
    secret: Optional[str] = None,
) -> dict:
    # no query string, and no secret that was sent as a path segment
    route_path = request.url.path
    if secret:
        route_path = route_path.replace(secret, REDACTED)

    if error_message is None and status_code >= 400:
        error_message = f"HTTP {status_code}"

    return {
        "request_id": request_id[:64],
        "endpoint_id": endpoint_id,
        "credential_id": credential_id,
        "method": request.method,
        "url": route_path[:500],
        "route_path": request.scope["route"].path if request.scope.get("route") else route_path,
        "ip": get_client_ip(request)[:45],
        "forwarded_for": (request.headers.get("x-forwarded-for") or "")[:255] or None,
        "user_agent": (request.headers.get("user-agent") or "")[:500] or None,
        "body": sanitize_body(body) if body else None,
        "request_size": request_size,
        "status_code": status_code,
        "response_size": response_size,
        "response_time_ms": int((end_time - start_time).total_seconds() * 1000),
        "start_time": start_time,
        "end_time": end_time,
        "error_message": error_message[:1000] if error_message else None,
    }
