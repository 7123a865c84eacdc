import logging
import re
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .credentials import get_credential_by_endpoint_id
from .enums import EndpointStatus, EndpointType, HttpMethod
from .errors import EndpointActivationError, EndpointValidationError
from .models import Endpoint
from .security import looks_like_secret

PATH_RE = re.compile(r"^[A-Za-z0-9_-]{1,100}$")
# taken by fixed routes under /api/proxy
RESERVED_PATHS = {"health"}


async def get_endpoint_by_id(db: AsyncSession, endpoint_id: str) -> Optional[Endpoint]:
    return await db.get(Endpoint, endpoint_id)


async def get_endpoint_by_path(db: AsyncSession, path: str) -> Optional[Endpoint]:
    result = await db.execute(select(Endpoint).where(Endpoint.path == path))
    return result.scalars().one_or_none()


async def get_endpoint_by_id_or_path(db: AsyncSession, value: str) -> Optional[Endpoint]:
    endpoint = await get_endpoint_by_id(db, value)
    if endpoint is None:
        endpoint = await get_endpoint_by_path(db, value)
    return endpoint


def validate_endpoint_data(data: dict) -> List[str]:
    errors = []

    name = data.get("name")
    if not name or not str(name).strip():
        errors.append("Name is required")

    endpoint_type = data.get("type")
    if not endpoint_type:
        errors.append("Type is required")
    elif endpoint_type not in {t.value for t in EndpointType}:
        errors.append("Type must be one of: query, stored_procedure, function, table")

    target = data.get("target")
    if not target or not str(target).strip():
        errors.append("Target is required")

    method = data.get("method", HttpMethod.GET.value)
    if method not in {m.value for m in HttpMethod}:
        errors.append("Method must be one of: GET, POST, PUT, DELETE")

    rate_limit = data.get("rate_limit", 100)
    if isinstance(rate_limit, bool) or not isinstance(rate_limit, int) or rate_limit < 1:
        errors.append("Rate limit must be a positive number")

    if not isinstance(data.get("parameters", []), list):
        errors.append("Parameters must be an array")

    status = data.get("status", EndpointStatus.DRAFT.value)
    if status not in {s.value for s in EndpointStatus}:
        errors.append("Status must be one of: active, draft, suspended")

    path = data.get("path")
    if path is not None:
        if not PATH_RE.match(path):
            errors.append("Path may only contain letters, digits, '-' and '_' (max 100 characters)")
        elif path in RESERVED_PATHS:
            errors.append(f"Path '{path}' is reserved")
        elif looks_like_secret(path):
            errors.append("Path must not be shaped like an API key (a UUID or 64 hex characters)")

    return errors


async def create_endpoint(db: AsyncSession, data: dict, created_by: str = "admin") -> Endpoint:
    """Register an endpoint definition.

    New endpoints start as drafts. They cannot be created straight into
    ``active`` because no credential can be bound to them yet; issue a key and
    call :func:`set_endpoint_status` instead.
    """
    errors = validate_endpoint_data(data)
    if errors:
        raise EndpointValidationError(errors)

    status = data.get("status", EndpointStatus.DRAFT.value)
    if status == EndpointStatus.ACTIVE:
        raise EndpointActivationError("An endpoint needs an active API key before it can be activated")

    if data.get("path") is not None and await get_endpoint_by_path(db, data["path"]) is not None:
        raise EndpointValidationError([f"Path '{data['path']}' is already in use"])

    endpoint = Endpoint(
        name=data["name"].strip(),
        description=data.get("description"),
        type=data["type"],
        target=data["target"],
        method=data.get("method", HttpMethod.GET.value),
        parameters=data.get("parameters", []),
        rate_limit=data.get("rate_limit", 100),
        status=status,
        path=data.get("path"),
        tags=data.get("tags", []),
        created_by=created_by,
        extra=data.get("metadata", {}),
    )

    db.add(endpoint)
    await db.commit()
    await db.refresh(endpoint)

    logging.info(f"Endpoint created: {endpoint.name} ({endpoint.id}) by {created_by}")
    return endpoint


async def set_endpoint_status(
    db: AsyncSession,
    endpoint_id: str,
    status: EndpointStatus,
    updated_by: str = "system",
) -> Endpoint:
    """Move an endpoint through its lifecycle.

    Raises ``EndpointActivationError`` when activating an endpoint that has no
    active credential bound to it, and ``LookupError`` for an unknown id.
    """
    status = EndpointStatus(status)

    endpoint = await get_endpoint_by_id(db, endpoint_id)
    if endpoint is None:
        raise LookupError(f"Endpoint {endpoint_id} not found")

    if status == EndpointStatus.ACTIVE and await get_credential_by_endpoint_id(db, endpoint_id) is None:
        raise EndpointActivationError(
            f"Endpoint {endpoint_id} has no active API key and cannot be activated"
        )

    endpoint.status = status.value
    endpoint.updated_by = updated_by
    await db.commit()
    await db.refresh(endpoint)

    logging.info(f"Endpoint {endpoint.id} is now {endpoint.status}")
    return endpoint


def endpoint_to_dict(endpoint: Endpoint) -> dict:
    return {
        "id": endpoint.id,
        "path": endpoint.path,
        "name": endpoint.name,
        "description": endpoint.description or "",
        "type": endpoint.type,
        "target": endpoint.target,
        "method": endpoint.method,
        "parameters": endpoint.parameters or [],
        "rateLimit": endpoint.rate_limit,
        "status": endpoint.status,
        "tags": endpoint.tags or [],
        "createdBy": endpoint.created_by,
        "createdAt": endpoint.created_at.isoformat() if endpoint.created_at else None,
        "updatedBy": endpoint.updated_by,
        "updatedAt": endpoint.updated_at.isoformat() if endpoint.updated_at else None,
        "metadata": endpoint.extra or {},
    }
