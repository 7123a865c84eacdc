import json
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from .config import DEFAULT_TABLE_LIMIT, MAX_REQUEST_SIZE, TEST_TABLE_LIMIT
from .database import get_db
from .dispatcher import dispatch, parse_paging, parse_parameters
from .endpoints import endpoint_to_dict, get_endpoint_by_id
from .enums import EndpointStatus, EndpointType
from .errors import BadRequest, Forbidden, InternalError, NotFound, PayloadTooLarge, ProxyError
from .logging_worker import UsageEvent, UsageRecorder
from .query_engine import QueryEngineClient
from .resolver import check_method, resolve_endpoint
from .security import authenticate_api_key, extract_secret, resolve_credential
from .telemetry import build_audit_entry

router = APIRouter(
    prefix="/api/proxy",
    tags=["Proxy"]
)

endpoints_router = APIRouter(
    prefix="/api/endpoints",
    tags=["Endpoints"]
)

PROXY_METHODS = ["GET", "POST", "PUT", "DELETE"]


def get_query_engine(request: Request) -> QueryEngineClient:
    return request.app.state.query_engine


def get_usage_recorder(request: Request) -> UsageRecorder:
    return request.app.state.usage_recorder


def get_request_id(request: Request) -> str:
    return request.headers.get("x-request-id") or str(uuid.uuid4())


async def read_json_body(request: Request):
    raw_body = await request.body()
    if len(raw_body) > MAX_REQUEST_SIZE:
        raise PayloadTooLarge("Payload Too Large")
    if not raw_body:
        return None, 0
    try:
        return json.loads(raw_body), len(raw_body)
    except ValueError:
        raise BadRequest("Request body must be valid JSON")


def success_body(endpoint, result: dict) -> dict:
    return {
        "success": True,
        "data": result["rows"],
        "metadata": {
            "rowCount": result["rowCount"],
            "endpoint": endpoint.name,
            "type": endpoint.type,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    }


@router.get("/health")
async def proxy_health():
    return {
        "success": True,
        "message": "Proxy service is running",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/{path_or_token}/info")
async def endpoint_info(
    path_or_token: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    credential = await resolve_credential(db, request.headers, request.query_params, path_or_token)
    endpoint = await resolve_endpoint(db, path_or_token, credential)

    return {
        "success": True,
        "data": {
            "endpoint": endpoint_to_dict(endpoint),
            "token": {
                "createdAt": credential.created_at.isoformat() if credential.created_at else None,
                "lastUsed": credential.last_used_at.isoformat() if credential.last_used_at else None,
                "usageCount": credential.usage_count,
            },
        },
    }


@router.api_route("", methods=PROXY_METHODS)
@router.api_route("/{path_or_token}", methods=PROXY_METHODS)
async def proxy_request(
    request: Request,
    path_or_token: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    engine: QueryEngineClient = Depends(get_query_engine),
    recorder: UsageRecorder = Depends(get_usage_recorder),
):
    start_time = datetime.now(timezone.utc)
    request_id = get_request_id(request)

    body: Any = None
    request_size = 0
    secret = None
    credential = None
    endpoint = None
    error_message = None

    try:
        body, request_size = await read_json_body(request)

        secret = extract_secret(request.headers, request.query_params, path_or_token)
        credential = await authenticate_api_key(db, secret)
        endpoint = await resolve_endpoint(db, path_or_token, credential)
        check_method(endpoint, request.method)

        paging = (DEFAULT_TABLE_LIMIT, 0)
        if endpoint.type == EndpointType.TABLE:
            paging = parse_paging(request.query_params, DEFAULT_TABLE_LIMIT)

        result = await dispatch(engine, endpoint, parse_parameters(body), paging)

        status_code = 200
        content = success_body(endpoint, result)

    except ProxyError as e:
        status_code = e.status_code
        content = e.to_body()
        error_message = e.detail

    except Exception as e:
        logging.error(f"Unexpected error handling proxy request {request_id}: {e}", exc_info=True)
        error = InternalError("An unexpected error occurred")
        status_code = error.status_code
        content = error.to_body()
        error_message = str(e)

    response = JSONResponse(
        content=jsonable_encoder(content),
        status_code=status_code,
        headers={"X-Request-ID": request_id},
    )

    logging.info(f"Proxying request: {request.method} {request.url.path} - Status: {status_code}")

    recorder.record(UsageEvent(
        audit=build_audit_entry(
            request,
            request_id=request_id,
            body=body,
            request_size=request_size,
            status_code=status_code,
            response_size=len(response.body),
            start_time=start_time,
            end_time=datetime.now(timezone.utc),
            endpoint_id=endpoint.id if endpoint is not None else None,
            credential_id=credential.id if credential is not None else None,
            error_message=error_message,
            secret=secret,
        ),
        credential_id=credential.id if credential is not None else None,
        endpoint_id=endpoint.id if endpoint is not None else None,
        count_usage=status_code == 200,
        occurred_at=start_time,
    ))

    return response


@endpoints_router.post("/{endpoint_id}/test")
async def test_endpoint(
    endpoint_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    engine: QueryEngineClient = Depends(get_query_engine),
):
    """Run an endpoint once, e.g. while it is still a draft.

    Needs the endpoint's own key. No method gate, and ``allowInactive=true``
    lifts the status gate. Table reads default to a small page.
    """
    started = time.monotonic()

    credential = await resolve_credential(db, request.headers, request.query_params)
    endpoint = await get_endpoint_by_id(db, endpoint_id)
    if endpoint is None:
        raise NotFound("Endpoint not found")
    if credential.endpoint_id != endpoint.id:
        raise Forbidden("API key does not match this endpoint")

    allow_inactive = request.query_params.get("allowInactive") == "true"
    if endpoint.status != EndpointStatus.ACTIVE and not allow_inactive:
        raise Forbidden(f"Endpoint is {endpoint.status}. Set endpoint to active or add ?allowInactive=true to test it")

    body, _ = await read_json_body(request)
    parameters = parse_parameters(body)

    limit = offset = None
    paging = (TEST_TABLE_LIMIT, 0)
    if endpoint.type == EndpointType.TABLE:
        paging = parse_paging(request.query_params, TEST_TABLE_LIMIT)
        limit, offset = paging

    result = await dispatch(engine, endpoint, parameters, paging)
    duration_ms = int((time.monotonic() - started) * 1000)

    return JSONResponse(content=jsonable_encoder({
        "success": True,
        "data": {
            "rows": result["rows"],
            "rowCount": result["rowCount"],
            "endpoint": {"id": endpoint.id, "name": endpoint.name, "type": endpoint.type},
            "testMetadata": {
                "duration": f"{duration_ms}ms",
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "parameters": parameters,
                "limit": limit,
                "offset": offset,
            },
        },
    }))
