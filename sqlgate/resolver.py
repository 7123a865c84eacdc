from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from .endpoints import get_endpoint_by_id, get_endpoint_by_id_or_path
from .enums import EndpointStatus
from .errors import Forbidden, MethodNotAllowed, NotFound
from .models import Credential, Endpoint


async def resolve_endpoint(
    db: AsyncSession,
    path_segment: Optional[str],
    credential: Credential,
    allow_inactive: bool = False,
) -> Endpoint:
    """Find the one endpoint this request is for.

    A path that names an endpoint must name the credential's own endpoint.
    When the path names nothing (it was the secret itself, or it is absent),
    the credential's bound endpoint is used.
    """
    endpoint = None
    if path_segment:
        endpoint = await get_endpoint_by_id_or_path(db, path_segment)

    if endpoint is not None:
        if credential.endpoint_id != endpoint.id:
            raise Forbidden("API key does not match this endpoint")
    else:
        endpoint = await get_endpoint_by_id(db, credential.endpoint_id)

    if endpoint is None:
        raise NotFound("Endpoint not found")

    if endpoint.status != EndpointStatus.ACTIVE and not allow_inactive:
        raise Forbidden(f"Endpoint is {endpoint.status}. Only active endpoints can receive requests.")

    return endpoint


def check_method(endpoint: Endpoint, method: str) -> Endpoint:
    if method.upper() != endpoint.method:
        raise MethodNotAllowed(f"This endpoint only accepts {endpoint.method} requests")
    return endpoint
