import hashlib
import re
import secrets
from typing import Mapping, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from .credentials import create_credential, get_credential_by_hash
from .errors import Unauthorized
from .models import Credential

# a path segment is only ever read as a secret when it has one of these shapes;
# anything else (e.g. "sales-report") is a custom endpoint path
UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)
HEX64_RE = re.compile(r"^[0-9a-f]{64}$")

API_KEY_HEADER = "x-api-key"
QUERY_PARAM_NAMES = ("API_KEY", "token")


def hash_secret(secret: str) -> str:
    return hashlib.sha256(secret.encode('utf-8')).hexdigest()


def generate_secret() -> str:
    return secrets.token_hex(32)


def looks_like_secret(segment: Optional[str]) -> bool:
    if not segment:
        return False
    return bool(UUID_RE.match(segment) or HEX64_RE.match(segment))


def extract_secret(
    headers: Mapping[str, str],
    query_params: Mapping[str, str],
    path_segment: Optional[str] = None,
) -> Optional[str]:
    """Pick the caller's secret from the request, first present source wins.

    Order: ``X-API-Key`` header, ``Authorization: Bearer``, ``?API_KEY=`` then
    ``?token=``, and finally the path segment when it is UUID or 64-hex shaped.
    A source that is present but empty still wins, so an empty header does not
    fall through to the query string.
    """
    if API_KEY_HEADER in headers:
        return headers[API_KEY_HEADER].strip()

    authorization = headers.get("authorization")
    if authorization is not None and authorization.startswith("Bearer "):
        return authorization[7:].strip()

    for name in QUERY_PARAM_NAMES:
        if name in query_params:
            return query_params[name].strip()

    if looks_like_secret(path_segment):
        return path_segment

    return None


async def create_api_key(
    db: AsyncSession,
    endpoint_id: str,
    created_by: str = "admin",
    metadata: Optional[dict] = None,
) -> Tuple[Credential, str]:
    """Issue a secret for an endpoint. The raw secret is never retrievable again."""
    secret = generate_secret()
    credential = await create_credential(
        db,
        endpoint_id=endpoint_id,
        secret_hash=hash_secret(secret),
        created_by=created_by,
        metadata=metadata,
    )
    return credential, secret


async def authenticate_api_key(db: AsyncSession, secret: Optional[str]) -> Credential:
    if secret is None:
        raise Unauthorized(
            "API key required. Provide API key in URL path, X-API-Key header, "
            "or query parameter (?API_KEY=... or ?token=...)"
        )

    if not secret:
        raise Unauthorized("Invalid or expired API key")

    credential = await get_credential_by_hash(db, hash_secret(secret))
    if credential is None:
        raise Unauthorized("Invalid or expired API key")

    return credential


async def resolve_credential(
    db: AsyncSession,
    headers: Mapping[str, str],
    query_params: Mapping[str, str],
    path_segment: Optional[str] = None,
) -> Credential:
    secret = extract_secret(headers, query_params, path_segment)
    return await authenticate_api_key(db, secret)
