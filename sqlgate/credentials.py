import logging
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .models import Credential


async def get_credential_by_hash(db: AsyncSession, secret_hash: str) -> Optional[Credential]:
    query = select(Credential).where(Credential.secret_hash == secret_hash, Credential.is_active.is_(True))
    result = await db.execute(query)
    return result.scalars().one_or_none()


async def get_credential_by_id(db: AsyncSession, credential_id: str) -> Optional[Credential]:
    return await db.get(Credential, credential_id)


async def get_credential_by_endpoint_id(db: AsyncSession, endpoint_id: str) -> Optional[Credential]:
    """The endpoint's active credential, if it has one."""
    query = (
        select(Credential)
        .where(Credential.endpoint_id == endpoint_id, Credential.is_active.is_(True))
        .order_by(Credential.created_at.desc())
        .limit(1)
    )
    result = await db.execute(query)
    return result.scalars().first()


async def list_credentials(db: AsyncSession, endpoint_id: Optional[str] = None) -> List[Credential]:
    query = select(Credential).order_by(Credential.created_at.desc())
    if endpoint_id is not None:
        query = query.where(Credential.endpoint_id == endpoint_id)
    result = await db.execute(query)
    return list(result.scalars().all())


async def create_credential(
    db: AsyncSession,
    endpoint_id: str,
    secret_hash: str,
    created_by: str = "admin",
    metadata: Optional[dict] = None,
) -> Credential:
    """Store a hashed secret for an endpoint, revoking its current one.

    An endpoint has at most one active credential at a time.
    """
    await db.execute(
        update(Credential)
        .where(Credential.endpoint_id == endpoint_id, Credential.is_active.is_(True))
        .values(is_active=False)
    )

    credential = Credential(
        endpoint_id=endpoint_id,
        secret_hash=secret_hash,
        created_by=created_by,
        extra=metadata or {},
    )

    db.add(credential)
    await db.commit()
    await db.refresh(credential)

    logging.info(f"API key {credential.id} created for endpoint {endpoint_id}")
    return credential


async def revoke_credential(db: AsyncSession, credential_id: str) -> bool:
    """Deactivate a credential. There is no way back."""
    result = await db.execute(
        update(Credential)
        .where(Credential.id == credential_id, Credential.is_active.is_(True))
        .values(is_active=False)
    )
    await db.commit()

    revoked = result.rowcount > 0
    if revoked:
        logging.info(f"API key {credential_id} revoked")
    return revoked


async def increment_usage(db: AsyncSession, credential_id: str, count: int = 1, used_at: Optional[datetime] = None):
    """Bump a credential's usage counters. Only the usage recorder calls this."""
    used_at = used_at or datetime.now(timezone.utc)
    await db.execute(
        update(Credential)
        .where(Credential.id == credential_id)
        .values(usage_count=Credential.usage_count + count, last_used_at=used_at)
    )
