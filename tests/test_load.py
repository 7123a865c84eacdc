import asyncio
from datetime import datetime, timezone

import pytest
from sqlalchemy import func, select

from sqlgate.credentials import get_credential_by_id
from sqlgate.logging_worker import UsageEvent, UsageRecorder
from sqlgate.models import AuditRecord, UsageAggregate

TOTAL_REQUESTS = 60


async def make_request(client, url, headers, i):
    response = await client.get(url, headers={**headers, "X-Request-ID": f"load-{i}"})
    return response.status_code


@pytest.mark.asyncio
async def test_concurrent_requests_are_all_counted(client, publish, recorder, store):
    endpoint, credential, secret = await publish()
    headers = {"X-API-Key": secret}

    statuses = await asyncio.gather(*[
        make_request(client, f"/api/proxy/{endpoint.id}", headers, i) for i in range(TOTAL_REQUESTS)
    ])
    await recorder.drain()

    assert statuses.count(200) == TOTAL_REQUESTS, f"Expected {TOTAL_REQUESTS} successes, got {statuses.count(200)}"

    async with store() as session:
        stored = await get_credential_by_id(session, credential.id)
        aggregate = (await session.execute(select(UsageAggregate))).scalars().one()
        audit_count = await session.scalar(select(func.count()).select_from(AuditRecord))

    assert stored.usage_count == TOTAL_REQUESTS, f"Expected usage_count {TOTAL_REQUESTS}, got {stored.usage_count}"
    assert aggregate.request_count == TOTAL_REQUESTS
    assert audit_count == TOTAL_REQUESTS


@pytest.mark.asyncio
async def test_mixed_outcomes_only_count_successes(client, publish, recorder, store):
    endpoint, credential, secret = await publish()
    url = f"/api/proxy/{endpoint.id}"

    async def succeed():
        return (await client.get(url, headers={"X-API-Key": secret})).status_code

    async def wrong_method():
        return (await client.put(url, headers={"X-API-Key": secret})).status_code

    async def no_key():
        return (await client.get(url)).status_code

    calls = [succeed() for _ in range(20)] + [wrong_method() for _ in range(10)] + [no_key() for _ in range(10)]
    statuses = await asyncio.gather(*calls)
    await recorder.drain()

    assert sorted(set(statuses)) == [200, 401, 405]

    async with store() as session:
        stored = await get_credential_by_id(session, credential.id)
        audit_count = await session.scalar(select(func.count()).select_from(AuditRecord))

    assert stored.usage_count == 20
    assert audit_count == 40


@pytest.mark.asyncio
async def test_small_batches_still_add_up(store, dead_letter, publish):
    endpoint, credential, _ = await publish()
    recorder = UsageRecorder(store, dead_letter, batch_size=3)
    recorder.start()

    now = datetime.now(timezone.utc)
    for i in range(10):
        recorder.record(UsageEvent(
            audit={
                "request_id": f"r{i}",
                "method": "GET",
                "url": f"/api/proxy/{endpoint.id}",
                "status_code": 200,
                "start_time": now,
                "end_time": now,
            },
            credential_id=credential.id,
            endpoint_id=endpoint.id,
            count_usage=True,
        ))
    await recorder.stop()

    async with store() as session:
        stored = await get_credential_by_id(session, credential.id)

    assert stored.usage_count == 10
    assert dead_letter.entries == []
