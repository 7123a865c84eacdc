import asyncio
import json
import logging
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timezone
from typing import Dict, List, Optional, Set, Tuple

import redis.asyncio as redis
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .config import DEAD_LETTER_KEY, REDIS_URL, USAGE_BATCH_SIZE, USAGE_QUEUE_MAX_SIZE
from .credentials import increment_usage
from .models import AuditRecord, UsageAggregate


@dataclass
class UsageEvent:
    audit: dict
    credential_id: Optional[str] = None
    endpoint_id: Optional[str] = None
    # only successful dispatches count towards usage
    count_usage: bool = False
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def json_encode_default(obj):
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    return str(obj)


class RedisDeadLetterSink:
    """Keeps telemetry that could not be written, for an operator to inspect."""

    def __init__(self, client: Optional[redis.Redis] = None, key: str = DEAD_LETTER_KEY):
        self.client = client or redis.from_url(REDIS_URL, decode_responses=True)
        self.key = key

    async def push(self, events: List[UsageEvent], reason: str):
        entries = [
            json.dumps({"reason": reason, "event": asdict(event)}, default=json_encode_default)
            for event in events
        ]
        await self.client.lpush(self.key, *entries)

    async def aclose(self):
        await self.client.aclose()


async def record_daily_usage(
    session: AsyncSession,
    credential_id: str,
    endpoint_id: str,
    usage_day: date,
    count: int,
    last_used: datetime,
):
    """Add ``count`` requests to the (credential, endpoint, day) row, creating it if needed."""
    result = await session.execute(
        update(UsageAggregate)
        .where(
            UsageAggregate.credential_id == credential_id,
            UsageAggregate.endpoint_id == endpoint_id,
            UsageAggregate.usage_day == usage_day,
        )
        .values(request_count=UsageAggregate.request_count + count, last_used=last_used)
    )
    if result.rowcount == 0:
        session.add(UsageAggregate(
            credential_id=credential_id,
            endpoint_id=endpoint_id,
            usage_day=usage_day,
            request_count=count,
            last_used=last_used,
        ))


class UsageRecorder:
    """Writes audit records and usage counts off the request path.

    Requests call :meth:`record`, which only enqueues. One background task
    drains the queue in batches, so it is the only writer of usage counters.
    Anything that cannot be queued or written goes to the dead-letter sink.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        dead_letter,
        max_size: int = USAGE_QUEUE_MAX_SIZE,
        batch_size: int = USAGE_BATCH_SIZE,
    ):
        self.session_factory = session_factory
        self.dead_letter = dead_letter
        self.batch_size = batch_size
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=max_size)
        self._task: Optional[asyncio.Task] = None
        self._pending: Set[asyncio.Task] = set()

    def record(self, event: UsageEvent) -> bool:
        try:
            self.queue.put_nowait(event)
            return True
        except asyncio.QueueFull:
            logging.warning(f"Usage queue is full, dead-lettering event for request {event.audit.get('request_id')}")
            task = asyncio.create_task(self._send_to_dead_letter([event], "queue full"))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
            return False

    def start(self):
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())

    async def drain(self):
        """Wait until everything queued so far is written. Needs a running worker."""
        await self.queue.join()
        if self._pending:
            await asyncio.gather(*self._pending)

    async def stop(self):
        if self._task is None:
            return
        await self.drain()
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            logging.info("Usage writer task cancelled.")
        self._task = None

    async def run(self):
        while True:
            batch = [await self.queue.get()]
            while len(batch) < self.batch_size:
                try:
                    batch.append(self.queue.get_nowait())
                except asyncio.QueueEmpty:
                    break

            try:
                await self.write_batch(batch)
            except Exception as e:
                logging.error(f"!!! CRITICAL ERROR in usage writer: {e}", exc_info=True)
                await self._send_to_dead_letter(batch, f"usage write failed: {e}")
            finally:
                for _ in batch:
                    self.queue.task_done()

    async def write_batch(self, batch: List[UsageEvent]):
        """Write a batch as two independent writes: audit rows, then usage counts.

        A bad audit row never holds back the usage of the rest of the batch.
        """
        await self.write_audit(batch)
        await self.write_usage(batch)

    async def write_audit(self, batch: List[UsageEvent]):
        try:
            async with self.session_factory() as session:
                session.add_all([AuditRecord(**event.audit) for event in batch])
                await session.commit()
            return
        except Exception as e:
            logging.warning(f"Audit batch of {len(batch)} failed ({e}), retrying one record at a time.")

        for event in batch:
            try:
                async with self.session_factory() as session:
                    session.add(AuditRecord(**event.audit))
                    await session.commit()
            except Exception as e:
                logging.error(f"Could not write audit record for request {event.audit.get('request_id')}: {e}")
                await self._send_to_dead_letter([event], f"audit write failed: {e}")

    async def write_usage(self, batch: List[UsageEvent]):
        usage: Dict[Tuple[str, str, date], int] = defaultdict(int)
        last_used: Dict[Tuple[str, str, date], datetime] = {}
        per_credential: Dict[str, int] = defaultdict(int)

        for event in batch:
            if not (event.count_usage and event.credential_id and event.endpoint_id):
                continue
            key = (event.credential_id, event.endpoint_id, event.occurred_at.date())
            usage[key] += 1
            last_used[key] = max(last_used.get(key, event.occurred_at), event.occurred_at)
            per_credential[event.credential_id] += 1

        if not usage:
            return

        async with self.session_factory() as session:
            for key, count in usage.items():
                credential_id, endpoint_id, usage_day = key
                await record_daily_usage(session, credential_id, endpoint_id, usage_day, count, last_used[key])

            now = datetime.now(timezone.utc)
            for credential_id, count in per_credential.items():
                await increment_usage(session, credential_id, count, now)

            await session.commit()

        logging.info(f"Successfully wrote {sum(usage.values())} usage increments from a batch of {len(batch)}.")

    async def _send_to_dead_letter(self, events: List[UsageEvent], reason: str):
        try:
            await self.dead_letter.push(events, reason)
        except Exception as e:
            # nowhere left to put them
            logging.error(f"Could not dead-letter {len(events)} usage event(s) ({reason}): {e}")
