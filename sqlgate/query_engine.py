import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

from sqlalchemy import text
from sqlalchemy.engine import make_url
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine
from sqlalchemy.pool import NullPool

from .config import QUERY_ENGINE_ECHO, QUERY_ENGINE_URL


def to_named_binds(statement: str, binds: Sequence[Any]):
    """Rewrite ``?`` placeholders as ``:p0, :p1, ...`` for ``text()``.

    Question marks inside quoted literals or identifiers are left alone, and
    any other colon is escaped so ``text()`` never reads it as a bind.
    """
    out = []
    quote = None
    index = 0
    for char in statement:
        if quote:
            if char == quote:
                quote = None
            out.append("\\:" if char == ":" else char)
        elif char in ("'", '"'):
            quote = char
            out.append(char)
        elif char == "?":
            out.append(f":p{index}")
            index += 1
        elif char == ":":
            out.append("\\:")
        else:
            out.append(char)

    if index != len(binds):
        raise ValueError(f"Statement expects {index} parameter(s), got {len(binds)}")

    return "".join(out), {f"p{i}": value for i, value in enumerate(binds)}


class QueryEngineClient:
    """Opens one connection per call to ``connect`` and never reuses it.

    Statements use ``?`` positional placeholders whatever the backend, and the
    caller's values only ever travel as bind parameters.
    """

    def __init__(self, url: str = QUERY_ENGINE_URL, echo: bool = QUERY_ENGINE_ECHO, engine: Optional[AsyncEngine] = None):
        self.engine = engine or create_async_engine(url, echo=echo, poolclass=NullPool)
        self._password = self.engine.url.password if engine else make_url(url).password

    async def connect(self) -> AsyncConnection:
        conn = await self.engine.connect()
        logging.debug("Query engine connection established")
        return conn

    async def execute(self, session: AsyncConnection, statement: str, binds: Sequence[Any] = ()) -> Dict[str, Any]:
        sql, params = to_named_binds(statement, list(binds))
        result = await session.execute(text(sql), params)

        rows: List[dict] = []
        if result.returns_rows:
            rows = [dict(row) for row in result.mappings().all()]
        await session.commit()

        logging.info(f"Query executed successfully. Rows returned: {len(rows)}")
        return {"rows": rows, "rowCount": len(rows)}

    async def close(self, session: AsyncConnection):
        await session.close()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncConnection]:
        conn = await self.connect()
        try:
            yield conn
        finally:
            await self.close(conn)

    def describe_error(self, exc: Exception) -> str:
        """The engine's own message, without the SQL dump or any password."""
        message = str(exc.orig) if isinstance(exc, DBAPIError) and exc.orig is not None else str(exc)
        if self._password:
            message = message.replace(self._password, "***")
        return message

    async def dispose(self):
        await self.engine.dispose()
