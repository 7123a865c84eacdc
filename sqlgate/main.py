from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
import logging

from .config import LOG_LEVEL
from .database import AsyncSessionLocal
from .errors import ProxyError, proxy_error_handler, unexpected_error_handler
from .logging_worker import RedisDeadLetterSink, UsageRecorder
from .proxy import endpoints_router, router as proxy_router
from .query_engine import QueryEngineClient

logging.basicConfig(level=LOG_LEVEL, format='%(asctime)s - %(levelname)s - %(message)s')


def create_app(
    session_factory=None,
    query_engine: Optional[QueryEngineClient] = None,
    dead_letter=None,
) -> FastAPI:
    """Build the proxy app.

    Collaborators default to the configured database, warehouse and Redis;
    pass them in to run against something else.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        recorder = UsageRecorder(app.state.session_factory, app.state.dead_letter)
        app.state.usage_recorder = recorder
        recorder.start()
        logging.info("Usage writer started.")
        yield
        await recorder.stop()
        if query_engine is None:
            await app.state.query_engine.dispose()
        if dead_letter is None:
            await app.state.dead_letter.aclose()

    app = FastAPI(
        title="sqlgate",
        description="Publishes stored queries, procedures, functions and tables as API endpoints",
        lifespan=lifespan,
    )

    app.state.session_factory = session_factory or AsyncSessionLocal
    app.state.query_engine = query_engine or QueryEngineClient()
    app.state.dead_letter = dead_letter or RedisDeadLetterSink()

    app.add_exception_handler(ProxyError, proxy_error_handler)
    app.add_exception_handler(Exception, unexpected_error_handler)

    app.include_router(proxy_router)
    app.include_router(endpoints_router)

    @app.get("/health")
    async def health_check():
        return {"status": "healthy"}

    return app


app = create_app()
