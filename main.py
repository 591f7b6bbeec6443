import uvicorn
import time
import asyncio
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from starlette.middleware.base import BaseHTTPMiddleware

from conductor.agents.orchestrator import Orchestrator
from conductor.api.webhooks import router as webhooks_router
from conductor.api.pipelines import router as pipelines_router
from conductor.api.runs import router as runs_router
from conductor.core import config
from conductor.core.exceptions import PipelineError
from conductor.db.database import Database
from conductor.utils.logging_config import setup_logging

# Initialize enhanced logging
setup_logging(level=logging.INFO)
logger = logging.getLogger("main")


# ---------------------------------------------------------------------------
# Lifespan: database, orchestrator and optional poll watcher
# ---------------------------------------------------------------------------
async def _watch(orchestrator: Orchestrator, source_ref: str):
    try:
        await orchestrator.watcher.watch(source_ref)
    except PipelineError as e:
        logger.error("Poll watcher stopped: %s", e)


@asynccontextmanager
async def lifespan(app: FastAPI):
    database = Database(config.DATABASE_URL)
    database.create_all()
    orchestrator = Orchestrator.from_config(database)
    app.state.orchestrator = orchestrator

    watch_task = None
    if config.ENABLE_POLLING:
        if config.SOURCE_REPO_REF:
            watch_task = asyncio.create_task(_watch(orchestrator, config.SOURCE_REPO_REF))
        else:
            logger.warning("ENABLE_POLLING is set but SOURCE_REPO_REF is empty, poll watcher not started")

    try:
        yield
    finally:
        await orchestrator.shutdown()
        if watch_task is not None:
            watch_task.cancel()
            await asyncio.gather(watch_task, return_exceptions=True)
        database.dispose()


app = FastAPI(title="Pipeline Conductor API", lifespan=lifespan)

# ---------------------------------------------------------------------------
# Logging Middleware
# ---------------------------------------------------------------------------
class LoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        start_time = time.time()
        client_host = request.client.host if request.client else "unknown"
        logger.info("Incoming: %s %s from %s", request.method, request.url.path, client_host)

        try:
            response = await call_next(request)
            process_time = (time.time() - start_time) * 1000
            logger.info(
                "Outgoing: %s %s - Status: %d - Time: %.2fms",
                request.method, request.url.path, response.status_code, process_time,
            )
            return response
        except Exception as e:
            logger.error("Request failed: %s %s - Error: %s", request.method, request.url.path, e)
            raise

app.add_middleware(LoggingMiddleware)

# Health endpoint
@app.get("/health")
async def health_check():
    orchestrator = getattr(app.state, "orchestrator", None)
    active = len(orchestrator.registry.active_tasks()) if orchestrator else 0
    return {"status": "ok", "activeRuns": active}

# Register routers
app.include_router(webhooks_router)
app.include_router(pipelines_router)
app.include_router(runs_router)

if __name__ == "__main__":
    uvicorn.run("main:app", host="127.0.0.1", port=8000, reload=True)
