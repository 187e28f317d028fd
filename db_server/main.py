"""
Temporary database service.
POST /create provisions a database and schedules its deletion; /claim and /claim-callback
transfer it to the user's account. Port 8787 by default.
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI

from db_server.analytics import get_event_capture
from db_server.claim import router as claim_router
from db_server.config import ANALYTICS_FLUSH_TIMEOUT_SECONDS, WORKFLOW_RUNNER_EMBEDDED
from db_server.create import router as create_router
from db_server.database import init_db
from db_server.pages import router as pages_router
from db_server.worker import WorkflowRunner
from db_server.workflows.engine import get_workflow_engine


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables; optionally run workflows in-process; flush analytics on shutdown."""
    init_db()
    runner = None
    if WORKFLOW_RUNNER_EMBEDDED:
        runner = WorkflowRunner(get_workflow_engine())
        runner.start()
    try:
        yield
    finally:
        if runner is not None:
            runner.stop()
        get_event_capture().shutdown(ANALYTICS_FLUSH_TIMEOUT_SECONDS)


app = FastAPI(title="Temporary Database Service", version="0.5.0", lifespan=lifespan)
app.include_router(create_router, tags=["create"])
app.include_router(claim_router, tags=["claim"])
app.include_router(pages_router, tags=["pages"])


@app.get("/health")
def health():
    """Health check endpoint."""
    return {"status": "ok", "service": "db_server"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "db_server.main:app",
        host="127.0.0.1",
        port=8787,
        reload=True,
    )
