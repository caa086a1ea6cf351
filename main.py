import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv

# Load environment variables from .env file before any module reads them
load_dotenv()

from fastapi import FastAPI, Request  # noqa: E402
from fastapi.middleware.cors import CORSMiddleware  # noqa: E402
from fastapi.responses import JSONResponse  # noqa: E402

from citypulse.database.config import AsyncSessionLocal, Base, engine  # noqa: E402
from citypulse.dependencies import get_workflow  # noqa: E402
from citypulse.errors import WorkflowError  # noqa: E402
from citypulse.middleware.timing import timing_middleware  # noqa: E402
from citypulse.routes import (  # noqa: E402
    assignments_router,
    feedback_router,
    issues_router,
    notifications_router,
    reports_router,
    uploads_router,
    users_router,
)

logging.basicConfig(
    level=logging.INFO,
    format="%(levelname)s | %(name)s | %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: Create tables and load the admin broadcast set
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with AsyncSessionLocal() as session:
        await get_workflow().dispatcher.admins.load(session)

    yield

    # Shutdown: Dispose of the engine
    await engine.dispose()


app = FastAPI(title="CityPulse", lifespan=lifespan)


@app.exception_handler(WorkflowError)
async def workflow_error_handler(request: Request, exc: WorkflowError):
    logger.info(
        f"{exc.kind} on {request.method} {request.url.path}: {exc.message}",
        extra={"error_kind": exc.kind},
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "error": exc.kind},
    )


app.middleware("http")(timing_middleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        origin.strip()
        for origin in os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")
        if origin.strip()
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(issues_router)
app.include_router(assignments_router)
app.include_router(feedback_router)
app.include_router(notifications_router)
app.include_router(users_router)
app.include_router(reports_router)
app.include_router(uploads_router)


@app.get("/health")
async def health():
    return {"status": "ok"}
