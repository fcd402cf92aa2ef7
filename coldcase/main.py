from __future__ import annotations

from dotenv import load_dotenv

load_dotenv()

from contextlib import asynccontextmanager  # noqa: E402

from fastapi import FastAPI  # noqa: E402
from coldcase.api.deps import task_queue  # noqa: E402
from coldcase.api.routes_cases import router as cases_router  # noqa: E402
from coldcase.api.routes_health import router as health_router  # noqa: E402
from coldcase.api.routes_jobs import router as jobs_router  # noqa: E402
from coldcase.db.session import create_schema  # noqa: E402


@asynccontextmanager
async def lifespan(app: FastAPI):
    await create_schema()
    yield
    # let queued continue steps persist before the loop goes away
    await task_queue.drain()


def create_app() -> FastAPI:
    app = FastAPI(title="Cold Case Analysis Service", version="0.1.0", lifespan=lifespan)
    app.include_router(health_router)
    app.include_router(cases_router)
    app.include_router(jobs_router)
    return app


app = create_app()
