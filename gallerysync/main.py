from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.responses import RedirectResponse

from gallerysync.core.database import init_db
from gallerysync.api import config, remote, schedule, sync
from gallerysync.services.scheduler import start_scheduler, stop_scheduler


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - startup and shutdown events."""
    # Startup
    await init_db()
    start_scheduler()
    yield
    # Shutdown
    stop_scheduler()


# Create FastAPI application
app = FastAPI(
    title="Gallery Sync",
    description="Resumable sync of a remote gallery catalog into local storage",
    version="0.1.0",
    lifespan=lifespan,
)

# Include routers
app.include_router(config.router)
app.include_router(sync.router)
app.include_router(schedule.router)
app.include_router(remote.router)


@app.get("/")
async def root():
    """Redirect root to the API docs."""
    return RedirectResponse(url="/docs")
