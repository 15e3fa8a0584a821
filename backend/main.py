"""
Command Board - Incident Command Session & Arbitration API
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import asyncio
import logging

from config import LOG_LEVEL, REAPER_ENABLED
from database import engine, Base
from routers import auth, command, records, websocket
from services.command.change_feed import ChangeFeed
from services.command.reaper import start_stale_command_reaper, start_old_session_reaper
import models  # noqa: F401  (registers tables on Base.metadata)

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Command Board starting up...")
    Base.metadata.create_all(bind=engine)
    app.state.feed = ChangeFeed()

    background = []
    if REAPER_ENABLED:
        background.append(asyncio.create_task(start_stale_command_reaper(app.state.feed)))
        background.append(asyncio.create_task(start_old_session_reaper()))
    else:
        logger.info("Liveness reaper disabled (COMMANDBOARD_REAPER_ENABLED=0)")

    yield

    # Shutdown
    logger.info("Command Board shutting down...")
    for task in background:
        task.cancel()
    app.state.feed.close_all()


app = FastAPI(
    title="Command Board API",
    description="Session admission and incident command arbitration",
    version="1.0.0",
    lifespan=lifespan
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Tighten in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routers
app.include_router(auth.router, prefix="/api/auth", tags=["Auth"])
app.include_router(command.router, prefix="/api/command", tags=["Command"])
app.include_router(records.router, prefix="/api/records", tags=["Records"])
app.include_router(websocket.router, tags=["WebSocket"])


@app.get("/")
async def root():
    return {"status": "ok", "service": "Command Board API", "version": "1.0.0"}


@app.get("/health")
async def health():
    return {"status": "healthy"}
