from dotenv import load_dotenv
load_dotenv()
import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from . import config
from .engine import AnomalyEngine
from .routes import anomalies, events, health
from .store import create_store

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("anomalisa")


@asynccontextmanager
async def lifespan(app: FastAPI):
    # one store + engine per worker process, shared by every request
    app.state.store = create_store()
    app.state.engine = AnomalyEngine(app.state.store)

    # Shared outbound client for email / webhook delivery
    app.state.http_client = httpx.AsyncClient(
        timeout=httpx.Timeout(config.NOTIFY_TIMEOUT_SECONDS),
        follow_redirects=True,
        limits=httpx.Limits(
            max_connections=100,
            max_keepalive_connections=20,
            keepalive_expiry=30.0,
        ),
    )
    logger.info("anomalisa started (store=%s)", config.STORE_BACKEND)

    try:
        yield
    finally:
        # Close outbound client first
        await app.state.http_client.aclose()
        # Then the store
        await app.state.store.close()
        app.state.engine = None


app = FastAPI(title="anomalisa", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Project-Token"],
)

# Routers
app.include_router(health.router,    prefix="/health",    tags=["health"])
app.include_router(events.router,    prefix="/events",    tags=["events"])
app.include_router(anomalies.router, prefix="/anomalies", tags=["anomalies"])
