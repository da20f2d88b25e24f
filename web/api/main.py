"""FastAPI app for the realm tracker: export uploads and ledger reads."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

import config
from tracker.models import init_db
from web.api.auth_routes import router as auth_router
from web.api.routes import router as api_router

logging.basicConfig(level=config.LOG_LEVEL)
logger = logging.getLogger("realm.api")


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    logger.info("Database ready")
    yield


app = FastAPI(title="Realm Tracker API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(api_router)
app.include_router(auth_router)


@app.get("/api/health")
async def health():
    return {"status": "ok"}
