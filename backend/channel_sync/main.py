import logging
import sys
import uuid
from typing import List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from channel_sync.config import settings
from channel_sync.database import Base, SessionLocal, engine
from channel_sync.routers import channels, erasure, oauth, rate_shopping, webhooks
from channel_sync.utils.logger import logger
from channel_sync.workers import ChannelScheduler, build_schedulers

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s :: %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
    force=True,
)

app = FastAPI(title="Channel Sync API", version="1.0.0")

origins = [o.strip() for o in settings.ALLOWED_ORIGINS.split(",") if o.strip()]
if settings.FRONTEND_URL and settings.FRONTEND_URL not in origins:
    origins.append(settings.FRONTEND_URL)

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


@app.middleware("http")
async def request_logger(request: Request, call_next):
    rid = uuid.uuid4().hex[:8]
    request.state.rid = rid
    logger.info("→ %s %s rid=%s", request.method, request.url.path, rid)
    try:
        resp = await call_next(request)
        logger.info("← %s status=%s rid=%s", request.url.path, resp.status_code, rid)
        resp.headers["X-Request-ID"] = rid
        return resp
    except Exception as e:
        logger.exception("Unhandled error rid=%s: %s", rid, str(e))
        error_resp = JSONResponse(
            {"error": "internal_error", "rid": rid, "message": str(e), "type": type(e).__name__},
            status_code=500,
        )
        error_resp.headers["X-Request-ID"] = rid
        return error_resp


app.include_router(oauth.router)
app.include_router(channels.router)
app.include_router(webhooks.router)
app.include_router(erasure.router)
app.include_router(rate_shopping.router)

schedulers: List[ChannelScheduler] = []


@app.on_event("startup")
async def startup_event():
    logger.info("Channel sync API starting up...")
    if settings.DATABASE_URL.startswith("sqlite"):
        # Local dev / tests; Postgres schemas are managed by Alembic.
        Base.metadata.create_all(bind=engine)

    if not settings.SCHEDULERS_ENABLED:
        logger.info("Schedulers disabled (SCHEDULERS_ENABLED=false)")
        return

    schedulers.extend(build_schedulers())
    for scheduler in schedulers:
        scheduler.start()
    logger.info("Started %d channel schedulers", len(schedulers))


@app.on_event("shutdown")
async def shutdown_event():
    for scheduler in schedulers:
        await scheduler.stop()
    schedulers.clear()
    logger.info("Channel sync API stopped")


@app.get("/healthz")
async def healthz():
    db = SessionLocal()
    try:
        db.execute(text("SELECT 1"))
        database = "ok"
    except Exception as exc:
        logger.warning("Health check database query failed: %s", exc)
        database = "error"
    finally:
        db.close()
    return {
        "status": "ok" if database == "ok" else "degraded",
        "database": database,
        "schedulers": {s.name: s.running for s in schedulers},
    }
