import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

import complaint_desk.config.config as configs
from complaint_desk.api.v1.route import api_router as MainRouter
from complaint_desk.client.db.redis import redis_client
from complaint_desk.client.realtime.change_feed import RedisChangeFeed
from complaint_desk.db import models  # noqa: F401
from complaint_desk.db.session import Base, SessionLocal, engine
from complaint_desk.service.backend.sql_backend import SqlBackend
from complaint_desk.service.errors import ComplaintDeskError
from complaint_desk.service.session.registry import SessionRegistry

logging.basicConfig(level=configs.LOG_LEVEL)
logger = logging.getLogger(__name__)

app = FastAPI(title="complaint_desk", version="0.1.0")
app.include_router(router=MainRouter, prefix="/api/v1")


@app.exception_handler(ComplaintDeskError)
async def complaint_desk_error_handler(request: Request, exc: ComplaintDeskError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning("request failed path=%s error=%s", request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "error_code": exc.error_code},
    )


@app.on_event("startup")
def startup() -> None:
    # tests install their own registry before startup
    if getattr(app.state, "sessions", None) is not None:
        return
    Base.metadata.create_all(bind=engine)
    backend = SqlBackend(SessionLocal, RedisChangeFeed(redis_client))
    app.state.sessions = SessionRegistry(backend)


@app.on_event("shutdown")
async def shutdown() -> None:
    sessions = getattr(app.state, "sessions", None)
    if sessions is not None:
        await sessions.close_all()
