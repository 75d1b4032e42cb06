# main.py
import uvicorn
import logging
import os
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from dotenv import load_dotenv

from database.session import engine, Base, SessionLocal
import database.models

from api.routes_publish import router as publish_router
from api.routes_oauth import router as oauth_router
from api.routes_live import router as live_router
from services.errors import PublisherError
from services.publisher_manager import make_stream_end_handler
from services.scheduler import reconcile_orphaned_streams, reset_interrupted_publishes, start_scheduler, stop_scheduler
from services.stream_supervisor import StreamSupervisor
from storage import uploads

load_dotenv()

# Configure global logging
logging.basicConfig(
    level=logging.INFO,
    format='[%(asctime)s] [%(levelname)s] [%(name)s] - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)

logger = logging.getLogger("ChannelCast-Main")

FFMPEG_PATH = os.getenv("FFMPEG_PATH", "ffmpeg")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("===================================================")
    logger.info("🚀 CHANNELCAST ENGINE - Starting Up...")
    logger.info("===================================================")

    # 1. Database Initialization
    try:
        Base.metadata.create_all(bind=engine)
        logger.info("[Database] Tables verified successfully.")
    except Exception as e:
        logger.error(f"[Database Error] Check your connection: {e}")

    # 2. Upload directory
    os.makedirs(uploads.UPLOAD_DIR, exist_ok=True)
    logger.info(f"[Storage] Upload directory: {uploads.UPLOAD_DIR}")

    # 3. Stream supervisor (one per process)
    supervisor = StreamSupervisor(
        uploads.UPLOAD_DIR,
        on_exit=make_stream_end_handler(SessionLocal),
        ffmpeg_path=FFMPEG_PATH,
    )
    app.state.supervisor = supervisor

    # 4. Nothing survives a restart: live streams and in-flight publishes are orphans
    reconcile_orphaned_streams(SessionLocal, supervisor)
    reset_interrupted_publishes(SessionLocal)

    # 5. Periodic reconciliation
    start_scheduler(SessionLocal, supervisor)

    yield

    logger.info("Shutting down ChannelCast Engine gracefully...")
    supervisor.stop_all()
    stop_scheduler()


app = FastAPI(
    title="ChannelCast Engine API",
    lifespan=lifespan
)


@app.exception_handler(PublisherError)
async def publisher_error_handler(request: Request, exc: PublisherError):
    if exc.status_code >= 500:
        logger.error(f"[API] {request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(f"[API] Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


# Registering Routers
app.include_router(publish_router)
app.include_router(oauth_router)
app.include_router(live_router)

if __name__ == "__main__":
    # Ensure uvicorn runs the app instance
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=True)
