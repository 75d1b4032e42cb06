# services/scheduler.py
import os
import logging
from datetime import datetime
from apscheduler.schedulers.background import BackgroundScheduler
from dotenv import load_dotenv

from database.models import LiveStream, Video

load_dotenv()
logger = logging.getLogger("Scheduler")

RECONCILE_INTERVAL_SECONDS = int(os.getenv("STREAM_RECONCILE_INTERVAL_SECONDS", "60"))


def reconcile_orphaned_streams(session_factory, supervisor) -> list:
    """
    Marks video streams that the database still calls 'live' but that have no
    ffmpeg process behind them as complete. Runs at boot (the supervisor starts
    empty after a restart) and then periodically.
    Returns the ids that were corrected.
    """
    db = session_factory()
    try:
        live_streams = db.query(LiveStream).filter(
            LiveStream.status == "live",
            LiveStream.stream_type == "video",
        ).all()

        corrected = []
        for stream in live_streams:
            if supervisor.is_active(stream.id):
                continue
            stream.status = "complete"
            stream.actual_end_time = datetime.utcnow()
            corrected.append(stream.id)

        if corrected:
            db.commit()
            logger.warning(f"[Reconcile] Marked {len(corrected)} orphaned stream(s) complete: {corrected}")
        return corrected
    except Exception as e:
        db.rollback()
        logger.error(f"[Reconcile] Failed to reconcile live streams: {e}")
        return []
    finally:
        db.close()


def reset_interrupted_publishes(session_factory) -> list:
    """
    Puts videos left in 'processing' by a restart back to 'draft' so they can be
    published again. Boot only: while the app runs, 'processing' means a publish
    is in flight.
    """
    db = session_factory()
    try:
        stuck = db.query(Video).filter(Video.status == "processing").all()
        for video in stuck:
            video.status = "draft"

        reset = [video.id for video in stuck]
        if reset:
            db.commit()
            logger.warning(f"[Reconcile] Reset {len(reset)} interrupted publish(es) to draft: {reset}")
        return reset
    except Exception as e:
        db.rollback()
        logger.error(f"[Reconcile] Failed to reset interrupted publishes: {e}")
        return []
    finally:
        db.close()


# Scheduler instance
scheduler = BackgroundScheduler()


def start_scheduler(session_factory, supervisor):
    scheduler.add_job(
        reconcile_orphaned_streams,
        "interval",
        seconds=RECONCILE_INTERVAL_SECONDS,
        args=[session_factory, supervisor],
        id="reconcile_orphaned_streams",
        replace_existing=True,
    )
    scheduler.start()
    logger.info("[Scheduler] Background engine started successfully.")


def stop_scheduler():
    if scheduler.running:
        scheduler.shutdown()
        logger.info("[Scheduler] Background engine stopped.")
