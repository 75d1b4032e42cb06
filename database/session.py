# database/session.py
import os
from dotenv import load_dotenv
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL")

if not DATABASE_URL:
    raise ValueError("CRITICAL: DATABASE_URL environment variable is not set in the .env file.")


def _engine_options(url: str) -> dict:
    if url.startswith("sqlite"):
        # Exit callbacks write from the supervisor's watcher threads
        return {"connect_args": {"check_same_thread": False}}
    # Long-lived streams leave connections idle for hours
    return {"pool_pre_ping": True}


engine = create_engine(DATABASE_URL, echo=False, **_engine_options(DATABASE_URL))

# Request sessions, plus the supervisor callback and the reconcile job, which open their own
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    """FastAPI dependency: one session per request, always closed."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
