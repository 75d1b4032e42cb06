import os
import threading
import time
from datetime import datetime, timedelta

# database.session refuses to import without a URL
os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database.session import Base
from database.models import Channel, Token, User, Video, YoutubeCredentials
from storage import uploads


@pytest.fixture
def engine():
    """In-memory SQLite shared by every session and thread of one test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def upload_dir(tmp_path, monkeypatch):
    directory = tmp_path / "uploads"
    directory.mkdir()
    monkeypatch.setattr(uploads, "UPLOAD_DIR", str(directory))
    return str(directory)


@pytest.fixture
def user(db_session):
    user = User(email="creator@example.com")
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture
def other_user(db_session):
    user = User(email="someone-else@example.com")
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture
def credentials(db_session, user):
    creds = YoutubeCredentials(user_id=user.id, client_id="client-id", client_secret="client-secret")
    db_session.add(creds)
    db_session.commit()
    return creds


def make_channel(db, owner, title="Channel A", access_token="access-a", refresh_token="refresh-a",
                 expires_at=None, with_token=True):
    channel = Channel(user_id=owner.id, channel_id=f"UC-{title.replace(' ', '-')}", channel_title=title)
    db.add(channel)
    db.flush()
    if with_token:
        db.add(Token(
            channel_id=channel.id,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at or datetime.utcnow() + timedelta(hours=1),
        ))
    db.commit()
    return channel


def make_video(db, owner, upload_dir, filename="video-1.mp4", status="draft", with_file=True, **fields):
    if with_file:
        with open(os.path.join(upload_dir, filename), "wb") as f:
            f.write(b"fake video data")
    video = Video(
        user_id=owner.id,
        title=fields.pop("title", "My Video"),
        description=fields.pop("description", "A description"),
        tags=fields.pop("tags", ["tag1"]),
        file_path=filename,
        status=status,
        **fields,
    )
    db.add(video)
    db.commit()
    return video


@pytest.fixture
def channel_a(db_session, user):
    return make_channel(db_session, user, "Channel A", access_token="access-a")


@pytest.fixture
def channel_b(db_session, user):
    return make_channel(db_session, user, "Channel B", access_token="access-b", refresh_token="refresh-b")


@pytest.fixture
def video(db_session, user, upload_dir):
    return make_video(db_session, user, upload_dir)


class FakeProcess:
    """Stands in for an ffmpeg Popen; the test decides when it exits."""

    def __init__(self, exits_on_terminate=True):
        self.stderr = None
        self.returncode = None
        self.exits_on_terminate = exits_on_terminate
        self.terminated = False
        self.killed = False
        self._exited = threading.Event()

    def exit(self, code):
        self.returncode = code
        self._exited.set()

    def wait(self):
        self._exited.wait(10)
        return self.returncode

    def poll(self):
        return self.returncode

    def terminate(self):
        self.terminated = True
        if self.exits_on_terminate:
            self.exit(-15)

    def kill(self):
        self.killed = True
        self.exit(-9)


def wait_for(predicate, timeout=3.0):
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()
