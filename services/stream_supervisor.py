# services/stream_supervisor.py
"""
Supervises the ffmpeg processes that push stored videos into YouTube RTMP
ingestion endpoints.

One StreamSupervisor instance is created at application startup and owns every
re-streaming process. At most one process runs per live-stream id. When a
process exits (stopped, crashed, or never launched) the registry entry is
dropped and the exit callback given at construction is invoked with the stream
id and the exit code (None when the launch itself failed).
"""
import os
import logging
import subprocess
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional

from services.errors import (
    AlreadyRunning,
    NotRunning,
    PathValidationError,
    StreamLaunchError,
    VideoFileMissing,
)

logger = logging.getLogger("Stream-Supervisor")

STOP_GRACE_SECONDS = 5

StreamExitCallback = Callable[[str, Optional[int]], None]


@dataclass
class ActiveStream:
    stream_id: str
    process: subprocess.Popen
    video_path: str
    rtmp_url: str
    loop: bool
    start_time: datetime


def _is_within(path: str, root: str) -> bool:
    rel = os.path.relpath(path, root)
    return not (rel == os.pardir or rel.startswith(os.pardir + os.sep) or os.path.isabs(rel))


class StreamSupervisor:
    def __init__(self, upload_dir: str, on_exit: StreamExitCallback = None, ffmpeg_path: str = "ffmpeg"):
        self.upload_dir = os.path.abspath(upload_dir)
        self.on_exit = on_exit
        self.ffmpeg_path = ffmpeg_path
        self.stop_grace_seconds = STOP_GRACE_SECONDS
        self._streams: Dict[str, ActiveStream] = {}
        self._lock = threading.Lock()

    # --- Paths ---

    def resolve_video_path(self, video_path: str) -> str:
        """
        Resolves a stored video path to an absolute path inside the upload root.

        Relative paths are taken relative to the upload root. Lexical escapes
        ('..' segments, absolute paths elsewhere) are rejected before the
        filesystem is touched; symlinks are checked through realpath after the
        existence check. If realpath itself fails the existence check stands.
        """
        candidate = video_path if os.path.isabs(video_path) else os.path.join(self.upload_dir, video_path)
        absolute = os.path.normpath(os.path.abspath(candidate))

        if not _is_within(absolute, self.upload_dir):
            raise PathValidationError("Video path must be within the uploads directory")

        if not os.path.isfile(absolute):
            raise VideoFileMissing(f"Video file not found: {absolute}")

        try:
            real_video_path = os.path.realpath(absolute, strict=True)
            real_upload_dir = os.path.realpath(self.upload_dir, strict=True)
        except OSError as e:
            logger.warning(f"Could not validate path location for {absolute}: {e}")
            return absolute

        if not _is_within(real_video_path, real_upload_dir):
            raise PathValidationError("Video path must be within the uploads directory")

        return absolute

    def build_command(self, video_path: str, rtmp_url: str, loop: bool = True) -> List[str]:
        return [
            self.ffmpeg_path,
            "-re",
            "-stream_loop", "-1" if loop else "0",
            "-i", video_path,
            "-c:v", "libx264",
            "-preset", "veryfast",
            "-maxrate", "3000k",
            "-bufsize", "6000k",
            "-pix_fmt", "yuv420p",
            "-g", "50",
            "-c:a", "aac",
            "-b:a", "128k",
            "-ar", "44100",
            "-f", "flv",
            rtmp_url,
        ]

    # --- Lifecycle ---

    def start(self, stream_id: str, video_path: str, rtmp_url: str, loop: bool = True) -> ActiveStream:
        launch_error = None
        handle = None

        with self._lock:
            if stream_id in self._streams:
                raise AlreadyRunning()

            absolute_path = self.resolve_video_path(video_path)
            command = self.build_command(absolute_path, rtmp_url, loop)

            try:
                process = subprocess.Popen(
                    command,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.DEVNULL,
                    stderr=subprocess.PIPE,
                )
            except OSError as e:
                launch_error = e
            else:
                handle = ActiveStream(
                    stream_id=stream_id,
                    process=process,
                    video_path=absolute_path,
                    rtmp_url=rtmp_url,
                    loop=loop,
                    start_time=datetime.utcnow(),
                )
                self._streams[stream_id] = handle

        if launch_error is not None:
            logger.error(f"[Stream {stream_id}] Could not launch ffmpeg: {launch_error}")
            self._notify_exit(stream_id, None)
            raise StreamLaunchError(f"Could not launch ffmpeg: {launch_error}")

        watcher = threading.Thread(target=self._watch, args=(handle,), name=f"stream-{stream_id}", daemon=True)
        watcher.start()

        logger.info(f"[Stream {stream_id}] Started video stream from {handle.video_path} (loop={loop})")
        return handle

    def stop(self, stream_id: str):
        """
        Sends SIGTERM and returns right away; the process is force-killed if it is
        still alive after the grace period. The exit callback still fires when
        the process actually exits.
        """
        with self._lock:
            handle = self._streams.pop(stream_id, None)

        if handle is None:
            raise NotRunning("Stream not found or not running")

        try:
            handle.process.terminate()
        except OSError as e:
            logger.warning(f"[Stream {stream_id}] terminate failed: {e}")

        timer = threading.Timer(self.stop_grace_seconds, self._force_kill, args=(handle,))
        timer.daemon = True
        timer.start()

        logger.info(f"[Stream {stream_id}] Stopped video stream")

    def stop_all(self):
        for stream_id in [handle.stream_id for handle in self.list_active()]:
            try:
                self.stop(stream_id)
            except Exception as e:
                logger.error(f"Error stopping stream {stream_id}: {e}")

    # --- Introspection ---

    def is_active(self, stream_id: str) -> bool:
        with self._lock:
            return stream_id in self._streams

    def get_info(self, stream_id: str) -> Optional[ActiveStream]:
        with self._lock:
            return self._streams.get(stream_id)

    def list_active(self) -> List[ActiveStream]:
        with self._lock:
            return list(self._streams.values())

    # --- Internals ---

    def _force_kill(self, handle: ActiveStream):
        if handle.process.poll() is None:
            logger.warning(f"[Stream {handle.stream_id}] Still running after {self.stop_grace_seconds}s, killing")
            handle.process.kill()

    def _watch(self, handle: ActiveStream):
        process = handle.process
        if process.stderr is not None:
            for raw_line in process.stderr:
                line = raw_line.decode(errors="replace").rstrip()
                if line:
                    logger.debug(f"[Stream {handle.stream_id}] {line}")

        code = process.wait()
        logger.info(f"[Stream {handle.stream_id}] Process exited with code {code}")

        with self._lock:
            current = self._streams.get(handle.stream_id)
            if current is handle:
                del self._streams[handle.stream_id]

        # A newer process was started for this id after ours was stopped
        if current is not None and current is not handle:
            logger.info(f"[Stream {handle.stream_id}] Exit of a replaced process ignored")
            return

        self._notify_exit(handle.stream_id, code)

    def _notify_exit(self, stream_id: str, code: Optional[int]):
        if not self.on_exit:
            return
        try:
            self.on_exit(stream_id, code)
        except Exception:
            logger.exception(f"[Stream {stream_id}] Exit callback failed")
