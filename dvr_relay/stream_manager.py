"""Share live DVR channels between browser viewers through ffmpeg."""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
from typing import Dict, List, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from dateutil.tz import tzutc

from .config import DvrConfig, StreamingConfig
from .dvr_client import live_url, mask_credentials
from .errors import InvalidRequest, ProcessSpawnFailed
from .models import Quality, StreamInfo, StreamKey, StreamSession, ViewerConnection
from .process import ProcessHandle, Spawner

logger = logging.getLogger(__name__)

# (resolution, video bitrate) per quality.
QUALITY_PROFILES = {
    Quality.LOW: ("400x300", "400k"),
    Quality.HIGH: ("1280x960", "3000k"),
}


def make_stream_key(channel_id: int, quality: str, audio: bool) -> StreamKey:
    if isinstance(channel_id, bool) or not isinstance(channel_id, int) or channel_id < 1:
        raise InvalidRequest(f"Invalid channel {channel_id!r}")
    try:
        parsed = Quality(quality)
    except ValueError as exc:
        raise InvalidRequest(f"Invalid quality {quality!r}, expected 'low' or 'high'") from exc
    if not isinstance(audio, bool):
        raise InvalidRequest(f"Invalid audio flag {audio!r}")
    return StreamKey(channel_id=channel_id, quality=parsed, audio=audio)


class StreamManager:
    """Keyed registry of live transcoding sessions fanned out to viewer connections."""

    def __init__(
        self,
        dvr: DvrConfig,
        streaming: StreamingConfig,
        scheduler: AsyncIOScheduler,
        spawn: Optional[Spawner] = None,
    ):
        self.dvr = dvr
        self.streaming = streaming
        self.scheduler = scheduler
        self.sessions: Dict[StreamKey, StreamSession] = {}
        self.teardown_delay = streaming.teardown_seconds
        self._spawn = spawn or asyncio.create_subprocess_exec
        self._lock = asyncio.Lock()

    async def subscribe(self, connection: ViewerConnection, channel_id: int, quality: str, audio: bool) -> StreamSession:
        """Attach ``connection`` to the session for the key, spawning ffmpeg on first use.

        Returns as soon as the connection is registered; frames arrive
        asynchronously. Raises ``InvalidRequest`` or ``ProcessSpawnFailed``.
        """
        key = make_stream_key(channel_id, quality, audio)
        while True:
            async with self._lock:
                session = self.sessions.get(key)
                created = session is None
                if created:
                    session = StreamSession(key=key, process=self._build_process(key))
                    session.process.on_data = lambda chunk, s=session: self._on_data(s, chunk)
                    session.process.on_exit = lambda handle, code, s=session: self._on_exit(s, code)
                    # Held through spawn so concurrent subscribers wait for the outcome.
                    await session.lock.acquire()
                    self.sessions[key] = session
                    logger.info("Created stream %s", key)

            if created:
                try:
                    await session.process.start()
                except ProcessSpawnFailed:
                    async with self._lock:
                        if self.sessions.get(key) is session:
                            del self.sessions[key]
                    session.closed = True
                    session.lock.release()
                    raise
                session.lock.release()

            async with session.lock:
                if session.closed:
                    # Torn down or crashed between lookup and attach; start over.
                    if created:
                        raise ProcessSpawnFailed(f"Stream {key} stopped before it could be joined")
                    continue
                if self._cancel_teardown(session):
                    logger.info("Cancelled teardown for stream %s, new client joined", key)
                session.subscribers.add(connection)
                logger.info("Client subscribed to stream %s, total clients: %d", key, len(session.subscribers))
                if session.last_frame is not None:
                    await self._send(connection, session.last_frame, key)
            return session

    async def unsubscribe(self, connection: ViewerConnection, channel_id: int, quality: str, audio: bool) -> None:
        """Detach ``connection``; no-op when no such session exists."""
        try:
            key = make_stream_key(channel_id, quality, audio)
        except InvalidRequest:
            return

        async with self._lock:
            session = self.sessions.get(key)
        if session is None:
            return

        async with session.lock:
            session.subscribers.discard(connection)
            remaining = len(session.subscribers)
            logger.info("Client unsubscribed from stream %s, remaining: %d", key, remaining)
            if remaining == 0 and not session.closed:
                self._schedule_teardown(session)

    async def shutdown(self) -> None:
        """Terminate every transcoder and clear the registry."""
        logger.info("Shutting down %d stream(s)", len(self.sessions))
        async with self._lock:
            sessions = list(self.sessions.values())
            self.sessions.clear()
            for session in sessions:
                session.closed = True
        for session in sessions:
            self._cancel_teardown(session)
            session.process.terminate()

    def get_active_streams(self) -> List[StreamInfo]:
        return [
            StreamInfo(
                channel_id=session.key.channel_id,
                quality=session.key.quality.value,
                audio=session.key.audio,
                clients=len(session.subscribers),
            )
            for session in self.sessions.values()
        ]

    def _build_process(self, key: StreamKey) -> ProcessHandle:
        args = self._build_ffmpeg_command(key)
        logger.debug("ffmpeg command for %s: %s", key, mask_credentials(" ".join(args)))
        return ProcessHandle(f"stream {key}", args, spawn=self._spawn)

    def _build_ffmpeg_command(self, key: StreamKey) -> List[str]:
        resolution, bitrate = QUALITY_PROFILES[key.quality]
        input_args = [
            "-fflags",
            "nobuffer",
            "-flags",
            "low_delay",
            "-probesize",
            "32",
            "-analyzeduration",
            "0",
            "-rtsp_transport",
            "tcp",
            "-i",
            live_url(self.dvr, key.channel_id, key.quality.subtype),
        ]

        if key.audio:
            audio_args = ["-codec:a", "mp2", "-b:a", "128k"]
        else:
            audio_args = ["-an"]

        return [
            self.streaming.ffmpeg_path,
            "-hide_banner",
            "-loglevel",
            "warning",
            *input_args,
            "-f",
            "mpegts",
            "-codec:v",
            "mpeg1video",
            "-b:v",
            bitrate,
            "-r",
            "24",
            "-s",
            resolution,
            "-bf",
            "0",
            "-q:v",
            "4",
            *audio_args,
            "-",
        ]

    async def _on_data(self, session: StreamSession, chunk: bytes) -> None:
        async with session.lock:
            session.last_frame = chunk
            targets = [connection for connection in session.subscribers if connection.is_open]
            if targets:
                await asyncio.gather(*(self._send(connection, chunk, session.key) for connection in targets))

    async def _send(self, connection: ViewerConnection, chunk: bytes, key: StreamKey) -> None:
        try:
            await asyncio.wait_for(connection.send_bytes(chunk), timeout=self.streaming.send_timeout)
        except Exception as exc:  # noqa: BLE001
            logger.debug("Dropped frame for a client of stream %s: %r", key, exc)

    async def _on_exit(self, session: StreamSession, returncode: Optional[int]) -> None:
        async with self._lock:
            if self.sessions.get(session.key) is session:
                del self.sessions[session.key]
            unexpected = not session.closed
            session.closed = True
        self._cancel_teardown(session)
        if unexpected:
            logger.warning(
                "ffmpeg for stream %s exited with code %s, dropping %d client(s)",
                session.key,
                returncode,
                len(session.subscribers),
            )

    def _schedule_teardown(self, session: StreamSession) -> None:
        run_date = dt.datetime.now(tzutc()) + dt.timedelta(seconds=self.teardown_delay)
        job = self.scheduler.add_job(
            self._teardown,
            trigger="date",
            run_date=run_date,
            args=[session],
            id=f"teardown-{session.key}",
            replace_existing=True,
            misfire_grace_time=None,
        )
        session.teardown_job_id = job.id
        logger.info("Stream %s idle, stopping in %ss unless a client joins", session.key, self.teardown_delay)

    def _cancel_teardown(self, session: StreamSession) -> bool:
        job_id = session.teardown_job_id
        if job_id is None:
            return False
        session.teardown_job_id = None
        try:
            self.scheduler.remove_job(job_id)
        except JobLookupError:
            return False
        return True

    async def _teardown(self, session: StreamSession) -> None:
        async with self._lock:
            if self.sessions.get(session.key) is not session or session.subscribers:
                return
            del self.sessions[session.key]
            session.closed = True
        session.teardown_job_id = None
        logger.info("Cleaning up idle stream %s", session.key)
        session.process.terminate()
