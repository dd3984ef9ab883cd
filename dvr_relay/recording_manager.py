"""Record DVR channels to MP4 files with ffmpeg."""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
import re
from pathlib import Path
from typing import Dict, List, Optional, Set

from .config import DvrConfig, StreamingConfig
from .dvr_client import live_url, mask_credentials
from .errors import ProcessSpawnFailed
from .models import ErrorKind, OperationResult, Quality, RecordingInfo, RecordingSession
from .notifier import Notifier
from .process import ProcessHandle, Spawner

logger = logging.getLogger(__name__)

_UNSAFE = re.compile(r"[^A-Za-z0-9]+")


def sanitize_name(name: str) -> str:
    """Collapse every run of non-alphanumerics into one ``-``."""
    return _UNSAFE.sub("-", name).strip("-")


def _now() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def recording_filename(channel_name: str, started: dt.datetime, channel_id: int) -> str:
    safe = sanitize_name(channel_name) or f"channel-{channel_id}"
    return f"{safe}-{started.strftime('%Y-%m-%dT%H-%M-%S')}.mp4"


class RecordingManager:
    """One capture process per channel, writing straight to disk."""

    def __init__(
        self,
        dvr: DvrConfig,
        streaming: StreamingConfig,
        notifier: Optional[Notifier] = None,
        spawn: Optional[Spawner] = None,
    ):
        self.dvr = dvr
        self.streaming = streaming
        self.notifier = notifier
        self.recordings: Dict[int, RecordingSession] = {}
        # Files whose ffmpeg was interrupted but has not exited yet.
        self.finalizing: Set[Path] = set()
        self._spawn = spawn or asyncio.create_subprocess_exec
        self._lock = asyncio.Lock()

    @property
    def recordings_dir(self) -> Path:
        return Path(self.streaming.recordings_dir)

    def is_recording(self, channel_id: int) -> bool:
        return channel_id in self.recordings

    def get_active_recordings(self) -> List[RecordingInfo]:
        return [
            RecordingInfo(
                channel_id=rec.channel_id,
                channel_name=rec.channel_name,
                start_time=rec.start_time.isoformat(),
                file_path=str(rec.file_path),
            )
            for rec in self.recordings.values()
        ]

    async def start_recording(self, channel_id: int, channel_name: str) -> OperationResult:
        if isinstance(channel_id, bool) or not isinstance(channel_id, int) or channel_id < 1:
            return OperationResult.fail(ErrorKind.INVALID_INPUT, f"Invalid channel {channel_id!r}")
        if not channel_name or not channel_name.strip():
            return OperationResult.fail(ErrorKind.INVALID_INPUT, "Channel name is required")

        async with self._lock:
            if channel_id in self.recordings:
                return OperationResult.fail(ErrorKind.ALREADY_RECORDING, "Already recording this channel")

            try:
                self.recordings_dir.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                logger.error("Cannot create recordings directory %s: %s", self.recordings_dir, exc)
                return OperationResult.fail(ErrorKind.PROCESS_SPAWN_FAILED, "Recordings directory is not writable")

            start_time = _now()
            file_path = self._claim_path(recording_filename(channel_name, start_time, channel_id))
            args = self._build_ffmpeg_command(channel_id, file_path)
            logger.debug("ffmpeg command for recording %s: %s", channel_id, mask_credentials(" ".join(args)))

            session = RecordingSession(
                channel_id=channel_id,
                channel_name=channel_name,
                process=ProcessHandle(f"recording {channel_id}", args, capture_stdout=False, spawn=self._spawn),
                file_path=file_path,
                start_time=start_time,
            )
            session.process.on_exit = lambda handle, code: self._on_exit(session, code)
            # Reserved before spawning so a concurrent start sees it.
            self.recordings[channel_id] = session

        try:
            await session.process.start()
        except ProcessSpawnFailed as exc:
            async with self._lock:
                if self.recordings.get(channel_id) is session:
                    del self.recordings[channel_id]
            return OperationResult.fail(ErrorKind.PROCESS_SPAWN_FAILED, exc.message)

        logger.info("Started recording channel %s to %s", channel_id, file_path)
        self._notify(f"Recording {channel_name} started", f"Channel {channel_id} is recording to {file_path}.")
        return OperationResult.ok("Recording started", str(file_path))

    async def stop_recording(self, channel_id: int) -> OperationResult:
        async with self._lock:
            session = self.recordings.pop(channel_id, None)
        if session is None:
            return OperationResult.fail(ErrorKind.NOT_RECORDING, "Not recording this channel")

        self.finalizing.add(session.file_path)
        # SIGINT so ffmpeg writes the moov atom before exiting.
        session.process.interrupt()
        logger.info("Stopped recording channel %s", channel_id)
        self._notify(f"Recording {session.channel_name} stopped", f"Saved to {session.file_path}.")
        return OperationResult.ok("Recording stopped", str(session.file_path))

    async def stop_all(self) -> None:
        logger.info("Stopping %d recording(s)", len(self.recordings))
        async with self._lock:
            sessions = list(self.recordings.values())
            self.recordings.clear()
        for session in sessions:
            self.finalizing.add(session.file_path)
            session.process.interrupt()

    def _claim_path(self, filename: str) -> Path:
        """Pick a path no live or finalizing recording owns, adding -1, -2 ... on collision."""
        path = self.recordings_dir / filename
        owned = {rec.file_path for rec in self.recordings.values()} | self.finalizing
        counter = 1
        while path in owned or path.exists():
            path = self.recordings_dir / f"{Path(filename).stem}-{counter}.mp4"
            counter += 1
        return path

    def _build_ffmpeg_command(self, channel_id: int, file_path: Path) -> List[str]:
        return [
            self.streaming.ffmpeg_path,
            "-hide_banner",
            "-loglevel",
            "warning",
            "-rtsp_transport",
            "tcp",
            "-i",
            live_url(self.dvr, channel_id, Quality.HIGH.subtype),
            "-c:v",
            "copy",
            "-c:a",
            "aac",
            "-movflags",
            "+faststart",
            "-y",
            str(file_path),
        ]

    async def _on_exit(self, session: RecordingSession, returncode: Optional[int]) -> None:
        async with self._lock:
            self.finalizing.discard(session.file_path)
            crashed = self.recordings.get(session.channel_id) is session
            if crashed:
                del self.recordings[session.channel_id]
        if crashed:
            logger.warning("Recording for channel %s stopped unexpectedly with code %s", session.channel_id, returncode)
            self._notify(
                f"Recording {session.channel_name} failed",
                f"ffmpeg exited with code {returncode}; partial file at {session.file_path}.",
            )
        else:
            logger.info("Recording for channel %s finalized with code %s", session.channel_id, returncode)

    def _notify(self, subject: str, message: str) -> None:
        if self.notifier is None:
            return
        asyncio.get_running_loop().run_in_executor(None, self.notifier.notify, subject, message)
