"""Domain models for live-view and recording sessions."""

from __future__ import annotations

import asyncio
import datetime as dt
import enum
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, Optional, Protocol, Set

if TYPE_CHECKING:
    from .process import ProcessHandle


class Quality(str, enum.Enum):
    LOW = "low"
    HIGH = "high"

    @property
    def subtype(self) -> int:
        """DVR stream index: 0 is the main stream, 1 the sub stream."""
        return 0 if self is Quality.HIGH else 1


class ErrorKind(str, enum.Enum):
    ALREADY_RECORDING = "already_recording"
    NOT_RECORDING = "not_recording"
    PROCESS_SPAWN_FAILED = "process_spawn_failed"
    INVALID_INPUT = "invalid_input"
    DVR_UNAVAILABLE = "dvr_unavailable"
    RELAY_UNAVAILABLE = "relay_unavailable"
    INTERNAL = "internal"


class ViewerConnection(Protocol):
    """A browser connection that receives binary stream frames."""

    @property
    def is_open(self) -> bool: ...

    async def send_bytes(self, data: bytes) -> None: ...


@dataclass(frozen=True)
class StreamKey:
    channel_id: int
    quality: Quality
    audio: bool

    def __str__(self) -> str:
        return f"{self.channel_id}-{self.quality.value}-{'audio' if self.audio else 'noaudio'}"


@dataclass(eq=False)
class StreamSession:
    key: StreamKey
    process: "ProcessHandle"
    subscribers: Set[ViewerConnection] = field(default_factory=set)
    last_frame: Optional[bytes] = None
    teardown_job_id: Optional[str] = None
    closed: bool = False
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)


@dataclass(eq=False)
class RecordingSession:
    channel_id: int
    channel_name: str
    process: "ProcessHandle"
    file_path: Path
    start_time: dt.datetime = field(default_factory=lambda: dt.datetime.now(dt.timezone.utc))


@dataclass
class StreamInfo:
    channel_id: int
    quality: str
    audio: bool
    clients: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "channelId": self.channel_id,
            "quality": self.quality,
            "audio": self.audio,
            "clients": self.clients,
        }


@dataclass
class RecordingInfo:
    channel_id: int
    channel_name: str
    start_time: str
    file_path: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "channelId": self.channel_id,
            "channelName": self.channel_name,
            "startTime": self.start_time,
            "filepath": self.file_path,
        }


@dataclass
class OperationResult:
    """Outcome of a recording command: success with a file path, or an error kind."""

    success: bool
    message: str
    file_path: Optional[str] = None
    error: Optional[ErrorKind] = None

    @classmethod
    def ok(cls, message: str, file_path: Optional[str] = None) -> "OperationResult":
        return cls(success=True, message=message, file_path=file_path)

    @classmethod
    def fail(cls, error: ErrorKind, message: str) -> "OperationResult":
        return cls(success=False, message=message, error=error)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"success": self.success, "message": self.message}
        if self.file_path is not None:
            payload["filepath"] = self.file_path
        if self.error is not None:
            payload["error"] = self.error.value
        return payload


@dataclass
class RecordingSegment:
    """One recorded file as reported by the DVR's media index."""

    channel: int
    start_time: str
    end_time: str
    file_path: str
    file_type: Optional[str] = None
    size: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "channel": self.channel,
            "startTime": self.start_time,
            "endTime": self.end_time,
            "filePath": self.file_path,
            "type": self.file_type,
            "size": self.size,
        }


@dataclass
class PlaybackSession:
    stream_name: str
    channel: int
    start_time: dt.datetime
    end_time: dt.datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "streamName": self.stream_name,
            "channel": self.channel,
            "startTime": self.start_time.strftime("%Y-%m-%d %H:%M:%S"),
            "endTime": self.end_time.strftime("%Y-%m-%d %H:%M:%S"),
        }
