"""Configuration helpers for the DVR relay."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

MASKED_PASSWORD = "********"


@dataclass
class ChannelConfig:
    id: int
    name: str
    enabled: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "enabled": self.enabled}


@dataclass
class DvrConfig:
    host: str = "192.168.1.108"
    port: int = 554
    username: str = "admin"
    password: str = ""
    http_port: int = 80
    channels: List[ChannelConfig] = field(default_factory=list)

    def channel_name(self, channel_id: int) -> Optional[str]:
        for channel in self.channels:
            if channel.id == channel_id:
                return channel.name
        return None

    def to_public_dict(self) -> Dict[str, Any]:
        return {
            "host": self.host,
            "port": self.port,
            "username": self.username,
            "password": MASKED_PASSWORD,
            "httpPort": self.http_port,
            "channels": [channel.to_dict() for channel in self.channels],
        }

    def apply_update(self, updates: Dict[str, Any]) -> None:
        """Merge a settings-form update; a masked password keeps the current one."""
        if "host" in updates and updates["host"]:
            self.host = updates["host"]
        if updates.get("port") is not None:
            self.port = int(updates["port"])
        if updates.get("httpPort") is not None:
            self.http_port = int(updates["httpPort"])
        if updates.get("username") is not None:
            self.username = updates["username"]
        password = updates.get("password")
        if password is not None and password != MASKED_PASSWORD:
            self.password = password
        if updates.get("channels") is not None:
            self.channels = [
                ChannelConfig(id=int(ch["id"]), name=ch["name"], enabled=ch.get("enabled", True))
                for ch in updates["channels"]
            ]


@dataclass
class StreamingConfig:
    ffmpeg_path: str = "ffmpeg"
    recordings_dir: Path = Path("recordings")
    teardown_seconds: float = 30.0
    send_timeout: float = 5.0


@dataclass
class RelayConfig:
    url: str = "http://127.0.0.1:1984"
    timeout: float = 10.0


@dataclass
class NotifierConfig:
    webhook_url: Optional[str] = None
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_username: Optional[str] = None
    smtp_password: Optional[str] = None
    email_from: Optional[str] = None
    email_to: Optional[str] = None


@dataclass
class AppConfig:
    project_name: str = "DVR Relay"
    dvr: DvrConfig = field(default_factory=DvrConfig)
    streaming: StreamingConfig = field(default_factory=StreamingConfig)
    relay: RelayConfig = field(default_factory=RelayConfig)
    notifier: NotifierConfig | None = None


def parse_channels(raw: Optional[str]) -> List[ChannelConfig]:
    """Parse ``"1:Front Door,2:Driveway"``; a bare id gets the name ``Camera <id>``."""
    if not raw:
        return [ChannelConfig(id=i, name=f"Camera {i}") for i in range(1, 5)]

    channels: List[ChannelConfig] = []
    for entry in raw.split(","):
        entry = entry.strip()
        if not entry:
            continue
        channel_id, _, name = entry.partition(":")
        channel = int(channel_id)
        channels.append(ChannelConfig(id=channel, name=name.strip() or f"Camera {channel}"))
    return channels


def load_config() -> AppConfig:
    """Load configuration from environment variables."""
    dvr = DvrConfig(
        host=os.getenv("DVR_HOST", "192.168.1.108"),
        port=int(os.getenv("DVR_PORT", "554")),
        username=os.getenv("DVR_USERNAME", "admin"),
        password=os.getenv("DVR_PASSWORD", ""),
        http_port=int(os.getenv("DVR_HTTP_PORT", "80")),
        channels=parse_channels(os.getenv("DVR_CHANNELS")),
    )

    streaming = StreamingConfig(
        ffmpeg_path=os.getenv("FFMPEG_PATH", "ffmpeg"),
        recordings_dir=Path(os.getenv("RECORDINGS_DIR", "recordings")),
        teardown_seconds=float(os.getenv("STREAM_TEARDOWN_SECONDS", "30")),
        send_timeout=float(os.getenv("STREAM_SEND_TIMEOUT", "5")),
    )

    relay = RelayConfig(
        url=os.getenv("RELAY_URL", "http://127.0.0.1:1984"),
        timeout=float(os.getenv("RELAY_TIMEOUT", "10")),
    )

    notifier = NotifierConfig(
        webhook_url=os.getenv("NOTIFY_WEBHOOK_URL"),
        smtp_host=os.getenv("SMTP_HOST"),
        smtp_port=int(os.getenv("SMTP_PORT", "587")),
        smtp_username=os.getenv("SMTP_USERNAME"),
        smtp_password=os.getenv("SMTP_PASSWORD"),
        email_from=os.getenv("NOTIFY_EMAIL_FROM"),
        email_to=os.getenv("NOTIFY_EMAIL_TO"),
    )

    return AppConfig(
        project_name=os.getenv("PROJECT_NAME", "DVR Relay"),
        dvr=dvr,
        streaming=streaming,
        relay=relay,
        notifier=notifier,
    )
