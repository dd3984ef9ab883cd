"""Playback sessions brokered by the external media relay (go2rtc)."""

from __future__ import annotations

import datetime as dt
import logging
import re
import uuid
from typing import Dict, List, Optional
from urllib.parse import urlencode, urlsplit, urlunsplit

import requests
from dateutil import parser as date_parser

from .config import DvrConfig, RelayConfig
from .dvr_client import mask_credentials, playback_url
from .errors import InvalidRequest, PlaybackRelayError
from .models import PlaybackSession

logger = logging.getLogger(__name__)


_END_OF_DAY = re.compile(r"(?<=[ T])24:00(:00)?$")

PLAYBACK_WINDOW = dt.timedelta(hours=1)


def parse_time(value: str, field: str) -> dt.datetime:
    """Parse a wall-clock time; ``24:00[:00]`` means midnight of the following day."""
    rollover = isinstance(value, str) and _END_OF_DAY.search(value.strip()) is not None
    text = _END_OF_DAY.sub("00:00:00", value.strip()) if rollover else value
    try:
        parsed = date_parser.parse(text)
    except (ValueError, OverflowError, TypeError) as exc:
        raise InvalidRequest(f"Invalid {field} {value!r}") from exc
    return parsed + dt.timedelta(days=1) if rollover else parsed


class PlaybackRelay:
    """Start and stop relay streams that pull a recorded time range from the DVR.

    There is no seek: moving to another offset means stopping the current
    stream and starting a new one.
    """

    def __init__(self, relay: RelayConfig, dvr: DvrConfig, session: Optional[requests.Session] = None):
        self.relay = relay
        self.dvr = dvr
        self.http = session or requests.Session()
        self.sessions: Dict[str, PlaybackSession] = {}

    @property
    def api_url(self) -> str:
        return self.relay.url.rstrip("/") + "/api/streams"

    def ws_url(self, stream_name: str) -> str:
        parts = urlsplit(self.relay.url)
        scheme = "wss" if parts.scheme == "https" else "ws"
        return urlunsplit((scheme, parts.netloc, parts.path.rstrip("/") + "/api/ws", urlencode({"src": stream_name}), ""))

    def start(self, channel: int, start_time: str, end_time: str) -> PlaybackSession:
        if isinstance(channel, bool) or not isinstance(channel, int) or channel < 1:
            raise InvalidRequest(f"Invalid channel {channel!r}")
        start = parse_time(start_time, "startTime")
        end = parse_time(end_time, "endTime")
        if (start.tzinfo is None) != (end.tzinfo is None):
            raise InvalidRequest("startTime and endTime must both be local or both carry an offset")
        if end <= start:
            # Late-evening seeks arrive with the end hour capped at 23.
            logger.debug("Playback end %s is not after start %s, using a %s window", end, start, PLAYBACK_WINDOW)
            end = start + PLAYBACK_WINDOW

        name = f"playback_{channel}_{start:%Y%m%d%H%M%S}_{uuid.uuid4().hex[:6]}"
        source = playback_url(self.dvr, channel, start, end)
        try:
            response = self.http.put(self.api_url, params={"name": name, "src": source}, timeout=self.relay.timeout)
            response.raise_for_status()
        except requests.RequestException as exc:
            logger.error("Relay refused playback %s: %s", name, mask_credentials(str(exc)))
            raise PlaybackRelayError("Playback relay could not start the stream") from exc

        session = PlaybackSession(stream_name=name, channel=channel, start_time=start, end_time=end)
        self.sessions[name] = session
        logger.info("Started playback %s for channel %s (%s - %s)", name, channel, start, end)
        return session

    def stop(self, stream_name: str) -> bool:
        """Remove a relay stream; returns False if it was not one of ours."""
        session = self.sessions.pop(stream_name, None)
        if session is None:
            return False
        try:
            response = self.http.delete(self.api_url, params={"src": stream_name}, timeout=self.relay.timeout)
            response.raise_for_status()
        except requests.RequestException as exc:
            logger.warning("Failed to stop playback %s: %s", stream_name, mask_credentials(str(exc)))
            raise PlaybackRelayError("Playback relay could not stop the stream") from exc
        logger.info("Stopped playback %s", stream_name)
        return True

    def stop_all(self) -> None:
        for name in list(self.sessions):
            try:
                self.stop(name)
            except PlaybackRelayError:
                continue

    def list_sessions(self) -> List[PlaybackSession]:
        return list(self.sessions.values())
