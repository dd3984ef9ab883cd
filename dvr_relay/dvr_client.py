"""DVR source URLs and media-index client."""

from __future__ import annotations

import datetime as dt
import logging
import re
from typing import Dict, List, Optional
from urllib.parse import quote

import requests
from requests.auth import HTTPDigestAuth

from .config import DvrConfig
from .errors import DvrRequestError, InvalidRequest
from .models import RecordingSegment

logger = logging.getLogger(__name__)

_CREDENTIALS = re.compile(r"(?P<scheme>[a-z][a-z0-9+.-]*://)[^/@\s]*@", re.IGNORECASE)
_ITEM_LINE = re.compile(r"^items\[(?P<index>\d+)\]\.(?P<field>\w+)=(?P<value>.*)$")

PAGE_SIZE = 100
MAX_PAGES = 50


def _authority(dvr: DvrConfig) -> str:
    user = quote(dvr.username, safe="")
    password = quote(dvr.password, safe="")
    return f"{user}:{password}@{dvr.host}:{dvr.port}"


def live_url(dvr: DvrConfig, channel_id: int, subtype: int) -> str:
    """RTSP URL of a channel's live feed; subtype 0 is the main stream, 1 the sub stream."""
    return f"rtsp://{_authority(dvr)}/cam/realmonitor?channel={channel_id}&subtype={subtype}"


def playback_url(dvr: DvrConfig, channel_id: int, start: dt.datetime, end: dt.datetime) -> str:
    fmt = "%Y_%m_%d_%H_%M_%S"
    return (
        f"rtsp://{_authority(dvr)}/cam/playback?channel={channel_id}"
        f"&starttime={start.strftime(fmt)}&endtime={end.strftime(fmt)}"
    )


def mask_credentials(text: str) -> str:
    """Replace ``user:password@`` in any URL inside ``text`` with ``***@``."""
    return _CREDENTIALS.sub(r"\g<scheme>***@", text)


def parse_key_values(body: str) -> Dict[str, str]:
    values: Dict[str, str] = {}
    for line in body.splitlines():
        key, sep, value = line.strip().partition("=")
        if sep:
            values[key] = value
    return values


def parse_find_response(body: str, channel_id: int) -> List[RecordingSegment]:
    """Turn a ``findNextFile`` reply (``items[N].Field=value`` lines) into segments."""
    items: Dict[int, Dict[str, str]] = {}
    for line in body.splitlines():
        match = _ITEM_LINE.match(line.strip())
        if match:
            items.setdefault(int(match["index"]), {})[match["field"]] = match["value"]

    segments: List[RecordingSegment] = []
    for index in sorted(items):
        item = items[index]
        if "StartTime" not in item or "EndTime" not in item:
            continue
        length = item.get("Length")
        segments.append(
            RecordingSegment(
                channel=channel_id,
                start_time=item["StartTime"],
                end_time=item["EndTime"],
                file_path=item.get("FilePath", ""),
                file_type=item.get("Type"),
                size=int(length) if length and length.isdigit() else None,
            )
        )
    return segments


def parse_date(value: str) -> dt.date:
    try:
        return dt.datetime.strptime(value, "%Y%m%d").date()
    except ValueError as exc:
        raise InvalidRequest(f"Invalid date {value!r}, expected YYYYMMDD") from exc


class DvrClient:
    """Wrapper around the DVR's media file finder CGI."""

    def __init__(self, dvr: DvrConfig, session: Optional[requests.Session] = None, timeout: float = 10):
        self.dvr = dvr
        self.session = session or requests.Session()
        self.timeout = timeout

    @property
    def base_url(self) -> str:
        return f"http://{self.dvr.host}:{self.dvr.http_port}/cgi-bin/mediaFileFind.cgi"

    def list_recordings(self, channel_id: int, date: str) -> List[RecordingSegment]:
        if channel_id < 1:
            raise InvalidRequest(f"Invalid channel {channel_id}")
        day = parse_date(date)
        start = dt.datetime.combine(day, dt.time.min)
        end = dt.datetime.combine(day, dt.time(23, 59, 59))

        finder = self._call(action="factory.create").get("result")
        if not finder:
            raise DvrRequestError("DVR did not return a media finder handle")

        try:
            self._call(
                action="findFile",
                object=finder,
                **{
                    "condition.Channel": str(channel_id),
                    "condition.StartTime": start.strftime("%Y-%m-%d %H:%M:%S"),
                    "condition.EndTime": end.strftime("%Y-%m-%d %H:%M:%S"),
                },
            )
            segments: List[RecordingSegment] = []
            for _ in range(MAX_PAGES):
                body = self._get(action="findNextFile", object=finder, count=str(PAGE_SIZE))
                page = parse_find_response(body, channel_id)
                segments.extend(page)
                found = parse_key_values(body).get("found", "0")
                if not found.isdigit() or int(found) < PAGE_SIZE:
                    break
        finally:
            self._close(finder)

        logger.info("Found %d recordings for channel %s on %s", len(segments), channel_id, date)
        return segments

    def _close(self, finder: str) -> None:
        for action in ("close", "destroy"):
            try:
                self._get(action=action, object=finder)
            except DvrRequestError as exc:
                logger.warning("Failed to %s media finder %s: %s", action, finder, exc)

    def _call(self, **params: str) -> Dict[str, str]:
        return parse_key_values(self._get(**params))

    def _get(self, **params: str) -> str:
        try:
            response = self.session.get(
                self.base_url,
                params=params,
                auth=HTTPDigestAuth(self.dvr.username, self.dvr.password),
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            logger.error("DVR request %s failed: %s", params.get("action"), mask_credentials(str(exc)))
            raise DvrRequestError(f"DVR request {params.get('action')} failed") from exc
        return response.text
