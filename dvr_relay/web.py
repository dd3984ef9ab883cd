"""FastAPI application exposing live view, recording and playback controls."""

from __future__ import annotations

import argparse
import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence

import uvicorn
import websockets
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from dateutil.tz import tzutc
from fastapi import Body, FastAPI, HTTPException, WebSocket, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.websockets import WebSocketDisconnect, WebSocketState
from websockets.exceptions import WebSocketException

from .config import AppConfig, NotifierConfig, load_config
from .dvr_client import DvrClient
from .errors import InvalidRequest, PlaybackRelayError, ProcessSpawnFailed, RelayError
from .models import ErrorKind, OperationResult
from .notifier import Notifier
from .playback import PlaybackRelay
from .recording_manager import RecordingManager
from .stream_manager import StreamManager

logger = logging.getLogger(__name__)

RESULT_STATUS = {
    ErrorKind.ALREADY_RECORDING: 409,
    ErrorKind.NOT_RECORDING: 409,
    ErrorKind.INVALID_INPUT: 400,
    ErrorKind.PROCESS_SPAWN_FAILED: 502,
}


class ChannelPayload(BaseModel):
    id: int
    name: str
    enabled: bool = True


class DvrPayload(BaseModel):
    host: Optional[str] = None
    port: Optional[int] = None
    http_port: Optional[int] = Field(None, alias="httpPort")
    username: Optional[str] = None
    password: Optional[str] = Field(None, description="'********' keeps the stored password.")
    channels: Optional[List[ChannelPayload]] = None


class ConfigUpdatePayload(BaseModel):
    xvr: Optional[DvrPayload] = None


class RecordingStartPayload(BaseModel):
    channel_name: Optional[str] = Field(None, alias="channelName")


class PlaybackPayload(BaseModel):
    channel: int = Field(..., ge=1)
    start_time: str = Field(..., alias="startTime", description="e.g. 2024-05-01 13:00:00")
    end_time: str = Field(..., alias="endTime")


class WebSocketViewer:
    """Adapts a Starlette WebSocket to the stream manager's connection contract."""

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket

    @property
    def is_open(self) -> bool:
        return (
            self.websocket.client_state == WebSocketState.CONNECTED
            and self.websocket.application_state == WebSocketState.CONNECTED
        )

    async def send_bytes(self, data: bytes) -> None:
        await self.websocket.send_bytes(data)


def result_response(result: OperationResult) -> JSONResponse:
    status_code = 200 if result.success else RESULT_STATUS.get(result.error, 500)
    return JSONResponse(result.to_dict(), status_code=status_code)


def create_app(config: Optional[AppConfig] = None) -> FastAPI:
    config = config or load_config()
    scheduler = AsyncIOScheduler(timezone=tzutc())
    notifier = Notifier(config.notifier or NotifierConfig(), source=config.project_name)
    streams = StreamManager(config.dvr, config.streaming, scheduler)
    recordings = RecordingManager(config.dvr, config.streaming, notifier=notifier if notifier.enabled else None)
    dvr_client = DvrClient(config.dvr)
    playback = PlaybackRelay(config.relay, config.dvr)

    app = FastAPI(title=config.project_name)
    app.state.config = config
    app.state.scheduler = scheduler
    app.state.streams = streams
    app.state.recordings = recordings
    app.state.dvr_client = dvr_client
    app.state.playback = playback

    @app.get("/health")
    async def health() -> Dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/config")
    async def get_config() -> Dict[str, Any]:
        return {"xvr": config.dvr.to_public_dict()}

    @app.put("/api/config")
    async def update_config(payload: ConfigUpdatePayload) -> Dict[str, bool]:
        if payload.xvr:
            config.dvr.apply_update(payload.xvr.model_dump(exclude_none=True, by_alias=True))
            logger.info("DVR settings updated (host %s, %d channels)", config.dvr.host, len(config.dvr.channels))
        return {"success": True}

    @app.get("/api/channels")
    async def list_channels() -> List[Dict[str, Any]]:
        return [channel.to_dict() for channel in config.dvr.channels if channel.enabled]

    @app.get("/api/streams")
    async def list_streams() -> List[Dict[str, Any]]:
        return [info.to_dict() for info in streams.get_active_streams()]

    @app.get("/api/recordings")
    async def list_recordings() -> List[Dict[str, Any]]:
        return [info.to_dict() for info in recordings.get_active_recordings()]

    @app.get("/api/recordings/{channel_id}")
    async def recording_status(channel_id: int) -> Dict[str, bool]:
        return {"recording": recordings.is_recording(channel_id)}

    @app.post("/api/recordings/{channel_id}/start")
    async def start_recording(channel_id: int, payload: Optional[RecordingStartPayload] = Body(None)):
        channel_name = payload.channel_name if payload else None
        channel_name = channel_name or config.dvr.channel_name(channel_id) or f"Camera {channel_id}"
        return result_response(await recordings.start_recording(channel_id, channel_name))

    @app.post("/api/recordings/{channel_id}/stop")
    async def stop_recording(channel_id: int):
        return result_response(await recordings.stop_recording(channel_id))

    @app.get("/api/dvr/recordings/{channel_id}/{date}")
    def dvr_recordings(channel_id: int, date: str) -> List[Dict[str, Any]]:
        try:
            segments = dvr_client.list_recordings(channel_id, date)
        except InvalidRequest as exc:
            raise HTTPException(status_code=400, detail=exc.message) from exc
        except RelayError as exc:
            raise HTTPException(status_code=502, detail=exc.message) from exc
        return [segment.to_dict() for segment in segments]

    @app.post("/api/dvr/playback")
    def start_playback(payload: PlaybackPayload) -> Dict[str, Any]:
        try:
            session = playback.start(payload.channel, payload.start_time, payload.end_time)
        except InvalidRequest as exc:
            raise HTTPException(status_code=400, detail=exc.message) from exc
        except PlaybackRelayError as exc:
            raise HTTPException(status_code=502, detail=exc.message) from exc
        return session.to_dict()

    @app.delete("/api/dvr/playback/{stream_name}")
    def stop_playback(stream_name: str) -> Dict[str, bool]:
        try:
            stopped = playback.stop(stream_name)
        except PlaybackRelayError as exc:
            raise HTTPException(status_code=502, detail=exc.message) from exc
        if not stopped:
            raise HTTPException(status_code=404, detail="Unknown playback stream")
        return {"success": True}

    async def live_view(websocket: WebSocket) -> None:
        params = websocket.query_params
        await websocket.accept()
        try:
            channel_id = int(params.get("channel", "1"))
        except ValueError:
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Invalid channel")
            return
        quality = params.get("quality", "low")
        audio = params.get("audio") == "true"

        viewer = WebSocketViewer(websocket)
        try:
            await streams.subscribe(viewer, channel_id, quality, audio)
        except InvalidRequest as exc:
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=exc.message)
            return
        except ProcessSpawnFailed as exc:
            await websocket.close(code=status.WS_1011_INTERNAL_ERROR, reason=exc.message)
            return

        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
        finally:
            await streams.unsubscribe(viewer, channel_id, quality, audio)

    app.add_api_websocket_route("/ws", live_view)
    app.add_api_websocket_route("/", live_view)

    @app.websocket("/go2rtc/ws")
    async def relay_proxy(websocket: WebSocket) -> None:
        src = websocket.query_params.get("src", "")
        await websocket.accept()
        if src not in playback.sessions:
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Unknown playback stream")
            return
        try:
            async with websockets.connect(playback.ws_url(src), max_size=None) as upstream:
                await _pipe(websocket, upstream)
        except WebSocketDisconnect:
            logger.debug("Browser left relay stream %s", src)
        except (OSError, WebSocketException) as exc:
            logger.warning("Relay connection for %s failed: %s", src, exc)
        finally:
            if WebSocketViewer(websocket).is_open:
                await websocket.close()

    @app.on_event("startup")
    async def startup_event() -> None:
        scheduler.start()
        logger.info("DVR relay started for %s.", config.dvr.host)

    @app.on_event("shutdown")
    async def shutdown_event() -> None:
        await streams.shutdown()
        await recordings.stop_all()
        await run_in_threadpool(playback.stop_all)
        scheduler.shutdown(wait=False)
        logger.info("DVR relay stopped.")

    return app


async def _pipe(websocket: WebSocket, upstream) -> None:
    """Copy frames both ways until either side closes."""

    async def relay_to_browser() -> None:
        # The player reads every message as an ArrayBuffer, JSON control frames included.
        async for message in upstream:
            if isinstance(message, str):
                message = message.encode("utf-8")
            await websocket.send_bytes(message)

    async def browser_to_relay() -> None:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                return
            if message.get("bytes") is not None:
                await upstream.send(message["bytes"])
            elif message.get("text") is not None:
                await upstream.send(message["text"])

    tasks = [asyncio.create_task(relay_to_browser()), asyncio.create_task(browser_to_relay())]
    done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    for task in pending:
        task.cancel()
    await asyncio.gather(*pending, return_exceptions=True)
    for task in done:
        exc = task.exception()
        if exc is not None:
            raise exc


app = create_app()


def main(argv: Optional[Sequence[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="DVR live view and recording relay")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8000)
    args = parser.parse_args(argv)
    uvicorn.run(app, host=args.host, port=args.port, log_level="info")


if __name__ == "__main__":
    main()
