"""HTTP and WebSocket surface tests using FastAPI's TestClient."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from dvr_relay.config import AppConfig, RelayConfig
from dvr_relay.errors import DvrRequestError
from dvr_relay.models import ErrorKind, OperationResult, RecordingSegment
from dvr_relay.web import _pipe, create_app, main
from dvr_relay.web import app as web_app

from conftest import DVR_PASSWORD, FakeSpawner


@pytest.fixture
def config(dvr_config, streaming_config) -> AppConfig:
    return AppConfig(
        project_name="Test Relay",
        dvr=dvr_config,
        streaming=streaming_config,
        relay=RelayConfig(url="http://relay:1984"),
    )


@pytest.fixture
def client(config):
    app = create_app(config)
    with TestClient(app) as test_client:
        yield test_client


class TestConfigEndpoints:
    def test_health(self, client):
        assert client.get("/health").json() == {"status": "ok"}

    def test_password_is_masked(self, client):
        body = client.get("/api/config").json()

        assert body["xvr"]["password"] == "********"
        assert DVR_PASSWORD not in client.get("/api/config").text
        assert body["xvr"]["httpPort"] == 80

    def test_update_keeps_masked_password(self, client, config):
        response = client.put(
            "/api/config",
            json={
                "xvr": {
                    "host": "10.0.0.9",
                    "password": "********",
                    "channels": [
                        {"id": 1, "name": "Front Door", "enabled": False},
                        {"id": 2, "name": "Driveway"},
                    ],
                }
            },
        )

        assert response.json() == {"success": True}
        assert config.dvr.host == "10.0.0.9"
        assert config.dvr.password == DVR_PASSWORD
        assert client.get("/api/channels").json() == [{"id": 2, "name": "Driveway", "enabled": True}]

    def test_disabled_channels_are_hidden(self, client):
        names = [channel["name"] for channel in client.get("/api/channels").json()]

        assert names == ["Front Door", "Driveway"]


class TestRecordingEndpoints:
    def test_start_uses_configured_channel_name(self, client):
        recordings = client.app.state.recordings
        result = OperationResult.ok("Recording started", "/rec/Front-Door.mp4")
        with patch.object(recordings, "start_recording", AsyncMock(return_value=result)) as start:
            response = client.post("/api/recordings/1/start")

        start.assert_awaited_once_with(1, "Front Door")
        assert response.status_code == 200
        assert response.json() == {"success": True, "message": "Recording started", "filepath": "/rec/Front-Door.mp4"}

    def test_start_with_explicit_name(self, client):
        recordings = client.app.state.recordings
        result = OperationResult.ok("Recording started", "/rec/x.mp4")
        with patch.object(recordings, "start_recording", AsyncMock(return_value=result)) as start:
            client.post("/api/recordings/7/start", json={"channelName": "Loading Dock"})

        start.assert_awaited_once_with(7, "Loading Dock")

    def test_already_recording_is_a_conflict(self, client):
        recordings = client.app.state.recordings
        result = OperationResult.fail(ErrorKind.ALREADY_RECORDING, "Already recording")
        with patch.object(recordings, "start_recording", AsyncMock(return_value=result)):
            response = client.post("/api/recordings/1/start")

        assert response.status_code == 409
        assert response.json()["error"] == "already_recording"

    def test_stop_when_idle_is_a_conflict(self, client):
        response = client.post("/api/recordings/4/stop")

        assert response.status_code == 409
        assert response.json()["error"] == "not_recording"

    def test_invalid_channel(self, client):
        response = client.post("/api/recordings/0/start")

        assert response.status_code == 400

    def test_status_and_listing(self, client):
        assert client.get("/api/recordings/1").json() == {"recording": False}
        assert client.get("/api/recordings").json() == []


class TestDvrEndpoints:
    def test_list_dvr_recordings(self, client):
        segment = RecordingSegment(1, "2024-05-01 00:00:00", "2024-05-01 01:00:00", "/mnt/a.dav", "dav", 10)
        with patch.object(client.app.state.dvr_client, "list_recordings", return_value=[segment]) as listing:
            response = client.get("/api/dvr/recordings/1/20240501")

        listing.assert_called_once_with(1, "20240501")
        assert response.json() == [segment.to_dict()]

    def test_bad_date(self, client):
        assert client.get("/api/dvr/recordings/1/2024-05-01").status_code == 400

    def test_dvr_unreachable(self, client):
        error = DvrRequestError("DVR request factory.create failed")
        with patch.object(client.app.state.dvr_client, "list_recordings", side_effect=error):
            response = client.get("/api/dvr/recordings/1/20240501")

        assert response.status_code == 502

    def test_playback_start_and_stop(self, client):
        playback = client.app.state.playback
        playback.http = MagicMock()

        response = client.post(
            "/api/dvr/playback",
            json={"channel": 2, "startTime": "2024-05-01 08:00:00", "endTime": "2024-05-01 08:30:00"},
        )

        assert response.status_code == 200
        name = response.json()["streamName"]
        assert name.startswith("playback_2_")
        assert client.delete(f"/api/dvr/playback/{name}").json() == {"success": True}
        assert client.delete(f"/api/dvr/playback/{name}").status_code == 404

    def test_playback_capped_end_hour_gets_a_window(self, client):
        client.app.state.playback.http = MagicMock()

        response = client.post(
            "/api/dvr/playback",
            json={"channel": 2, "startTime": "2024-05-01 23:10:00", "endTime": "2024-05-01 23:10:00"},
        )

        assert response.status_code == 200
        assert response.json()["endTime"] == "2024-05-02 00:10:00"

    def test_playback_rejects_unparseable_time(self, client):
        client.app.state.playback.http = MagicMock()

        response = client.post(
            "/api/dvr/playback",
            json={"channel": 2, "startTime": "yesterday-ish", "endTime": "2024-05-01 08:30:00"},
        )

        assert response.status_code == 400

    def test_proxy_rejects_unknown_stream(self, client):
        with client.websocket_connect("/go2rtc/ws?src=playback_9_nope") as ws:
            with pytest.raises(WebSocketDisconnect) as excinfo:
                ws.receive_bytes()

        assert excinfo.value.code == 1008


class TestLiveView:
    def test_frames_reach_the_browser(self, client):
        spawner = FakeSpawner()
        spawner.initial_output = b"\x47mpegts-frame"
        client.app.state.streams._spawn = spawner

        with client.websocket_connect("/ws?channel=2&quality=high&audio=true") as ws:
            assert ws.receive_bytes() == b"\x47mpegts-frame"
            assert client.get("/api/streams").json() == [
                {"channelId": 2, "quality": "high", "audio": True, "clients": 1}
            ]

        args = spawner.processes[0].args
        assert "1280x960" in args
        assert "mp2" in args

    def test_root_path_is_an_alias(self, client):
        spawner = FakeSpawner()
        spawner.initial_output = b"frame"
        client.app.state.streams._spawn = spawner

        with client.websocket_connect("/?channel=1") as ws:
            assert ws.receive_bytes() == b"frame"

        assert "-an" in spawner.processes[0].args

    def test_bad_quality_is_a_policy_violation(self, client):
        with client.websocket_connect("/ws?channel=1&quality=ultra") as ws:
            with pytest.raises(WebSocketDisconnect) as excinfo:
                ws.receive_bytes()

        assert excinfo.value.code == 1008

    def test_spawn_failure_closes_without_leaking_credentials(self, client, config):
        config.streaming.ffmpeg_path = "/nonexistent/ffmpeg"

        with client.websocket_connect("/ws?channel=1") as ws:
            with pytest.raises(WebSocketDisconnect) as excinfo:
                ws.receive_bytes()

        assert excinfo.value.code == 1011
        assert DVR_PASSWORD not in excinfo.value.reason
        assert client.get("/api/streams").json() == []


class FakeRelaySocket:
    """Upstream relay connection that replays a fixed list of messages."""

    def __init__(self, messages):
        self.messages = messages
        self.sent = []

    async def __aiter__(self):
        for message in self.messages:
            yield message

    async def send(self, message) -> None:
        self.sent.append(message)


class IdleRelaySocket(FakeRelaySocket):
    async def __aiter__(self):
        await asyncio.Event().wait()
        yield b""


class FakeBrowserSocket:
    def __init__(self, incoming=()):
        self.incoming = asyncio.Queue()
        for message in incoming:
            self.incoming.put_nowait(message)
        self.outgoing = []

    async def receive(self):
        return await self.incoming.get()

    async def send_bytes(self, data: bytes) -> None:
        self.outgoing.append(("bytes", data))

    async def send_text(self, data: str) -> None:
        self.outgoing.append(("text", data))


class TestRelayPipe:
    async def test_relay_messages_reach_the_browser_as_binary(self):
        control = '{"type":"mse","value":"avc1.640029"}'
        browser = FakeBrowserSocket()
        upstream = FakeRelaySocket([control, b"\x00\x00\x00\x18ftyp"])

        await _pipe(browser, upstream)

        assert browser.outgoing == [("bytes", control.encode()), ("bytes", b"\x00\x00\x00\x18ftyp")]

    async def test_browser_messages_reach_the_relay(self):
        browser = FakeBrowserSocket(
            [
                {"type": "websocket.receive", "text": '{"type":"mse"}'},
                {"type": "websocket.receive", "bytes": b"\x01"},
                {"type": "websocket.disconnect", "code": 1000},
            ]
        )
        upstream = IdleRelaySocket([])

        await _pipe(browser, upstream)

        assert upstream.sent == ['{"type":"mse"}', b"\x01"]


def test_main_serves_the_app_with_uvicorn():
    with patch("dvr_relay.web.uvicorn.run") as run:
        main(["--host", "127.0.0.1", "--port", "9001"])

    run.assert_called_once_with(web_app, host="127.0.0.1", port=9001, log_level="info")
