"""Shared fixtures: a fake ffmpeg spawner, fake viewers and a running scheduler."""

import asyncio
import itertools
from typing import List, Optional

import pytest
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from dateutil.tz import tzutc

from dvr_relay.config import ChannelConfig, DvrConfig, StreamingConfig

DVR_PASSWORD = "s3cret-pass"


class FakeProcess:
    """Stands in for asyncio.subprocess.Process; the test drives its output and exit."""

    _pids = itertools.count(4000)

    def __init__(self, args, initial_output: bytes = b""):
        self.args = list(args)
        self.pid = next(self._pids)
        self.stdout = asyncio.StreamReader()
        self.stderr = asyncio.StreamReader()
        self.returncode: Optional[int] = None
        self.signals: List[int] = []
        self._exited = asyncio.Event()
        if initial_output:
            self.stdout.feed_data(initial_output)

    def emit(self, data: bytes) -> None:
        self.stdout.feed_data(data)

    def log(self, text: str) -> None:
        self.stderr.feed_data(text.encode())

    def exit(self, code: int = 0) -> None:
        if self.returncode is not None:
            return
        self.returncode = code
        self.stdout.feed_eof()
        self.stderr.feed_eof()
        self._exited.set()

    def send_signal(self, sig: int) -> None:
        self.signals.append(sig)
        self.exit(-sig)

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode


class FakeSpawner:
    """Drop-in for asyncio.create_subprocess_exec that records every spawn."""

    def __init__(self):
        self.processes: List[FakeProcess] = []
        self.calls: List[dict] = []
        self.error: Optional[OSError] = None
        self.initial_output = b""

    async def __call__(self, *args, **kwargs):
        self.calls.append(kwargs)
        # Yield once so concurrent callers interleave the way a real spawn would.
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        process = FakeProcess(args, self.initial_output)
        self.processes.append(process)
        return process

    @property
    def live(self) -> List[FakeProcess]:
        return [p for p in self.processes if p.returncode is None]


class FakeViewer:
    def __init__(self, name: str = "viewer", fail: bool = False):
        self.name = name
        self.fail = fail
        self.is_open = True
        self.frames: List[bytes] = []

    async def send_bytes(self, data: bytes) -> None:
        if self.fail:
            raise ConnectionResetError(f"{self.name} went away")
        self.frames.append(data)

    def __repr__(self) -> str:
        return f"FakeViewer({self.name})"


@pytest.fixture
def spawner() -> FakeSpawner:
    return FakeSpawner()


@pytest.fixture
def make_viewer():
    return FakeViewer


@pytest.fixture
def dvr_config() -> DvrConfig:
    return DvrConfig(
        host="10.0.0.5",
        port=554,
        username="admin",
        password=DVR_PASSWORD,
        channels=[
            ChannelConfig(id=1, name="Front Door"),
            ChannelConfig(id=2, name="Driveway"),
            ChannelConfig(id=3, name="Garage", enabled=False),
        ],
    )


@pytest.fixture
def streaming_config(tmp_path) -> StreamingConfig:
    return StreamingConfig(
        ffmpeg_path="ffmpeg",
        recordings_dir=tmp_path / "recordings",
        teardown_seconds=0.2,
        send_timeout=0.2,
    )


@pytest.fixture
async def scheduler():
    sched = AsyncIOScheduler(event_loop=asyncio.get_running_loop(), timezone=tzutc())
    sched.start()
    yield sched
    sched.shutdown(wait=False)


@pytest.fixture
def wait_until():
    async def _wait_until(predicate, timeout: float = 2.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(0.01)

    return _wait_until
