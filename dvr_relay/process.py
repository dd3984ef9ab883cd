"""Supervision of a single transcoder subprocess."""

from __future__ import annotations

import asyncio
import logging
import signal
from typing import Awaitable, Callable, List, Optional

from .errors import ProcessSpawnFailed

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024

DataHook = Callable[[bytes], Awaitable[None]]
ExitHook = Callable[["ProcessHandle", Optional[int]], Awaitable[None]]
Spawner = Callable[..., Awaitable[asyncio.subprocess.Process]]


class ProcessHandle:
    """Owns one spawned transcoder: pumps its stdout, logs its stderr, reports its exit.

    ``on_data`` receives every stdout chunk in the order the process produced
    it. ``on_exit`` is awaited once, after stdout is drained, with the
    process's return code. When ``capture_stdout`` is false the process writes
    its output elsewhere (a file) and only stderr is read.
    """

    def __init__(
        self,
        name: str,
        args: List[str],
        *,
        on_data: Optional[DataHook] = None,
        on_exit: Optional[ExitHook] = None,
        capture_stdout: bool = True,
        spawn: Spawner = asyncio.create_subprocess_exec,
        chunk_size: int = CHUNK_SIZE,
    ):
        self.name = name
        self.args = args
        self.on_data = on_data
        self.on_exit = on_exit
        self.capture_stdout = capture_stdout
        self.chunk_size = chunk_size
        self.stop_requested = False
        self._spawn = spawn
        self._process: Optional[asyncio.subprocess.Process] = None
        self._pending_signal: Optional[int] = None
        self._tasks: List[asyncio.Task] = []

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    @property
    def returncode(self) -> Optional[int]:
        return self._process.returncode if self._process else None

    @property
    def running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    async def start(self) -> None:
        if self._process is not None:
            raise RuntimeError(f"{self.name} already started")
        try:
            self._process = await self._spawn(
                *self.args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE if self.capture_stdout else asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            # Only the executable name goes into the message; args carry credentials.
            reason = exc.strerror or exc.__class__.__name__
            logger.error("Failed to spawn %s for %s: %s", self.args[0], self.name, reason)
            raise ProcessSpawnFailed(f"Could not start {self.args[0]}: {reason}") from exc

        logger.info("Started %s (pid %s)", self.name, self._process.pid)

        if self.capture_stdout:
            self._tasks.append(asyncio.create_task(self._pump_stdout(), name=f"{self.name}-stdout"))
        self._tasks.append(asyncio.create_task(self._pump_stderr(), name=f"{self.name}-stderr"))
        self._tasks.append(asyncio.create_task(self._watch(), name=f"{self.name}-watch"))

        if self._pending_signal is not None:
            self._send(self._pending_signal)

    def terminate(self) -> None:
        """Stop a live transcoder (SIGTERM)."""
        self._signal(signal.SIGTERM)

    def interrupt(self) -> None:
        """Ask the transcoder to finalize its output and exit (SIGINT)."""
        self._signal(signal.SIGINT)

    def _signal(self, sig: int) -> None:
        self.stop_requested = True
        if self._process is None:
            self._pending_signal = sig
            return
        self._send(sig)

    def _send(self, sig: int) -> None:
        if self._process.returncode is not None:
            return
        try:
            self._process.send_signal(sig)
        except ProcessLookupError:
            logger.debug("%s already exited before signal %s", self.name, sig)

    async def _pump_stdout(self) -> None:
        stdout = self._process.stdout
        while True:
            chunk = await stdout.read(self.chunk_size)
            if not chunk:
                break
            if self.on_data is None:
                continue
            try:
                await self.on_data(chunk)
            except Exception:  # noqa: BLE001
                logger.exception("Data hook failed for %s", self.name)

    async def _pump_stderr(self) -> None:
        stderr = self._process.stderr
        pending = b""
        while True:
            data = await stderr.read(4096)
            if not data:
                break
            # ffmpeg terminates progress lines with \r.
            lines = (pending + data).replace(b"\r", b"\n").split(b"\n")
            pending = lines.pop()
            for line in lines:
                self._log_stderr(line)
        if pending:
            self._log_stderr(pending)

    def _log_stderr(self, raw: bytes) -> None:
        text = raw.decode("utf-8", errors="replace").strip()
        if not text:
            return
        if "error" in text.lower():
            logger.warning("%s: %s", self.name, text)
        else:
            logger.debug("%s: %s", self.name, text)

    async def _watch(self) -> None:
        returncode = await self._process.wait()
        readers = [task for task in self._tasks if task is not asyncio.current_task()]
        await asyncio.gather(*readers, return_exceptions=True)
        logger.info("%s exited with code %s", self.name, returncode)
        if self.on_exit is not None:
            try:
                await self.on_exit(self, returncode)
            except Exception:  # noqa: BLE001
                logger.exception("Exit hook failed for %s", self.name)
