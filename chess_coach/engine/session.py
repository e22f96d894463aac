"""Engine session — exclusive owner of the long-lived UCI engine process.

Every analysis goes through ``EngineSession.analyze``. Calls are serialized
by a FIFO lock, so two searches never share the process pipes and no
output line is ever attributed to the wrong caller. The process is started
on first use, restarted on the next call after a fault, and stopped by
``close()`` at application shutdown.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from chess_coach.errors import EngineBusy, EngineError, EngineTimeout, EngineUnavailable

if TYPE_CHECKING:
    from chess_coach.config import EngineSettings

logger = logging.getLogger(__name__)

QUIT_GRACE_SECONDS = 2.0


class EngineState(str, Enum):
    IDLE = "idle"
    ANALYZING = "analyzing"
    FAULTED = "faulted"


@dataclass(frozen=True)
class AnalysisRequest:
    position: str
    depth: int

    def __post_init__(self) -> None:
        if self.depth <= 0:
            raise ValueError(f"depth must be positive, got {self.depth}")
        if "\n" in self.position or "\r" in self.position:
            raise ValueError("position must be a single line")


class EngineSession:
    """Serialized access to one UCI engine process.

    States: IDLE -> ANALYZING -> IDLE. FAULTED when the process exits,
    closes its pipes, or a write fails; the next ``analyze`` restarts it
    once and fails with EngineUnavailable if that restart fails.
    """

    def __init__(
        self,
        command: list[str],
        *,
        sentinel: str = "bestmove",
        timeout_seconds: float = 30.0,
        timeout_per_depth_seconds: float = 1.0,
        start_timeout_seconds: float = 10.0,
        max_pending: int = 0,
        options: dict[str, Any] | None = None,
    ) -> None:
        if not command:
            raise ValueError("command must name an executable")
        self.command = list(command)
        self.sentinel = sentinel
        self.timeout_seconds = timeout_seconds
        self.timeout_per_depth_seconds = timeout_per_depth_seconds
        self.start_timeout_seconds = start_timeout_seconds
        self.max_pending = max_pending
        self.options = dict(options or {})

        self.state = EngineState.IDLE
        self._process: asyncio.subprocess.Process | None = None
        self._stderr_task: asyncio.Task | None = None
        self._lock = asyncio.Lock()  # asyncio.Lock wakes waiters in FIFO order
        self._waiting = 0
        self._search_outstanding = False
        self._needs_sync = False
        self._started_once = False
        self.metrics = {
            "total_requests": 0,
            "failed_requests": 0,
            "timeouts": 0,
            "restarts": 0,
        }

    @classmethod
    def from_settings(cls, settings: EngineSettings) -> EngineSession:
        return cls(
            settings.command,
            sentinel=settings.sentinel,
            timeout_seconds=settings.timeout_seconds,
            timeout_per_depth_seconds=settings.timeout_per_depth_seconds,
            start_timeout_seconds=settings.start_timeout_seconds,
            max_pending=settings.max_pending,
            options=settings.options,
        )

    @property
    def is_running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    @property
    def pending(self) -> int:
        """Callers queued behind the in-flight analysis."""
        return self._waiting

    # ------------------------------------------------------------------
    # Public interface
    # ------------------------------------------------------------------

    async def analyze(self, position: str, depth: int) -> str:
        """Run one depth-bounded search and return the full engine output.

        The result contains every line the engine printed for this search,
        ending with the sentinel line.
        """
        request = AnalysisRequest(position=position, depth=depth)

        if self.max_pending and self._lock.locked() and self._waiting >= self.max_pending:
            raise EngineBusy(f"{self._waiting} analyses already queued")

        self._waiting += 1
        try:
            await self._lock.acquire()
        finally:
            self._waiting -= 1

        try:
            return await self._run(request)
        finally:
            self._lock.release()

    async def ping(self) -> bool:
        """isready/readyok round trip. Never starts a stopped engine."""
        async with self._lock:
            if not self.is_running or self.state is EngineState.FAULTED:
                return False
            try:
                if self._needs_sync:
                    await self._resync()
                await self._handshake()
                return True
            except EngineError as e:
                await self._fault(f"health check failed: {e}")
                return False
            except asyncio.CancelledError:
                self._discard_process()
                raise

    async def close(self) -> None:
        """Stop the engine process. Safe to call more than once."""
        await self._terminate()
        self.state = EngineState.IDLE
        logger.info("Engine session closed")

    def analysis_timeout(self, depth: int) -> float:
        """Deadline for one analysis, scaled by search depth."""
        return self.timeout_seconds + depth * self.timeout_per_depth_seconds

    def get_metrics(self) -> dict[str, Any]:
        return {
            **self.metrics,
            "state": self.state.value,
            "running": self.is_running,
            "pending": self._waiting,
            "command": self.command,
        }

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    async def _run(self, request: AnalysisRequest) -> str:
        self.metrics["total_requests"] += 1
        try:
            await self._prepare()
        except EngineError:
            self.metrics["failed_requests"] += 1
            raise

        self.state = EngineState.ANALYZING
        deadline = self._deadline(self.analysis_timeout(request.depth))
        try:
            self._search_outstanding = True
            await self._send(f"position fen {request.position}", f"go depth {request.depth}")
            analysis = await self._read_until(self.sentinel, deadline)
            self._search_outstanding = False
        except EngineTimeout:
            self.metrics["failed_requests"] += 1
            self.metrics["timeouts"] += 1
            logger.warning(f"Engine analysis timed out (depth={request.depth}), stopping search")
            self._abandon_search()
            self.state = EngineState.IDLE
            raise
        except EngineUnavailable as e:
            self.metrics["failed_requests"] += 1
            await self._fault(str(e))
            raise
        except asyncio.CancelledError:
            logger.info("Engine analysis cancelled by caller, stopping search")
            self._abandon_search()
            self.state = EngineState.IDLE
            raise

        self.state = EngineState.IDLE
        logger.debug(f"Engine analysis complete ({len(analysis)} chars)")
        return analysis

    async def _prepare(self) -> None:
        """Make the process usable for a new search, restarting at most once."""
        if self._needs_sync and self.is_running and self.state is not EngineState.FAULTED:
            try:
                await self._resync()
            except EngineError as e:
                await self._fault(f"resync failed: {e}")
            except asyncio.CancelledError:
                self._discard_process()
                raise

        if self.is_running and self.state is not EngineState.FAULTED:
            return

        if self._started_once:
            self.metrics["restarts"] += 1
            logger.warning(f"Restarting engine (state={self.state.value})")
        await self._start()

    async def _start(self) -> None:
        await self._terminate()
        try:
            self._process = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            self.state = EngineState.FAULTED
            raise EngineUnavailable(f"Unable to start engine {self.command[0]!r}: {e}") from e

        self._started_once = True
        self._stderr_task = asyncio.create_task(self._drain_stderr(self._process))
        logger.info(f"Engine started: {' '.join(self.command)} (pid={self._process.pid})")

        try:
            for name, value in self.options.items():
                if isinstance(value, bool):
                    value = "true" if value else "false"
                await self._send(f"setoption name {name} value {value}")
            await self._handshake()
        except EngineError as e:
            await self._fault(f"startup failed: {e}")
            raise EngineUnavailable(f"Engine failed to start: {e}") from e
        except asyncio.CancelledError:
            self._discard_process()
            raise

        self._search_outstanding = False
        self._needs_sync = False
        self.state = EngineState.IDLE

    async def _handshake(self) -> None:
        await self._send("isready")
        await self._read_until("readyok", self._deadline(self.start_timeout_seconds))

    async def _resync(self) -> None:
        """Discard output left over from an abandoned search."""
        deadline = self._deadline(self.start_timeout_seconds)
        if self._search_outstanding:
            await self._send("stop")
            stale = await self._read_until(self.sentinel, deadline)
            logger.debug(f"Discarded stale engine output ({len(stale)} chars)")
            self._search_outstanding = False
        await self._send("isready")
        await self._read_until("readyok", deadline)
        self._needs_sync = False

    def _abandon_search(self) -> None:
        self._needs_sync = True
        if not self.is_running:
            return
        try:
            self._process.stdin.write(b"stop\n")
        except (BrokenPipeError, ConnectionResetError, RuntimeError) as e:
            logger.warning(f"Could not send stop to engine: {e}")

    # ------------------------------------------------------------------
    # Pipe I/O — nothing outside this class touches the process streams
    # ------------------------------------------------------------------

    async def _send(self, *commands: str) -> None:
        if not self.is_running:
            raise EngineUnavailable("Engine process is not running")
        payload = "".join(f"{cmd}\n" for cmd in commands).encode()
        try:
            self._process.stdin.write(payload)
            await self._process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError, RuntimeError) as e:
            raise EngineUnavailable(f"Engine input closed: {e}") from e

    async def _read_line(self, deadline: float) -> str:
        remaining = deadline - asyncio.get_running_loop().time()
        if remaining <= 0:
            raise EngineTimeout("Engine produced no result before the deadline")
        try:
            raw = await asyncio.wait_for(self._process.stdout.readline(), timeout=remaining)
        except asyncio.TimeoutError:
            raise EngineTimeout(f"Engine produced no result within {remaining:.1f}s") from None
        except ValueError as e:
            # line longer than the stream buffer limit
            raise EngineUnavailable(f"Engine output unreadable: {e}") from e
        if not raw:
            raise EngineUnavailable("Engine closed its output stream")
        return raw.decode(errors="replace").rstrip("\r\n")

    async def _read_until(self, token: str, deadline: float) -> str:
        """Accumulate lines until one contains ``token``; return all of them."""
        if not self.is_running:
            raise EngineUnavailable("Engine process is not running")
        lines: list[str] = []
        while True:
            line = await self._read_line(deadline)
            lines.append(line)
            if token in line:
                return "\n".join(lines)

    async def _drain_stderr(self, process: asyncio.subprocess.Process) -> None:
        assert process.stderr is not None
        while True:
            raw = await process.stderr.readline()
            if not raw:
                return
            logger.warning(f"Engine stderr: {raw.decode(errors='replace').rstrip()}")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _discard_process(self) -> None:
        """Kill the process without waiting; the next call starts a fresh one."""
        logger.warning("Engine interrupted mid-handshake, discarding process")
        self.state = EngineState.FAULTED
        process, self._process = self._process, None
        stderr_task, self._stderr_task = self._stderr_task, None
        if process is not None and process.returncode is None:
            process.kill()
        if stderr_task is not None:
            stderr_task.cancel()
        self._search_outstanding = False
        self._needs_sync = False

    async def _fault(self, reason: str) -> None:
        logger.error(f"Engine faulted: {reason}")
        self.state = EngineState.FAULTED
        await self._terminate()

    async def _terminate(self) -> None:
        process, self._process = self._process, None
        stderr_task, self._stderr_task = self._stderr_task, None

        if process is not None and process.returncode is None:
            try:
                process.stdin.write(b"quit\n")
                await process.stdin.drain()
            except (BrokenPipeError, ConnectionResetError, RuntimeError):
                pass
            try:
                await asyncio.wait_for(process.wait(), timeout=QUIT_GRACE_SECONDS)
            except asyncio.TimeoutError:
                logger.warning(f"Engine pid={process.pid} ignored quit, killing")
                process.kill()
                await process.wait()

        if stderr_task is not None:
            stderr_task.cancel()
            try:
                await stderr_task
            except asyncio.CancelledError:
                pass

        self._search_outstanding = False
        self._needs_sync = False

    @staticmethod
    def _deadline(seconds: float) -> float:
        return asyncio.get_running_loop().time() + seconds
