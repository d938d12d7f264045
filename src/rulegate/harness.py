"""Per-artifact engine lifecycle: spawn, warm up, probe, tear down, collect.

One ``run_one`` call owns exactly one engine process from spawn to reap. Every
attempt walks the same states in order; only a probe failure short-circuits,
and it short-circuits straight to termination.
"""

import logging
import os
import socket
import subprocess
import threading
import time
from collections.abc import Callable
from enum import Enum
from pathlib import Path

import httpx
import psutil

from rulegate.config import EngineConfig, ReadinessConfig, ReadinessStrategy
from rulegate.models import Artifact, AttemptResult, ProbeTarget
from rulegate.synthesis import synthesize

logger = logging.getLogger(__name__)

LOOPBACK = "127.0.0.1"
HARD_TIMEOUT_REASON = "hard timeout"
TEARDOWN_REASON = "teardown"
SHUTDOWN_REASON = "shutdown"
STREAM_JOIN_TIMEOUT = 5.0

ProbeFn = Callable[[ProbeTarget, int, float], int]


class AttemptState(str, Enum):
    """States of a single validation attempt."""
    SPAWNING = "spawning"
    WARMING = "warming"
    PROBING = "probing"
    TERMINATING = "terminating"
    COLLECTED = "collected"


class Termination:
    """Kill switch for one engine process, shared by every teardown trigger.

    The hard-cap timer and the explicit post-probe teardown both go through
    this object, so the first trigger wins the recorded reason and repeated
    signals are never sent.
    """

    def __init__(self, process: subprocess.Popen):
        self._process = process
        self._lock = threading.Lock()
        self._terminated = False
        self._killed = False
        self.reason: str | None = None

    @property
    def triggered(self) -> bool:
        return self.reason is not None

    def terminate(self, reason: str) -> None:
        """Ask the process tree to exit (SIGTERM)."""
        with self._lock:
            if self.reason is None:
                self.reason = reason
            if self._terminated or self._killed:
                return
            self._terminated = True
        _signal_tree(self._process, force=False)

    def kill(self, reason: str) -> None:
        """Force the process tree down (SIGKILL)."""
        with self._lock:
            if self.reason is None:
                self.reason = reason
            if self._killed:
                return
            self._killed = True
        _signal_tree(self._process, force=True)


def _signal_tree(process: subprocess.Popen, force: bool) -> None:
    """Signal the engine and anything it spawned; already-dead is fine."""
    try:
        children = psutil.Process(process.pid).children(recursive=True)
    except psutil.Error:
        children = []

    for child in children:
        try:
            if force:
                child.kill()
            else:
                child.terminate()
        except psutil.Error:
            pass

    if process.poll() is None:
        try:
            if force:
                process.kill()
            else:
                process.terminate()
        except ProcessLookupError:
            pass


class _StreamCollector:
    """Drain a child pipe on a background thread so the engine never blocks on output."""

    def __init__(self, stream, name: str):
        self._stream = stream
        self._chunks: list[bytes] = []
        self._thread = threading.Thread(target=self._drain, name=f"rulegate-{name}", daemon=True)
        self._thread.start()

    def _drain(self) -> None:
        try:
            for chunk in iter(lambda: self._stream.read(4096), b""):
                self._chunks.append(chunk)
        except (OSError, ValueError) as e:
            logger.debug(f"Stream drain stopped: {e}")
        finally:
            self._stream.close()

    def text(self, timeout: float | None = None) -> str:
        self._thread.join(timeout)
        if self._thread.is_alive():
            logger.warning("Engine output stream still open after process exit; log may be incomplete")
        return b"".join(self._chunks).decode("utf-8", errors="replace")


def _collected(collector: _StreamCollector | None) -> str:
    return collector.text(STREAM_JOIN_TIMEOUT) if collector is not None else ""


def wait_for_listener(port: int, timeout: float, initial_backoff: float, max_backoff: float,
                      is_alive: Callable[[], bool] = lambda: True,
                      host: str = LOOPBACK,
                      sleep: Callable[[float], None] = time.sleep,
                      clock: Callable[[], float] = time.monotonic) -> bool:
    """Poll until something accepts TCP connections on ``host:port``.

    Returns False when the deadline passes or ``is_alive`` reports the
    process is gone; True as soon as a connection succeeds.
    """
    deadline = clock() + timeout
    backoff = max(initial_backoff, 0.001)

    while True:
        if not is_alive():
            return False
        remaining = deadline - clock()
        try:
            with socket.create_connection((host, port), timeout=max(min(remaining, 1.0), 0.05)):
                return True
        except OSError:
            pass

        remaining = deadline - clock()
        if remaining <= 0:
            return False
        sleep(min(backoff, remaining))
        backoff = min(backoff * 2, max(max_backoff, initial_backoff))


def probe_through_proxy(target: ProbeTarget, port: int, timeout: float) -> int:
    """Issue the single probe request through the engine's HTTP proxy port.

    Returns:
        HTTP status code of the response

    Raises:
        httpx.HTTPError: On any transport or proxy level failure
    """
    proxy_url = f"http://{LOOPBACK}:{port}"
    with httpx.Client(proxy=proxy_url, timeout=timeout, trust_env=False) as client:
        response = client.get(target.url)
    return response.status_code


def build_engine_env(engine: EngineConfig, cwd: Path | None = None) -> dict[str, str]:
    """Parent environment plus the variable confining engine file access to cwd."""
    env = dict(os.environ)
    env[engine.safe_paths_env] = str(cwd or Path.cwd())
    return env


class ProcessHarness:
    """Runs one artifact through a freshly spawned engine instance.

    Every engine that is currently between spawn and reap is tracked, so an
    interrupted run can bring all of them down with ``shutdown``. Once shut
    down, the harness refuses to spawn further engines.
    """

    def __init__(self, engine: EngineConfig, target: ProbeTarget,
                 readiness: ReadinessConfig | None = None,
                 probe_timeout: float = 5.0,
                 probe: ProbeFn = probe_through_proxy,
                 sleep: Callable[[float], object] | None = None):
        self.engine = engine
        self.target = target
        self.readiness = readiness or ReadinessConfig()
        self.probe_timeout = probe_timeout
        self._probe = probe
        self._stopping = threading.Event()
        # Waits end early once shutdown starts
        self._sleep = sleep or self._stopping.wait
        self._live: set[Termination] = set()
        self._live_lock = threading.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def shutdown(self) -> int:
        """Kill every engine still running and stop accepting new attempts.

        Returns:
            Number of engines that were signalled
        """
        with self._live_lock:
            self._closed = True
            live = list(self._live)
        self._stopping.set()
        for termination in live:
            termination.kill(SHUTDOWN_REASON)
        if live:
            logger.warning(f"Killed {len(live)} running engine(s) on shutdown")
        return len(live)

    def _track(self, termination: Termination) -> None:
        with self._live_lock:
            self._live.add(termination)
            closed = self._closed
        if closed:
            termination.kill(SHUTDOWN_REASON)

    def _untrack(self, termination: Termination) -> None:
        with self._live_lock:
            self._live.discard(termination)

    def run_one(self, artifact: Artifact, port: int, lane: int | None = None) -> AttemptResult:
        """Validate one artifact on ``port``. Never raises."""
        started = time.monotonic()
        result = AttemptResult(artifact_path=str(artifact.path), success=False, port=port, lane=lane)
        error: str | None = None

        try:
            error = self._attempt(artifact, port, result)
        except Exception as e:
            logger.exception(f"Unexpected harness error for {artifact.path}")
            error = f"{type(e).__name__}: {e}"
            result.success = False

        if error:
            result.log = f"--- Startup/Fetch Error ---\n{error}\n\n" + result.log
            result.error = error
        elif not result.success:
            result.error = f"HTTP {result.status_code}"
        result.duration_seconds = time.monotonic() - started
        return result

    def _attempt(self, artifact: Artifact, port: int, result: AttemptResult) -> str | None:
        """Drive the state machine; returns the harness-level error message, if any."""
        if self._closed:
            result.log = "--- STDOUT ---\n\n\n--- STDERR ---\n"
            return "Run interrupted before the engine was started"

        self._enter(AttemptState.SPAWNING, artifact)
        token = synthesize(port, artifact.behavior, artifact.path, self.engine.log_level)
        try:
            process = subprocess.Popen(
                [self.engine.binary, "-config", token],
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=build_engine_env(self.engine),
            )
        except OSError as e:
            logger.error(f"Failed to start engine '{self.engine.binary}' for {artifact.path}: {e}")
            result.log = "--- STDOUT ---\n\n\n--- STDERR ---\n"
            return f"Failed to start engine '{self.engine.binary}': {e}"

        result.pid = process.pid
        deadline = time.monotonic() + self.engine.hard_timeout
        termination = Termination(process)
        supervisor: threading.Timer | None = None
        stdout: _StreamCollector | None = None
        stderr: _StreamCollector | None = None

        error = None
        try:
            self._track(termination)
            supervisor = threading.Timer(self.engine.hard_timeout, termination.kill, args=(HARD_TIMEOUT_REASON,))
            supervisor.daemon = True
            supervisor.start()
            stdout = _StreamCollector(process.stdout, "stdout")
            stderr = _StreamCollector(process.stderr, "stderr")

            self._enter(AttemptState.WARMING, artifact)
            ready = self._wait_ready(port, process)
            if not ready:
                logger.debug(f"Engine on port {port} not confirmed listening; probing anyway")

            if self._closed:
                error = "Run interrupted; engine killed"
            else:
                self._enter(AttemptState.PROBING, artifact)
                try:
                    status = self._probe(self.target, port, self.probe_timeout)
                except (httpx.HTTPError, OSError) as e:
                    error = str(e) or type(e).__name__
                    logger.debug(f"Probe through port {port} failed for {artifact.path}: {error}")
                else:
                    result.status_code = status
                    result.success = self.target.is_success(status)
        finally:
            self._enter(AttemptState.TERMINATING, artifact)
            termination.terminate(TEARDOWN_REASON)

            try:
                process.wait(timeout=max(deadline - time.monotonic(), 0) + 1.0)
            except subprocess.TimeoutExpired:
                termination.kill(TEARDOWN_REASON)
                process.wait()
            if supervisor is not None:
                supervisor.cancel()
            self._untrack(termination)

            self._enter(AttemptState.COLLECTED, artifact)
            result.exit_code = process.returncode
            result.killed_by_timeout = termination.reason == HARD_TIMEOUT_REASON
            result.log = (
                f"--- STDOUT ---\n{_collected(stdout)}\n\n"
                f"--- STDERR ---\n{_collected(stderr)}"
            )
            self._log_exit(process.returncode, termination.reason)

        if result.killed_by_timeout:
            result.success = False
            if error is None:
                error = f"Engine exceeded hard timeout of {self.engine.hard_timeout}s"
        elif termination.reason == SHUTDOWN_REASON:
            result.success = False
            if error is None:
                error = "Run interrupted; engine killed"
        return error

    def _wait_ready(self, port: int, process: subprocess.Popen) -> bool:
        if self.readiness.strategy == ReadinessStrategy.FIXED:
            self._sleep(self.readiness.delay)
            return process.poll() is None
        return wait_for_listener(
            port,
            timeout=self.readiness.timeout,
            initial_backoff=self.readiness.initial_backoff,
            max_backoff=self.readiness.max_backoff,
            is_alive=lambda: process.poll() is None,
            sleep=self._sleep,
        )

    def _enter(self, state: AttemptState, artifact: Artifact) -> None:
        logger.debug(f"{artifact.path}: {state.value}")

    def _log_exit(self, returncode: int | None, reason: str | None) -> None:
        if returncode is None:
            return
        if returncode < 0:
            # Signalled exits are expected after teardown
            level = logging.WARNING if reason == HARD_TIMEOUT_REASON else logging.DEBUG
            logger.log(level, f"Engine process killed by signal {-returncode} ({reason})")
        elif returncode != 0:
            logger.warning(f"Engine process exited with code {returncode}")
