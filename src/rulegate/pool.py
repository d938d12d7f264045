"""Fixed-size lane pool that spreads artifacts across dedicated engine ports."""

import logging
import queue
import threading
import time
from collections.abc import Callable

from rulegate.models import Artifact, AttemptResult

logger = logging.getLogger(__name__)

RunOneFn = Callable[[Artifact, int, int], AttemptResult]
StartFn = Callable[[Artifact, int, int], None]
CompleteFn = Callable[[AttemptResult], None]

JOIN_SLICE = 0.2


class WorkerPool:
    """Run every artifact exactly once across ``concurrency`` lanes.

    Lane ``i`` binds port ``start_port + i`` for its whole life, so two
    concurrently running engines can never collide on a listen port. Lanes
    race on a shared queue for the next artifact until it is empty.
    """

    def __init__(self, run_one: RunOneFn, concurrency: int = 20, start_port: int = 20000,
                 on_start: StartFn | None = None, on_complete: CompleteFn | None = None):
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.run_one = run_one
        self.concurrency = concurrency
        self.start_port = start_port
        self.on_start = on_start
        self.on_complete = on_complete
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

    def port_for(self, lane: int) -> int:
        return self.start_port + lane

    def stop(self) -> None:
        """Stop lanes from claiming further artifacts; running attempts finish."""
        self._stop.set()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def join(self, timeout: float | None = None) -> bool:
        """Wait for every lane to exit. Returns False if one is still running.

        Waits in short slices so signal handlers keep running in the main thread.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        for thread in self._threads:
            while thread.is_alive():
                if deadline is not None and time.monotonic() >= deadline:
                    return False
                thread.join(JOIN_SLICE)
        return True

    def run_all(self, artifacts: list[Artifact]) -> list[AttemptResult]:
        """Process all artifacts and return once every lane has finished.

        After ``stop`` only the artifacts already claimed produce results.
        """
        work: queue.Queue[Artifact] = queue.Queue()
        for artifact in artifacts:
            work.put(artifact)

        results: list[AttemptResult] = []
        results_lock = threading.Lock()

        lane_count = min(self.concurrency, len(artifacts))
        logger.info(f"Starting {lane_count} lanes for {len(artifacts)} artifacts")

        def lane_worker(lane: int) -> None:
            port = self.port_for(lane)
            while not self._stop.is_set():
                try:
                    artifact = work.get_nowait()
                except queue.Empty:
                    break
                result = self._run_guarded(artifact, port, lane)
                with results_lock:
                    results.append(result)
                self._notify_complete(result)
            logger.debug(f"Lane {lane} (port {port}) drained")

        self._threads = [
            threading.Thread(target=lane_worker, args=(lane,), name=f"rulegate-lane-{lane}", daemon=True)
            for lane in range(lane_count)
        ]
        for thread in self._threads:
            thread.start()
        self.join()

        if self.stopped and not work.empty():
            logger.warning(f"Run stopped with {work.qsize()} artifacts never attempted")
        return results

    def _run_guarded(self, artifact: Artifact, port: int, lane: int) -> AttemptResult:
        """Always produce a result, even if the attempt callable misbehaves."""
        if self.on_start:
            try:
                self.on_start(artifact, port, lane)
            except Exception as e:
                logger.warning(f"Start callback failed for {artifact.path}: {e}")
        try:
            return self.run_one(artifact, port, lane)
        except Exception as e:
            logger.error(f"Attempt for {artifact.path} raised {type(e).__name__}: {e}")
            message = f"{type(e).__name__}: {e}"
            return AttemptResult(
                artifact_path=str(artifact.path),
                success=False,
                log=f"--- Startup/Fetch Error ---\n{message}\n\n",
                port=port,
                lane=lane,
                error=message,
            )

    def _notify_complete(self, result: AttemptResult) -> None:
        if self.on_complete:
            try:
                self.on_complete(result)
            except Exception as e:
                logger.warning(f"Completion callback failed for {result.artifact_path}: {e}")
