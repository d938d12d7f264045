"""Wiring of discovery, harness, pool and reporting into one validation run."""

import logging

from rulegate.config import RulegateConfig
from rulegate.harness import STREAM_JOIN_TIMEOUT, ProcessHarness
from rulegate.models import Artifact, RunSummary
from rulegate.pool import WorkerPool
from rulegate.reporting import ConsoleReporter, summarize

logger = logging.getLogger(__name__)


def build_harness(config: RulegateConfig) -> ProcessHarness:
    """Create the process harness described by ``config``."""
    return ProcessHarness(
        engine=config.engine,
        target=config.probe.target(),
        readiness=config.readiness,
        probe_timeout=config.probe.timeout,
    )


def run_validation(config: RulegateConfig, artifacts: list[Artifact],
                   reporter: ConsoleReporter | None = None,
                   harness: ProcessHarness | None = None) -> RunSummary:
    """Validate every artifact and return the aggregated summary.

    An empty artifact list yields an empty summary, which reports as a
    failure: finding nothing to test almost always means a bad root.
    """
    if not artifacts:
        logger.error("No artifacts discovered; nothing to validate")
        if reporter:
            reporter.no_artifacts()
        return RunSummary()

    harness = harness or build_harness(config)
    if reporter:
        reporter.run_started(len(artifacts), config.pool.concurrency)

    pool = WorkerPool(
        harness.run_one,
        concurrency=config.pool.concurrency,
        start_port=config.pool.start_port,
        on_start=reporter.attempt_started if reporter else None,
        on_complete=reporter.attempt_finished if reporter else None,
    )
    try:
        results = pool.run_all(artifacts)
    finally:
        # Reached early only when the main thread is interrupted mid-run
        pool.stop()
        harness.shutdown()
        if not pool.join(config.engine.hard_timeout + STREAM_JOIN_TIMEOUT):
            logger.error("Lanes still running after shutdown")
    return summarize(results)
