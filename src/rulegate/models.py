"""Data model for rule-set artifacts, probe targets and attempt results."""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class Behavior(str, Enum):
    """Matching semantics a rule provider applies to an artifact."""
    DOMAIN = "domain"
    IPCIDR = "ipcidr"


@dataclass(frozen=True)
class Artifact:
    """A compiled rule-set file discovered under one of the configured roots."""
    path: Path
    behavior: Behavior
    root: Path | None = None

    def __str__(self) -> str:
        return str(self.path)


@dataclass(frozen=True)
class ProbeTarget:
    """Fixed HTTP endpoint used to confirm traffic flows through an engine."""
    url: str
    success_statuses: frozenset[int] = frozenset({200, 204})

    def is_success(self, status_code: int) -> bool:
        return status_code in self.success_statuses


@dataclass
class AttemptResult:
    """Outcome of validating one artifact in one engine instance."""
    artifact_path: str
    success: bool
    log: str = ""
    port: int | None = None
    lane: int | None = None
    pid: int | None = None
    status_code: int | None = None
    exit_code: int | None = None
    killed_by_timeout: bool = False
    duration_seconds: float = 0.0
    error: str | None = None

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON output."""
        return {
            "artifact": self.artifact_path,
            "success": self.success,
            "port": self.port,
            "lane": self.lane,
            "pid": self.pid,
            "statusCode": self.status_code,
            "exitCode": self.exit_code,
            "killedByTimeout": self.killed_by_timeout,
            "durationSeconds": round(self.duration_seconds, 3),
            "error": self.error,
            "log": self.log,
        }


@dataclass
class RunSummary:
    """Aggregate of every attempt in a run.

    Result order is not meaningful; lanes publish in completion order.
    """
    results: list[AttemptResult] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def failures(self) -> list[AttemptResult]:
        return [r for r in self.results if not r.success]

    @property
    def successes(self) -> list[AttemptResult]:
        return [r for r in self.results if r.success]

    @property
    def failure_count(self) -> int:
        return len(self.failures)

    @property
    def ok(self) -> bool:
        """True only when something was tested and nothing failed."""
        return self.total > 0 and self.failure_count == 0

    @property
    def exit_code(self) -> int:
        """Exit code for CI: 0 = all passed, 1 = any failure or no artifacts."""
        return 0 if self.ok else 1

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON output."""
        return {
            "status": "pass" if self.ok else "fail",
            "exit_code": self.exit_code,
            "total": self.total,
            "failed": self.failure_count,
            "results": [result.to_dict() for result in self.results],
        }
