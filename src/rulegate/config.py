"""Configuration management for rulegate using Pydantic models."""

import json
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from rulegate.models import Behavior, ProbeTarget

CONFIG_FILE_NAME = ".rulegate.json"


class ReadinessStrategy(str, Enum):
    """How the harness waits for an engine to accept connections."""
    POLL = "poll"
    FIXED = "fixed"


class LogLevel(str, Enum):
    """Logging levels."""
    ERROR = "error"
    WARN = "warn"
    INFO = "info"
    DEBUG = "debug"


class RootConfig(BaseModel):
    """A directory scanned for artifacts of a single behavior kind."""
    path: str
    behavior: Behavior


class DiscoveryConfig(BaseModel):
    """Artifact discovery configuration section."""
    roots: list[RootConfig] = Field(default_factory=lambda: [
        RootConfig(path="./meta-rules-dat-meta/geo/geosite", behavior=Behavior.DOMAIN),
        RootConfig(path="./meta-rules-dat-meta/geo/geoip", behavior=Behavior.IPCIDR),
    ])
    pattern: str = "*.mrs"
    exclude: list[str] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True)


class EngineConfig(BaseModel):
    """Proxy engine process configuration section."""
    binary: str = "mihomo"
    hard_timeout: float = Field(alias="hardTimeout", default=10.0)
    safe_paths_env: str = Field(alias="safePathsEnv", default="SAFE_PATHS")
    log_level: str = Field(alias="logLevel", default="info")

    @field_validator("hard_timeout")
    @classmethod
    def validate_hard_timeout(cls, v):
        if v <= 0:
            raise ValueError("hard_timeout must be > 0")
        return v

    model_config = ConfigDict(populate_by_name=True)


class ProbeConfig(BaseModel):
    """Probe target configuration section."""
    url: str = "http://cp.cloudflare.com"
    success_statuses: list[int] = Field(alias="successStatuses", default_factory=lambda: [200, 204])
    timeout: float = 5.0

    @field_validator("success_statuses")
    @classmethod
    def validate_success_statuses(cls, v):
        if not v:
            raise ValueError("success_statuses must not be empty")
        return v

    @field_validator("timeout")
    @classmethod
    def validate_timeout(cls, v):
        if v <= 0:
            raise ValueError("probe timeout must be > 0")
        return v

    def target(self) -> ProbeTarget:
        """Build the immutable probe target for a run."""
        return ProbeTarget(url=self.url, success_statuses=frozenset(self.success_statuses))

    model_config = ConfigDict(populate_by_name=True)


class ReadinessConfig(BaseModel):
    """Engine readiness wait configuration section."""
    strategy: ReadinessStrategy = ReadinessStrategy.POLL
    delay: float = 2.0
    timeout: float = 5.0
    initial_backoff: float = Field(alias="initialBackoff", default=0.05)
    max_backoff: float = Field(alias="maxBackoff", default=0.5)

    @field_validator("delay", "timeout", "initial_backoff", "max_backoff")
    @classmethod
    def validate_non_negative(cls, v):
        if v < 0:
            raise ValueError("readiness timings must be >= 0")
        return v

    model_config = ConfigDict(populate_by_name=True)


class PoolConfig(BaseModel):
    """Worker pool configuration section."""
    concurrency: int = 20
    start_port: int = Field(alias="startPort", default=20000)

    @field_validator("concurrency")
    @classmethod
    def validate_concurrency(cls, v):
        if v < 1:
            raise ValueError("concurrency must be >= 1")
        return v

    @model_validator(mode="after")
    def validate_port_range(self):
        """Every lane port must be a valid unprivileged port."""
        last_port = self.start_port + self.concurrency - 1
        if self.start_port < 1024 or last_port > 65535:
            raise ValueError(
                f"lane ports {self.start_port}-{last_port} must be within 1024-65535"
            )
        return self

    model_config = ConfigDict(populate_by_name=True)


class LoggingConfig(BaseModel):
    """Logging configuration section."""
    level: LogLevel = LogLevel.INFO

    model_config = ConfigDict(use_enum_values=True, validate_default=True)


class RulegateConfig(BaseModel):
    """Complete rulegate configuration model."""
    discovery: DiscoveryConfig = Field(default_factory=DiscoveryConfig)
    engine: EngineConfig = Field(default_factory=EngineConfig)
    probe: ProbeConfig = Field(default_factory=ProbeConfig)
    readiness: ReadinessConfig = Field(default_factory=ReadinessConfig)
    pool: PoolConfig = Field(default_factory=PoolConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = ConfigDict(extra="forbid")


def load_config(config_path: str | Path | None = None) -> RulegateConfig:
    """Read ``config_path`` (or the nearest .rulegate.json) into a config.

    A missing file means zero-config defaults. Unparsable JSON and values the
    model rejects both surface as ``ValueError`` for the CLI to report.
    """
    path = Path(config_path) if config_path is not None else find_config_file()
    if path is None or not path.is_file():
        return create_default_config()

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in config file {path}: {e}")
    except (OSError, UnicodeDecodeError) as e:
        raise ValueError(f"Failed to load config from {path}: {e}")

    try:
        return RulegateConfig.model_validate(raw)
    except ValidationError as e:
        raise ValueError(f"Failed to load config from {path}: {e}")


def find_config_file(start_dir: Path | None = None) -> Path | None:
    """Nearest .rulegate.json in ``start_dir`` (default cwd) or any parent."""
    here = Path(start_dir or Path.cwd()).resolve()
    for directory in (here, *here.parents):
        candidate = directory / CONFIG_FILE_NAME
        if candidate.is_file():
            return candidate
    return None


def create_default_config() -> RulegateConfig:
    """Create default configuration matching the meta-rules-dat layout."""
    return RulegateConfig()
