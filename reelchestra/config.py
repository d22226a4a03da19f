"""
Configuration management for reelchestra.

Loads and validates config.yaml:

    ledger:
      backend: sqlite            # sqlite | memory
      path: ~/.reelchestra/ledger.db
    workers:
      defaults:
        concurrency: 3
        poll_interval_s: 5
        liveness_timeout_s: 600
      asset_prep:
        concurrency: 5
    retry:
      narration_synthesis:
        max_retries: 4
        base_delay_s: 15
    logging:
      level: INFO
      format: structured         # structured | pretty
      output: ~/.reelchestra/logs/reelchestra-{date}.log
      console: true

The default config lives in $REELCHESTRA_HOME/config.yaml
(~/.reelchestra when the variable is unset). A missing default config
means built-in defaults; a missing explicit config is an error.
"""

import os
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from reelchestra.ledger import InMemoryJobLedger, JobLedger, SqliteJobLedger
from reelchestra.schemas import JobType, RetryPolicy


class ConfigError(Exception):
    """Configuration validation error."""
    pass


LEDGER_BACKENDS = ("sqlite", "memory")
LOG_FORMATS = ("structured", "pretty")


def get_reelchestra_home() -> Path:
    """Directory holding the default config, ledger and logs."""
    return Path(os.environ.get("REELCHESTRA_HOME", "~/.reelchestra")).expanduser()


@dataclass(frozen=True)
class WorkerConfig:
    """Runtime settings for the workers of one job type."""
    job_type: JobType
    concurrency: int = 3
    poll_interval_s: float = 5.0
    liveness_timeout_s: float = 600.0


class ReelchestraConfig:
    """Complete reelchestra configuration."""

    def __init__(self, raw_config: Optional[Dict[str, Any]] = None, config_path: Optional[Path] = None):
        self.config_path = config_path
        self.raw_config = raw_config or {}
        if not isinstance(self.raw_config, dict):
            raise ConfigError("Configuration root must be a mapping")

        self.ledger = self._section("ledger")
        self.workers = self._section("workers")
        self.retry = self._section("retry")
        self.logging = self._section("logging")

    @classmethod
    def from_file(cls, config_path: Path) -> "ReelchestraConfig":
        """Load and parse a YAML configuration file."""
        if not config_path.exists():
            raise ConfigError(f"Configuration file not found: {config_path}")

        try:
            with open(config_path, "r") as f:
                config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML syntax: {e}")

        return cls(config or {}, config_path)

    def _section(self, name: str) -> Dict[str, Any]:
        section = self.raw_config.get(name) or {}
        if not isinstance(section, dict):
            raise ConfigError(f"Section '{name}' must be a mapping")
        return section

    # -------------------------------------------------------------------------
    # Ledger
    # -------------------------------------------------------------------------

    def get_ledger_backend(self) -> str:
        return self.ledger.get("backend", "sqlite")

    def get_ledger_path(self) -> Path:
        path = self.ledger.get("path")
        if path:
            return Path(path).expanduser()
        return get_reelchestra_home() / "ledger.db"

    def create_ledger(self) -> JobLedger:
        """Instantiate the configured ledger backend."""
        backend = self.get_ledger_backend()
        if backend == "memory":
            return InMemoryJobLedger()
        if backend == "sqlite":
            return SqliteJobLedger(self.get_ledger_path())
        raise ConfigError(f"Unknown ledger backend: {backend}")

    # -------------------------------------------------------------------------
    # Workers and retry
    # -------------------------------------------------------------------------

    def get_worker_config(self, job_type: JobType) -> WorkerConfig:
        """Worker settings for a job type, per-type values over defaults."""
        merged = {**(self.workers.get("defaults") or {}), **(self.workers.get(job_type.value) or {})}
        try:
            return WorkerConfig(
                job_type=job_type,
                concurrency=int(merged.get("concurrency", 3)),
                poll_interval_s=float(merged.get("poll_interval_s", 5.0)),
                liveness_timeout_s=float(merged.get("liveness_timeout_s", 600.0)),
            )
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Worker config for {job_type.value}: {e}")

    def get_retry_policies(self) -> Dict[JobType, RetryPolicy]:
        """Retry policy overrides, merged over each job type's defaults."""
        policies = {}
        for name, overrides in self.retry.items():
            job_type = self._job_type(name, "retry")
            if not isinstance(overrides, dict):
                raise ConfigError(f"retry.{name} must be a mapping")
            base = job_type.default_retry_policy.to_dict()
            try:
                policies[job_type] = RetryPolicy.from_dict({**base, **overrides})
            except (TypeError, ValueError) as e:
                raise ConfigError(f"retry.{name}: {e}")
        return policies

    @staticmethod
    def _job_type(name: str, section: str) -> JobType:
        try:
            return JobType.from_string(name)
        except ValueError:
            valid = ", ".join(t.value for t in JobType)
            raise ConfigError(f"{section}.{name}: unknown job type (expected one of: {valid})")

    # -------------------------------------------------------------------------
    # Logging
    # -------------------------------------------------------------------------

    def get_log_file_path(self) -> Path:
        """Get log file path with date interpolation."""
        default = str(get_reelchestra_home() / "logs" / "reelchestra-{date}.log")
        log_output = self.logging.get("output", default)
        log_output = log_output.replace("{date}", datetime.now().strftime("%Y-%m-%d"))
        return Path(log_output).expanduser()

    def get_log_level(self) -> str:
        """Get logging level."""
        return self.logging.get("level", "INFO").upper()

    def get_log_format(self) -> str:
        """Get log format (structured or pretty)."""
        return self.logging.get("format", "structured")

    def should_log_to_console(self) -> bool:
        """Check if console logging is enabled."""
        return self.logging.get("console", True)

    def validate(self) -> None:
        """Validate entire configuration."""
        if self.get_ledger_backend() not in LEDGER_BACKENDS:
            raise ConfigError(
                f"ledger.backend must be one of {', '.join(LEDGER_BACKENDS)}, "
                f"got '{self.get_ledger_backend()}'"
            )

        for name in self.workers:
            if name != "defaults":
                self._job_type(name, "workers")
        for job_type in JobType:
            worker = self.get_worker_config(job_type)
            if worker.concurrency < 1:
                raise ConfigError(f"workers.{job_type.value}.concurrency must be >= 1")
            if worker.poll_interval_s <= 0 or worker.liveness_timeout_s <= 0:
                raise ConfigError(f"workers.{job_type.value}: intervals must be positive")

        self.get_retry_policies()

        if self.get_log_format() not in LOG_FORMATS:
            raise ConfigError(f"logging.format must be one of {', '.join(LOG_FORMATS)}")

    def __repr__(self) -> str:
        return (
            f"ReelchestraConfig(path={self.config_path}, ledger={self.get_ledger_backend()}, "
            f"retry_overrides={len(self.retry)})"
        )


def load_config(config_path: Optional[Path] = None) -> ReelchestraConfig:
    """
    Load reelchestra configuration from YAML file.

    Args:
        config_path: Path to config file. Defaults to $REELCHESTRA_HOME/config.yaml

    Returns:
        Validated ReelchestraConfig instance

    Raises:
        ConfigError: If config is invalid, or an explicit path is missing
    """
    if config_path is None:
        default_path = get_reelchestra_home() / "config.yaml"
        if not default_path.exists():
            config = ReelchestraConfig()
            config.validate()
            return config
        config_path = default_path

    config = ReelchestraConfig.from_file(Path(config_path))
    config.validate()
    return config
