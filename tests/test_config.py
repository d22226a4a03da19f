import logging
import sys
from pathlib import Path

import pytest
import yaml

from reelchestra.config import ConfigError, ReelchestraConfig, get_reelchestra_home, load_config
from reelchestra.ledger import InMemoryJobLedger, SqliteJobLedger
from reelchestra.schemas import BackoffStrategy, JobType
from reelchestra.utils import StructuredFormatter, format_duration, setup_logging


def test_get_reelchestra_home_default(monkeypatch):
    monkeypatch.delenv("REELCHESTRA_HOME", raising=False)
    assert get_reelchestra_home() == Path("~/.reelchestra").expanduser()


def test_get_reelchestra_home_env_var(reelchestra_home):
    assert get_reelchestra_home() == reelchestra_home


def test_load_config_without_file_uses_defaults(reelchestra_home):
    cfg = load_config()
    assert cfg.config_path is None
    assert cfg.get_ledger_backend() == "sqlite"
    assert cfg.get_ledger_path() == reelchestra_home / "ledger.db"
    assert cfg.get_retry_policies() == {}


def test_load_config_explicit_missing_file(tmp_path):
    with pytest.raises(ConfigError, match="not found"):
        load_config(tmp_path / "nope.yaml")


def test_load_config_invalid_yaml(tmp_path):
    config_path = tmp_path / "config.yaml"
    config_path.write_text("ledger: [unclosed")
    with pytest.raises(ConfigError, match="Invalid YAML"):
        load_config(config_path)


def test_load_config_valid(reelchestra_home):
    reelchestra_home.mkdir(parents=True)
    config_data = {
        "ledger": {"backend": "memory"},
        "workers": {
            "defaults": {"concurrency": 2, "poll_interval_s": 1},
            "asset_prep": {"concurrency": 6},
        },
        "retry": {"narration_synthesis": {"max_retries": 5, "backoff": "fixed"}},
        "logging": {"level": "debug", "format": "pretty", "console": False},
    }
    (reelchestra_home / "config.yaml").write_text(yaml.dump(config_data))

    cfg = load_config()

    assert isinstance(cfg.create_ledger(), InMemoryJobLedger)
    assert cfg.get_worker_config(JobType.ASSET_PREP).concurrency == 6
    assert cfg.get_worker_config(JobType.LIP_SYNC).concurrency == 2
    assert cfg.get_worker_config(JobType.LIP_SYNC).poll_interval_s == 1.0
    assert cfg.get_worker_config(JobType.LIP_SYNC).liveness_timeout_s == 600.0
    assert cfg.get_log_level() == "DEBUG"
    assert cfg.get_log_format() == "pretty"
    assert cfg.should_log_to_console() is False


def test_retry_overrides_merge_over_defaults():
    cfg = ReelchestraConfig({"retry": {"narration_synthesis": {"max_retries": 5, "backoff": "fixed"}}})
    policy = cfg.get_retry_policies()[JobType.NARRATION_SYNTHESIS]
    assert policy.max_retries == 5
    assert policy.backoff == BackoffStrategy.FIXED
    assert policy.base_delay_s == JobType.NARRATION_SYNTHESIS.default_retry_policy.base_delay_s


def test_sqlite_ledger_path(tmp_path):
    cfg = ReelchestraConfig({"ledger": {"backend": "sqlite", "path": str(tmp_path / "l.db")}})
    ledger = cfg.create_ledger()
    assert isinstance(ledger, SqliteJobLedger)
    assert (tmp_path / "l.db").exists()


@pytest.mark.parametrize(
    "raw,message",
    [
        ({"ledger": {"backend": "postgres"}}, "ledger.backend"),
        ({"workers": {"transcode": {"concurrency": 1}}}, "unknown job type"),
        ({"workers": {"defaults": {"concurrency": 0}}}, "concurrency must be >= 1"),
        ({"workers": {"lip_sync": {"poll_interval_s": "soon"}}}, "lip_sync"),
        ({"retry": {"music_generation": {"max_retries": -1}}}, "retry.music_generation"),
        ({"retry": {"music_generation": 3}}, "must be a mapping"),
        ({"logging": {"format": "xml"}}, "logging.format"),
        ({"ledger": "sqlite"}, "Section 'ledger'"),
    ],
)
def test_validate_rejects(raw, message):
    with pytest.raises(ConfigError, match=message):
        ReelchestraConfig(raw).validate()


def test_log_file_path_interpolates_date(tmp_path):
    cfg = ReelchestraConfig({"logging": {"output": str(tmp_path / "r-{date}.log")}})
    path = cfg.get_log_file_path()
    assert "{date}" not in path.name
    assert path.parent == tmp_path


def test_setup_logging_writes_structured_file(tmp_path):
    log_file = tmp_path / "logs" / "worker.log"
    logger = setup_logging(log_file=log_file, log_level="INFO", console_output=False)
    try:
        logging.getLogger("reelchestra.worker").info("claimed", extra={"job_id": "narration:intro"})
        for handler in logger.handlers:
            handler.flush()
        line = log_file.read_text().strip().splitlines()[-1]
        assert '"message": "claimed"' in line
        assert '"job_id": "narration:intro"' in line
    finally:
        for handler in logger.handlers:
            handler.close()
        logger.handlers = []


def test_structured_formatter_includes_exception():
    try:
        raise RuntimeError("boom")
    except RuntimeError:
        record = logging.getLogger("reelchestra").makeRecord(
            "reelchestra", logging.ERROR, __file__, 1, "failed", None, sys.exc_info()
        )
    assert "RuntimeError: boom" in StructuredFormatter().format(record)


def test_format_duration():
    assert format_duration(42) == "42s"
    assert format_duration(83) == "1m 23s"
