"""
Configuration module for the live session archiver.
Loads settings from YAML file and provides typed configuration.
"""

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml


TABLE_NAME = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')


@dataclass
class AcFunConfig:
    """AcFun endpoints and HTTP settings."""
    live_list_url: str = "https://api-new.app.acfun.cn/rest/app/live/channel"
    visitor_login_url: str = "https://id.app.acfun.cn/rest/app/visitor/login"
    playback_url: str = "https://api.kuaishouzt.com/rest/zt/live/playBack/startPlay"
    live_cut_url: str = "https://live.acfun.cn/rest/pc-direct/live/getLiveCutInfo"
    request_timeout: float = 10.0   # seconds per HTTP request
    aliyun_marker: str = "alivod"   # host marker of Aliyun playback links
    tencent_marker: str = "txvod"   # host marker of Tencent playback links


@dataclass
class PollingConfig:
    """Live list polling and reconciliation."""
    interval: float = 20.0          # seconds between reconcile cycles
    retry_delay: float = 10.0       # seconds between failed list fetches
    page_size_start: int = 1000
    page_size_factor: int = 10
    page_size_limit: int = 10_000_000  # give up if upstream still reports more data here
    fetch_aux_tag: bool = False     # look up the live cut number of new sessions
    exit_on_failure: bool = True    # False = skip the cycle instead of shutting down


@dataclass
class FinalizerConfig:
    """Playback resolution after a session ends."""
    grace_delay: float = 10.0       # seconds before the first resolution
    retry_delay: float = 10.0       # seconds between failed resolutions
    backfill_interval: float = 1800.0  # seconds between backfill resolutions
    backfill_iterations: int = 30
    finalized_marker: str = ".0-0.0"  # substring of a complete playback URL


@dataclass
class StorageConfig:
    """SQLite storage settings."""
    database_file: str = "./data/acfunlive.db"
    table: str = "sessions"


@dataclass
class LoggingConfig:
    """Logging settings."""
    level: str = "INFO"
    file: str = "./logs/livearchive.log"
    max_size_mb: int = 10
    backup_count: int = 5


@dataclass
class Config:
    """Main configuration container."""
    acfun: AcFunConfig = field(default_factory=AcFunConfig)
    polling: PollingConfig = field(default_factory=PollingConfig)
    finalizer: FinalizerConfig = field(default_factory=FinalizerConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def __post_init__(self):
        """Ensure directories exist."""
        if self.storage.database_file != ":memory:":
            Path(self.storage.database_file).parent.mkdir(parents=True, exist_ok=True)
        if self.logging.file:
            Path(self.logging.file).parent.mkdir(parents=True, exist_ok=True)


def load_config(config_path: str = "config.yaml") -> Config:
    """
    Load configuration from YAML file.

    Args:
        config_path: Path to YAML configuration file.

    Returns:
        Config object with all settings.

    Raises:
        FileNotFoundError: If config file doesn't exist.
        ValueError: If the file is empty or a section is not a mapping.
    """
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path}\n"
            f"Please create a config.yaml file. See config.example.yaml for reference."
        )

    with open(config_path, 'r', encoding='utf-8') as f:
        data = yaml.safe_load(f)

    if not data:
        raise ValueError("Configuration file is empty")

    def section(name: str) -> dict:
        value = data.get(name) or {}
        if not isinstance(value, dict):
            raise ValueError(f"Section '{name}' must be a mapping")
        return value

    def as_bool(value: Any, default: bool) -> bool:
        """Parse bool from YAML value with safe fallbacks."""
        if value is None:
            return default
        if isinstance(value, bool):
            return value
        if isinstance(value, (int, float)):
            return bool(value)
        if isinstance(value, str):
            text = value.strip().lower()
            if text in ("1", "true", "yes", "y", "on"):
                return True
            if text in ("0", "false", "no", "n", "off"):
                return False
        return default

    def as_float(value: Any, default: float) -> float:
        """Parse float from YAML value with safe fallbacks."""
        if value is None:
            return default
        if isinstance(value, (int, float)):
            return float(value)
        if isinstance(value, str):
            try:
                return float(value.strip().replace(",", "."))
            except ValueError:
                return default
        return default

    def as_int(value: Any, default: int) -> int:
        """Parse int from YAML value with safe fallbacks."""
        if value is None:
            return default
        if isinstance(value, bool):
            return int(value)
        if isinstance(value, int):
            return value
        if isinstance(value, float):
            return int(value)
        if isinstance(value, str):
            text = value.strip()
            if not text:
                return default
            try:
                return int(float(text.replace(",", ".")))
            except ValueError:
                return default
        return default

    acfun_data = section('acfun')
    defaults = AcFunConfig()
    acfun_config = AcFunConfig(
        live_list_url=acfun_data.get('live_list_url', defaults.live_list_url),
        visitor_login_url=acfun_data.get('visitor_login_url', defaults.visitor_login_url),
        playback_url=acfun_data.get('playback_url', defaults.playback_url),
        live_cut_url=acfun_data.get('live_cut_url', defaults.live_cut_url),
        request_timeout=max(1.0, as_float(acfun_data.get('request_timeout'), 10.0)),
        aliyun_marker=str(acfun_data.get('aliyun_marker', defaults.aliyun_marker)),
        tencent_marker=str(acfun_data.get('tencent_marker', defaults.tencent_marker)),
    )

    polling_data = section('polling')
    polling_config = PollingConfig(
        interval=max(0.0, as_float(polling_data.get('interval'), 20.0)),
        retry_delay=max(0.0, as_float(polling_data.get('retry_delay'), 10.0)),
        page_size_start=max(1, as_int(polling_data.get('page_size_start'), 1000)),
        page_size_factor=max(2, as_int(polling_data.get('page_size_factor'), 10)),
        page_size_limit=max(1, as_int(polling_data.get('page_size_limit'), 10_000_000)),
        fetch_aux_tag=as_bool(polling_data.get('fetch_aux_tag'), False),
        exit_on_failure=as_bool(polling_data.get('exit_on_failure'), True),
    )

    finalizer_data = section('finalizer')
    finalizer_config = FinalizerConfig(
        grace_delay=max(0.0, as_float(finalizer_data.get('grace_delay'), 10.0)),
        retry_delay=max(0.0, as_float(finalizer_data.get('retry_delay'), 10.0)),
        backfill_interval=max(0.0, as_float(finalizer_data.get('backfill_interval'), 1800.0)),
        backfill_iterations=max(0, as_int(finalizer_data.get('backfill_iterations'), 30)),
        finalized_marker=str(finalizer_data.get('finalized_marker', '.0-0.0')),
    )

    storage_data = section('storage')
    storage_config = StorageConfig(
        database_file=str(storage_data.get('database_file', './data/acfunlive.db')),
        table=str(storage_data.get('table', 'sessions')),
    )
    if not TABLE_NAME.match(storage_config.table):
        raise ValueError(f"Invalid storage.table: {storage_config.table!r}")

    logging_data = section('logging')
    logging_config = LoggingConfig(
        level=logging_data.get('level', 'INFO'),
        file=logging_data.get('file', './logs/livearchive.log'),
        max_size_mb=as_int(logging_data.get('max_size_mb'), 10),
        backup_count=as_int(logging_data.get('backup_count'), 5),
    )

    return Config(
        acfun=acfun_config,
        polling=polling_config,
        finalizer=finalizer_config,
        storage=storage_config,
        logging=logging_config,
    )


def create_example_config(path: str = "config.example.yaml") -> None:
    """Create an example configuration file."""
    example = """# Live session archiver configuration

acfun:
  request_timeout: 10   # Seconds per HTTP request
  aliyun_marker: alivod  # Host marker of Aliyun playback links
  tencent_marker: txvod  # Host marker of Tencent playback links

polling:
  interval: 20          # Seconds between live list polls
  retry_delay: 10       # Seconds between failed list fetches
  page_size_start: 1000
  page_size_factor: 10
  page_size_limit: 10000000
  fetch_aux_tag: false  # Look up the live cut number of new sessions
  exit_on_failure: true # false = skip the cycle when the list is unavailable

finalizer:
  grace_delay: 10        # Seconds to wait after a session ends
  retry_delay: 10
  backfill_interval: 1800
  backfill_iterations: 30
  finalized_marker: ".0-0.0"  # Substring of a complete playback URL

storage:
  database_file: ./data/acfunlive.db
  table: sessions

logging:
  level: INFO  # DEBUG, INFO, WARNING, ERROR
  file: ./logs/livearchive.log
  max_size_mb: 10
  backup_count: 5
"""
    with open(path, 'w', encoding='utf-8') as f:
        f.write(example)


if __name__ == '__main__':
    create_example_config()
    print("Created config.example.yaml")
