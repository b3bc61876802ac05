"""
Configuration for all historian services.

Every value comes from an environment variable with an in-code default. A `.env`
file (path in HISTORIAN_ENV_FILE, default `.env`) is loaded first without
overriding variables that are already set.
"""
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

from dotenv import load_dotenv

from common.errors import ConfigError

# Heartbeat staleness threshold must leave room for producer jitter.
HEARTBEAT_SAFETY_MARGIN = 1.5


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}")


def parse_tags(raw: str) -> Dict[str, str]:
    """Parse `key=value,key2=value2` into a dict. Empty input gives {}."""
    tags = {}
    for item in raw.split(","):
        item = item.strip()
        if not item:
            continue
        if "=" not in item:
            raise ConfigError(f"Invalid tag {item!r}, expected key=value")
        key, value = item.split("=", 1)
        tags[key.strip()] = value.strip()
    return tags


@dataclass(frozen=True)
class Settings:
    # OPC UA
    opcua_endpoint: str = "opc.tcp://0.0.0.0:4841"
    opcua_timeout: float = 30.0
    discovery_root: str = "i=84"
    discovery_namespace: int = 2
    discovery_id_min: int = 1000
    discovery_id_max: int = 8000
    browse_page_size: int = 0

    # Subscription engine
    batch_size: int = 50
    max_concurrent: int = 50
    stagger_delay: float = 0.02
    batch_delay: float = 0.5
    sampling_interval: float = 1000.0
    queue_size: int = 10
    discard_oldest: bool = True
    publishing_interval: float = 1000.0

    # Time-series store
    db_host: str = "localhost"
    db_port: int = 5432
    db_name: str = "industrial_data"
    db_user: str = "postgres"
    db_password: str = "postgres"
    db_table: str = "opcua_points"
    measurement: str = "solar_data"
    default_tags: Dict[str, str] = field(default_factory=lambda: {"location": "Ranna"})

    # Sink
    sink_batch_size: int = 500
    sink_flush_interval: float = 1.0
    sink_max_retries: int = 3
    sink_retry_delay: float = 1.0

    # Heartbeat / watchdog
    heartbeat_file: Path = Path("heartbeat.txt")
    heartbeat_interval: float = 5.0
    heartbeat_stale_after: float = 15.0
    watchdog_poll_interval: float = 10.0
    watchdog_restart_grace: float = 60.0
    restart_command: str = ""

    # Files
    lock_file: Path = Path("ingest.lock")
    manifest_file: Path = Path("discoveredVariables.json")
    catalog_file: Path = Path("data_points.json")

    # Process
    shutdown_timeout: float = 10.0
    status_log_interval: float = 10.0
    store_command: str = ""
    max_restarts: int = 5

    # Alerts
    email_user: Optional[str] = None
    email_pass: Optional[str] = None
    email_to: Optional[str] = None
    smtp_host: str = "smtp.gmail.com"
    smtp_port: int = 465

    # HTTP APIs
    api_host: str = "0.0.0.0"
    read_api_port: int = 8003
    write_api_port: int = 7003
    display_timezone: str = "Asia/Colombo"

    # Backup
    backup_dir: Path = Path("backups")
    backup_year: Optional[int] = None
    backup_start_month: int = 1

    # Logging
    log_level: str = "INFO"
    log_dir: Optional[Path] = None

    @property
    def dsn(self) -> str:
        return (
            f"host={self.db_host} port={self.db_port} dbname={self.db_name} "
            f"user={self.db_user} password={self.db_password}"
        )

    def validate(self) -> "Settings":
        if self.heartbeat_interval <= 0:
            raise ConfigError("HEARTBEAT_INTERVAL must be positive")
        if self.heartbeat_stale_after < HEARTBEAT_SAFETY_MARGIN * self.heartbeat_interval:
            raise ConfigError(
                f"HEARTBEAT_STALE_AFTER ({self.heartbeat_stale_after}s) must be at least "
                f"{HEARTBEAT_SAFETY_MARGIN}x HEARTBEAT_INTERVAL ({self.heartbeat_interval}s)"
            )
        if self.batch_size < 1:
            raise ConfigError("BATCH_SIZE must be >= 1")
        if self.max_concurrent < 1:
            raise ConfigError("MAX_CONCURRENT must be >= 1")
        if self.discovery_id_min > self.discovery_id_max:
            raise ConfigError("DISCOVERY_ID_MIN must not exceed DISCOVERY_ID_MAX")
        if self.sink_batch_size < 1:
            raise ConfigError("SINK_BATCH_SIZE must be >= 1")
        if self.max_restarts < 0:
            raise ConfigError("ORCHESTRATOR_MAX_RESTARTS must be >= 0")
        return self


def get_settings() -> Settings:
    env_file = os.getenv("HISTORIAN_ENV_FILE", ".env")
    if env_file and Path(env_file).exists():
        load_dotenv(env_file, override=False)

    log_dir = os.getenv("LOG_DIR", "").strip()
    backup_year = os.getenv("BACKUP_YEAR", "").strip()

    settings = Settings(
        opcua_endpoint=os.getenv("OPCUA_ENDPOINT", "opc.tcp://0.0.0.0:4841"),
        opcua_timeout=_env_float("OPCUA_TIMEOUT", 30.0),
        discovery_root=os.getenv("DISCOVERY_ROOT", "i=84"),
        discovery_namespace=_env_int("DISCOVERY_NAMESPACE", 2),
        discovery_id_min=_env_int("DISCOVERY_ID_MIN", 1000),
        discovery_id_max=_env_int("DISCOVERY_ID_MAX", 8000),
        browse_page_size=_env_int("BROWSE_PAGE_SIZE", 0),
        batch_size=_env_int("BATCH_SIZE", 50),
        max_concurrent=_env_int("MAX_CONCURRENT", 50),
        stagger_delay=_env_float("STAGGER_DELAY", 0.02),
        batch_delay=_env_float("BATCH_DELAY", 0.5),
        sampling_interval=_env_float("SAMPLING_INTERVAL", 1000.0),
        queue_size=_env_int("QUEUE_SIZE", 10),
        discard_oldest=_env_bool("DISCARD_OLDEST", True),
        publishing_interval=_env_float("PUBLISHING_INTERVAL", 1000.0),
        db_host=os.getenv("DB_HOST", "localhost"),
        db_port=_env_int("DB_PORT", 5432),
        db_name=os.getenv("DB_NAME", "industrial_data"),
        db_user=os.getenv("DB_USER", "postgres"),
        db_password=os.getenv("DB_PASSWORD", "postgres"),
        db_table=os.getenv("DB_TABLE", "opcua_points"),
        measurement=os.getenv("MEASUREMENT", "solar_data"),
        default_tags=parse_tags(os.getenv("DEFAULT_TAGS", "location=Ranna")),
        sink_batch_size=_env_int("SINK_BATCH_SIZE", 500),
        sink_flush_interval=_env_float("SINK_FLUSH_INTERVAL", 1.0),
        sink_max_retries=_env_int("SINK_MAX_RETRIES", 3),
        sink_retry_delay=_env_float("SINK_RETRY_DELAY", 1.0),
        heartbeat_file=Path(os.getenv("HEARTBEAT_FILE", "heartbeat.txt")),
        heartbeat_interval=_env_float("HEARTBEAT_INTERVAL", 5.0),
        heartbeat_stale_after=_env_float("HEARTBEAT_STALE_AFTER", 15.0),
        watchdog_poll_interval=_env_float("WATCHDOG_POLL_INTERVAL", 10.0),
        watchdog_restart_grace=_env_float("WATCHDOG_RESTART_GRACE", 60.0),
        restart_command=os.getenv("RESTART_COMMAND", ""),
        lock_file=Path(os.getenv("LOCK_FILE", "ingest.lock")),
        manifest_file=Path(os.getenv("MANIFEST_FILE", "discoveredVariables.json")),
        catalog_file=Path(os.getenv("CATALOG_FILE", "data_points.json")),
        shutdown_timeout=_env_float("SHUTDOWN_TIMEOUT", 10.0),
        status_log_interval=_env_float("STATUS_LOG_INTERVAL", 10.0),
        store_command=os.getenv("STORE_COMMAND", ""),
        max_restarts=_env_int("ORCHESTRATOR_MAX_RESTARTS", 5),
        email_user=os.getenv("EMAIL_USER") or None,
        email_pass=os.getenv("EMAIL_PASS") or None,
        email_to=os.getenv("EMAIL_TO") or None,
        smtp_host=os.getenv("SMTP_HOST", "smtp.gmail.com"),
        smtp_port=_env_int("SMTP_PORT", 465),
        api_host=os.getenv("API_HOST", "0.0.0.0"),
        read_api_port=_env_int("READ_API_PORT", 8003),
        write_api_port=_env_int("WRITE_API_PORT", 7003),
        display_timezone=os.getenv("DISPLAY_TIMEZONE", "Asia/Colombo"),
        backup_dir=Path(os.getenv("BACKUP_DIR", "backups")),
        backup_year=int(backup_year) if backup_year else None,
        backup_start_month=_env_int("BACKUP_START_MONTH", 1),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        log_dir=Path(log_dir) if log_dir else None,
    )
    return settings.validate()
