"""Global configuration — loaded from environment variables."""

from pathlib import Path

from pydantic_settings import BaseSettings


class StationSettings(BaseSettings):
    workspace_dir: Path = Path(".puppystation")
    db_path: Path = Path(".puppystation/dashboard.db")
    log_level: str = "INFO"
    host: str = "127.0.0.1"
    port: int = 8080

    # Activity log retention
    activity_retention_per_agent: int = 50
    activity_retention_global: int = 1000
    default_query_limit: int = 20
    max_query_limit: int = 200

    # Event producers
    file_watch_enabled: bool = True
    watch_dir: Path = Path("~/.openclaw/workspace").expanduser()
    watch_patterns: list[str] = ["*.md", "*.json"]
    watch_interval_seconds: float = 2
    synthetic_activity_enabled: bool = True
    synthetic_interval_seconds: float = 60
    metrics_enabled: bool = True
    metrics_interval_seconds: float = 5

    # Push connections
    connection_queue_size: int = 256  # overflow drops the connection

    # Viewer (reconciler) timing
    client_poll_interval_seconds: float = 5
    client_reconnect_delay_seconds: float = 3

    seed_on_start: bool = True

    model_config = {"env_prefix": "PUPPY_"}


settings = StationSettings()
