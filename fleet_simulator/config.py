"""
Application configuration using pydantic-settings
"""

from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings"""

    # Application info
    app_name: str = "Fleet Simulator"
    app_version: str = "1.0.0"
    debug: bool = False

    # Control surface server
    host: str = "127.0.0.1"
    port: int = 3270

    # Paths
    base_dir: Path = Path(__file__).parent.parent
    data_dir: Path = base_dir / "data"
    logs_dir: Path = data_dir / "logs"
    metrics_export_dir: Path = logs_dir / "metrics"
    device_store_path: Path = data_dir / "virtual_devices.json"
    templates_dir: Optional[Path] = None  # extra YAML device templates

    # Transport
    transport: str = "mqtt"  # mqtt | loopback
    mqtt_broker_url: str = "mqtt://localhost:1883"
    mqtt_username: Optional[str] = None
    mqtt_password: Optional[str] = None
    mqtt_client_prefix: str = "obedio-sim"
    mqtt_keepalive: int = 60
    mqtt_reconnect_period: float = 1.0
    mqtt_connect_timeout: float = 30.0
    mqtt_publish_retries: int = 3
    topic_base: str = "obedio"

    # Simulator timing (seconds)
    heartbeat_interval: float = 30.0
    status_update_interval: float = 60.0
    battery_drain_rate: float = 0.1
    signal_fluctuation_range: float = 10.0
    event_log_size: int = 100

    # Placement defaults
    default_site: str = "yacht-1"
    default_room: str = "simulation"

    # Fleet
    max_concurrent_devices: int = 100
    device_startup_delay: float = 1.0
    device_shutdown_delay: float = 0.5

    # Button
    button_press_min_interval: float = 5.0
    button_press_max_interval: float = 300.0
    button_double_press_threshold: float = 0.5
    button_long_press_threshold: float = 2.0

    # Watch
    watch_heart_rate_min: int = 60
    watch_heart_rate_max: int = 120
    watch_step_interval: float = 5.0
    watch_location_interval: float = 30.0

    # Repeater
    repeater_mesh_update_interval: float = 120.0
    repeater_max_connected_devices: int = 10

    # Metrics
    metrics_enabled: bool = True
    metrics_collection_interval: float = 5.0
    metrics_retention: float = 3600.0
    metrics_export_interval: float = 60.0

    class Config:
        env_prefix = "FS_"
        env_file = ".env"


settings = Settings()
