import os
from pathlib import Path
from typing import Any, Dict, Optional
import yaml
from pydantic import ValidationError, ValidationInfo, model_validator, field_validator, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from forwarder.features.machine_id import resolve_machine_id


MACHINE_ID_PLACEHOLDER = "<machine-id>"
SENSOR_ID_PLACEHOLDER = "<sensor-id>"

DEFAULT_TOPIC = "mataelang/sensor/v3/<machine-id>"
DEFAULT_ALERT_FILE = "/var/log/snort/alert_json.txt"
TOPIC_WILDCARDS = ("+", "#")


class ForwarderSettings(BaseSettings):
    """Settings for the alert forwarder.

    Field names double as environment variable names (no prefix), so
    MQTT_HOST, MQTT_PORT, SENSOR_ID, SNORT_ALERT_FILE_PATH etc. keep
    working for existing sensor deployments.
    """

    # broker
    mqtt_host: str = "127.0.0.1"
    mqtt_port: int = Field(1883, ge=1, le=65535)
    mqtt_username: Optional[str] = None
    mqtt_password: Optional[str] = None
    mqtt_topic: str = DEFAULT_TOPIC
    mqtt_qos: int = Field(0, ge=0, le=2)
    mqtt_retain: bool = True
    mqtt_client_id: Optional[str] = None  # generated if not provided
    connect_timeout: float = 5.0  # seconds
    publish_timeout: float = 10.0  # seconds

    # identity
    sensor_id: str = MACHINE_ID_PLACEHOLDER
    machine_id: Optional[str] = None  # resolved from the host if not provided

    # source
    snort_alert_file_path: str = DEFAULT_ALERT_FILE
    tail_from_end: bool = False

    # pipeline
    queue_size: int = Field(1, ge=1)  # keep small, this is the backpressure point
    poll_interval: float = Field(0.25, gt=0)  # seconds
    stats_interval: int = Field(10, gt=0)  # seconds
    verbose: bool = False

    # logger
    log_dir: Path = Path("./logs")
    log_to_console: bool = True
    log_to_file: bool = False
    log_level: str = "INFO"

    # Manager (command) channel (REQ/REP)
    manager_addr: str | None = "ipc:///tmp/mataelang-forwarder.cmd.ipc"
    manager_recv_timeout: int = 100  # milliseconds
    manager_thread_join_timeout: float = 1.0  # seconds

    model_config = SettingsConfigDict(
        env_prefix="",  # MQTT_HOST, SENSOR_ID etc.
        extra="forbid",
    )

    @field_validator("mqtt_topic", "sensor_id", "snort_alert_file_path", mode="before")
    @classmethod
    def _empty_as_default(cls, v: Any, info: ValidationInfo) -> Any:
        # an empty MQTT_TOPIC / SENSOR_ID / SNORT_ALERT_FILE_PATH means "use the default"
        if isinstance(v, str) and not v.strip():
            return cls.model_fields[info.field_name].default
        return v

    @field_validator("mqtt_username", "mqtt_password", "mqtt_client_id", "machine_id")
    @classmethod
    def _empty_as_none(cls, v: Optional[str]) -> Optional[str]:
        # unset env vars in docker-compose files usually arrive as ""
        return v or None

    @model_validator(mode="after")
    def _resolve_placeholders(self) -> "ForwarderSettings":
        if self.machine_id is None:
            self.machine_id = resolve_machine_id()

        self.sensor_id = self.sensor_id.replace(MACHINE_ID_PLACEHOLDER, self.machine_id)
        topic = self.mqtt_topic.replace(MACHINE_ID_PLACEHOLDER, self.machine_id)
        self.mqtt_topic = topic.replace(SENSOR_ID_PLACEHOLDER, self.sensor_id)
        if any(c in self.mqtt_topic for c in TOPIC_WILDCARDS):
            raise ValueError(f"mqtt topic cannot contain wildcards: {self.mqtt_topic}")
        return self

    @property
    def auth_enabled(self) -> bool:
        return bool(self.mqtt_username and self.mqtt_password)

    @classmethod
    def from_yaml(
            cls,
            path: str | Path | None,
            use_env: bool = True,
            overrides: Optional[Dict[str, Any]] = None,
    ) -> "ForwarderSettings":
        """Load settings from YAML, then env vars (if enabled), then explicit overrides."""
        data: Dict[str, Any] = {}
        if path:
            path = Path(path)
            if path.exists():
                try:
                    with open(path, "r") as fh:
                        data = yaml.safe_load(fh) or {}
                except (IOError, yaml.YAMLError) as e:
                    raise SystemExit(f"[config] Error reading YAML file {path}: {e}") from e

        # convert string paths to Path objects
        if "log_dir" in data and isinstance(data["log_dir"], str):
            data["log_dir"] = Path(data["log_dir"])

        final_data: Dict[str, Any] = {}
        for field in cls.model_fields:
            env_name = f"{cls.model_config['env_prefix']}{field.upper()}"
            if overrides and overrides.get(field) is not None:
                final_data[field] = overrides[field]
            elif use_env and env_name in os.environ:
                # let Pydantic handle parsing of the raw string
                final_data[field] = os.environ[env_name]
            elif field in data:
                final_data[field] = data[field]  # use yaml value if no env var
            else:
                continue  # pydantic will handle default values

        try:
            return cls.model_validate(final_data)
        except ValidationError as e:
            raise SystemExit(f"[config] x {e}") from e
